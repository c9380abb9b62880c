"""
Utility functions for audit reports and run summaries.

This module provides functions to:
- Generate timestamped report filenames
- Write the audit CSV produced by a cleanup run
- Render a summary table of a cleanup run
- Save machine-readable JSON summaries
"""
import csv
import json
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from tabulate import tabulate

from registry_retention.logging_utils import get_logger
from registry_retention.retention import CleanupResult

logger = get_logger(__name__)

AUDIT_HEADER_WITH_CONTEXT = ["Image", "Status", "Used In Environments", "Used In Namespaces", "Notes"]
AUDIT_HEADER = ["Image", "Status", "Notes"]


# ============================================================================
# Timestamp Utilities
# ============================================================================

def get_timestamp_suffix() -> str:
    """
    Generate a timestamp suffix for report filenames.

    Returns:
        String in format: YYYY-MM-DD-HH-MM-SS
    """
    return datetime.now().strftime("%Y-%m-%d-%H-%M-%S")


def add_timestamp_to_path(path: str, timestamp: Optional[str] = None) -> str:
    """
    Add a timestamp to a file path before the extension.

    Args:
        path: Original file path (e.g., 'reports/audit.csv')
        timestamp: Optional timestamp string (defaults to current time)

    Returns:
        Path with timestamp inserted (e.g., 'reports/audit-2026-01-15-14-30-00.csv')
    """
    if timestamp is None:
        timestamp = get_timestamp_suffix()

    p = Path(path)
    return str(p.parent / f"{p.stem}-{timestamp}{p.suffix}")


def default_audit_path(output_dir: str, strategy: str, timestamp: Optional[str] = None) -> str:
    """Audit report path used when none is configured"""
    timestamp = timestamp or get_timestamp_suffix()
    return str(Path(output_dir) / f"audit-report-{strategy}-{timestamp}.csv")


# ============================================================================
# Audit Report
# ============================================================================

def write_audit_report(path: str, result: CleanupResult, with_context: bool) -> str:
    """
    Write one CSV row per audit record.

    Args:
        path: Destination file; parent directories are created
        result: Cleanup result holding the audit records
        with_context: Include the environment/namespace columns (manifest-based runs)

    Returns:
        The path written
    """
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)

    with open(p, "w", newline="") as f:
        writer = csv.writer(f)
        if with_context:
            writer.writerow(AUDIT_HEADER_WITH_CONTEXT)
            for record in result.records:
                writer.writerow([record.image, record.status.value, record.environments, record.namespaces, record.notes])
        else:
            writer.writerow(AUDIT_HEADER)
            for record in result.records:
                writer.writerow([record.image, record.status.value, record.notes])

    logger.info(f"Audit report with {len(result.records)} records written to {p}")
    return str(p)


def format_summary(result: CleanupResult) -> str:
    """Render the counts of a cleanup run as a grid table"""
    rows = [[status.value, count] for status, count in result.status_counts().items()]
    rows.append(["Projects scanned", result.projects_scanned])
    rows.append(["Repositories scanned", result.repositories_scanned])
    mode = "DRY RUN" if result.dry_run else "LIVE"
    return tabulate(rows, headers=[f"Outcome ({mode})", "Count"], tablefmt="grid")


def summary_dict(result: CleanupResult) -> dict:
    """Machine-readable summary of a cleanup run"""
    return {
        "dry_run": result.dry_run,
        "deleted": result.deleted,
        "failed": result.failed,
        "projects_scanned": result.projects_scanned,
        "repositories_scanned": result.repositories_scanned,
        "status_counts": {status.value: count for status, count in result.status_counts().items()},
    }


# ============================================================================
# JSON
# ============================================================================

def _to_jsonable(data: Any) -> Any:
    """Recursively convert values json.dump cannot serialize.

    Converts:
    - datetime/date objects to ISO format strings
    - set/frozenset to sorted lists
    - Enum members to their values
    """
    if isinstance(data, (datetime, date)):
        return data.isoformat()
    if isinstance(data, Enum):
        return data.value
    if isinstance(data, (set, frozenset)):
        try:
            return [_to_jsonable(item) for item in sorted(data)]
        except TypeError:
            return [_to_jsonable(item) for item in data]
    if isinstance(data, dict):
        return {k: _to_jsonable(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_to_jsonable(item) for item in data]
    return data


def save_json(path: str, data: Any, timestamp: bool = False) -> str:
    """
    Write JSON data to a file with indentation.

    Args:
        path: Path to save the JSON file
        data: Data to save
        timestamp: If True, add timestamp to filename (default: False)

    Returns:
        Path to the saved file
    """
    p = Path(path)
    if timestamp:
        p = Path(add_timestamp_to_path(str(p)))

    p.parent.mkdir(parents=True, exist_ok=True)

    with open(p, "w") as f:
        json.dump(_to_jsonable(data), f, indent=2)
    logger.info(f"Saved JSON to {p}")
    return str(p)
