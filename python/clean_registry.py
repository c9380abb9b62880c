#!/usr/bin/env python3
"""
Clean Harbor artifacts according to a retention strategy.

Strategies:
- harbor: per repository, keep the newest `keep_last` tagged artifacts and at
  most `max_snapshots` snapshot builds among them; delete the rest.
- k8s: the `clean` stage of the Kubernetes strategy. Reads the manifest written
  by scan_workloads.py and, in every repository the manifest references,
  deletes the artifacts it does not list. Other repositories are not touched.

Runs are dry-run by default: the audit report shows what would be deleted.
Use --apply (or dry_run: false in config.yaml) to delete for real.

Usage examples:
  # Preview the retention strategy configured in config.yaml
  python clean_registry.py

  # Preview the manifest-based cleanup
  python clean_registry.py --strategy k8s --manifest reports/k8s-manifest.csv

  # Delete for real, without the confirmation prompt
  python clean_registry.py --strategy harbor --apply --force
"""

import argparse
import sys
from pathlib import Path

from registry_retention.config_manager import (
    STAGE_CLEAN,
    STRATEGY_HARBOR,
    STRATEGY_K8S,
    VALID_STRATEGIES,
    ConfigManager,
    ConfigValidationError,
)
from registry_retention.error_utils import (
    ActionableError,
    create_config_error,
    create_manifest_error,
    create_registry_auth_error,
    create_registry_connection_error,
)
from registry_retention.harbor_client import HarborAPIError, HarborClient
from registry_retention.logging_utils import get_logger, log_exception, setup_run_logging
from registry_retention.report_utils import (
    default_audit_path,
    format_summary,
    save_json,
    summary_dict,
    write_audit_report,
)
from registry_retention.retention import CleanupResult, RetentionEngine, RetentionPolicy
from registry_retention.safe_list import ManifestError, read_manifest

logger = get_logger(__name__)


def parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Delete Harbor artifacts according to a retention strategy (default: dry-run)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Dry-run with the strategy from config.yaml
  python clean_registry.py

  # Dry-run of the manifest-based cleanup
  python clean_registry.py --strategy k8s

  # Custom manifest and audit report paths
  python clean_registry.py --strategy k8s --manifest prod-manifest.csv --audit prod-audit.csv

  # Delete for real (requires confirmation)
  python clean_registry.py --apply

  # Force deletion without confirmation
  python clean_registry.py --apply --force
        """
    )

    parser.add_argument(
        '--config',
        help='Path to config file (default: CONFIG_FILE env var or config.yaml)'
    )

    parser.add_argument(
        '--strategy',
        choices=VALID_STRATEGIES,
        help='Retention strategy (default: strategy from config)'
    )

    parser.add_argument(
        '--manifest',
        help='Manifest file for the k8s strategy (default: k8s.manifest_file from config)'
    )

    parser.add_argument(
        '--audit',
        help='Audit report path (default: k8s.audit_file from config, or a timestamped file in output_dir)'
    )

    parser.add_argument(
        '--apply',
        action='store_true',
        help='Actually delete artifacts (default: dry-run unless dry_run: false in config)'
    )

    parser.add_argument(
        '--force',
        action='store_true',
        help='Skip confirmation prompt when deleting'
    )

    return parser.parse_args(argv)


def create_harbor_client(config: ConfigManager) -> HarborClient:
    """Build the Harbor client from configuration"""
    try:
        return HarborClient(
            config.get_harbor_url(),
            config.get_harbor_user(),
            config.get_harbor_password(),
            page_size=config.get_page_size(),
            timeout=config.get_request_timeout(),
            verify_tls=config.get_verify_tls(),
            max_retries=config.get_max_retries(),
            retry_initial_delay=config.get_retry_initial_delay(),
            retry_max_delay=config.get_retry_max_delay(),
            retry_exponential_base=config.get_retry_exponential_base(),
            retry_jitter=config.get_retry_jitter(),
        )
    except ValueError as e:
        raise create_config_error("harbor.url/harbor.user/harbor.password", config.get_harbor_url(), str(e)) from e


def registry_error(registry_url: str, error: HarborAPIError) -> ActionableError:
    """Map a fatal Harbor failure to an actionable error"""
    if error.status_code in (401, 403):
        return create_registry_auth_error(registry_url, error)
    return create_registry_connection_error(registry_url, error)


def write_reports(audit_path: str, result: CleanupResult, strategy: str, completed: bool) -> bool:
    """Write the audit CSV and the JSON summary next to it. Returns False if writing failed."""
    try:
        write_audit_report(audit_path, result, with_context=strategy == STRATEGY_K8S)
        summary = summary_dict(result)
        summary["strategy"] = strategy
        summary["completed"] = completed
        summary["audit_report"] = audit_path
        save_json(str(Path(audit_path).with_suffix(".json")), summary)
    except OSError as e:
        logger.error(f"\n❌ Failed to write audit report {audit_path}: {e}")
        return False
    if not completed:
        logger.warning(f"⚠️  Run did not complete; audit report {audit_path} covers the artifacts processed so far")
    return True


def confirm_live_run(strategy: str, force: bool) -> bool:
    """Ask before a live run. Returns True if deletion may proceed."""
    if force:
        logger.warning("⚠️  Force mode enabled - skipping confirmation prompt")
        return True

    print("\n" + "=" * 60)
    print("⚠️  WARNING: You are about to DELETE artifacts from Harbor!")
    print("=" * 60)
    print(f"Strategy: {strategy}")
    print("Every artifact the strategy does not keep will be deleted.")
    print("This action cannot be undone.")
    print("Make sure you have reviewed a dry-run audit report first.")
    print("=" * 60)

    while True:
        response = input("Are you sure you want to proceed with deletion? (yes/no): ").lower().strip()
        if response in ["yes", "y"]:
            return True
        if response in ["no", "n"]:
            return False
        print("Please enter 'yes' or 'no'")


def main(argv=None) -> int:
    """Main function"""
    args = parse_arguments(argv)

    try:
        config = ConfigManager(args.config, validate=False)
        strategy = args.strategy or config.get_strategy()
        config.validate_config(strategy=strategy, stage=STAGE_CLEAN)
    except ConfigValidationError as e:
        logger.error(f"\n❌ {e}")
        return 1

    dry_run = not args.apply and config.is_dry_run()
    # Only the k8s strategy has stages
    stage = STAGE_CLEAN if strategy == STRATEGY_K8S else None
    log_file = setup_run_logging(
        config.get_output_dir(), strategy, stage, config.get_log_level(), config.get_log_file()
    )
    audit_path = args.audit or config.get_audit_file() or default_audit_path(config.get_output_dir(), strategy)
    manifest_path = args.manifest or config.get_manifest_file()

    try:
        logger.info("=" * 60)
        if dry_run:
            logger.info(f"   Cleaning Harbor artifacts ({strategy} strategy, DRY RUN)")
        else:
            logger.info(f"   Cleaning Harbor artifacts ({strategy} strategy, LIVE)")
        logger.info("=" * 60)
        logger.info(f"Harbor URL: {config.get_harbor_url()}")
        if strategy == STRATEGY_K8S:
            logger.info(f"Manifest file: {manifest_path}")
        logger.info(f"Audit report: {audit_path}")
        logger.info(f"Log file: {log_file}")

        client = create_harbor_client(config)
        engine = RetentionEngine(client, dry_run=dry_run, delete_delay=config.get_delete_delay())

        safe_images, contexts = set(), {}
        if strategy == STRATEGY_K8S:
            try:
                safe_images, contexts = read_manifest(manifest_path)
            except ManifestError as e:
                raise create_manifest_error(manifest_path, e) from e

        if not dry_run and not confirm_live_run(strategy, args.force):
            logger.info("Operation cancelled by user")
            return 1

        result = CleanupResult(dry_run=dry_run)
        completed = False
        try:
            if strategy == STRATEGY_HARBOR:
                policy = RetentionPolicy(
                    keep_last_n=config.get_keep_last(),
                    max_snapshots=config.get_max_snapshots(),
                    snapshot_pattern=config.get_snapshot_pattern(),
                    project_whitelist=config.get_project_whitelist(),
                )
                engine.run_time_based(policy, result)
            else:
                engine.run_manifest_based(safe_images, contexts, config.get_project_whitelist(), result)
            completed = True
        except HarborAPIError as e:
            raise registry_error(config.get_harbor_url(), e) from e
        finally:
            # Deletions already made are recorded even when the run is cut short
            reports_written = write_reports(audit_path, result, strategy, completed)

        if not reports_written:
            return 1

        logger.info("\n" + "=" * 60)
        logger.info("   CLEANUP SUMMARY")
        logger.info("=" * 60)
        logger.info("\n" + format_summary(result))
        if dry_run:
            logger.info(f"Artifacts that would be deleted: {result.deleted}")
            logger.info("Use --apply flag to delete these artifacts.")
        else:
            logger.info(f"Artifacts deleted: {result.deleted}")
            if result.failed:
                logger.warning(f"⚠️  {result.failed} deletions failed, see the audit report for details")
        logger.info(f"\nAudit report saved to: {audit_path}")
        logger.info("\n✅ Cleanup completed!")
        return 0

    except ActionableError as e:
        logger.error(f"\n{e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("\n⚠️  Operation interrupted by user")
        return 1
    except Exception as e:
        log_exception(logger, f"\n❌ Cleanup failed: {e}", e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
