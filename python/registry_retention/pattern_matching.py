#!/usr/bin/env python3
"""
Wildcard matching utilities for Kubernetes workload names.

Patterns support two wildcards:
- `*` matches zero or more characters
- `?` matches exactly one character

Every other character is literal, and a pattern must match the whole name
(`api-*` matches `api-server` but not `my-api-server`).
"""

from typing import Iterable, Optional


def matches(pattern: str, name: str) -> bool:
    """Check if a name matches a wildcard pattern.

    Args:
        pattern: Pattern with optional `*` and `?` wildcards (e.g., "api-*")
        name: Workload name to test (e.g., "api-server")

    Returns:
        True if the entire name matches the pattern, False otherwise
    """
    p_idx = 0
    n_idx = 0
    # Position of the last `*` seen and the name index it was tried against
    star_idx = -1
    star_match = 0

    while n_idx < len(name):
        if p_idx < len(pattern) and (pattern[p_idx] == '?' or pattern[p_idx] == name[n_idx]):
            p_idx += 1
            n_idx += 1
        elif p_idx < len(pattern) and pattern[p_idx] == '*':
            star_idx = p_idx
            star_match = n_idx
            p_idx += 1
        elif star_idx != -1:
            # Let the last `*` absorb one more character and retry
            p_idx = star_idx + 1
            star_match += 1
            n_idx = star_match
        else:
            return False

    # Name exhausted: whatever is left of the pattern must be all `*`
    while p_idx < len(pattern) and pattern[p_idx] == '*':
        p_idx += 1
    return p_idx == len(pattern)


def matches_any(patterns: Iterable[str], name: str) -> bool:
    """Check if a name matches at least one of the given patterns."""
    return any(matches(pattern, name) for pattern in patterns)


def should_process(name: str, whitelist: Optional[Iterable[str]] = None, blacklist: Optional[Iterable[str]] = None) -> bool:
    """Decide whether a workload should be scanned based on whitelist and blacklist.

    The blacklist is evaluated first, so a name can be excluded even if it
    would match the whitelist.

    Args:
        name: Workload name (Deployment or StatefulSet)
        whitelist: Patterns of names to include (empty/None = include everything)
        blacklist: Patterns of names to exclude (empty/None = exclude nothing)

    Returns:
        True if the workload should be processed
    """
    blacklist = list(blacklist or [])
    whitelist = list(whitelist or [])

    if blacklist and matches_any(blacklist, name):
        return False

    if whitelist:
        return matches_any(whitelist, name)

    # No filters, process all
    return True
