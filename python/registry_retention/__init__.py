"""Retention decision engine for Harbor registry cleanup.

Two policies are supported:

- time-based: keep the newest N artifacts per repository, capping snapshots
- manifest-based: keep only images that Kubernetes workloads still reference,
  as recorded by a previous cluster scan
"""

__version__ = "1.0.0"
