#!/usr/bin/env python3
"""
Scan Kubernetes workloads and write the safe image manifest.

This is the `scan` stage of the Kubernetes strategy. For every configured
environment and namespace it inspects Deployments (with their ReplicaSet
history) and StatefulSets (with their ControllerRevision history), keeps the
`keep` most recent distinct images of each workload, and writes them to a
manifest CSV. The `clean` stage (clean_registry.py --strategy k8s) then
deletes every artifact of those repositories that the manifest does not list.

Workflow:
- Load config.yaml (k8s.environments, k8s.manifest_file)
- Connect to each environment (kubeconfig/context, or in-cluster)
- Collect safe images per namespace, honoring pod_whitelist/pod_blacklist
- Write the manifest: image,environment,namespace

Usage examples:
  # Scan using config.yaml
  python scan_workloads.py

  # Scan with another config file and manifest path
  python scan_workloads.py --config prod-config.yaml --manifest reports/prod-manifest.csv
"""

import argparse
import sys

from registry_retention.config_manager import STAGE_SCAN, STRATEGY_K8S, ConfigManager, ConfigValidationError
from registry_retention.error_utils import ActionableError
from registry_retention.logging_utils import get_logger, log_exception, setup_run_logging
from registry_retention.safe_list import write_manifest
from registry_retention.workload_history import build_safe_list

logger = get_logger(__name__)


def parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        description="Scan Kubernetes workloads and write the manifest of in-use images",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Scan all configured environments
  python scan_workloads.py

  # Use a different config file
  python scan_workloads.py --config prod-config.yaml

  # Write the manifest somewhere else
  python scan_workloads.py --manifest /tmp/k8s-manifest.csv
        """
    )

    parser.add_argument(
        '--config',
        help='Path to config file (default: CONFIG_FILE env var or config.yaml)'
    )

    parser.add_argument(
        '--manifest',
        help='Manifest output path (default: k8s.manifest_file from config)'
    )

    return parser.parse_args(argv)


def main(argv=None) -> int:
    """Main function"""
    args = parse_arguments(argv)

    try:
        config = ConfigManager(args.config, validate=False)
        config.validate_config(strategy=STRATEGY_K8S, stage=STAGE_SCAN)
    except ConfigValidationError as e:
        logger.error(f"\n❌ {e}")
        return 1

    log_file = setup_run_logging(
        config.get_output_dir(), STRATEGY_K8S, STAGE_SCAN, config.get_log_level(), config.get_log_file()
    )
    manifest_path = args.manifest or config.get_manifest_file()
    environments = config.get_environments()

    try:
        logger.info("=" * 60)
        logger.info("   Scanning Kubernetes workloads for in-use images")
        logger.info("=" * 60)
        logger.info(f"Environments: {', '.join(env.name for env in environments)}")
        logger.info(f"Manifest file: {manifest_path}")
        logger.info(f"Log file: {log_file}")

        aggregator = build_safe_list(environments)

        if not len(aggregator):
            logger.warning("\n⚠️  No in-use images found; the manifest will only contain the header")

        try:
            write_manifest(manifest_path, aggregator)
        except OSError as e:
            logger.error(f"\n❌ Failed to write manifest {manifest_path}: {e}")
            return 1

        logger.info("\n" + "=" * 60)
        logger.info("   SCAN SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Safe images: {len(aggregator)}")
        logger.info(f"Manifest saved to: {manifest_path}")
        logger.info("\n✅ Scan completed successfully!")
        logger.info("Run clean_registry.py --strategy k8s to review (and with --apply, delete) unused artifacts.")
        return 0

    except ActionableError as e:
        logger.error(f"\n{e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("\n⚠️  Operation interrupted by user")
        return 1
    except Exception as e:
        log_exception(logger, f"\n❌ Scan failed: {e}", e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
