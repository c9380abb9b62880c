import argparse
import logging
import os
import subprocess
import sys

from typing import List, Optional, Tuple

from registry_retention.config_manager import (
    STAGE_CLEAN,
    STAGE_SCAN,
    STRATEGY_HARBOR,
    STRATEGY_K8S,
    ConfigManager,
    ConfigValidationError,
)
from registry_retention.logging_utils import setup_logging


def load_script_paths():
    return {
        "scan_workloads": "scan_workloads.py",
        "clean_registry": "clean_registry.py",
    }

def resolve_script(script_keyword: Optional[str], config: ConfigManager) -> Tuple[str, List[str]]:
    """Pick the script to run and the arguments implied by the configuration

    With an explicit keyword that script is run as-is. Otherwise the configured
    strategy and stage decide:
      k8s + scan   -> scan_workloads
      k8s + clean  -> clean_registry --strategy k8s
      harbor       -> clean_registry --strategy harbor
    """
    if script_keyword:
        return script_keyword, []

    strategy = config.get_strategy()
    if strategy == STRATEGY_K8S:
        stage = config.get_stage()
        if stage == STAGE_SCAN:
            return "scan_workloads", []
        if stage == STAGE_CLEAN:
            return "clean_registry", ["--strategy", STRATEGY_K8S]
        raise ConfigValidationError(f"Invalid k8s stage '{stage}' (expected 'scan' or 'clean')")
    if strategy == STRATEGY_HARBOR:
        return "clean_registry", ["--strategy", STRATEGY_HARBOR]
    raise ConfigValidationError(f"Unknown strategy '{strategy}' (expected 'harbor' or 'k8s')")

def build_script_args(script_keyword: str, implied_args: List[str], additional_args: List[str],
                      config_file: Optional[str], apply: bool, force: bool) -> List[str]:
    """Combine implied, passthrough and convenience arguments for a script"""
    args = list(additional_args)
    # An explicit --strategy wins over the configured one
    if '--strategy' not in args:
        args = list(implied_args) + args
    if config_file and '--config' not in args:
        args.extend(['--config', config_file])

    if script_keyword == "clean_registry":
        if apply and '--apply' not in args:
            args.append('--apply')
        if force and '--force' not in args:
            args.append('--force')
    return args

def run_script(script_path, args):
    """Run a script with the given arguments"""
    try:
        # Check if script exists
        if not os.path.exists(script_path):
            logging.error(f"Script not found: {script_path}")
            sys.exit(1)

        logging.info(f"Running script: {script_path}")
        logging.info(f"Arguments: {args}")

        subprocess.run([sys.executable, script_path] + args, check=True)

    except subprocess.CalledProcessError as e:
        logging.error(f"Error running script {script_path}: {e}")
        sys.exit(1)
    except FileNotFoundError:
        logging.error(f"Script not found: {script_path}")
        sys.exit(1)

def main(argv=None):
    setup_logging()
    script_paths = load_script_paths()

    parser = argparse.ArgumentParser(
        description="Unified entrypoint for the Harbor registry cleaner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Available scripts:
  scan_workloads  - Scan Kubernetes workloads and write the manifest of in-use images
  clean_registry  - Delete Harbor artifacts by retention strategy or manifest (default: dry-run)

Without a script name, the script is chosen from config.yaml:
  strategy: harbor              -> clean_registry --strategy harbor
  strategy: k8s, stage: scan    -> scan_workloads
  strategy: k8s, stage: clean   -> clean_registry --strategy k8s

Configuration:
  The tool uses config.yaml for default settings. You can also use environment variables:
  - HARBOR_URL: Harbor URL
  - HARBOR_USER: Harbor user or robot account
  - HARBOR_PASSWORD: Harbor password or robot token
  - CLEANER_STRATEGY: harbor or k8s
  - CLEANER_STAGE: scan or clean (k8s strategy)
  - DRY_RUN: true or false
  - OUTPUT_DIR: Directory for manifests, audit reports and logs
  - LOG_LEVEL: Logging level
  - CONFIG_FILE: Path to config.yaml

Examples:
  # Run whatever config.yaml selects (dry-run unless dry_run: false)
  python main.py

  # Scan the clusters and write the manifest
  python main.py scan_workloads

  # Preview the manifest-based cleanup
  python main.py clean_registry --strategy k8s

  # Preview the time-based retention cleanup
  python main.py clean_registry --strategy harbor

  # Delete for real (requires confirmation)
  python main.py --apply

  # Delete for real without confirmation
  python main.py clean_registry --strategy k8s --apply --force

  # Show the effective configuration
  python main.py --show-config

Safety Notes:
  - clean_registry runs in dry-run mode by default for safety
  - Use --apply to actually delete artifacts
  - Use --force to skip confirmation prompt
  - Repositories not referenced by the manifest are never touched by the k8s strategy
        """
    )

    parser.add_argument(
        'script_keyword',
        nargs='?',
        choices=script_paths.keys(),
        help="Script to run (default: chosen from config strategy/stage)"
    )

    parser.add_argument(
        '--config',
        help="Path to config file (default: CONFIG_FILE env var or config.yaml)"
    )

    parser.add_argument(
        '--show-config',
        action='store_true',
        help="Show current configuration and exit"
    )

    parser.add_argument(
        '--apply',
        action='store_true',
        help="For clean_registry: Actually delete artifacts (default is dry-run)"
    )

    parser.add_argument(
        '--force',
        action='store_true',
        help="For clean_registry: Skip confirmation prompt when using --apply"
    )

    parser.add_argument(
        'additional_args',
        nargs=argparse.REMAINDER,
        help="Additional arguments for the script"
    )

    args = parser.parse_args(argv)

    try:
        config = ConfigManager(args.config, validate=False)

        # Show configuration if requested
        if args.show_config:
            config.print_config()
            sys.exit(0)

        script_keyword, implied_args = resolve_script(args.script_keyword, config)
    except ConfigValidationError as e:
        logging.error(str(e))
        sys.exit(1)

    script_args = build_script_args(
        script_keyword, implied_args, args.additional_args, args.config, args.apply, args.force
    )

    # Build full path to script (in same directory as main.py)
    script_dir = os.path.dirname(os.path.abspath(__file__))
    script_path = os.path.join(script_dir, script_paths[script_keyword])

    run_script(script_path, script_args)

if __name__ == '__main__':
    main()
