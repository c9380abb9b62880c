#!/usr/bin/env python3
"""
Configuration Manager for the Harbor Registry Cleaner

This module handles loading and managing configuration from config.yaml
and environment variables.
"""

import copy
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import yaml

STRATEGY_HARBOR = "harbor"
STRATEGY_K8S = "k8s"
STAGE_SCAN = "scan"
STAGE_CLEAN = "clean"

VALID_STRATEGIES = (STRATEGY_HARBOR, STRATEGY_K8S)
VALID_STAGES = (STAGE_SCAN, STAGE_CLEAN)


class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or []
        super().__init__(message)


@dataclass
class EnvironmentConfig:
    """A Kubernetes environment (cluster) to scan for in-use images"""
    name: str
    namespaces: List[str]
    keep: int = 3
    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    pod_whitelist: List[str] = field(default_factory=list)
    pod_blacklist: List[str] = field(default_factory=list)


def parse_name_list(value: Any) -> List[str]:
    """Normalize a list-or-comma-separated-string config value into a list of names."""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = [str(item) for item in value]
    else:
        raise ConfigValidationError(f"Expected a list or comma-separated string, got: {value!r}")
    return [item.strip() for item in items if item and item.strip()]


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")


class ConfigManager:
    """Manages configuration for the Harbor registry cleaner"""

    def __init__(self, config_file: str = None, validate: bool = True):
        """Initialize ConfigManager

        Args:
            config_file: Path to configuration YAML file (defaults to CONFIG_FILE env var or config.yaml)
            validate: If True, validate configuration on initialization
        """
        # Allow override via environment variable for containerized deployments
        if config_file is None:
            config_file = os.environ.get("CONFIG_FILE", "config.yaml")
        self.config_file = config_file
        self.config = self._load_config()

        if validate:
            self.validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file with defaults"""
        default_config = {
            "strategy": STRATEGY_HARBOR,
            "dry_run": True,
            "output_dir": "reports",
            "log": {"level": "INFO", "file": ""},
            "harbor": {
                "url": "",
                "user": "",
                "password": "",
                "page_size": 100,
                "timeout": 30,
                "verify_tls": True,
                "keep_last": 10,
                "max_snapshots": 2,
                "snapshot_pattern": "SNAPSHOT",
                "project_whitelist": [],
                "delete_delay": 0.2,
            },
            "k8s": {
                "stage": STAGE_SCAN,
                "manifest_file": "k8s-manifest.csv",
                "audit_file": "",
                "environments": [],
            },
            "retry": {
                "max_retries": 3,
                "initial_delay": 1.0,
                "max_delay": 30.0,
                "exponential_base": 2.0,
                "jitter": True,
            },
        }

        if not os.path.exists(self.config_file):
            logging.warning(f"Config file {self.config_file} not found, using defaults")
            return default_config

        try:
            with open(self.config_file, "r") as f:
                user_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigValidationError(f"Error loading config file {self.config_file}: {e}") from e

        if not isinstance(user_config, dict):
            raise ConfigValidationError(f"Config file {self.config_file} must contain a mapping at the top level")
        return self._merge_config(default_config, user_config)

    def _merge_config(self, default: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge user config with defaults"""
        result = copy.deepcopy(default)
        for key, value in user.items():
            # Accept the dashed keys used by older config files (keep-last, pod-whitelist, ...)
            key = key.replace("-", "_")
            if value is None and isinstance(result.get(key), dict):
                continue
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def _get_int(self, section: str, key: str) -> int:
        value = self.config[section][key]
        try:
            return int(value)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"{section}.{key} must be an integer, got: {value} (type: {type(value).__name__})"
            )

    def _get_float(self, section: str, key: str) -> float:
        value = self.config[section][key]
        try:
            return float(value)
        except (ValueError, TypeError):
            raise ConfigValidationError(
                f"{section}.{key} must be a number, got: {value} (type: {type(value).__name__})"
            )

    # General configuration
    def get_strategy(self) -> str:
        """Get cleanup strategy (harbor or k8s) from environment or config"""
        return (os.environ.get("CLEANER_STRATEGY") or str(self.config["strategy"])).strip().lower()

    def get_stage(self) -> str:
        """Get k8s strategy stage (scan or clean) from environment or config"""
        return (os.environ.get("CLEANER_STAGE") or str(self.config["k8s"]["stage"])).strip().lower()

    def is_dry_run(self) -> bool:
        """Get dry-run flag from environment or config"""
        env_value = os.environ.get("DRY_RUN")
        if env_value is not None and env_value != "":
            return _parse_bool(env_value)
        return _parse_bool(self.config["dry_run"])

    def get_output_dir(self) -> str:
        """Get output directory for manifests, audit reports and logs"""
        return os.environ.get("OUTPUT_DIR") or self.config["output_dir"]

    def get_log_level(self) -> str:
        return os.environ.get("LOG_LEVEL") or self.config["log"]["level"]

    def get_log_file(self) -> Optional[str]:
        log_file = self.config["log"]["file"]
        return log_file or None

    # Harbor configuration
    def get_harbor_url(self) -> str:
        """Get Harbor URL from environment or config, without trailing slash"""
        return (os.environ.get("HARBOR_URL") or self.config["harbor"]["url"] or "").rstrip("/")

    def get_harbor_user(self) -> str:
        return os.environ.get("HARBOR_USER") or self.config["harbor"]["user"] or ""

    def get_harbor_password(self) -> str:
        return os.environ.get("HARBOR_PASSWORD") or self.config["harbor"]["password"] or ""

    def get_page_size(self) -> int:
        """Get page size for paginated Harbor requests, falling back to 100 when invalid"""
        page_size = self._get_int("harbor", "page_size")
        return page_size if page_size > 0 else 100

    def get_request_timeout(self) -> float:
        return self._get_float("harbor", "timeout")

    def get_verify_tls(self) -> bool:
        return _parse_bool(self.config["harbor"]["verify_tls"])

    def get_keep_last(self) -> int:
        return self._get_int("harbor", "keep_last")

    def get_max_snapshots(self) -> int:
        return self._get_int("harbor", "max_snapshots")

    def get_snapshot_pattern(self) -> str:
        return str(self.config["harbor"]["snapshot_pattern"])

    def get_delete_delay(self) -> float:
        return self._get_float("harbor", "delete_delay")

    def get_project_whitelist(self) -> Optional[Set[str]]:
        """Get the project whitelist; None means every project is scanned"""
        names = parse_name_list(self.config["harbor"]["project_whitelist"])
        return set(names) if names else None

    # Kubernetes configuration
    def get_manifest_file(self) -> str:
        return self._resolve_report_path(self.config["k8s"]["manifest_file"])

    def get_audit_file(self) -> Optional[str]:
        audit_file = self.config["k8s"]["audit_file"]
        return self._resolve_report_path(audit_file) if audit_file else None

    def get_environments(self) -> List[EnvironmentConfig]:
        """Get the configured Kubernetes environments"""
        raw_envs = self.config["k8s"]["environments"] or []
        if not isinstance(raw_envs, list):
            raise ConfigValidationError("k8s.environments must be a list")

        environments = []
        for index, raw in enumerate(raw_envs):
            if not isinstance(raw, dict):
                raise ConfigValidationError(f"k8s.environments[{index}] must be a mapping")
            raw = {key.replace("-", "_"): value for key, value in raw.items()}
            keep = raw.get("keep", 3)
            try:
                keep = int(keep)
            except (ValueError, TypeError):
                raise ConfigValidationError(f"k8s.environments[{index}].keep must be an integer, got: {keep}")
            environments.append(
                EnvironmentConfig(
                    name=str(raw.get("name") or ""),
                    namespaces=parse_name_list(raw.get("namespaces")),
                    keep=keep,
                    kubeconfig=raw.get("kubeconfig") or None,
                    context=raw.get("context") or None,
                    pod_whitelist=parse_name_list(raw.get("pod_whitelist")),
                    pod_blacklist=parse_name_list(raw.get("pod_blacklist")),
                )
            )
        return environments

    # Retry configuration
    def get_max_retries(self) -> int:
        return self._get_int("retry", "max_retries")

    def get_retry_initial_delay(self) -> float:
        return self._get_float("retry", "initial_delay")

    def get_retry_max_delay(self) -> float:
        return self._get_float("retry", "max_delay")

    def get_retry_exponential_base(self) -> float:
        return self._get_float("retry", "exponential_base")

    def get_retry_jitter(self) -> bool:
        return _parse_bool(self.config["retry"]["jitter"])

    def _resolve_report_path(self, path: str) -> str:
        """Resolve report file path under the configured output_dir unless absolute or already a path.
        If the value is just a filename, prefix it with output_dir.
        """
        if os.path.isabs(path) or os.path.basename(path) != path:
            return path
        return os.path.join(self.get_output_dir(), path)

    def validate_config(self, strategy: Optional[str] = None, stage: Optional[str] = None) -> None:
        """Validate configuration values

        Args:
            strategy: Strategy to validate for (defaults to the configured one)
            stage: Stage to validate for when strategy is k8s (defaults to the configured one)

        Raises:
            ConfigValidationError: If configuration is invalid
        """
        errors = []
        warnings = []

        strategy = strategy or self.get_strategy()
        stage = stage or self.get_stage()

        if strategy not in VALID_STRATEGIES:
            errors.append(f"Unknown strategy '{strategy}' (expected one of: {', '.join(VALID_STRATEGIES)})")
        if strategy == STRATEGY_K8S and stage not in VALID_STAGES:
            errors.append(f"Invalid k8s stage '{stage}' (expected 'scan' or 'clean')")

        needs_registry = strategy == STRATEGY_HARBOR or (strategy == STRATEGY_K8S and stage == STAGE_CLEAN)
        needs_cluster = strategy == STRATEGY_K8S and stage == STAGE_SCAN

        if needs_registry:
            harbor_url = self.get_harbor_url()
            if not harbor_url:
                errors.append("Harbor URL is required (harbor.url or HARBOR_URL)")
            elif not self._is_valid_harbor_url(harbor_url):
                warnings.append(f"Harbor URL '{harbor_url}' may be invalid (expected format: https://hostname[:port])")
            if not self.get_harbor_user() or not self.get_harbor_password():
                errors.append("Harbor user and password are required (harbor.user/harbor.password or HARBOR_USER/HARBOR_PASSWORD)")

            try:
                timeout = self.get_request_timeout()
                if timeout <= 0:
                    errors.append(f"harbor.timeout must be a positive number, got: {timeout}")
            except ConfigValidationError as e:
                errors.append(str(e))

            try:
                delay = self.get_delete_delay()
                if delay < 0:
                    errors.append(f"harbor.delete_delay must be a non-negative number, got: {delay}")
            except ConfigValidationError as e:
                errors.append(str(e))

        if strategy == STRATEGY_HARBOR:
            for getter, name in ((self.get_keep_last, "harbor.keep_last"), (self.get_max_snapshots, "harbor.max_snapshots")):
                try:
                    value = getter()
                    if value < 0:
                        errors.append(f"{name} must be a non-negative integer, got: {value}")
                except ConfigValidationError as e:
                    errors.append(str(e))
            try:
                re.compile(self.get_snapshot_pattern())
            except re.error as e:
                errors.append(f"harbor.snapshot_pattern is not a valid regular expression: {e}")

        if strategy == STRATEGY_K8S and not self.config["k8s"]["manifest_file"]:
            errors.append("k8s.manifest_file is required for the k8s strategy")

        if needs_cluster:
            try:
                environments = self.get_environments()
            except ConfigValidationError as e:
                errors.append(str(e))
                environments = []
            if not environments and not errors:
                errors.append("At least one entry in k8s.environments is required for the scan stage")
            seen_names = set()
            for env in environments:
                if not env.name:
                    errors.append("Every k8s environment needs a name")
                elif env.name in seen_names:
                    warnings.append(f"Environment '{env.name}' is configured more than once")
                seen_names.add(env.name)
                if not env.namespaces:
                    errors.append(f"Environment '{env.name}' has no namespaces to scan")
                for ns in env.namespaces:
                    if not self._is_valid_k8s_name(ns):
                        errors.append(f"Namespace '{ns}' in environment '{env.name}' is not a valid Kubernetes name")
                if env.keep < 1:
                    errors.append(f"Environment '{env.name}' keep must be a positive integer, got: {env.keep}")

        for getter, name in (
            (self.get_max_retries, "retry.max_retries"),
            (self.get_retry_initial_delay, "retry.initial_delay"),
            (self.get_retry_max_delay, "retry.max_delay"),
        ):
            try:
                if getter() < 0:
                    errors.append(f"{name} must be non-negative")
            except ConfigValidationError as e:
                errors.append(str(e))

        for warning in warnings:
            logging.warning(f"Configuration warning: {warning}")

        if errors:
            error_msg = "Configuration validation failed:\n  " + "\n  ".join(errors)
            logging.error(error_msg)
            raise ConfigValidationError(error_msg, errors)

    def _is_valid_harbor_url(self, url: str) -> bool:
        """Validate Harbor URL format"""
        pattern = r"^(https?://)?[a-zA-Z0-9]([a-zA-Z0-9\-\.]*[a-zA-Z0-9])?(:[0-9]{1,5})?$"
        return bool(re.match(pattern, url))

    def _is_valid_k8s_name(self, name: str) -> bool:
        """Validate Kubernetes resource name format"""
        if not name:
            return False
        pattern = r"^[a-z0-9]([a-z0-9\-]*[a-z0-9])?$"
        return bool(re.match(pattern, name)) and len(name) <= 253

    def print_config(self):
        """Print current configuration"""
        print("Current Configuration:")
        print(f"  Config File: {self.config_file}")
        print(f"  Strategy: {self.get_strategy()}")
        if self.get_strategy() == STRATEGY_K8S:
            print(f"  Stage: {self.get_stage()}")
        print(f"  Dry Run: {self.is_dry_run()}")
        print(f"  Output Directory: {self.get_output_dir()}")
        print(f"  Harbor URL: {self.get_harbor_url() or 'Not configured'}")
        print(f"  Harbor User: {self.get_harbor_user() or 'Not configured'}")
        password = self.get_harbor_password()
        if password:
            print(f"  Harbor Password: {'*' * len(password)}")
        else:
            print("  Harbor Password: Not set")
        print(f"  Keep Last: {self.get_keep_last()}")
        print(f"  Max Snapshots: {self.get_max_snapshots()}")
        print(f"  Snapshot Pattern: {self.get_snapshot_pattern()}")
        whitelist = self.get_project_whitelist()
        print(f"  Project Whitelist: {', '.join(sorted(whitelist)) if whitelist else 'All projects'}")
        print(f"  Manifest File: {self.get_manifest_file()}")
        for env in self.get_environments():
            print(f"  Environment {env.name}: namespaces={','.join(env.namespaces)} keep={env.keep}")
