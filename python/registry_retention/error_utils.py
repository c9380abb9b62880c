"""
Error message utilities for providing actionable guidance to users.

Fatal errors in the cleaner (registry unreachable, bad credentials, broken
manifest, invalid configuration) are reported as ActionableError so the
operator sees what failed together with the next things to check.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCategory(Enum):
    """Categories of errors for better error handling"""
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    PERMISSION = "permission"
    RESOURCE = "resource"
    NETWORK = "network"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ActionableError(Exception):
    """Exception with actionable guidance for users"""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN,
                 suggestions: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        """Initialize actionable error

        Args:
            message: Primary error message
            category: Error category for classification
            suggestions: List of suggested fixes
            details: Additional context information
        """
        self.message = message
        self.category = category
        self.suggestions = suggestions or []
        self.details = details or {}
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message with suggestions"""
        lines = [f"❌ {self.message}"]

        if self.suggestions:
            lines.append("\n💡 Suggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        if self.details:
            lines.append("\n📋 Additional details:")
            for key, value in self.details.items():
                lines.append(f"   {key}: {value}")

        return "\n".join(lines)


def create_registry_connection_error(registry_url: str, error: Exception) -> ActionableError:
    """Create actionable error for Harbor connection failures"""
    error_str = str(error).lower()

    suggestions = [
        f"Verify the Harbor URL is correct: {registry_url}",
        "Check network connectivity to the Harbor API (/api/v2.0)",
        "Verify firewall rules allow access to Harbor",
        "Check if the Harbor core service is running",
    ]

    if "timeout" in error_str or "timed out" in error_str:
        suggestions.insert(1, "Check if Harbor is experiencing high load")
        suggestions.insert(2, "Increase harbor.timeout in config.yaml")

    if "name resolution" in error_str or "dns" in error_str:
        suggestions.insert(1, "Verify DNS resolution for the Harbor hostname")

    if "certificate" in error_str or "ssl" in error_str:
        suggestions.insert(1, "Check the Harbor TLS certificate or set harbor.verify_tls to false")

    return ActionableError(
        message=f"Failed to connect to Harbor at {registry_url}",
        category=ErrorCategory.CONNECTION,
        suggestions=suggestions,
        details={
            "registry_url": registry_url,
            "error_type": type(error).__name__,
            "error_message": str(error)
        }
    )


def create_registry_auth_error(registry_url: str, error: Exception) -> ActionableError:
    """Create actionable error for Harbor authentication failures"""
    suggestions = [
        "Verify HARBOR_USER and HARBOR_PASSWORD environment variables are set correctly",
        "Check config.yaml for harbor.user and harbor.password fields",
        "For robot accounts, use the full name including the 'robot$' prefix",
        "Verify the robot account token hasn't expired",
        "Check that the account has permission to list and delete artifacts",
    ]

    return ActionableError(
        message=f"Failed to authenticate with Harbor at {registry_url}",
        category=ErrorCategory.AUTHENTICATION,
        suggestions=suggestions,
        details={
            "registry_url": registry_url,
            "error_type": type(error).__name__,
            "error_message": str(error)
        }
    )


def create_kubernetes_error(operation: str, error: Exception) -> ActionableError:
    """Create actionable error for Kubernetes API failures"""
    error_str = str(error).lower()

    suggestions = [
        "Verify Kubernetes cluster access (kubectl cluster-info)",
        "Check the kubeconfig path and context configured for the environment",
        "Verify RBAC permissions to list deployments, replicasets, statefulsets and controllerrevisions",
        "Check if the namespace exists and is accessible"
    ]

    if "403" in error_str or "forbidden" in error_str:
        suggestions.insert(0, "Check Kubernetes RBAC permissions")
        suggestions.insert(1, "Verify service account has required permissions")

    if "no such file" in error_str or "invalid kube-config" in error_str:
        suggestions.insert(0, "Verify the kubeconfig file exists and is readable")

    return ActionableError(
        message=f"Kubernetes operation failed: {operation}",
        category=ErrorCategory.PERMISSION if "403" in error_str or "forbidden" in error_str else ErrorCategory.RESOURCE,
        suggestions=suggestions,
        details={
            "operation": operation,
            "error_type": type(error).__name__,
            "error_message": str(error)
        }
    )


def create_manifest_error(path: str, error: Exception) -> ActionableError:
    """Create actionable error for an unreadable or malformed manifest file"""
    suggestions = [
        f"Verify the manifest file exists: {path}",
        "Run the scan stage first to generate the manifest (python main.py scan_workloads)",
        "Check that the file starts with the header: image,environment,namespace",
        "Check k8s.manifest_file in config.yaml",
    ]

    return ActionableError(
        message=f"Failed to load manifest file {path}",
        category=ErrorCategory.RESOURCE,
        suggestions=suggestions,
        details={
            "path": path,
            "error_type": type(error).__name__,
            "error_message": str(error)
        }
    )


def create_config_error(field: str, value: Any, reason: str) -> ActionableError:
    """Create actionable error for configuration validation failures"""
    suggestions = [
        f"Check the '{field}' value in config.yaml",
        "Verify the value matches the expected format",
        "Check the config-example.yaml for correct format",
        "Review the configuration validation error message above"
    ]

    if "url" in field.lower():
        suggestions.insert(1, "URL should be in format: https://hostname[:port]")
    elif "keep" in field.lower() or "snapshot" in field.lower():
        suggestions.insert(1, "Retention counts must be non-negative integers")

    return ActionableError(
        message=f"Configuration error: Invalid value for '{field}'",
        category=ErrorCategory.CONFIGURATION,
        suggestions=suggestions,
        details={
            "field": field,
            "value": value,
            "reason": reason
        }
    )
