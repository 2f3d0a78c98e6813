"""
Error types for the ECR cleaner, with actionable guidance for operators.

Every failure the tool reports derives from CleanerError. Only DecodeError
is recovered locally (the offending object is logged and skipped); all the
others abort the run.
"""

import threading
from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from botocore.exceptions import BotoCoreError, ClientError
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as TransportError


class ErrorCategory(Enum):
    """Categories of errors for better error handling"""
    CONFIGURATION = "configuration"
    PROVIDER = "provider"
    PERMISSION = "permission"
    DECODE = "decode"
    TIMEOUT = "timeout"
    COMMAND = "command"
    ABORTED = "aborted"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class CleanerError(Exception):
    """Exception with actionable guidance for users"""

    category = ErrorCategory.UNKNOWN

    def __init__(self, message: str, category: Optional[ErrorCategory] = None,
                 suggestions: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        """Initialize error

        Args:
            message: Primary error message
            category: Error category, defaults to the class category
            suggestions: List of suggested fixes
            details: Additional context information
        """
        self.message = message
        if category is not None:
            self.category = category
        self.suggestions = suggestions or []
        self.details = details or {}
        super().__init__(message)

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


class ConfigurationError(CleanerError):
    """Missing, contradictory or malformed configuration"""
    category = ErrorCategory.CONFIGURATION


class ProviderError(CleanerError):
    """A cloud or Kubernetes API call failed"""
    category = ErrorCategory.PROVIDER


class DecodeError(CleanerError):
    """A manifest or Kubernetes payload could not be decoded"""
    category = ErrorCategory.DECODE


class CommandTimeoutError(CleanerError):
    """An external command ran past its timeout"""
    category = ErrorCategory.TIMEOUT


class ExternalCommandError(CleanerError):
    """An external command failed or printed something other than a JSON array"""
    category = ErrorCategory.COMMAND


class UserAbort(CleanerError):
    """The operator declined the deletion prompt"""
    category = ErrorCategory.ABORTED

    def __init__(self, message: str = "aborted", **kwargs):
        super().__init__(message, **kwargs)


class OperationCancelled(CleanerError):
    """Cancellation was requested while work was in flight"""
    category = ErrorCategory.CANCELLED

    def __init__(self, message: str = "operation cancelled", **kwargs):
        super().__init__(message, **kwargs)


def check_cancelled(cancel: Optional[threading.Event], operation: str = "") -> None:
    """Raise OperationCancelled if the cancel event has been set."""
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(f"cancelled before {operation}" if operation else "operation cancelled")


def create_provider_error(operation: str, error: Exception) -> ProviderError:
    """Create actionable error for AWS and Kubernetes API failures"""
    error_str = str(error).lower()
    category = ErrorCategory.PROVIDER

    suggestions = [
        "Verify AWS credentials are configured (aws sts get-caller-identity)",
        "Check that aws.region in the configuration matches the resources being scanned",
    ]

    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        if code in ("AccessDenied", "AccessDeniedException", "UnauthorizedOperation") or "not authorized" in error_str:
            category = ErrorCategory.PERMISSION
            suggestions.insert(0, f"Grant the IAM permission required by {operation}")
        elif code in ("ThrottlingException", "TooManyRequestsException"):
            suggestions.insert(0, "Lower scan.max_workers to reduce API request rate")
        elif code in ("ExpiredTokenException", "ExpiredToken"):
            suggestions.insert(0, "Refresh the AWS session credentials")

    if isinstance(error, ApiException):
        suggestions = [
            "Verify the IAM principal is mapped to a Kubernetes identity (aws-auth or access entries)",
            "Verify RBAC allows list on pods, replicasets, controllerrevisions and cronjobs",
        ]
        if error.status in (401, 403):
            category = ErrorCategory.PERMISSION

    if isinstance(error, TransportError):
        suggestions = [
            "Check the cluster API endpoint is reachable from this host (endpoint access, security groups)",
            "Verify the cluster certificate authority matches the endpoint",
        ]

    return ProviderError(
        message=f"Provider operation failed: {operation}",
        category=category,
        suggestions=suggestions,
        details={
            "operation": operation,
            "error_type": type(error).__name__,
            "error_message": str(error),
        },
    )


def create_config_error(field: str, value: Any, reason: str) -> ConfigurationError:
    """Create actionable error for a single invalid configuration field"""
    return ConfigurationError(
        message=f"Invalid configuration for '{field}': {reason}",
        suggestions=[
            f"Check the '{field}' field in the configuration file",
            "See config-example.yaml for the expected format",
        ],
        details={"field": field, "value": value},
    )


@contextmanager
def provider_errors(operation: str) -> Iterator[None]:
    """Translate SDK and HTTP transport exceptions raised in the block into ProviderError."""
    try:
        yield
    except (ClientError, BotoCoreError, ApiException, TransportError) as e:
        raise create_provider_error(operation, e) from e
