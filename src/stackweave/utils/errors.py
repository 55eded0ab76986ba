"""Error handling framework for reconciliation operations."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass
from botocore.exceptions import ClientError, HTTPClientError, NoCredentialsError, PartialCredentialsError
from botocore.exceptions import ConnectionError as BotoConnectionError
from stackweave.utils.logging import get_logger


class ErrorCategory(Enum):
    """Categories of errors that can occur during reconciliation."""
    CONFIGURATION = "configuration"
    TEMPLATE = "template"
    GRAPH = "graph"
    PLAN = "plan"
    PROVIDER = "provider"
    TIMEOUT = "timeout"
    LEASE = "lease"
    STATE = "state"
    CREDENTIAL = "credential"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Run cannot continue
    ERROR = "error"  # Resource failed but the run can continue
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    operation: Optional[str] = None
    physical_id: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class ReconcileError(Exception):
    """Base exception for reconciliation errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize reconciliation error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")

        if self.cause:
            lines.append(f"   Cause: {str(self.cause)}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': {
                'resource_id': self.context.resource_id,
                'resource_type': self.context.resource_type,
                'operation': self.context.operation,
                'physical_id': self.context.physical_id,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(ReconcileError):
    """Error in configuration file or settings."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class TemplateError(ReconcileError):
    """Template document is malformed or incomplete."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.TEMPLATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class CycleError(ReconcileError):
    """Dependency graph contains a cycle."""

    def __init__(self, cycle: List[str], **kwargs):
        self.cycle = list(cycle)
        super().__init__(
            f"Circular dependency detected: {' -> '.join(self.cycle)}",
            category=ErrorCategory.GRAPH,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class UnresolvedReferenceError(ReconcileError):
    """A reference names something that is neither declared nor exported."""

    def __init__(self, message: str, source: Optional[str] = None, target: Optional[str] = None, **kwargs):
        self.source = source
        self.target = target
        kwargs.setdefault('context', ErrorContext(resource_id=source))
        super().__init__(
            message,
            category=ErrorCategory.GRAPH,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class PlanConflictError(ReconcileError):
    """Two plan entries claim the same external identifier."""

    def __init__(self, message: str, claimants: Optional[List[str]] = None, **kwargs):
        self.claimants = claimants or []
        super().__init__(
            message,
            category=ErrorCategory.PLAN,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ProviderError(ReconcileError):
    """Error returned by a provider operation.

    Transient errors are retried with backoff; permanent errors fail the
    resource immediately.
    """

    def __init__(self, message: str, transient: bool = False, **kwargs):
        self.transient = transient
        super().__init__(
            message,
            category=ErrorCategory.PROVIDER,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class OperationTimeoutError(ReconcileError):
    """Provider operation did not reach a terminal state in time."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.TIMEOUT,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class LeaseConflictError(ReconcileError):
    """Another owner holds a live lease on the resource."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.LEASE,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ExecutionCancelledError(ReconcileError):
    """Run was cancelled while the operation was in flight."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CANCELLED,
            severity=ErrorSeverity.WARNING,
            **kwargs
        )


class StateError(ReconcileError):
    """Error related to state management."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class StateLockError(StateError):
    """State file is locked by another process."""


class CredentialError(ReconcileError):
    """Error related to AWS credentials."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CREDENTIAL,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ErrorHandler:
    """Classifies errors from AWS and other sources into provider errors."""

    # AWS error codes that are worth retrying
    TRANSIENT_ERROR_CODES = {
        'RequestTimeout',
        'ServiceUnavailable',
        'ServiceUnavailableException',
        'ThrottlingException',
        'TooManyRequestsException',
        'RequestLimitExceeded',
        'Throttling',
        'RequestThrottled',
        'ConcurrentOperationException',
        'ServiceInternalErrorException',
        'NetworkFailureException',
        'InternalError',
        'InternalFailure',
    }

    # Mapping of AWS error codes to suggestions
    AWS_ERROR_SUGGESTIONS = {
        'AccessDenied': [
            'Check IAM policies attached to your user/role',
            'Verify you have cloudcontrol and service permissions for this resource type',
        ],
        'AccessDeniedException': [
            'Check IAM policies attached to your user/role',
            'Verify you have cloudcontrol and service permissions for this resource type',
        ],
        'AlreadyExistsException': [
            'Use a different name for the resource',
            'Remove the explicit name property to let the provider generate one',
        ],
        'ResourceNotFoundException': [
            'Verify the resource exists in the configured region',
            'Check if the resource was deleted manually (run `stackweave drift`)',
        ],
        'InvalidRequestException': [
            'Review the resource properties against the resource type schema',
        ],
        'UnsupportedActionException': [
            'This resource type does not support the requested operation through Cloud Control',
        ],
        'TypeNotFoundException': [
            'Check the resource type name for typos',
        ],
    }

    def __init__(self):
        """Initialize error handler."""
        self.logger = get_logger(__name__)

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> ReconcileError:
        """Handle an exception and convert to ReconcileError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            ReconcileError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, ReconcileError):
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return CredentialError(
                message=f'AWS credentials unavailable: {str(error)}',
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Specify a profile in stackweave.yaml or with --profile',
                ]
            )

        if isinstance(error, (ConnectionError, TimeoutError, BotoConnectionError, HTTPClientError)):
            return ProviderError(
                message=f'Network error: {str(error)}',
                transient=True,
                context=context,
                cause=error
            )

        self.logger.debug(f"Unclassified {type(error).__name__} treated as a permanent error", exc_info=error)
        return ProviderError(
            message=str(error),
            transient=False,
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def _handle_aws_error(
        self,
        error: ClientError,
        context: ErrorContext
    ) -> ProviderError:
        """Handle AWS ClientError.

        Args:
            error: The ClientError
            context: Error context

        Returns:
            Classified ProviderError
        """
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')

        return ProviderError(
            message=f"AWS Error ({error_code}): {error_message}",
            transient=error_code in self.TRANSIENT_ERROR_CODES,
            context=context,
            cause=error,
            suggestions=self.AWS_ERROR_SUGGESTIONS.get(error_code, [])
        )


# Global error handler instance
error_handler = ErrorHandler()
