"""Utility modules for logging, AWS client management, and helpers."""

from stackweave.utils.aws_client import AWSClientManager
from stackweave.utils.retry import RetryStrategy, PollingBackoff
from stackweave.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    ReconcileError,
    ConfigurationError,
    TemplateError,
    CycleError,
    UnresolvedReferenceError,
    PlanConflictError,
    ProviderError,
    OperationTimeoutError,
    LeaseConflictError,
    ExecutionCancelledError,
    StateError,
    StateLockError,
    CredentialError,
    ErrorHandler,
    error_handler
)
from stackweave.utils.logging import get_logger, setup_logging

__all__ = [
    # AWS Client
    'AWSClientManager',

    # Retry
    'RetryStrategy',
    'PollingBackoff',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ReconcileError',
    'ConfigurationError',
    'TemplateError',
    'CycleError',
    'UnresolvedReferenceError',
    'PlanConflictError',
    'ProviderError',
    'OperationTimeoutError',
    'LeaseConflictError',
    'ExecutionCancelledError',
    'StateError',
    'StateLockError',
    'CredentialError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
]
