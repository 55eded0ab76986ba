"""Retry strategy with exponential backoff for provider operations."""

import time
import random
import threading
from typing import Callable, TypeVar, Optional
from botocore.exceptions import ClientError
from stackweave.utils.errors import ErrorHandler, ExecutionCancelledError, ProviderError
from stackweave.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class RetryStrategy:
    """Implements exponential backoff retry strategy for transient errors."""

    # Network-related exceptions that should trigger a retry
    RETRYABLE_EXCEPTIONS = (
        ConnectionError,
        TimeoutError,
    )

    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
            sleep: Sleep function, replaceable in tests
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.sleep = sleep or time.sleep

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if an error should trigger a retry.

        Args:
            error: The exception that occurred
            attempt: Current attempt number (0-indexed)

        Returns:
            True if the error is retryable and max retries not exceeded
        """
        if attempt >= self.max_retries:
            return False

        if isinstance(error, ProviderError):
            return error.transient

        if isinstance(error, self.RETRYABLE_EXCEPTIONS):
            return True

        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', '')
            return error_code in ErrorHandler.TRANSIENT_ERROR_CODES

        return False

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )

        # Random value between 0 and 10% of delay
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def execute_with_retry(
        self,
        func: Callable[..., T],
        *args,
        cancel_event: Optional[threading.Event] = None,
        **kwargs
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Function to execute
            *args: Positional arguments for the function
            cancel_event: Optional run-level cancellation signal checked between attempts
            **kwargs: Keyword arguments for the function

        Returns:
            Result of the function call

        Raises:
            The last exception if all retries are exhausted
        """
        for attempt in range(self.max_retries + 1):
            try:
                result = func(*args, **kwargs)

                if attempt > 0:
                    logger.info(f"Operation succeeded after {attempt} retries")

                return result

            except Exception as e:
                if not self.should_retry(e, attempt):
                    logger.debug(f"Error is not retryable or max retries exceeded: {e}")
                    raise

                delay = self.get_delay(attempt)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_retries + 1} failed: {self._get_error_info(e)}. "
                    f"Retrying in {delay:.2f}s..."
                )

                if cancel_event is not None and cancel_event.is_set():
                    raise ExecutionCancelledError("Run cancelled before retry") from e

                self.sleep(delay)

        # Unreachable: the last attempt either returns or raises
        raise RuntimeError("retry loop exited without result")

    def _get_error_info(self, error: Exception) -> str:
        """Extract useful error information for logging.

        Args:
            error: The exception

        Returns:
            Human-readable error description
        """
        if isinstance(error, ClientError):
            error_code = error.response.get('Error', {}).get('Code', 'Unknown')
            error_message = error.response.get('Error', {}).get('Message', str(error))
            return f"{error_code}: {error_message}"

        return f"{type(error).__name__}: {str(error)}"


class PollingBackoff:
    """Bounded exponential backoff for polling a provider until a deadline.

    Yields successive wait intervals; stops once the overall timeout is
    spent. The clock is injectable so tests can run without sleeping.
    """

    def __init__(
        self,
        initial_interval: float = 1.0,
        max_interval: float = 30.0,
        timeout: float = 600.0,
        multiplier: float = 2.0,
        clock: Optional[Callable[[], float]] = None
    ):
        self.initial_interval = initial_interval
        self.max_interval = max_interval
        self.timeout = timeout
        self.multiplier = multiplier
        self.clock = clock or time.monotonic

    def intervals(self):
        """Generate wait intervals until the timeout is exhausted."""
        deadline = self.clock() + self.timeout
        interval = self.initial_interval
        while True:
            remaining = deadline - self.clock()
            if remaining <= 0:
                return
            yield min(interval, remaining)
            interval = min(interval * self.multiplier, self.max_interval)
