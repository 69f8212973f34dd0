"""
Retry controller for idempotent task service calls with exponential backoff.
"""

import logging
import time
from typing import Callable, TypeVar

from ..core.config import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryController:
    """
    Controller for executing operations with exponential backoff retry.

    Only use it for idempotent calls: a retried request may have reached the
    service already.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the retry controller.

        Args:
            config: Retry configuration. Uses defaults if not provided.
            sleep: Blocking sleep function (injectable for tests)
        """
        self.config = config or RetryConfig()
        self._sleep = sleep

    def execute_sync_with_retry(
        self,
        operation: Callable[[], T],
        operation_name: str = "operation",
        on_retry: Callable[[int, Exception, float], None] | None = None,
        should_retry: Callable[[Exception], bool] | None = None,
    ) -> T:
        """
        Execute a synchronous operation with exponential backoff retry.

        Args:
            operation: Callable to execute
            operation_name: Name of the operation for logging
            on_retry: Optional callback called before each retry.
                      Receives (attempt_number, exception, delay_seconds)
            should_retry: Optional predicate to determine if an exception
                         should trigger a retry. Defaults to retrying all exceptions.

        Returns:
            The result of the operation

        Raises:
            The last exception if all retries fail
        """
        last_error: Exception | None = None

        for attempt in range(self.config.max_attempts):
            try:
                return operation()
            except Exception as e:
                last_error = e

                if should_retry is not None and not should_retry(e):
                    logger.debug(
                        f"{operation_name}: Not retrying due to exception type: {type(e).__name__}"
                    )
                    raise

                if attempt >= self.config.max_attempts - 1:
                    logger.warning(
                        f"{operation_name}: All {self.config.max_attempts} attempts failed"
                    )
                    raise

                delay = self.config.calculate_delay(attempt)

                logger.info(
                    f"{operation_name}: Attempt {attempt + 1} failed with {type(e).__name__}: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )

                if on_retry:
                    on_retry(attempt + 1, e, delay)

                self._sleep(delay)

        if last_error:
            raise last_error
        raise RuntimeError(f"{operation_name}: Unexpected state - no result and no error")
