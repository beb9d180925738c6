"""
Storage Retry Policy

Bounded retry with exponential backoff for transient storage failures.
Validation errors are never retried: retrying cannot change a logical
precondition.
"""

import time
from typing import Callable, Optional, TypeVar

from .config import get_config
from .exceptions import StorageFailureError
from .logging_config import get_logger, log_action

T = TypeVar("T")


class StorageRetryPolicy:
    """Runs an atomic unit, retrying it when storage fails transiently"""

    def __init__(
        self,
        attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        config = get_config()
        self.attempts = max(1, attempts if attempts is not None else config.storage_retry_attempts)
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else config.storage_retry_backoff_seconds
        )
        self._sleep = sleep
        self.logger = get_logger("deposit_ledger.retry")

    def run(self, operation: Callable[[], T], action: str = "storage_operation") -> T:
        """
        Run operation, retrying on StorageFailureError.

        Raises:
            StorageFailureError: all attempts failed
        """
        delay = self.backoff_seconds
        for attempt in range(1, self.attempts + 1):
            try:
                return operation()
            except StorageFailureError as e:
                if attempt == self.attempts:
                    log_action(
                        self.logger, "error",
                        f"{action} failed after {attempt} attempts: {e}",
                        action=action, extra={"attempts": attempt, "code": e.code}
                    )
                    raise
                log_action(
                    self.logger, "warning",
                    f"{action} hit a storage failure, retrying in {delay:.3f}s: {e}",
                    action=action, extra={"attempt": attempt, "code": e.code}
                )
                self._sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")
