"""Bounded retry with exponential backoff and cooperative cancellation."""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, Optional, TypeVar

import requests

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class OperationCancelledError(Exception):
    """Raised when a cancellation token fires or its deadline passes."""


class RetryExhaustedError(Exception):
    """Raised once every attempt of a retryable operation has failed."""

    def __init__(self, operation_name: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Failed to {operation_name} after {attempts} attempts: {last_error}")
        self.operation_name = operation_name
        self.attempts = attempts
        self.last_error = last_error


class CancellationToken:
    """Thread-safe cancel flag with an optional monotonic deadline."""

    def __init__(self, deadline: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = deadline

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError("Operation cancelled")

    def wait(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first, in which case raise."""
        self.raise_if_cancelled()
        timeout = max(seconds, 0.0)
        if self._deadline is not None:
            timeout = min(timeout, max(self._deadline - time.monotonic(), 0.0))
        self._event.wait(timeout)
        # timeout < seconds means the deadline, not the delay, ended the wait.
        if self._event.is_set() or timeout < seconds:
            raise OperationCancelledError("Operation cancelled while waiting")


def is_mailbox_retryable(error: BaseException) -> bool:
    """Timeouts and rate-limit/server errors from the Gmail API."""
    if isinstance(error, requests.Timeout):
        return True
    if isinstance(error, requests.HTTPError) and error.response is not None:
        return error.response.status_code in RETRYABLE_STATUS_CODES
    return False


def is_classifier_retryable(error: BaseException) -> bool:
    """Mailbox-style transient errors plus dropped connections to the model server."""
    if isinstance(error, requests.ConnectionError):
        return True
    return is_mailbox_retryable(error)


class ResilientCaller:
    """Run a callable, retrying errors accepted by ``is_retryable``.

    The delay before retry ``n`` (1-based) is
    ``min(max_delay, base_delay * 2 ** (n - 1) + uniform(0, 1))`` seconds.
    Waits go through the caller's :class:`CancellationToken`, so a cancel
    request interrupts a pending retry immediately.
    """

    def __init__(
        self,
        *,
        max_attempts: int,
        base_delay: float,
        max_delay: float,
        is_retryable: Callable[[BaseException], bool],
        rng: Optional[random.Random] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.is_retryable = is_retryable
        self._rng = rng or random.Random()

    def compute_delay(self, attempt: int) -> float:
        exponential = self.base_delay * (2 ** (attempt - 1))
        jitter = self._rng.uniform(0.0, 1.0)
        return min(self.max_delay, exponential + jitter)

    def execute(
        self,
        operation: Callable[[], T],
        name: str,
        cancel: CancellationToken | None = None,
    ) -> T:
        token = cancel or CancellationToken()
        attempt = 0
        while True:
            token.raise_if_cancelled()
            attempt += 1
            try:
                return operation()
            except OperationCancelledError:
                raise
            except Exception as exc:
                if not self.is_retryable(exc):
                    logger.error("Failed to %s (attempt %s): %s", name, attempt, exc)
                    raise
                if attempt >= self.max_attempts:
                    logger.error("Giving up on %s after %s attempts: %s", name, attempt, exc)
                    raise RetryExhaustedError(name, attempt, exc) from exc
                delay = self.compute_delay(attempt)
                logger.warning(
                    "Transient error on %s (attempt %s/%s): %s. Retrying in %.1fs",
                    name,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                token.wait(delay)
