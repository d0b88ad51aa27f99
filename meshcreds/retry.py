"""Retry policy and backoff for calls to the metadata server."""

from __future__ import annotations

import http.client
import random
import threading
import time
from concurrent.futures import CancelledError
from dataclasses import dataclass, field

MAX_RETRY_ATTEMPTS = 5

_TRANSIENT_ERRORS = (ConnectionResetError, ConnectionRefusedError, TimeoutError)
_UNEXPECTED_EOF = (EOFError, http.client.IncompleteRead)


@dataclass
class Backoff:
    """Randomised exponential backoff, with delays in seconds."""

    cur: float = 0.1
    max_delay: float = 30.0
    multiplier: float = 2.0

    def pause(self) -> float:
        """Return a random delay in (0, cur] and grow cur up to max_delay."""
        nanos = max(1, round(self.cur * 1e9))
        delay = (1 + random.randrange(nanos)) / 1e9
        self.cur = min(self.cur * self.multiplier, self.max_delay)
        return delay


@dataclass
class Retryer:
    """Decides whether a metadata request should be retried, and after how long."""

    backoff: Backoff = field(default_factory=Backoff)
    attempts: int = 0

    def retry(self, status: int, error: BaseException | None) -> tuple[float, bool]:
        """Return (delay, should_retry) for a response status and/or error."""
        if status == 200:
            return 0.0, False
        if not should_retry(status, error):
            return 0.0, False
        if self.attempts == MAX_RETRY_ATTEMPTS:
            return 0.0, False
        self.attempts += 1
        return self.backoff.pause(), True


def should_retry(status: int, error: BaseException | None) -> bool:
    """True for 5xx statuses and transient network errors, following causes."""
    if 500 <= status <= 599:
        return True
    while error is not None:
        if isinstance(error, _UNEXPECTED_EOF) or isinstance(error, _TRANSIENT_ERRORS):
            return True
        error = error.__cause__
    return False


def sleep(delay: float, cancel: threading.Event | None = None) -> None:
    """Sleep for delay seconds; raise CancelledError if cancel is set first."""
    if cancel is None:
        time.sleep(delay)
        return
    if cancel.wait(delay):
        raise CancelledError("sleep cancelled")