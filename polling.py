from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")


class PollTimeout(Exception):
    def __init__(self, attempts: int, elapsed: float, last: object = None) -> None:
        self.attempts = attempts
        self.elapsed = elapsed
        self.last = last
        super().__init__(f"gave up after {attempts} attempts ({elapsed:.1f}s)")


class PollCancelled(Exception):
    pass


class CancelToken:
    """
    Cooperative cancellation shared between a caller and one long-running wait.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PollCancelled("operation cancelled")

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if cancelled meanwhile."""
        return self._event.wait(timeout=max(0.0, seconds))


@dataclass(frozen=True)
class PollPolicy:
    """
    Bounds for a polling or retry loop.

    Both `max_attempts` and `timeout` apply; whichever is hit first ends the loop.
    `backoff` multiplies the interval after every attempt (1.0 = fixed interval).
    """

    interval: float = 3.0
    max_attempts: int = 100
    timeout: Optional[float] = 300.0
    backoff: float = 1.0
    max_interval: float = 30.0
    jitter: float = 0.0

    def delay_for(self, attempt: int) -> float:
        base = self.interval * (self.backoff ** max(0, attempt - 1))
        base = min(base, self.max_interval)
        if self.jitter:
            base += random.uniform(0, self.jitter)  # nosec B311 - scheduling jitter only
        return base


def _sleep(seconds: float, cancel: Optional[CancelToken]) -> None:
    if cancel is None:
        time.sleep(max(0.0, seconds))
        return
    if cancel.wait(seconds):
        raise PollCancelled("operation cancelled")


def poll_until(
    fetch: Callable[[], T],
    is_done: Callable[[T], bool],
    policy: PollPolicy,
    *,
    cancel: Optional[CancelToken] = None,
    on_attempt: Optional[Callable[[int, T], None]] = None,
) -> T:
    """
    Call `fetch` until `is_done(result)` holds, bounded by `policy`.

    Raises PollTimeout (carrying the last result) or PollCancelled.
    """
    started = time.monotonic()
    last: Optional[T] = None
    attempt = 0
    while attempt < max(1, policy.max_attempts):
        attempt += 1
        if cancel is not None:
            cancel.raise_if_cancelled()
        last = fetch()
        if on_attempt is not None:
            on_attempt(attempt, last)
        if is_done(last):
            return last
        elapsed = time.monotonic() - started
        if policy.timeout is not None and elapsed >= policy.timeout:
            break
        if attempt >= policy.max_attempts:
            break
        delay = policy.delay_for(attempt)
        if policy.timeout is not None:
            delay = min(delay, max(0.0, policy.timeout - elapsed))
        _sleep(delay, cancel)
    raise PollTimeout(attempt, time.monotonic() - started, last)


def retry_call(
    fn: Callable[[], T],
    *,
    retry_on: Tuple[Type[BaseException], ...],
    policy: PollPolicy,
    cancel: Optional[CancelToken] = None,
) -> T:
    """
    Call `fn`, retrying exceptions in `retry_on` with the policy's backoff.

    The last exception is re-raised once attempts are exhausted.
    """
    attempt = 0
    while True:
        attempt += 1
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            return fn()
        except retry_on:
            if attempt >= max(1, policy.max_attempts):
                raise
            _sleep(policy.delay_for(attempt), cancel)
