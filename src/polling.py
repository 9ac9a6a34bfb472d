"""
Polling primitive for observing asynchronous remote state.

Every phase that waits on a remote condition (process exit, power state,
guest OS string, marker file) goes through ``poll_until``. Remote observations
are occasionally flaky, so a bounded number of consecutive transient errors
is tolerated before the wait escalates to a fatal error.
"""

import logging
import threading
import time
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONSECUTIVE_TRANSIENT_ERRORS = 5


class CancelToken:
    """
    Cancellation signal with an optional deadline.

    A token is cancelled when ``cancel()`` is called on it or on its parent,
    or when its deadline passes. Waits on a token return as soon as it is
    cancelled.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        parent: Optional["CancelToken"] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: "weakref.WeakSet[CancelToken]" = weakref.WeakSet()
        self._reason: Optional[str] = None
        self.timeout = timeout
        self._deadline = clock() + timeout if timeout is not None else None
        if parent is not None:
            parent._register(self)

    def _register(self, child: "CancelToken") -> None:
        with self._lock:
            self._children.add(child)
            reason = self._reason if self._event.is_set() else None
        if reason is not None:
            child.cancel(reason)

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    @property
    def expired(self) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.expired

    @property
    def reason(self) -> Optional[str]:
        if self._event.is_set():
            return self._reason
        if self.expired:
            return f"overall timeout of {self.timeout:.0f}s exceeded"
        return None

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, or None without a deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def wait(self, seconds: float) -> bool:
        """
        Sleep up to ``seconds``, returning early on cancellation.

        Returns:
            True if the token is cancelled when the wait ends
        """
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            self._event.wait(seconds)
        return self.cancelled


class ObservationState(Enum):
    """Result of a single remote observation."""

    SATISFIED = "satisfied"
    PENDING = "pending"
    TRANSIENT_ERROR = "transient_error"
    FATAL_ERROR = "fatal_error"


@dataclass
class Observation:
    """What a poll predicate saw on one attempt."""

    state: ObservationState
    detail: str = ""
    value: Any = None

    @classmethod
    def satisfied(cls, value: Any = None, detail: str = "") -> "Observation":
        return cls(ObservationState.SATISFIED, detail, value)

    @classmethod
    def pending(cls, detail: str = "") -> "Observation":
        return cls(ObservationState.PENDING, detail)

    @classmethod
    def transient(cls, detail: str) -> "Observation":
        return cls(ObservationState.TRANSIENT_ERROR, detail)

    @classmethod
    def fatal(cls, detail: str) -> "Observation":
        return cls(ObservationState.FATAL_ERROR, detail)


class PollStatus(Enum):
    SATISFIED = "satisfied"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class PollResult:
    """Outcome of a poll loop. Timeout and cancellation are not raised."""

    status: PollStatus
    value: Any = None
    attempts: int = 0
    elapsed: float = 0.0
    reason: str = ""

    @property
    def satisfied(self) -> bool:
        return self.status == PollStatus.SATISFIED


class PollFatalError(RuntimeError):
    """The predicate reported a condition that cannot recover."""


class TooManyTransientErrors(PollFatalError):
    """Consecutive transient errors exceeded the configured maximum."""

    def __init__(self, count: int, last_error: str):
        super().__init__(
            f"too many consecutive errors while polling ({count}): {last_error}"
        )
        self.count = count
        self.last_error = last_error


def poll_until(
    predicate: Callable[[], Observation],
    interval: float,
    timeout: Optional[float] = None,
    cancel: Optional[CancelToken] = None,
    max_consecutive_transient_errors: int = DEFAULT_MAX_CONSECUTIVE_TRANSIENT_ERRORS,
    description: str = "condition",
    clock: Callable[[], float] = time.monotonic,
) -> PollResult:
    """
    Wait until ``predicate`` is satisfied, the timeout passes or ``cancel`` fires.

    The predicate is first evaluated one ``interval`` after the call, then
    every ``interval`` seconds.

    Args:
        predicate: Performs one remote observation
        interval: Seconds between observations
        timeout: Optional hard limit for this wait (seconds)
        cancel: Cancellation signal shared with the overall deadline
        max_consecutive_transient_errors: Transient errors tolerated in a row
        description: Used in log messages
        clock: Monotonic clock

    Returns:
        PollResult with status SATISFIED, TIMED_OUT or CANCELLED

    Raises:
        PollFatalError: If the predicate reports a fatal error
        TooManyTransientErrors: If transient errors exceed the maximum
    """
    cancel = cancel or CancelToken()
    start = clock()
    deadline = start + timeout if timeout is not None else None
    attempts = 0
    consecutive_errors = 0

    while True:
        wait_for = interval
        if deadline is not None:
            wait_for = min(wait_for, max(0.0, deadline - clock()))
        if cancel.wait(wait_for):
            return PollResult(
                PollStatus.CANCELLED,
                attempts=attempts,
                elapsed=clock() - start,
                reason=cancel.reason or "cancelled",
            )
        if deadline is not None and clock() >= deadline:
            return PollResult(
                PollStatus.TIMED_OUT,
                attempts=attempts,
                elapsed=clock() - start,
                reason=f"timed out after {timeout:.0f}s waiting for {description}",
            )

        attempts += 1
        obs = predicate()

        if obs.state == ObservationState.SATISFIED:
            return PollResult(
                PollStatus.SATISFIED,
                value=obs.value,
                attempts=attempts,
                elapsed=clock() - start,
            )

        if obs.state == ObservationState.FATAL_ERROR:
            raise PollFatalError(f"{description}: {obs.detail}")

        if obs.state == ObservationState.TRANSIENT_ERROR:
            consecutive_errors += 1
            logger.warning(
                f"Transient error polling {description} "
                f"({consecutive_errors}/{max_consecutive_transient_errors}): {obs.detail}"
            )
            if consecutive_errors > max_consecutive_transient_errors:
                raise TooManyTransientErrors(consecutive_errors, obs.detail)
            continue

        consecutive_errors = 0
        if obs.detail:
            logger.debug(f"Still waiting for {description}: {obs.detail}")
