"""
Unit tests for the polling primitive and cancellation tokens.
"""

import gc
import threading
import time
import unittest

from polling import (
    CancelToken,
    Observation,
    PollFatalError,
    PollStatus,
    TooManyTransientErrors,
    poll_until,
)


def scripted(*observations):
    """Predicate returning the given observations in order, then pending."""
    items = list(observations)
    calls = []

    def predicate():
        calls.append(1)
        return items.pop(0) if items else Observation.pending()

    predicate.calls = calls
    return predicate


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestPollUntil(unittest.TestCase):
    """Test poll_until outcomes."""

    def test_satisfied_immediately(self):
        predicate = scripted(Observation.satisfied("done"))

        result = poll_until(predicate, interval=0)

        self.assertTrue(result.satisfied)
        self.assertEqual(result.value, "done")
        self.assertEqual(result.attempts, 1)

    def test_five_transient_errors_then_success(self):
        predicate = scripted(
            *[Observation.transient("flaky")] * 5, Observation.satisfied(42)
        )

        result = poll_until(predicate, interval=0, max_consecutive_transient_errors=5)

        self.assertEqual(result.status, PollStatus.SATISFIED)
        self.assertEqual(result.value, 42)
        self.assertEqual(len(predicate.calls), 6)

    def test_six_transient_errors_escalate(self):
        predicate = scripted(
            *[Observation.transient("flaky")] * 6, Observation.satisfied(42)
        )

        with self.assertRaises(TooManyTransientErrors) as cm:
            poll_until(predicate, interval=0, max_consecutive_transient_errors=5)

        self.assertEqual(cm.exception.count, 6)
        self.assertIsInstance(cm.exception, PollFatalError)

    def test_pending_resets_transient_counter(self):
        observations = []
        for _ in range(3):
            observations += [Observation.transient("flaky")] * 5
            observations.append(Observation.pending())
        predicate = scripted(*observations, Observation.satisfied())

        result = poll_until(predicate, interval=0, max_consecutive_transient_errors=5)

        self.assertTrue(result.satisfied)

    def test_fatal_observation_raises(self):
        predicate = scripted(Observation.pending(), Observation.fatal("VM deleted"))

        with self.assertRaises(PollFatalError) as cm:
            poll_until(predicate, interval=0, description="power state")

        self.assertIn("VM deleted", str(cm.exception))
        self.assertNotIsInstance(cm.exception, TooManyTransientErrors)

    def test_timeout_is_returned_not_raised(self):
        result = poll_until(
            lambda: Observation.pending(), interval=0, timeout=0.02, description="x"
        )

        self.assertEqual(result.status, PollStatus.TIMED_OUT)
        self.assertFalse(result.satisfied)
        self.assertIn("timed out", result.reason)

    def test_zero_timeout_makes_no_observation(self):
        predicate = scripted(Observation.satisfied())

        result = poll_until(predicate, interval=0, timeout=0)

        self.assertEqual(result.status, PollStatus.TIMED_OUT)
        self.assertEqual(predicate.calls, [])

    def test_cancelled_token_returns_cancelled(self):
        token = CancelToken()
        token.cancel("stop")

        result = poll_until(lambda: Observation.pending(), interval=0, cancel=token)

        self.assertEqual(result.status, PollStatus.CANCELLED)
        self.assertEqual(result.reason, "stop")

    def test_cancel_interrupts_long_interval(self):
        token = CancelToken()
        threading.Timer(0.05, token.cancel, args=("operator abort",)).start()

        start = time.monotonic()
        result = poll_until(lambda: Observation.pending(), interval=30, cancel=token)

        self.assertEqual(result.status, PollStatus.CANCELLED)
        self.assertLess(time.monotonic() - start, 5)

    def test_sleeps_interval_between_observations(self):
        predicate = scripted(Observation.pending(), Observation.satisfied())
        start = time.monotonic()

        poll_until(predicate, interval=0.05)

        self.assertGreaterEqual(time.monotonic() - start, 0.09)


class TestCancelToken(unittest.TestCase):
    """Test CancelToken deadlines and propagation."""

    def test_parent_cancel_propagates(self):
        parent = CancelToken()
        child = CancelToken(parent=parent)

        parent.cancel("shutdown")

        self.assertTrue(child.cancelled)
        self.assertEqual(child.reason, "shutdown")

    def test_child_of_cancelled_parent_starts_cancelled(self):
        parent = CancelToken()
        parent.cancel("gone")

        child = CancelToken(parent=parent)

        self.assertTrue(child.cancelled)

    def test_child_cancel_does_not_affect_parent(self):
        parent = CancelToken()
        child = CancelToken(parent=parent)

        child.cancel()

        self.assertFalse(parent.cancelled)

    def test_finished_children_are_released(self):
        parent = CancelToken()
        for _ in range(3):
            CancelToken(timeout=60, parent=parent)
        gc.collect()

        self.assertEqual(len(parent._children), 0)
        parent.cancel("late")

    def test_deadline_expiry(self):
        clock = FakeClock()
        token = CancelToken(timeout=60, clock=clock)
        self.assertFalse(token.cancelled)
        self.assertEqual(token.remaining(), 60)

        clock.now = 61

        self.assertTrue(token.cancelled)
        self.assertTrue(token.expired)
        self.assertIn("overall timeout of 60s", token.reason)
        self.assertEqual(token.remaining(), 0)

    def test_no_deadline(self):
        token = CancelToken()

        self.assertIsNone(token.remaining())
        self.assertIsNone(token.reason)
        self.assertFalse(token.wait(0))


if __name__ == "__main__":
    unittest.main()
