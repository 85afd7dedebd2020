"""Tests for the admission gate and the outcome recorder."""

import unittest

from telepool._backoff import BackoffPolicy
from telepool._backpressure import (
    can_attempt,
    get_status_summary,
    health_label,
    record_failure,
    record_success,
    update_pending_count,
)
from telepool._state import BackpressureState, CapacityDescriptor

NOW = 1_700_000_000_000


class TestCanAttempt(unittest.TestCase):
    """Tests for can_attempt()."""

    def test_fresh_state_is_allowed(self):
        decision = can_attempt(BackpressureState(), now=NOW)

        self.assertTrue(decision.allowed)
        self.assertEqual(decision.wait_ms, 0)
        self.assertEqual(decision.reason, "OK")

    def test_denies_while_backing_off(self):
        state = BackpressureState(backoff_level=3, next_attempt_after=NOW + 7_500, consecutive_failures=3)

        decision = can_attempt(state, now=NOW)

        self.assertFalse(decision.allowed)
        self.assertEqual(decision.wait_ms, 7_500)
        self.assertEqual(decision.reason, "Backing off: retry in 8s (level 3)")

    def test_circuit_breaker_takes_precedence(self):
        state = BackpressureState(backoff_level=10, next_attempt_after=NOW + 120_000, consecutive_failures=12)

        decision = can_attempt(state, now=NOW)

        self.assertFalse(decision.allowed)
        self.assertEqual(decision.wait_ms, 120_000)
        self.assertEqual(decision.reason, "Circuit breaker open: 12 consecutive failures. Retry in 120s")

    def test_circuit_breaker_opens_at_threshold(self):
        state = BackpressureState(backoff_level=10, next_attempt_after=NOW + 60_000, consecutive_failures=10)

        decision = can_attempt(state, now=NOW)

        self.assertFalse(decision.allowed)
        self.assertIn("10 consecutive failures", decision.reason)

    def test_below_threshold_reports_backoff_level(self):
        state = BackpressureState(backoff_level=2, next_attempt_after=NOW + 5_000, consecutive_failures=2)

        decision = can_attempt(state, now=NOW)

        self.assertFalse(decision.allowed)
        self.assertIn("level 2", decision.reason)
        self.assertGreater(decision.wait_ms, 0)
        self.assertLessEqual(decision.wait_ms, 5_000)

    def test_expired_window_allows_even_with_many_failures(self):
        state = BackpressureState(backoff_level=10, next_attempt_after=NOW - 1, consecutive_failures=15)

        decision = can_attempt(state, now=NOW)

        self.assertTrue(decision.allowed)

    def test_next_attempt_exactly_now_is_allowed(self):
        state = BackpressureState(next_attempt_after=NOW, consecutive_failures=1, backoff_level=1)

        self.assertTrue(can_attempt(state, now=NOW).allowed)

    def test_custom_breaker_threshold(self):
        policy = BackoffPolicy(circuit_breaker_threshold=3)
        state = BackpressureState(backoff_level=3, next_attempt_after=NOW + 1_000, consecutive_failures=3)

        decision = can_attempt(state, now=NOW, policy=policy)

        self.assertTrue(decision.reason.startswith("Circuit breaker open"))


class TestRecordSuccess(unittest.TestCase):
    """Tests for record_success()."""

    def test_decrements_level_and_clears_failures(self):
        state = BackpressureState(
            backoff_level=4,
            next_attempt_after=NOW + 5_000,
            consecutive_failures=4,
            pending_event_count=30,
        )

        new_state = record_success(state, events_sent=10, now=NOW)

        self.assertEqual(new_state.backoff_level, 3)
        self.assertEqual(new_state.consecutive_failures, 0)
        self.assertEqual(new_state.next_attempt_after, 0)
        self.assertEqual(new_state.last_success_time, NOW)
        self.assertEqual(new_state.pending_event_count, 20)

    def test_level_and_pending_never_go_negative(self):
        new_state = record_success(BackpressureState(pending_event_count=5), events_sent=10, now=NOW)

        self.assertEqual(new_state.backoff_level, 0)
        self.assertEqual(new_state.pending_event_count, 0)

    def test_does_not_mutate_input(self):
        state = BackpressureState(backoff_level=2)

        record_success(state, events_sent=1, now=NOW)

        self.assertEqual(state.backoff_level, 2)


class TestRecordFailure(unittest.TestCase):
    """Tests for record_failure()."""

    def test_standard_delay_for_server_error(self):
        new_state = record_failure(BackpressureState(), status_code=500, now=NOW)

        self.assertEqual(new_state.backoff_level, 1)
        self.assertEqual(new_state.consecutive_failures, 1)
        self.assertEqual(new_state.next_attempt_after, NOW + 2_000)

    def test_double_delay_for_rate_limit(self):
        state = BackpressureState(backoff_level=2, consecutive_failures=2)

        new_state = record_failure(state, status_code=429, now=NOW)

        self.assertEqual(new_state.backoff_level, 3)
        self.assertEqual(new_state.next_attempt_after, NOW + 16_000)

    def test_double_delay_for_service_unavailable(self):
        new_state = record_failure(BackpressureState(), status_code=503, now=NOW)

        self.assertEqual(new_state.next_attempt_after, NOW + 4_000)

    def test_retry_after_header_takes_precedence(self):
        new_state = record_failure(BackpressureState(), status_code=429, retry_after_header="45", now=NOW)

        self.assertEqual(new_state.next_attempt_after, NOW + 45_000)

    def test_unparseable_retry_after_falls_back_to_status_rules(self):
        with self.assertLogs("telepool._backpressure", level="WARNING") as logs:
            new_state = record_failure(BackpressureState(), status_code=503, retry_after_header="soon", now=NOW)

        self.assertEqual(new_state.next_attempt_after, NOW + 4_000)
        self.assertTrue(any("unparseable Retry-After" in line for line in logs.output))

    def test_level_is_capped_but_failures_keep_counting(self):
        state = BackpressureState(backoff_level=10, consecutive_failures=25)

        new_state = record_failure(state, status_code=500, now=NOW)

        self.assertEqual(new_state.backoff_level, 10)
        self.assertEqual(new_state.consecutive_failures, 26)
        self.assertEqual(new_state.next_attempt_after, NOW + 300_000)

    def test_rate_limit_at_ceiling_doubles_capped_delay(self):
        new_state = record_failure(BackpressureState(backoff_level=10), status_code=429, now=NOW)

        self.assertEqual(new_state.next_attempt_after, NOW + 600_000)

    def test_transport_error_uses_standard_delay(self):
        new_state = record_failure(BackpressureState(), status_code=0, now=NOW)

        self.assertEqual(new_state.next_attempt_after, NOW + 2_000)


class TestUpdatePendingCount(unittest.TestCase):

    def test_sets_count(self):
        self.assertEqual(update_pending_count(BackpressureState(), 42).pending_event_count, 42)

    def test_floors_at_zero(self):
        self.assertEqual(update_pending_count(BackpressureState(), -3).pending_event_count, 0)


class TestStatusReport(unittest.TestCase):
    """Tests for get_status_summary() and health_label()."""

    def test_healthy_summary(self):
        self.assertEqual(get_status_summary(BackpressureState(), now=NOW), "Healthy (no backpressure)")

    def test_summary_lists_active_facts(self):
        state = BackpressureState(
            backoff_level=2,
            next_attempt_after=NOW + 3_200,
            consecutive_failures=2,
            last_success_time=NOW - 90_000,
            pending_event_count=7,
            last_capacity=CapacityDescriptor(True, 50, 100, 0, load_percent=35),
        )

        lines = get_status_summary(state, now=NOW).splitlines()

        self.assertEqual(lines, [
            "Consecutive failures: 2",
            "Backoff level: 2/10",
            "Next attempt in: 4s",
            "Pending events: 7",
            "Last success: 90s ago",
            "Server load: 35%",
            "Max batch: 50",
        ])

    def test_health_labels(self):
        self.assertEqual(health_label(BackpressureState()), "Healthy")
        self.assertEqual(health_label(BackpressureState(consecutive_failures=10, backoff_level=10)), "Circuit Breaker OPEN")
        self.assertEqual(health_label(BackpressureState(consecutive_failures=5, backoff_level=5)), "High Backoff")
        self.assertEqual(health_label(BackpressureState(consecutive_failures=1, backoff_level=1)), "Backing Off")

    def test_recovering_state_is_backing_off(self):
        # failures cleared by a success, level still decaying
        self.assertEqual(health_label(BackpressureState(backoff_level=2)), "Backing Off")


if __name__ == "__main__":
    unittest.main()
