from unittest.mock import patch

from quotecall.circuit_breaker import CircuitBreaker


class TestCircuitBreaker:
    def test_starts_closed(self):
        cb = CircuitBreaker(failure_threshold=3, cooldown_seconds=60)
        assert cb.should_try()
        assert not cb.is_open

    def test_opens_after_threshold(self):
        cb = CircuitBreaker(failure_threshold=3, cooldown_seconds=60)
        for _ in range(3):
            cb.record_failure()
        assert cb.is_open

    def test_success_resets(self):
        cb = CircuitBreaker(failure_threshold=2)
        cb.record_failure()
        cb.record_success()
        cb.record_failure()
        assert cb.should_try()

    def test_half_open_after_cooldown(self):
        cb = CircuitBreaker(failure_threshold=1, cooldown_seconds=60)
        with patch("quotecall.circuit_breaker.time.monotonic", return_value=100.0):
            cb.record_failure()
        with patch("quotecall.circuit_breaker.time.monotonic", return_value=130.0):
            assert not cb.should_try()
        with patch("quotecall.circuit_breaker.time.monotonic", return_value=161.0):
            assert cb.should_try()

    def test_failed_trial_restarts_cooldown(self):
        cb = CircuitBreaker(failure_threshold=1, cooldown_seconds=60)
        with patch("quotecall.circuit_breaker.time.monotonic", return_value=100.0):
            cb.record_failure()
        with patch("quotecall.circuit_breaker.time.monotonic", return_value=161.0):
            cb.record_failure()
        with patch("quotecall.circuit_breaker.time.monotonic", return_value=200.0):
            assert not cb.should_try()
