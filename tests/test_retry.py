from unittest.mock import Mock

import pytest
import requests

from podio_migrator.exceptions import PodioApiError, PodioAuthError
from podio_migrator.rate_limit import RateLimitTracker
from podio_migrator.retry import (
    RetryConfig,
    calculate_backoff,
    get_rate_limit_wait_time,
    is_transient_error,
    with_retry,
)


@pytest.mark.unit
class TestTransientClassification:
    @pytest.mark.parametrize("status", [None, 500, 502, 503, 420, 429])
    def test_transient_statuses(self, status: int | None) -> None:
        assert is_transient_error(PodioApiError("x", status_code=status))

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 409])
    def test_fatal_statuses(self, status: int) -> None:
        assert not is_transient_error(PodioApiError("x", status_code=status))

    def test_requests_network_errors_are_transient(self) -> None:
        assert is_transient_error(requests.ConnectionError("boom"))
        assert is_transient_error(requests.Timeout("slow"))
        assert not is_transient_error(ValueError("nope"))

    @pytest.mark.parametrize("status", [None, 500, 503])
    def test_auth_errors_are_never_transient(self, status: int | None) -> None:
        assert not is_transient_error(PodioAuthError("Podio credentials are not configured", status_code=status))


@pytest.mark.unit
class TestWithRetry:
    def test_returns_first_success(self) -> None:
        operation = Mock(side_effect=[PodioApiError("down", status_code=503), "ok"])
        sleep = Mock()
        assert with_retry(operation, RetryConfig(max_attempts=3), sleep=sleep) == "ok"
        assert operation.call_count == 2
        sleep.assert_called_once()

    def test_gives_up_after_exactly_max_attempts(self) -> None:
        error = PodioApiError("down", status_code=503)
        operation = Mock(side_effect=error)
        sleep = Mock()

        with pytest.raises(PodioApiError) as exc_info:
            with_retry(operation, RetryConfig(max_attempts=4), sleep=sleep)

        assert exc_info.value is error
        assert operation.call_count == 4
        assert sleep.call_count == 3

    def test_non_transient_error_is_not_retried(self) -> None:
        operation = Mock(side_effect=PodioApiError("bad", status_code=400))
        with pytest.raises(PodioApiError):
            with_retry(operation, RetryConfig(max_attempts=5), sleep=Mock())
        assert operation.call_count == 1

    def test_auth_error_is_raised_on_first_attempt(self) -> None:
        error = PodioAuthError("Podio credentials are not configured")
        operation = Mock(side_effect=error)
        sleep = Mock()

        with pytest.raises(PodioAuthError) as exc_info:
            with_retry(operation, RetryConfig(max_attempts=4), sleep=sleep)

        assert exc_info.value is error
        assert operation.call_count == 1
        sleep.assert_not_called()

    def test_rejects_config_without_attempts(self) -> None:
        operation = Mock()
        with pytest.raises(ValueError, match="max_attempts must be at least 1"):
            with_retry(operation, RetryConfig(max_attempts=0), sleep=Mock())
        operation.assert_not_called()

    def test_retry_after_header_overrides_backoff(self) -> None:
        operation = Mock(side_effect=[PodioApiError("busy", status_code=503, retry_after=7.0), "ok"])
        sleep = Mock()
        with_retry(operation, RetryConfig(max_attempts=2), sleep=sleep)
        sleep.assert_called_once_with(7.0)

    def test_rate_limit_waits_for_parsed_duration_without_tracker(self) -> None:
        error = PodioApiError("Please wait 120 seconds before trying again", status_code=420)
        operation = Mock(side_effect=[error, "ok"])
        sleep = Mock()
        assert with_retry(operation, RetryConfig(max_attempts=2), sleep=sleep) == "ok"
        sleep.assert_called_once_with(120.0)

    def test_rate_limit_wait_is_capped(self) -> None:
        error = PodioApiError("Please wait 7200 seconds before trying again", status_code=420)
        operation = Mock(side_effect=[error, "ok"])
        sleep = Mock()
        with_retry(operation, RetryConfig(max_attempts=2, max_rate_limit_wait=3600), sleep=sleep)
        sleep.assert_called_once_with(3600)

    def test_rate_limit_uses_tracker_reset(self) -> None:
        now = 1_000_000.0
        tracker_sleep = Mock()
        tracker = RateLimitTracker(clock=lambda: now, sleep=tracker_sleep)
        tracker.update(1000, 0, str(int(now + 300)))
        operation = Mock(side_effect=[PodioApiError("rate limited", status_code=429), "ok"])
        sleep = Mock()

        assert with_retry(operation, RetryConfig(max_attempts=2), tracker=tracker, sleep=sleep) == "ok"

        tracker_sleep.assert_called_once_with(300.0)
        sleep.assert_not_called()


@pytest.mark.unit
class TestBackoff:
    def test_exponential_without_jitter(self) -> None:
        config = RetryConfig(base_delay=0.5, max_delay=8.0, use_jitter=False)
        assert [calculate_backoff(a, config) for a in range(6)] == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0]

    def test_full_jitter_stays_below_cap(self) -> None:
        config = RetryConfig(base_delay=1.0, max_delay=4.0)
        assert calculate_backoff(5, config, rng=lambda: 0.5) == 2.0
        assert calculate_backoff(0, config, rng=lambda: 0.0) == 0.0

    def test_rate_limit_wait_time_fallback(self) -> None:
        assert get_rate_limit_wait_time(PodioApiError("slow down", status_code=420)) == 3600.0
        assert get_rate_limit_wait_time(PodioApiError("server", status_code=500)) is None
        detail = PodioApiError("limit", status_code=420, error_detail="Please wait 30 seconds")
        assert get_rate_limit_wait_time(detail) == 30.0
