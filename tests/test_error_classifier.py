import pytest
import requests

from podio_migrator.error_classifier import classify_error, should_retry
from podio_migrator.exceptions import PodioApiError


def api_error(status: int, message: str = "failed", detail: str | None = None) -> PodioApiError:
    return PodioApiError(message, status_code=status, error_detail=detail)


@pytest.mark.unit
class TestClassifyError:
    @pytest.mark.parametrize(
        ("error", "category"),
        [
            (api_error(429), "rate_limit"),
            (api_error(420), "rate_limit"),
            (api_error(401), "permission"),
            (api_error(403), "permission"),
            (api_error(400, "invalid value for field"), "validation"),
            (api_error(404), "validation"),
            (api_error(409, "Item already exists"), "duplicate"),
            (api_error(400, "rejected", detail="Duplicate external id"), "duplicate"),
            (api_error(502), "network"),
            (requests.ConnectionError("Connection aborted"), "network"),
            (TimeoutError("read timed out"), "network"),
            (RuntimeError("something odd"), "unknown"),
        ],
    )
    def test_categories(self, error: BaseException, category: str) -> None:
        assert classify_error(error) == category

    def test_stored_messages_can_be_classified(self) -> None:
        assert classify_error("ECONNRESET while writing") == "network"
        assert classify_error("value already exists") == "duplicate"
        assert classify_error("no idea") == "unknown"


@pytest.mark.unit
class TestShouldRetry:
    def test_transient_categories_get_several_attempts(self) -> None:
        assert should_retry("network", 3)
        assert not should_retry("network", 4)
        assert should_retry("rate_limit", 1)

    def test_unknown_gets_one_more_attempt(self) -> None:
        assert should_retry("unknown", 1)
        assert not should_retry("unknown", 2)

    @pytest.mark.parametrize("category", ["validation", "permission", "duplicate", "made-up"])
    def test_permanent_categories_are_never_retried(self, category: str) -> None:
        assert not should_retry(category, 1)
