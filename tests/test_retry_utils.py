"""Unit tests for registry_retention/retry_utils.py"""

from unittest.mock import MagicMock

import pytest
import requests

from registry_retention.harbor_client import HarborAPIError
from registry_retention.retry_utils import (
    RetryableErrorType,
    compute_delay,
    is_retryable_error,
    retry_with_backoff,
)


@pytest.fixture
def sleep(mocker):
    return mocker.patch("registry_retention.retry_utils.time.sleep")


class TestIsRetryableError:
    """Tests for error classification"""

    @pytest.mark.parametrize(
        "error",
        [requests.exceptions.ConnectionError("refused"), requests.exceptions.Timeout("read timed out")],
    )
    def test_network_errors(self, error):
        assert is_retryable_error(error) == (True, RetryableErrorType.NETWORK)

    @pytest.mark.parametrize("status", [500, 502, 503, 429])
    def test_temporary_statuses(self, status):
        assert is_retryable_error(HarborAPIError("failed", status_code=status)) == (True, RetryableErrorType.TEMPORARY)

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 412])
    def test_permanent_statuses(self, status):
        assert is_retryable_error(HarborAPIError("failed", status_code=status)) == (False, RetryableErrorType.PERMANENT)

    def test_http_error_uses_response_status(self):
        response = MagicMock(status_code=503)
        error = requests.exceptions.HTTPError("server error", response=response)

        assert is_retryable_error(error) == (True, RetryableErrorType.TEMPORARY)

    def test_message_based_network_detection(self):
        assert is_retryable_error(OSError("Connection reset by peer")) == (True, RetryableErrorType.NETWORK)

    def test_other_errors_are_permanent(self):
        assert is_retryable_error(ValueError("bad json")) == (False, RetryableErrorType.PERMANENT)


class TestComputeDelay:
    """Tests for backoff delays"""

    def test_exponential_without_jitter(self):
        delays = [compute_delay(attempt, 1.0, 60.0, 2.0, False) for attempt in range(4)]
        assert delays == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        assert compute_delay(10, 1.0, 30.0, 2.0, False) == 30.0

    def test_jitter_stays_within_ten_percent(self):
        for _ in range(20):
            assert 9.0 <= compute_delay(0, 10.0, 60.0, 2.0, True) <= 11.0


class TestRetryWithBackoff:
    """Tests for the retry decorator"""

    def test_returns_after_transient_failures(self, sleep):
        func = MagicMock(side_effect=[HarborAPIError("busy", status_code=503), "ok"])
        func.__name__ = "list_projects"

        assert retry_with_backoff(max_retries=2, jitter=False)(func)() == "ok"
        assert func.call_count == 2
        sleep.assert_called_once_with(1.0)

    def test_gives_up_after_max_retries(self, sleep):
        func = MagicMock(side_effect=requests.exceptions.ConnectionError("refused"))
        func.__name__ = "list_projects"

        with pytest.raises(requests.exceptions.ConnectionError):
            retry_with_backoff(max_retries=2, jitter=False)(func)()

        assert func.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_permanent_errors_are_raised_immediately(self, sleep):
        func = MagicMock(side_effect=HarborAPIError("forbidden", status_code=403))
        func.__name__ = "delete_artifact"

        with pytest.raises(HarborAPIError):
            retry_with_backoff(max_retries=3)(func)()

        assert func.call_count == 1
        sleep.assert_not_called()

    def test_restricted_error_types(self, sleep):
        func = MagicMock(side_effect=HarborAPIError("busy", status_code=503))
        func.__name__ = "list_projects"

        with pytest.raises(HarborAPIError):
            retry_with_backoff(max_retries=3, retryable_errors=[RetryableErrorType.NETWORK])(func)()

        assert func.call_count == 1
