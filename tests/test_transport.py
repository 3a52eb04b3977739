"""Tests for RateLimitedTransport."""

import pytest
import requests
from unittest.mock import MagicMock, Mock

from wealthsync.core.brokers.errors import BrokerAPIError, BrokerThrottledError
from wealthsync.core.brokers.transport import RateLimitedTransport


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def make_response(status_code):
    response = Mock()
    response.status_code = status_code
    return response


def make_transport(responses, min_interval=1.0, backoff=10.0):
    clock = FakeClock()
    session = MagicMock()
    session.request.side_effect = responses
    transport = RateLimitedTransport(
        min_interval=min_interval,
        throttle_backoff=backoff,
        session=session,
        sleep=clock.sleep,
        clock=clock,
    )
    return transport, session, clock


class TestRateLimitedTransport:
    """Tests for RateLimitedTransport."""

    def test_first_request_does_not_wait(self):
        """Should send the first request immediately."""
        transport, session, clock = make_transport([make_response(200)])

        transport.get("https://example.test/a")

        assert clock.sleeps == []
        session.request.assert_called_once()

    def test_spaces_consecutive_requests(self):
        """Should sleep for the rest of the minimum interval."""
        transport, _, clock = make_transport([make_response(200), make_response(200)])

        transport.get("https://example.test/a")
        clock.now += 0.25
        transport.get("https://example.test/b")

        assert clock.sleeps == [pytest.approx(0.75)]

    def test_no_wait_after_interval_has_passed(self):
        """Should not sleep when enough time has elapsed."""
        transport, _, clock = make_transport([make_response(200), make_response(200)])

        transport.get("https://example.test/a")
        clock.now += 5
        transport.get("https://example.test/b")

        assert clock.sleeps == []

    def test_retries_once_after_throttle(self):
        """Should back off and retry a 429 once."""
        transport, session, clock = make_transport([make_response(429), make_response(200)])

        response = transport.get("https://example.test/a")

        assert response.status_code == 200
        assert session.request.call_count == 2
        assert clock.sleeps == [10.0]

    def test_second_throttle_raises(self):
        """Should raise a throttling error after two 429s without sleeping again."""
        transport, session, clock = make_transport([make_response(429), make_response(429)])

        with pytest.raises(BrokerThrottledError) as exc_info:
            transport.get("https://example.test/a")

        assert exc_info.value.status_code == 429
        assert session.request.call_count == 2
        assert clock.sleeps == [10.0]

    def test_other_errors_are_returned(self):
        """Should hand non-429 statuses back to the caller."""
        transport, session, _ = make_transport([make_response(500)])

        response = transport.get("https://example.test/a")

        assert response.status_code == 500
        session.request.assert_called_once()

    def test_network_error_becomes_api_error(self):
        """Should wrap requests exceptions."""
        transport, _, _ = make_transport([requests.ConnectionError("refused")])

        with pytest.raises(BrokerAPIError):
            transport.get("https://example.test/a")

    def test_attaches_session_headers_and_cookies(self):
        """Should merge the session's headers and cookies into the request."""
        transport, session, _ = make_transport([make_response(200)])
        auth = Mock()
        auth.auth_headers.return_value = {"Authorization": "Bearer abc"}
        auth.auth_cookies.return_value = {"NOW": "cookie"}

        transport.get("https://example.test/a", auth=auth, params={"x": 1})

        _, kwargs = session.request.call_args
        assert kwargs["headers"]["Authorization"] == "Bearer abc"
        assert "User-Agent" in kwargs["headers"]
        assert kwargs["cookies"] == {"NOW": "cookie"}
        assert kwargs["params"] == {"x": 1}
        assert kwargs["timeout"] == transport.timeout
