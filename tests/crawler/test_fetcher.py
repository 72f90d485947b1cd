from unittest.mock import MagicMock

import pytest
import requests

from src.crawler.fetcher import (
    FALLBACK_HEADERS,
    FetchResult,
    RateLimitedFetcher,
    RateLimiter,
)


class FakeClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeResponse:
    """Streamed response double; each chunk read can advance ``clock``."""

    def __init__(
        self,
        status=200,
        text="<html></html>",
        headers=None,
        reason="OK",
        *,
        chunks=None,
        clock=None,
        seconds_per_chunk=0.0,
    ):
        self.status_code = status
        self.headers = headers or {}
        self.reason = reason
        self.encoding = "utf-8"
        self.chunks = chunks if chunks is not None else [text.encode("utf-8")]
        self.clock = clock
        self.seconds_per_chunk = seconds_per_chunk
        self.closed = False

    def iter_content(self, chunk_size=1):
        for chunk in self.chunks:
            if self.clock is not None:
                self.clock.now += self.seconds_per_chunk
            yield chunk

    def close(self):
        self.closed = True


def _response(status=200, text="<html></html>", headers=None, reason="OK"):
    return FakeResponse(status, text, headers, reason)


def _fetcher(session, clock=None):
    clock = clock or FakeClock()
    return RateLimitedFetcher(
        timeout=5,
        max_concurrent=2,
        min_interval=0,
        session=session,
        clock=clock,
        sleep=clock.sleep,
    )


def test_rate_limiter_spaces_call_starts():
    clock = FakeClock()
    limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)

    limiter.wait()
    clock.now += 0.25
    limiter.wait()
    clock.now += 2.0
    limiter.wait()

    assert clock.sleeps == [pytest.approx(0.75)]


def test_rate_limiter_rejects_negative_interval():
    with pytest.raises(ValueError):
        RateLimiter(-1)


def test_successful_fetch_returns_value():
    session = MagicMock()
    session.headers = {}
    session.request.return_value = _response(
        text="<p>hello</p>", headers={"Content-Length": "12"}
    )
    fetcher = _fetcher(session)

    result = fetcher.fetch("https://example.org/a")

    assert result.ok
    assert result.text == "<p>hello</p>"
    assert result.content_length == 12
    method, url = session.request.call_args.args
    assert (method, url) == ("GET", "https://example.org/a")
    assert session.request.call_args.kwargs["timeout"] == 5
    assert "User-Agent" in session.headers
    assert fetcher.in_flight == 0
    assert fetcher.peak_in_flight == 1


def test_http_error_becomes_failed_result():
    session = MagicMock()
    session.headers = {}
    session.request.return_value = _response(status=404, reason="Not Found")

    result = _fetcher(session).fetch("https://example.org/missing")

    assert not result.ok
    assert result.status_code == 404
    assert result.error.status_code == 404
    assert "HTTP 404" in str(result.error)


def test_timeout_and_connection_errors_never_raise():
    session = MagicMock()
    session.headers = {}
    session.request.side_effect = [
        requests.Timeout("read timed out"),
        requests.ConnectionError("refused"),
    ]
    fetcher = _fetcher(session)

    timed_out = fetcher.fetch("https://example.org/slow")
    refused = fetcher.fetch("https://example.org/down")

    assert timed_out.timed_out and not timed_out.ok
    assert not refused.timed_out and not refused.ok
    assert "refused" in str(refused.error)
    assert fetcher.in_flight == 0


def test_retries_downgrade_headers_after_403():
    clock = FakeClock()
    session = MagicMock()
    session.headers = {}
    session.request.side_effect = [
        _response(status=403, reason="Forbidden"),
        _response(status=200, text="ok"),
    ]
    fetcher = _fetcher(session, clock)

    result = fetcher.fetch_with_retries("https://example.org/a", attempts=3, backoff=2)

    assert result.ok
    second_call = session.request.call_args_list[1]
    assert second_call.kwargs["headers"] == FALLBACK_HEADERS
    assert clock.sleeps == [2]


def test_non_retryable_status_returns_immediately():
    session = MagicMock()
    session.headers = {}
    session.request.return_value = _response(status=404, reason="Not Found")

    result = _fetcher(session).fetch_with_retries("https://example.org/a")

    assert result.status_code == 404
    assert session.request.call_count == 1


def test_fetch_result_json_and_bad_content_length():
    result = FetchResult(
        url="u", ok=True, text='{"a": 1}', headers={"content-length": "n/a"}
    )
    assert result.json() == {"a": 1}
    assert result.content_length is None


def test_body_is_streamed_and_decoded():
    session = MagicMock()
    session.headers = {}
    response = FakeResponse(chunks=["<p>caf".encode("utf-8"), "é</p>".encode("utf-8")])
    session.request.return_value = response

    result = _fetcher(session).fetch("https://example.org/a")

    assert result.text == "<p>café</p>"
    assert session.request.call_args.kwargs["stream"] is True
    assert response.closed


def test_slow_body_exceeding_total_deadline_times_out():
    clock = FakeClock()
    session = MagicMock()
    session.headers = {}
    response = FakeResponse(
        chunks=[b"<p>", b"slow", b"drip", b"</p>"], clock=clock, seconds_per_chunk=2.0
    )
    session.request.return_value = response
    fetcher = _fetcher(session, clock)

    result = fetcher.fetch("https://example.org/trickle")

    assert result.timed_out and not result.ok
    assert "deadline" in str(result.error)
    assert response.closed
    assert fetcher.in_flight == 0
