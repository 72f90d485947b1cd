"""Rate-limited HTTP fetcher shared by every outbound call in the pipeline.

The fetcher bounds the number of in-flight requests, spaces successive
request starts by a minimum interval and converts every failure (timeouts,
connection errors, HTTP error statuses) into a :class:`FetchResult` value.
Callers never see a ``requests`` exception.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import requests

from src import config

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Accept": (
        "text/html,application/xhtml+xml,application/xml;q=0.9,"
        "image/avif,image/webp,image/apng,*/*;q=0.8"
    ),
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}

# Reduced header set used when a site answers 403/429 to the full browser
# profile.
FALLBACK_HEADERS = {
    "Accept": "*/*",
    "User-Agent": "Mozilla/5.0 (compatible; NewsPipelineBot/1.0)",
}

RETRYABLE_STATUSES = {403, 429}

BODY_CHUNK_SIZE = 64 * 1024


class TransientFetchError(Exception):
    """Network or HTTP failure on a page or service call."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class FetchResult:
    """Outcome of one outbound call."""

    url: str
    ok: bool
    status_code: Optional[int] = None
    text: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    elapsed: float = 0.0
    error: Optional[TransientFetchError] = None
    timed_out: bool = False

    @property
    def content_length(self) -> Optional[int]:
        for key, value in self.headers.items():
            if key.lower() == "content-length":
                try:
                    return int(value)
                except (TypeError, ValueError):
                    return None
        return None

    def json(self) -> Any:
        """Decode the body as JSON; raises ``ValueError`` on bad payloads."""
        return json.loads(self.text)


class RateLimiter:
    """Thread-safe gate enforcing a minimum interval between call starts."""

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must be non-negative")
        self._min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call: Optional[float] = None

    def wait(self) -> None:
        # The lock is held while sleeping so call starts are serialized.
        with self._lock:
            if self._last_call is not None:
                elapsed = self._clock() - self._last_call
                sleep_for = self._min_interval - elapsed
                if sleep_for > 0:
                    self._sleep(sleep_for)
            self._last_call = self._clock()


class RateLimitedFetcher:
    """Wrap a ``requests.Session`` with concurrency, spacing and timeouts."""

    def __init__(
        self,
        timeout: float | None = None,
        max_concurrent: int | None = None,
        min_interval: float | None = None,
        *,
        session: requests.Session | None = None,
        user_agent: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = timeout if timeout is not None else config.FETCH_TIMEOUT
        self.max_concurrent = max(
            1,
            max_concurrent
            if max_concurrent is not None
            else config.FETCH_MAX_CONCURRENT,
        )
        interval = min_interval if min_interval is not None else config.FETCH_MIN_INTERVAL
        self.session = session or requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)
        self.session.headers["User-Agent"] = user_agent or config.USER_AGENT
        self._slots = threading.BoundedSemaphore(self.max_concurrent)
        self._limiter = RateLimiter(interval, clock=clock, sleep=sleep)
        self._clock = clock
        self._sleep = sleep
        self._state_lock = threading.Lock()
        self._in_flight = 0
        self.peak_in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def _enter(self) -> None:
        with self._state_lock:
            self._in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self._in_flight)

    def _exit(self) -> None:
        with self._state_lock:
            self._in_flight -= 1

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        json_body: Any = None,
        timeout: float | None = None,
        allow_redirects: bool = True,
    ) -> FetchResult:
        """Perform one call and return its outcome as a value."""
        effective_timeout = timeout if timeout is not None else self.timeout

        self._slots.acquire()
        self._enter()
        started = self._clock()
        try:
            self._limiter.wait()
            deadline = self._clock() + effective_timeout
            try:
                resp = self.session.request(
                    method,
                    url,
                    headers=headers,
                    json=json_body,
                    timeout=effective_timeout,
                    allow_redirects=allow_redirects,
                    stream=True,
                )
                body = self._read_body(resp, deadline, effective_timeout)
            except requests.Timeout as exc:
                logger.warning(
                    "%s %s timed out after %ss", method, url, effective_timeout
                )
                return FetchResult(
                    url=url,
                    ok=False,
                    elapsed=self._clock() - started,
                    error=TransientFetchError(f"Timed out: {exc}"),
                    timed_out=True,
                )
            except requests.RequestException as exc:
                logger.warning("%s %s failed: %s", method, url, exc)
                return FetchResult(
                    url=url,
                    ok=False,
                    elapsed=self._clock() - started,
                    error=TransientFetchError(str(exc)),
                )
        finally:
            self._exit()
            self._slots.release()

        result = FetchResult(
            url=url,
            ok=resp.status_code < 400,
            status_code=resp.status_code,
            text=body.decode(resp.encoding or "utf-8", errors="replace"),
            headers=dict(resp.headers or {}),
            elapsed=self._clock() - started,
        )
        if not result.ok:
            reason = getattr(resp, "reason", "") or ""
            result.error = TransientFetchError(
                f"HTTP {resp.status_code} {reason}".strip(), resp.status_code
            )
            logger.debug("%s %s returned HTTP %s", method, url, resp.status_code)
        return result

    def _read_body(self, resp: Any, deadline: float, timeout: float) -> bytes:
        """Read a streamed body, failing once ``deadline`` has passed.

        The ``requests`` timeout bounds each socket operation; the deadline
        bounds the whole call, body included.
        """
        chunks: list[bytes] = []
        try:
            for chunk in resp.iter_content(chunk_size=BODY_CHUNK_SIZE):
                if self._clock() > deadline:
                    raise requests.Timeout(f"Call exceeded the {timeout}s deadline")
                chunks.append(chunk)
            if self._clock() > deadline:
                raise requests.Timeout(f"Call exceeded the {timeout}s deadline")
        finally:
            resp.close()
        return b"".join(chunks)

    def fetch(self, url: str, **kwargs: Any) -> FetchResult:
        return self.request("GET", url, **kwargs)

    def head(self, url: str, **kwargs: Any) -> FetchResult:
        return self.request("HEAD", url, **kwargs)

    def post_json(self, url: str, payload: Any, **kwargs: Any) -> FetchResult:
        return self.request("POST", url, json_body=payload, **kwargs)

    def fetch_with_retries(
        self, url: str, attempts: int = 3, backoff: float = 1.0
    ) -> FetchResult:
        """GET with retries, downgrading headers after a 403/429.

        Non-retryable statuses (404 and friends) return immediately.
        """
        headers: dict[str, str] | None = None
        result = FetchResult(url=url, ok=False)
        for attempt in range(1, attempts + 1):
            result = self.fetch(url, headers=headers)
            if result.ok:
                return result
            retryable = result.timed_out or result.status_code is None or (
                result.status_code in RETRYABLE_STATUSES
                or result.status_code >= 500
            )
            if not retryable or attempt == attempts:
                break
            if result.status_code in RETRYABLE_STATUSES:
                headers = dict(FALLBACK_HEADERS)
            logger.info(
                "Retrying %s (attempt %d/%d) after %s",
                url,
                attempt + 1,
                attempts,
                result.error,
            )
            self._sleep(backoff * attempt)
        return result

    def close(self) -> None:
        self.session.close()
