import json

from src.crawler.fetcher import FetchResult, TransientFetchError
from src.services.extraction_service import (
    ExtractJobPoller,
    JobStatus,
    PollState,
    StructuredExtractionClient,
)

BASE = "https://extract.example.test/v1"
URL = "https://paper.example.com/pantry-story"


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class ServiceFetcher:
    """Answer service calls with queued JSON bodies."""

    def __init__(self, posts=(), gets=()):
        self.posts = list(posts)
        self.gets = list(gets)
        self.requests = []

    @staticmethod
    def _result(url, body):
        if isinstance(body, FetchResult):
            return body
        return FetchResult(url=url, ok=True, status_code=200, text=json.dumps(body))

    def post_json(self, url, payload, **kwargs):
        self.requests.append(("POST", url, payload, kwargs))
        return self._result(url, self.posts.pop(0))

    def fetch(self, url, **kwargs):
        self.requests.append(("GET", url, None, kwargs))
        return self._result(url, self.gets.pop(0))


def _poller_factory(clock, **kwargs):
    kwargs.setdefault("max_attempts", 5)
    kwargs.setdefault("poll_interval", 2.0)
    kwargs.setdefault("timeout", 60.0)
    return lambda: ExtractJobPoller(clock=clock, sleep=clock.sleep, **kwargs)


def test_poller_completes_after_processing_polls():
    clock = FakeClock()
    statuses = [
        JobStatus(state="processing"),
        JobStatus(state="processing"),
        JobStatus(state="completed", data=[{"title": "Pantry"}]),
    ]
    poller = _poller_factory(clock)()

    outcome = poller.run(lambda: statuses.pop(0))

    assert outcome.state is PollState.COMPLETED
    assert outcome.attempts == 3
    assert outcome.data == [{"title": "Pantry"}]
    assert outcome.elapsed == 6.0
    assert poller.state is PollState.COMPLETED


def test_poller_stops_at_attempt_limit():
    clock = FakeClock()
    outcome = _poller_factory(clock, max_attempts=4)().run(
        lambda: JobStatus(state="processing")
    )

    assert outcome.state is PollState.TIMED_OUT
    assert outcome.attempts == 4
    assert "after 4 polls" in outcome.error


def test_poller_stops_at_wall_clock_deadline():
    clock = FakeClock()
    poller = _poller_factory(clock, max_attempts=100, poll_interval=4.0, timeout=10.0)()

    outcome = poller.run(lambda: JobStatus(state="processing"))

    assert outcome.state is PollState.TIMED_OUT
    assert clock.sleeps == [4.0, 4.0, 2.0]
    assert outcome.attempts == 3
    assert "timed out after 10s" in outcome.error


def test_poller_reports_failed_jobs_and_check_errors():
    clock = FakeClock()
    failed = _poller_factory(clock)().run(
        lambda: JobStatus(state="failed", error="Extract job failed: blocked")
    )
    assert failed.state is PollState.FAILED
    assert failed.error == "Extract job failed: blocked"

    def explode():
        raise RuntimeError("socket closed")

    broken = _poller_factory(clock)().run(explode)
    assert broken.state is PollState.FAILED
    assert broken.attempts == 1
    assert "socket closed" in broken.error


def test_extract_posts_schema_and_reads_extract_payload():
    fetcher = ServiceFetcher(
        posts=[
            {
                "success": True,
                "data": {
                    "extract": {"title": "Pantry opens"},
                    "markdown": "# Pantry opens",
                    "metadata": {"statusCode": 200},
                },
            }
        ]
    )
    client = StructuredExtractionClient(fetcher, api_key="fc-secret-key", base_url=BASE)

    result = client.extract(URL, prompt="Focus on the food bank")

    assert result.success
    assert result.data == {"title": "Pantry opens"}
    assert result.markdown == "# Pantry opens"
    method, endpoint, payload, kwargs = fetcher.requests[0]
    assert endpoint == f"{BASE}/scrape"
    assert payload["url"] == URL
    assert payload["extract"]["prompt"] == "Focus on the food bank"
    assert "title" in payload["extract"]["schema"]["properties"]
    assert kwargs["headers"]["Authorization"] == "Bearer fc-secret-key"


def test_extract_failures_are_values():
    bad_status = FetchResult(
        url=URL, ok=False, status_code=402, error=TransientFetchError("HTTP 402", 402)
    )
    bad_json = FetchResult(url=URL, ok=True, status_code=200, text="<html>")
    client = StructuredExtractionClient(
        ServiceFetcher(posts=[bad_status, bad_json]), api_key="k", base_url=BASE
    )

    first = client.extract(URL)
    second = client.extract(URL)

    assert not first.success and "HTTP 402" in first.error
    assert not second.success and "invalid JSON" in second.error


def test_unconfigured_client_makes_no_calls():
    fetcher = ServiceFetcher()
    client = StructuredExtractionClient(fetcher, api_key="", base_url=BASE)

    assert not client.configured
    assert not client.extract(URL).success
    job_id, immediate = client.submit_job(URL)
    assert job_id is None and not immediate.success
    assert fetcher.requests == []


def test_extract_via_job_polls_until_complete():
    clock = FakeClock()
    fetcher = ServiceFetcher(
        posts=[{"success": True, "id": "job-42"}],
        gets=[
            {"status": "processing"},
            {"status": "completed", "success": True, "data": {"title": "Pantry"}},
        ],
    )
    client = StructuredExtractionClient(
        fetcher, api_key="k", base_url=BASE, poller_factory=_poller_factory(clock)
    )

    result = client.extract_via_job(URL)

    assert result.success
    assert result.data == {"title": "Pantry"}
    assert [r[1] for r in fetcher.requests] == [
        f"{BASE}/extract",
        f"{BASE}/extract/job-42",
        f"{BASE}/extract/job-42",
    ]


def test_extract_via_job_returns_immediate_answers():
    fetcher = ServiceFetcher(posts=[{"success": True, "data": [{"title": "Now"}]}])
    client = StructuredExtractionClient(fetcher, api_key="k", base_url=BASE)

    result = client.extract_via_job(URL)

    assert result.success
    assert result.data == {"title": "Now"}


def test_extract_via_job_surfaces_poll_failure():
    clock = FakeClock()
    fetcher = ServiceFetcher(
        posts=[{"id": "job-7"}],
        gets=[{"status": "failed", "error": "robots.txt disallows"}],
    )
    client = StructuredExtractionClient(
        fetcher, api_key="k", base_url=BASE, poller_factory=_poller_factory(clock)
    )

    result = client.extract_via_job(URL)

    assert not result.success
    assert result.error == "Extract job failed: robots.txt disallows"


def test_job_status_mapping():
    client = StructuredExtractionClient(
        ServiceFetcher(gets=[{"status": "queued"}, {"status": "mystery"}]),
        api_key="k",
        base_url=BASE,
    )
    assert client.get_job_status("a").state == "processing"
    unexpected = client.get_job_status("b")
    assert unexpected.state == "failed"
    assert "mystery" in unexpected.error


def test_non_object_json_bodies_are_service_failures():
    fetcher = ServiceFetcher(
        posts=[["not", "an", "object"], "queued"],
        gets=[[{"status": "completed"}]],
    )
    client = StructuredExtractionClient(fetcher, api_key="k", base_url=BASE)

    scraped = client.extract(URL)
    job_id, immediate = client.submit_job(URL)
    status = client.get_job_status("job-9")

    assert not scraped.success
    assert "expected a JSON object, got list" in scraped.error
    assert job_id is None and not immediate.success
    assert "got str" in immediate.error
    assert status.state == "failed"
    assert "got list" in status.error


def test_extract_accepts_data_as_a_record_list():
    fetcher = ServiceFetcher(
        posts=[{"success": True, "data": [{"extract": {"title": "Listed"}}]}]
    )
    client = StructuredExtractionClient(fetcher, api_key="k", base_url=BASE)

    result = client.extract(URL)

    assert result.success
    assert result.data == {"title": "Listed"}
