from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from backend.app import main
from backend.app.lifecycle import get_db_manager, get_pipeline, is_ready
from tests.helpers.fakes import (
    FakeClassifier,
    FakeExtractor,
    FakeFetcher,
    failed_result,
    make_organization,
    make_pipeline,
)

SEED = "https://riverside.example.org/news"
FAILING_URL = "https://riverside.example.org/news/volunteer-day"
SEED_PAGE = """
<a href="/news/pantry-expansion">Pantry expansion</a>
<a href="/news/volunteer-day">Volunteer day</a>
<a href="https://paper.example.com/2025/03/food-bank-grows">Paper story</a>
"""


@pytest.fixture
def pipeline(db):
    return make_pipeline(
        db,
        fetcher=FakeFetcher({SEED: SEED_PAGE}),
        extractor=FakeExtractor({FAILING_URL: failed_result(FAILING_URL)}),
        classifier=FakeClassifier(),
    )


@pytest.fixture
def client(pipeline):
    main.app.dependency_overrides[get_pipeline] = lambda: pipeline
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()


def test_health():
    response = TestClient(main.app).get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "api"}


def test_ready_reports_startup_and_database(db):
    main.app.dependency_overrides[is_ready] = lambda: False
    main.app.dependency_overrides[get_db_manager] = lambda: db
    try:
        client = TestClient(main.app)
        not_ready = client.get("/ready")
        main.app.dependency_overrides[is_ready] = lambda: True
        ready = client.get("/ready")
    finally:
        main.app.dependency_overrides.clear()

    assert not_ready.status_code == 503
    assert not_ready.json()["success"] is False
    assert ready.status_code == 200
    assert ready.json()["database"] == "Database connection OK"


def test_full_discovery_flow(client, db):
    org_id = make_organization(db)

    phase1 = client.post("/api/discovery/phase1", json={"organizationId": org_id})
    assert phase1.status_code == 200
    body = phase1.json()
    assert body["success"] is True
    assert body["status"] == "ready_for_review"
    assert body["totalUrls"] == 3
    assert (body["postCount"], body["newsCount"]) == (2, 1)
    session_id = body["sessionId"]
    url_ids = [url["id"] for url in body["urls"]]

    listing = client.get("/api/discovery/phase1", params={"organizationId": org_id})
    assert [s["id"] for s in listing.json()["sessions"]] == [session_id]

    selected = client.patch(
        "/api/discovery/phase2",
        json={"sessionId": session_id, "selectedUrlIds": url_ids},
    )
    assert selected.json()["selectedCount"] == 3
    assert selected.json()["status"] == "reviewed"

    scraped = client.post("/api/discovery/phase2", json={"sessionId": session_id})
    assert scraped.status_code == 200
    assert scraped.json()["scrapedCount"] == 2
    assert scraped.json()["failedCount"] == 1
    assert scraped.json()["status"] == "analyzing"

    content = client.get("/api/discovery/phase2", params={"sessionId": session_id})
    items = content.json()["scrapedContent"]
    assert len(items) == 2
    assert {item["organizationRelevance"] for item in items} == {"high"}

    finalized = client.post(
        "/api/discovery/phase3", json={"sessionId": session_id, "selectAll": True}
    )
    assert finalized.status_code == 200
    assert finalized.json()["message"] == "Successfully finalized 2 articles"
    assert finalized.json()["status"] == "completed"

    again = client.post(
        "/api/discovery/phase3", json={"sessionId": session_id, "selectAll": True}
    )
    assert again.status_code == 200
    assert again.json()["status"] == "completed"
    assert again.json()["createdArticles"] == []
    assert len(again.json()["updatedArticles"]) == 2
    assert sorted(again.json()["articleIds"]) == sorted(finalized.json()["articleIds"])

    detail = client.get("/api/discovery/phase1", params={"sessionId": session_id})
    assert detail.json()["session"]["status"] == "completed"
    assert len(detail.json()["session"]["discoveredUrls"]) == 3


def test_phase1_validation_errors(client):
    missing = client.post("/api/discovery/phase1", json={})
    assert missing.status_code == 400
    assert missing.json() == {"success": False, "error": "Organization ID is required"}

    unknown = client.post("/api/discovery/phase1", json={"organizationId": "nope"})
    assert unknown.status_code == 404
    assert unknown.json()["error"] == "Organization not found"

    no_params = client.get("/api/discovery/phase1")
    assert no_params.status_code == 400


def test_phase1_discovery_failure_is_bad_gateway(client, db):
    org_id = make_organization(
        db, name="Harbor Shelter", news_url="https://harbor.example.org/press"
    )

    response = client.post("/api/discovery/phase1", json={"organizationId": org_id})

    assert response.status_code == 502
    assert response.json()["success"] is False
    assert response.json()["status"] == "failed"


def test_phase2_and_phase3_errors(client, db):
    org_id = make_organization(db)
    session_id = client.post(
        "/api/discovery/phase1", json={"organizationId": org_id}
    ).json()["sessionId"]

    nothing_selected = client.post("/api/discovery/phase2", json={"sessionId": session_id})
    assert nothing_selected.status_code == 400

    missing_session = client.patch(
        "/api/discovery/phase2", json={"sessionId": "missing", "selectedUrlIds": []}
    )
    assert missing_session.status_code == 404

    no_selection = client.post("/api/discovery/phase3", json={"sessionId": session_id})
    assert no_selection.status_code == 400
    assert "selectAll" in no_selection.json()["error"]

    no_session_param = client.get("/api/discovery/phase2")
    assert no_session_param.status_code == 400


def test_bulk_scrape(client, db):
    org_id = make_organization(db)

    response = client.post(
        "/api/bulk-scrape",
        json={
            "organizationId": org_id,
            "urls": [
                "https://paper.example.com/one",
                "notaurl",
                "https://riverside.example.org/news/volunteer-day",
            ],
            "concurrency": 2,
            "batchDelay": 0,
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["summary"] == {
        "total": 3,
        "success": 1,
        "duplicate": 0,
        "error": 2,
        "concurrency_used": 2,
        "batch_delay_used": 0,
    }
    assert [r["status"] for r in body["results"]] == ["error", "success", "error"]
    assert body["results"][0]["message"] == "Invalid URL format"


def test_bulk_scrape_requires_urls_and_post(client):
    missing = client.post("/api/bulk-scrape", json={"organizationId": "x"})
    assert missing.status_code == 400

    wrong_method = client.get("/api/bulk-scrape")
    assert wrong_method.status_code == 405
    assert wrong_method.json()["error"].startswith("Method not allowed")


def test_automated_pipeline_without_body(client):
    response = client.post("/api/automated-pipeline")
    assert response.status_code == 200
    assert response.json()["message"] == "No eligible organizations found"


def test_automated_pipeline_runs_selected_organizations(client, db):
    org_id = make_organization(db)
    make_organization(db, name="Other Org", news_url="https://other.example.org/news")

    response = client.post(
        "/api/automated-pipeline", json={"organizationIds": [org_id]}
    )

    body = response.json()
    assert body["summary"]["processed"] == 1
    assert body["results"][0]["organizationId"] == org_id
    assert body["results"][0]["phase3"]["articlesCreated"] == 2


def test_missing_pipeline_is_service_unavailable():
    main.app.dependency_overrides[get_pipeline] = lambda: None
    try:
        response = TestClient(main.app).post(
            "/api/discovery/phase1", json={"organizationId": "x"}
        )
    finally:
        main.app.dependency_overrides.clear()

    assert response.status_code == 503
    assert response.json() == {"success": False, "error": "Pipeline unavailable"}


def test_unexpected_errors_are_internal_server_errors():
    broken = MagicMock()
    broken.start_discovery.side_effect = RuntimeError("database exploded")
    main.app.dependency_overrides[get_pipeline] = lambda: broken
    try:
        response = TestClient(main.app, raise_server_exceptions=False).post(
            "/api/discovery/phase1", json={"organizationId": "x"}
        )
    finally:
        main.app.dependency_overrides.clear()

    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "error": "Internal server error",
        "details": "database exploded",
    }


def test_phase2_with_nothing_scraped_is_bad_gateway(client, db):
    org_id = make_organization(db)
    session_id = client.post(
        "/api/discovery/phase1",
        json={"organizationId": org_id, "manualUrls": [FAILING_URL]},
    ).json()["sessionId"]

    response = client.post("/api/discovery/phase2", json={"sessionId": session_id})

    assert response.status_code == 502
    body = response.json()
    assert body["success"] is False
    assert body["status"] == "failed"
    assert body["error"] == "No articles scraped successfully"


def test_queue_list_and_process_batches(client, db):
    org_id = make_organization(db)

    queued = client.post(
        "/api/batches",
        json={
            "organizationId": org_id,
            "urls": ["https://paper.example.com/one", FAILING_URL],
        },
    )
    assert queued.status_code == 200
    batch_id = queued.json()["batchId"]

    listing = client.get("/api/batches").json()
    assert listing["summary"] == {
        "totalBatches": 1,
        "totalUrls": 2,
        "organizationCount": 1,
    }
    assert listing["batches"][0]["organizationName"] == "Riverside Food Bank"

    processed = client.post(
        "/api/batches/process",
        json={"batchIds": [batch_id], "concurrency": 2, "batchDelay": 0},
    )
    assert processed.status_code == 200
    body = processed.json()
    assert body["message"] == "Processed 1 batches"
    assert body["summary"]["totalSuccessful"] == 1
    assert body["summary"]["totalFailed"] == 1
    assert body["results"][0]["status"] == "completed"

    detail = client.get("/api/batches", params={"batchId": batch_id}).json()
    assert detail["batch"]["status"] == "completed"
    assert client.get("/api/batches").json()["batches"] == []


def test_batch_route_errors(client):
    missing = client.get("/api/batches", params={"batchId": "missing"})
    assert missing.status_code == 404
    assert missing.json()["error"] == "Batch not found"

    no_urls = client.post("/api/batches", json={"organizationId": "x"})
    assert no_urls.status_code == 400

    nothing_ready = client.post("/api/batches/process")
    assert nothing_ready.status_code == 200
    assert nothing_ready.json()["message"] == "No batches ready for processing"
