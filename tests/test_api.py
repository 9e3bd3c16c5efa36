"""HTTP surface tests with FastAPI's TestClient."""

import time

import pytest
from fastapi.testclient import TestClient

from conftest import FakeEmbedder, FakeGenerator, force_status, page
from source_query.api.app import create_app
from source_query.api.service import ROUTE_ASK, build_rate_limiter, build_services
from source_query.config import get_settings
from source_query.ingestion.orchestrator import INTERRUPTED
from source_query.models import SourceStatus
from source_query.retrieval import NO_MATCH_ANSWER
from source_query.security import RateLimitRule

ALICE = {"X-Principal-Id": "alice"}
BOB = {"X-Principal-Id": "bob"}


def make_client(fetcher, index, rate_limiter=None):
    services = build_services(
        embedder=FakeEmbedder(),
        generator=FakeGenerator(),
        index=index,
        fetcher=fetcher,
        rate_limiter=rate_limiter,
    )
    return TestClient(create_app(services))


@pytest.fixture
def client(fetcher, index):
    with make_client(fetcher, index) as client:
        yield client


def wait_for_status(client, source_id, statuses, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/sources/{source_id}", headers=ALICE).json()
        if body["status"] in statuses or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


def test_register_source(client):
    response = client.post("/sources", json={"url": "https://example.edu/fees"}, headers=ALICE)

    assert response.status_code == 201
    body = response.json()
    assert body["url"] == "https://example.edu/fees"
    assert body["kind"] == "website"
    assert body["status"] == "unknown"


def test_register_duplicate_conflicts(client):
    client.post("/sources", json={"url": "https://example.edu/a"}, headers=ALICE)
    response = client.post("/sources", json={"url": "https://example.edu/a"}, headers=ALICE)

    assert response.status_code == 409
    assert response.json() == {"error": "URL already exists"}


@pytest.mark.parametrize(
    "payload,message",
    [({}, "URL is required"), ({"url": "not a url"}, "Invalid URL format")],
)
def test_register_invalid_url(client, payload, message):
    response = client.post("/sources", json=payload, headers=ALICE)
    assert response.status_code == 400
    assert response.json() == {"error": message}


def test_missing_principal_is_unauthorized(client):
    response = client.post("/sources", json={"url": "https://example.edu/a"})
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


def test_list_and_get_are_scoped_to_principal(client):
    created = client.post("/sources", json={"url": "https://example.edu/a"}, headers=ALICE).json()

    listing = client.get("/sources", headers=ALICE).json()
    assert listing["total"] == 1
    assert listing["sources"][0]["id"] == created["id"]

    assert client.get(f"/sources/{created['id']}", headers=ALICE).status_code == 200
    assert client.get(f"/sources/{created['id']}", headers=BOB).status_code == 404
    assert client.get("/sources", headers=BOB).json()["total"] == 0


def test_document_ingestion_then_ask(client):
    created = client.post(
        "/sources/documents",
        json={
            "title": "Admissions",
            "description": "How to apply",
            "content": "Admissions open in March. Applications close in June.",
        },
        headers=ALICE,
    ).json()
    assert created["kind"] == "document"
    assert created["url"] is None

    response = client.post(f"/sources/{created['id']}/ingest", headers=ALICE)
    assert response.status_code == 202
    assert response.json()["message"] == "Ingestion started"

    source = wait_for_status(client, created["id"], {"active", "error"})
    assert source["status"] == "active"
    assert source["embeddings"]["count"] == 1

    answer = client.post("/ask", json={"question": "When do admissions close?"}, headers=ALICE)
    assert answer.status_code == 200
    body = answer.json()
    assert body["answer"] == "Applications close in June."
    assert body["sources"][0]["title"] == "Admissions"
    assert body["follow_up_questions"]


def test_website_ingestion(client, site):
    site.add("https://example.edu/fees", page("Tuition is due each semester.", title="Fees"))
    created = client.post("/sources", json={"url": "https://example.edu/fees"}, headers=ALICE).json()

    client.post(f"/sources/{created['id']}/ingest", headers=ALICE)
    source = wait_for_status(client, created["id"], {"active", "error"})

    assert source["status"] == "active"
    assert source["title"] == "Fees"


def test_ingest_unknown_source_is_not_found(client):
    assert client.post("/sources/missing/ingest", headers=ALICE).status_code == 404


def test_ask_without_matches(client):
    response = client.post("/ask", json={"question": "What is the fee structure?"}, headers=ALICE)

    assert response.status_code == 200
    assert response.json()["answer"] == NO_MATCH_ANSWER
    assert response.json()["sources"] == []


def test_ask_validates_question(client):
    response = client.post("/ask", json={"question": "  "}, headers=ALICE)
    assert response.status_code == 400

    response = client.post("/ask", json={"question": "fees", "top_k": 50}, headers=ALICE)
    assert response.status_code == 400


def test_ask_is_rate_limited(fetcher, index):
    limiter = build_rate_limiter(get_settings())
    limiter.rules[ROUTE_ASK] = RateLimitRule(max_requests=2, window_seconds=60)

    with make_client(fetcher, index, limiter) as client:
        for _ in range(2):
            assert client.post("/ask", json={"question": "fees"}, headers=ALICE).status_code == 200

        response = client.post("/ask", json={"question": "fees"}, headers=ALICE)
        assert response.status_code == 429
        assert response.json() == {"error": "Too many requests. Please try again later."}
        assert 0 < int(response.headers["Retry-After"]) <= 60

        # A different client address has its own window
        other = {**ALICE, "X-Forwarded-For": "10.0.0.9"}
        assert client.post("/ask", json={"question": "fees"}, headers=other).status_code == 200


def test_delete_source(client):
    created = client.post("/sources", json={"url": "https://example.edu/a"}, headers=ALICE).json()

    response = client.delete(f"/sources/{created['id']}", headers=ALICE)
    assert response.status_code == 200
    assert response.json() == {"message": "Source deleted successfully"}
    assert client.get(f"/sources/{created['id']}", headers=ALICE).status_code == 404


def test_delete_all(client):
    client.post("/sources", json={"url": "https://example.edu/a"}, headers=ALICE)
    client.post("/sources", json={"url": "https://example.edu/b"}, headers=ALICE)

    response = client.post("/sources/delete-all", headers=ALICE)

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "All scraped content deleted"
    assert body["total_sources"] == 2
    assert body["vector_index_cleared"] is True


def test_reingest_all(client, site):
    site.add("https://example.edu/a", page("Library opens at nine.", title="Library"))
    client.post("/sources", json={"url": "https://example.edu/a"}, headers=ALICE)

    response = client.post("/sources/reingest-all", headers=ALICE)

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Re-ingestion completed"
    assert body["processed"] == 1
    assert body["results"][0]["success"] is True


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["components"]["database"] == "ok"
    assert body["components"]["worker_pool"] == "ok"
    assert body["vector_count"] == 0


def test_metrics(client):
    client.post("/ask", json={"question": "fees"}, headers=ALICE)
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "query_requests_total" in response.text


def test_startup_fails_sources_left_in_flight(fetcher, index):
    with make_client(fetcher, index) as client:
        created = client.post("/sources", json={"url": "https://example.edu/a"}, headers=ALICE).json()

    force_status(created["id"], SourceStatus.EMBEDDING)

    with make_client(fetcher, index) as client:
        source = client.get(f"/sources/{created['id']}", headers=ALICE).json()
        assert source["status"] == "error"
        assert source["status_detail"]["last_error"] == INTERRUPTED
        assert client.post(f"/sources/{created['id']}/ingest", headers=ALICE).status_code == 202
