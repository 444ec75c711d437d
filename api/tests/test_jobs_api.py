from __future__ import annotations

import json
from typing import Any

import pytest
from fastapi.testclient import TestClient

import harvester.core.security as security
from harvester.core.config import get_settings
from harvester.core.security import hash_api_key
from harvester.main import app
from harvester.services.dependencies import (
    get_keyword_metrics_service,
    get_lifecycle_manager,
    get_scheduler,
)
from harvester.services.keywords import KeywordMetricsService
from harvester.services.lifecycle import JobLifecycleManager
from harvester.services.rate_limiter import RateLimiter
from harvester.services.scheduler import Scheduler
from harvester.services.store import InMemoryJobStore

OWNER = "11111111-1111-1111-1111-111111111111"
STRANGER = "22222222-2222-2222-2222-222222222222"
WORKER_HEADERS = {"X-Module-Id": "scrape-worker", "X-API-Key": "worker-secret"}
REPORTER_HEADERS = {"X-Module-Id": "status-reporter", "X-API-Key": "reporter-secret"}
BEARER = {"Authorization": "Bearer token"}


def _credentials_json() -> str:
    return json.dumps(
        {
            "scrape-worker": {"key_hash": hash_api_key("worker-secret"), "scopes": ["jobs:lease", "jobs:report"]},
            "status-reporter": {"key_hash": hash_api_key("reporter-secret"), "scopes": ["jobs:report"]},
        }
    )


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def jobs_client(monkeypatch: pytest.MonkeyPatch, store: InMemoryJobStore) -> TestClient:
    monkeypatch.setenv("HV_SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("HV_SUPABASE_ANON_KEY", "anon-key")
    monkeypatch.setenv("HV_WORKER_CREDENTIALS_JSON", _credentials_json())
    monkeypatch.delenv("HV_DATABASE_URL", raising=False)
    get_settings.cache_clear()

    limiter = RateLimiter(store, quotas={"scraping_job": 3})
    app.dependency_overrides[get_lifecycle_manager] = lambda: JobLifecycleManager(store, limiter, lease_seconds=60)
    app.dependency_overrides[get_scheduler] = lambda: Scheduler(store, lease_seconds=60)
    app.dependency_overrides[get_keyword_metrics_service] = lambda: KeywordMetricsService(store)

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    get_settings.cache_clear()


def _mock_supabase_user(monkeypatch: pytest.MonkeyPatch, user: dict[str, Any]) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return user

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)


def _as_owner(monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, {"id": OWNER, "app_metadata": {"role": "user"}})


def _create(client: TestClient, keyword_id: int, **fields: Any):
    payload = {"keyword_id": keyword_id, "job_type": "google_maps", **fields}
    return client.post("/jobs", json=payload, headers=BEARER)


def test_create_job_returns_pending_job(
    jobs_client: TestClient, store: InMemoryJobStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    _as_owner(monkeypatch)
    keyword = store.add_keyword("coffee roasters", OWNER)

    response = _create(jobs_client, keyword.id, priority=8, job_config={"radius_km": 5})

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "pending"
    assert body["priority"] == 8
    assert body["user_id"] == OWNER
    assert body["created_by"] == OWNER
    assert body["job_config"] == {"radius_km": 5}
    assert body["completed_at"] is None


def test_create_job_requires_bearer_token(jobs_client: TestClient) -> None:
    response = jobs_client.post("/jobs", json={"keyword_id": 1, "job_type": "instagram"})
    assert response.status_code == 401


def test_create_job_maps_service_errors(
    jobs_client: TestClient, store: InMemoryJobStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    _as_owner(monkeypatch)
    mine = store.add_keyword("coffee roasters", OWNER)
    theirs = store.add_keyword("bakeries", STRANGER)

    assert _create(jobs_client, mine.id, priority=11).status_code == 422
    assert _create(jobs_client, mine.id, job_type="facebook").status_code == 422
    assert _create(jobs_client, theirs.id).status_code == 403
    assert _create(jobs_client, 999).status_code == 404
    assert store.jobs == {}


def test_create_job_enforces_hourly_quota(
    jobs_client: TestClient, store: InMemoryJobStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    _as_owner(monkeypatch)
    keyword = store.add_keyword("coffee roasters", OWNER)

    statuses = [_create(jobs_client, keyword.id).status_code for _ in range(4)]

    assert statuses == [201, 201, 201, 429]
    assert len(store.jobs) == 3


def test_lease_hands_out_job_then_null(
    jobs_client: TestClient, store: InMemoryJobStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    _as_owner(monkeypatch)
    keyword = store.add_keyword("coffee roasters", OWNER)
    job_id = _create(jobs_client, keyword.id).json()["id"]

    first = jobs_client.post("/jobs/lease", json={"worker_id": "worker-7"}, headers=WORKER_HEADERS)
    second = jobs_client.post("/jobs/lease", headers=WORKER_HEADERS)

    assert first.status_code == 200
    assert first.json()["job"]["id"] == job_id
    assert first.json()["job"]["status"] == "queued"
    assert first.json()["job"]["lease_owner"] == "worker-7"
    assert second.status_code == 200
    assert second.json() == {"job": None}


def test_lease_rejects_bad_machine_credentials(jobs_client: TestClient) -> None:
    assert jobs_client.post("/jobs/lease").status_code == 401
    assert jobs_client.post("/jobs/lease", headers=BEARER).status_code == 401
    wrong_key = {"X-Module-Id": "scrape-worker", "X-API-Key": "guess"}
    assert jobs_client.post("/jobs/lease", headers=wrong_key).status_code == 401
    assert jobs_client.post("/jobs/lease", headers=REPORTER_HEADERS).status_code == 403


def test_status_reports_follow_the_lifecycle(
    jobs_client: TestClient, store: InMemoryJobStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    _as_owner(monkeypatch)
    keyword = store.add_keyword("coffee roasters", OWNER)
    job_id = _create(jobs_client, keyword.id).json()["id"]

    premature = jobs_client.post(f"/jobs/{job_id}/status", json={"status": "completed"}, headers=REPORTER_HEADERS)
    assert premature.status_code == 409

    jobs_client.post("/jobs/lease", headers=WORKER_HEADERS)
    running = jobs_client.post(f"/jobs/{job_id}/status", json={"status": "running"}, headers=WORKER_HEADERS)
    foreign = jobs_client.post(f"/jobs/{job_id}/status", json={"status": "failed"}, headers=REPORTER_HEADERS)
    completed = jobs_client.post(
        f"/jobs/{job_id}/status",
        json={
            "status": "completed",
            "results_count": 12,
            "job_results": {"places": 12},
            "worker_id": "scrape-worker",
        },
        headers=REPORTER_HEADERS,
    )

    assert running.status_code == 200
    assert foreign.status_code == 409
    assert completed.status_code == 200
    assert completed.json() == {"job_id": job_id, "status": "completed", "updated": True}
    job = store.jobs[job_id]
    assert job.results_count == 12
    assert job.completed_at is not None
    assert job.updated_by == "status-reporter"


def test_status_report_for_unknown_job_is_404(jobs_client: TestClient) -> None:
    response = jobs_client.post("/jobs/404/status", json={"status": "running"}, headers=REPORTER_HEADERS)
    assert response.status_code == 404


def test_status_report_rejects_unknown_status(jobs_client: TestClient) -> None:
    response = jobs_client.post("/jobs/1/status", json={"status": "done"}, headers=REPORTER_HEADERS)
    assert response.status_code == 422


def test_retry_and_delete_are_owner_operations(
    jobs_client: TestClient, store: InMemoryJobStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    _as_owner(monkeypatch)
    keyword = store.add_keyword("coffee roasters", OWNER)
    job_id = _create(jobs_client, keyword.id).json()["id"]

    assert jobs_client.post(f"/jobs/{job_id}/retry", headers=BEARER).status_code == 409

    jobs_client.post("/jobs/lease", headers=WORKER_HEADERS)
    jobs_client.post(
        f"/jobs/{job_id}/status",
        json={"status": "failed", "error_message": "captcha wall", "error_code": "BLOCKED"},
        headers=WORKER_HEADERS,
    )
    retried = jobs_client.post(f"/jobs/{job_id}/retry", headers=BEARER)
    assert retried.status_code == 200
    assert retried.json()["status"] == "pending"
    assert retried.json()["retry_count"] == 1
    assert retried.json()["error_message"] is None

    _mock_supabase_user(monkeypatch, {"id": STRANGER, "app_metadata": {"role": "user"}})
    assert jobs_client.delete(f"/jobs/{job_id}", headers=BEARER).status_code == 403

    _as_owner(monkeypatch)
    deleted = jobs_client.delete(f"/jobs/{job_id}", headers=BEARER)
    assert deleted.status_code == 200
    assert deleted.json() == {"job_id": job_id, "deleted": True}
    assert jobs_client.delete(f"/jobs/{job_id}", headers=BEARER).status_code == 404


def test_reap_expired_reports_requeued_count(jobs_client: TestClient) -> None:
    response = jobs_client.post("/jobs/reap-expired", params={"limit": 10}, headers=WORKER_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"requeued": 0}


def test_performance_metrics_update_recomputes_priority(
    jobs_client: TestClient, store: InMemoryJobStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    _as_owner(monkeypatch)
    keyword = store.add_keyword("cold brew", OWNER, search_volume=20_000, competition_score=0.35)
    theirs = store.add_keyword("bakeries", STRANGER)

    response = jobs_client.put(
        f"/keywords/{keyword.id}/performance-metrics",
        json={"performance_metrics": {"ctr": 0}},
        headers=BEARER,
    )
    forbidden = jobs_client.put(
        f"/keywords/{theirs.id}/performance-metrics",
        json={"performance_metrics": {"ctr": 0}},
        headers=BEARER,
    )

    assert response.status_code == 200
    assert response.json()["priority"] == 2
    assert response.json()["performance_metrics"] == {"ctr": 0}
    assert forbidden.status_code == 403
