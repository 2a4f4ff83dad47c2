"""Tests for the HTTP application and admin endpoints."""

from datetime import UTC, datetime, timedelta

from fastapi.testclient import TestClient

from client_evals.api.app import create_app
from client_evals.containers import AppContainer
from client_evals.domain.sessions import RunRecord, RunStatus
from client_evals.services.registry import CapabilityRegistry, SessionEntry
from tests.conftest import InMemoryBenchmarkRepository

ADMIN_HEADERS = {"X-Admin-Token": "admin-token"}


def _completed_run(run_id: str, score: int, elapsed_ms: int) -> RunRecord:
    created_at = datetime(2025, 7, 1, 12, 0, tzinfo=UTC)
    return RunRecord(
        id=run_id,
        client_id="client-1",
        declared_capabilities={"elicitation": {}},
        status=RunStatus.COMPLETED,
        created_at=created_at,
        success=True,
        score=score,
        results={"score": score, "details": {}},
        time_to_completion_ms=elapsed_ms,
        completed_at=created_at + timedelta(milliseconds=elapsed_ms),
    )


def test_health_endpoint(container: AppContainer) -> None:
    client = TestClient(create_app(container))

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_admin_requires_token(container: AppContainer) -> None:
    client = TestClient(create_app(container))

    missing = client.get("/admin/health")
    wrong = client.get("/admin/health", headers={"X-Admin-Token": "nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 401


def test_admin_health_counts_live_sessions(container: AppContainer) -> None:
    client = TestClient(create_app(container))
    container.session_registry.add(
        "session-1",
        SessionEntry(
            context=object(),  # type: ignore[arg-type]
            registry=CapabilityRegistry.create(),
        ),
    )

    response = client.get("/admin/health", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "live_sessions": 1}


def test_leaderboard_orders_by_score_then_time(
    container: AppContainer, repository: InMemoryBenchmarkRepository
) -> None:
    for run in (
        _completed_run("slow", 95, 9000),
        _completed_run("fast", 95, 3000),
        _completed_run("low", 60, 1000),
    ):
        repository.runs[run.id] = run
    client = TestClient(create_app(container))

    response = client.get("/admin/leaderboard?limit=2", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    runs = response.json()["runs"]
    assert [(item["rank"], item["id"]) for item in runs] == [(1, "fast"), (2, "slow")]
    assert runs[0]["status"] == "completed"
    assert runs[0]["completed_at"] == "2025-07-01T12:00:03+00:00"


def test_run_detail_endpoint(
    container: AppContainer, repository: InMemoryBenchmarkRepository
) -> None:
    repository.runs["run-1"] = _completed_run("run-1", 80, 4200)
    client = TestClient(create_app(container))

    found = client.get("/admin/runs/run-1", headers=ADMIN_HEADERS)
    missing = client.get("/admin/runs/run-404", headers=ADMIN_HEADERS)

    assert found.status_code == 200
    assert found.json()["score"] == 80
    assert found.json()["time_to_completion_ms"] == 4200
    assert missing.status_code == 404
    assert "run-404" in missing.json()["detail"]


def test_mcp_endpoint_unavailable_outside_lifespan(container: AppContainer) -> None:
    client = TestClient(create_app(container))

    response = client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "ping"})

    assert response.status_code == 503
