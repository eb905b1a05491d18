import re

from fastapi.testclient import TestClient
import pytest

from coursegen.api.http_app import build_app
from coursegen.api.schemas import COURSE_ID_PATTERN
from coursegen.roles import validate_role
from coursegen.services.bootstrap import build_runtime_container
from tests.integration.api_seed import seed_course


@pytest.fixture(autouse=True)
def _in_memory_runtime(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)


def _client() -> TestClient:
    role = validate_role("api")
    container = build_runtime_container(role)
    app = build_app(
        role=role.name,
        run_id="integration-api",
        worker_loop=container.worker_loop,
        api_deps=container.api_deps,
    )
    return TestClient(app)


@pytest.mark.integration
def test_system_endpoints_are_available() -> None:
    with _client() as client:
        health = client.get("/health")
        ready = client.get("/ready")

    assert health.status_code == 200
    assert health.json() == {"status": "ok", "role": "api", "mode": "pipeline"}
    assert ready.status_code == 200
    assert ready.json()["worker_loop_enabled"] is False


@pytest.mark.integration
def test_course_can_be_created_and_read_back() -> None:
    with _client() as client:
        response = client.post(
            "/courses",
            json={
                "organization_id": "org-1",
                "owner_id": "owner-1",
                "topic": "  Data pipelines  ",
                "document_ids": ["doc-1", "doc-1", "doc-2"],
            },
        )
        assert response.status_code == 201
        created = response.json()
        assert re.match(COURSE_ID_PATTERN, created["course_id"])
        assert created["stage_state"] == "pending"

        status = client.get(f"/courses/{created['course_id']}")

    assert status.status_code == 200
    payload = status.json()
    assert payload["course_id"] == created["course_id"]
    assert payload["stage_state"] == "pending"
    assert payload["failure_reason"] is None
    assert [item["stage"] for item in payload["stages"]] == [2, 3, 6]
    assert all(item["total"] == 0 for item in payload["stages"])


@pytest.mark.integration
def test_unknown_course_returns_404() -> None:
    with _client() as client:
        status = client.get("/courses/crs_01HZZZZZZZZZZZZZZZZZZZZZZZ")
        cancel = client.post("/courses/crs_01HZZZZZZZZZZZZZZZZZZZZZZZ/cancel")

    assert status.status_code == 404
    assert cancel.status_code == 404


@pytest.mark.integration
def test_blank_topic_is_rejected() -> None:
    with _client() as client:
        blank = client.post(
            "/courses",
            json={"organization_id": "org-1", "owner_id": "owner-1", "topic": "   ", "document_ids": []},
        )
        missing = client.post("/courses", json={"organization_id": "org-1", "owner_id": "owner-1"})

    assert blank.status_code == 400
    assert "topic" in blank.json()["detail"]
    assert missing.status_code == 422


@pytest.mark.integration
def test_cancel_is_idempotent() -> None:
    with _client() as client:
        course_id = seed_course(client=client)
        first = client.post(f"/courses/{course_id}/cancel")
        second = client.post(f"/courses/{course_id}/cancel")
        status = client.get(f"/courses/{course_id}")

    assert first.status_code == 200
    assert first.json()["applied"] is True
    assert first.json()["to_state"] == "cancelled"
    assert second.status_code == 200
    assert second.json()["applied"] is False
    assert second.json()["current_state"] == "cancelled"
    assert status.json()["stage_state"] == "cancelled"


@pytest.mark.integration
def test_approve_outside_gate_conflicts() -> None:
    with _client() as client:
        course_id = seed_course(client=client)
        response = client.post(f"/courses/{course_id}/stages/2/approve")

    assert response.status_code == 409


@pytest.mark.integration
@pytest.mark.parametrize("stage", [1, 7])
def test_approve_rejects_stage_out_of_range(stage: int) -> None:
    with _client() as client:
        course_id = seed_course(client=client)
        response = client.post(f"/courses/{course_id}/stages/{stage}/approve")

    assert response.status_code == 422


@pytest.mark.integration
def test_routes_without_dependencies_report_unavailable() -> None:
    app = build_app(role="api", run_id="integration-api")
    with TestClient(app) as client:
        response = client.get("/courses/crs_01HZZZZZZZZZZZZZZZZZZZZZZZ")

    assert response.status_code == 503
