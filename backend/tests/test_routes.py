"""Tests for api/routes.py -- HTTP endpoint handlers.

Uses FastAPI TestClient (backed by httpx) with a real engine on the
in-memory store and scripted agents; error mapping cases use a mocked
TaskService. No network or disk access beyond pytest's tmp_path.
"""

import json
import time
from collections.abc import Generator
from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from agents.registry import AgentRegistry
from api.routes import router, set_engine, to_http_exception
from api.streaming import set_stream_dependencies, stream_router
from config import Settings
from errors import (
    ContextNotFoundError,
    ContextTerminatedError,
    HistoryIntegrityError,
    InputValidationError,
    PauseExpiredError,
    StoreUnavailableError,
    TemplateNotFoundError,
    UIRequestNotFoundError,
)
from events.bus import EventBus
from models.agents import AgentRole
from models.context import utc_now
from orchestrator import Orchestrator
from task_service import TaskService
from tests.conftest import ScriptedAgent, completed, needs_input

TENANT_A = {"X-Tenant-ID": "tenant_a"}
TENANT_B = {"X-Tenant-ID": "tenant_b"}

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def orchestrator(
    task_service: TaskService, event_bus: EventBus, fast_settings: Settings
) -> Orchestrator:
    """Orchestrator whose ab_flow run pauses on an EIN request."""
    agents = AgentRegistry(
        [
            ScriptedAgent(AgentRole.BUSINESS_DISCOVERY, completed(business={"name": "Acme"})),
            ScriptedAgent(AgentRole.DATA_COLLECTION, needs_input("ein")),
            ScriptedAgent(AgentRole.ENTITY_COMPLIANCE, completed()),
        ]
    )
    return Orchestrator(task_service, agents, event_bus, fast_settings)


def _make_app(task_service: Any, orchestrator: Any, event_bus: EventBus) -> FastAPI:
    app = FastAPI()
    app.include_router(router)
    app.include_router(stream_router)
    set_engine(task_service, orchestrator, event_bus)
    set_stream_dependencies(task_service, event_bus)
    return app


@pytest.fixture()
def client(
    task_service: TaskService, orchestrator: Orchestrator, event_bus: EventBus
) -> Generator[TestClient, None, None]:
    """TestClient over the real engine.

    Used as a context manager so background orchestration runs keep a live
    event loop between requests.
    """
    with TestClient(_make_app(task_service, orchestrator, event_bus)) as test_client:
        yield test_client


def _create(client: TestClient, **body: Any) -> str:
    response = client.post(
        "/api/tasks", json={"template_id": "ab_flow", **body}, headers=TENANT_A
    )
    assert response.status_code == 201, response.text
    return response.json()["context_id"]


def _wait_for_status(client: TestClient, context_id: str, status: str) -> dict[str, Any]:
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        context = client.get(f"/api/tasks/{context_id}", headers=TENANT_A).json()
        if context["current_state"]["status"] == status:
            return context
        time.sleep(0.01)
    raise AssertionError(f"{context_id} never reached {status}")


# ============================================================================
# Tenancy
# ============================================================================


class TestTenancy:
    """X-Tenant-ID is required and scopes every read."""

    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("get", "/api/tasks"),
            ("get", "/api/tasks/ctx_x"),
            ("get", "/api/tasks/ctx_x/events"),
            ("get", "/api/tasks/ctx_x/stream"),
            ("post", "/api/tasks/ctx_x/cancel"),
        ],
    )
    def test_missing_header_is_401(self, client: TestClient, method: str, path: str) -> None:
        response = getattr(client, method)(path)
        assert response.status_code == 401

    def test_blank_header_is_401(self, client: TestClient) -> None:
        response = client.get("/api/tasks", headers={"X-Tenant-ID": "   "})
        assert response.status_code == 401

    def test_other_tenant_gets_404(self, client: TestClient) -> None:
        context_id = _create(client)

        assert client.get(f"/api/tasks/{context_id}", headers=TENANT_B).status_code == 404
        assert client.get(f"/api/tasks/{context_id}/events", headers=TENANT_B).status_code == 404
        assert client.post(f"/api/tasks/{context_id}/cancel", headers=TENANT_B).status_code == 404
        assert client.get(f"/api/tasks/{context_id}/stream", headers=TENANT_B).status_code == 404

    def test_list_is_scoped(self, client: TestClient) -> None:
        context_id = _create(client)

        own = client.get("/api/tasks", headers=TENANT_A).json()
        other = client.get("/api/tasks", headers=TENANT_B).json()

        assert [t["context_id"] for t in own] == [context_id]
        assert other == []


# ============================================================================
# Task creation and reads
# ============================================================================


class TestCreateTask:
    """POST /api/tasks"""

    def test_create_returns_201(self, client: TestClient) -> None:
        response = client.post(
            "/api/tasks",
            json={"template_id": "ab_flow", "initial_data": {"email": "a@acme.com"}},
            headers=TENANT_A,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["context_id"].startswith("ctx_")
        assert data["status"] == "pending"
        assert data["stream_url"] == f"/api/tasks/{data['context_id']}/stream"

    def test_unknown_template_is_404(self, client: TestClient) -> None:
        response = client.post("/api/tasks", json={"template_id": "nope"}, headers=TENANT_A)
        assert response.status_code == 404
        assert "nope" in response.json()["detail"]

    def test_reserved_initial_data_is_422(self, client: TestClient) -> None:
        response = client.post(
            "/api/tasks",
            json={"template_id": "ab_flow", "initial_data": {"completeness": 100}},
            headers=TENANT_A,
        )
        assert response.status_code == 422

    def test_missing_template_id_is_422(self, client: TestClient) -> None:
        response = client.post("/api/tasks", json={}, headers=TENANT_A)
        assert response.status_code == 422

    def test_creation_starts_orchestration(self, client: TestClient) -> None:
        context_id = _create(client)

        context = _wait_for_status(client, context_id, "blocked")

        assert context["current_state"]["data"]["business"] == {"name": "Acme"}
        assert context["current_state"]["data"]["pause"]["fields"] == ["ein"]


class TestReadTask:
    """GET /api/tasks/{id} and /events"""

    def test_get_task(self, client: TestClient) -> None:
        context_id = _create(client, initial_data={"email": "a@acme.com"})

        response = client.get(f"/api/tasks/{context_id}", headers=TENANT_A)

        assert response.status_code == 200
        data = response.json()
        assert data["context_id"] == context_id
        assert data["tenant_id"] == "tenant_a"
        assert data["history"][0]["operation"] == "task_created"
        assert data["template_snapshot"]["id"] == "ab_flow"

    def test_unknown_task_is_404(self, client: TestClient) -> None:
        assert client.get("/api/tasks/ctx_nope", headers=TENANT_A).status_code == 404

    def test_events_are_ordered(self, client: TestClient) -> None:
        context_id = _create(client)
        _wait_for_status(client, context_id, "blocked")

        entries = client.get(f"/api/tasks/{context_id}/events", headers=TENANT_A).json()

        numbers = [e["sequence_number"] for e in entries]
        assert numbers == list(range(1, len(numbers) + 1))
        assert entries[-1]["operation"] == "ui_requests_batched"

    def test_list_summary_fields(self, client: TestClient) -> None:
        context_id = _create(client)
        _wait_for_status(client, context_id, "blocked")

        summary = client.get("/api/tasks?limit=5", headers=TENANT_A).json()[0]

        assert summary["context_id"] == context_id
        assert summary["task_template_id"] == "ab_flow"
        assert summary["status"] == "blocked"
        assert summary["phase"] == "B"
        assert summary["event_count"] >= 4

    def test_list_rejects_bad_limit(self, client: TestClient) -> None:
        assert client.get("/api/tasks?limit=0", headers=TENANT_A).status_code == 422


# ============================================================================
# UI responses and cancellation
# ============================================================================


class TestUIResponse:
    """POST /api/tasks/{id}/ui-response"""

    def _paused(self, client: TestClient) -> tuple[str, str]:
        context_id = _create(client)
        context = _wait_for_status(client, context_id, "blocked")
        return context_id, context["current_state"]["data"]["pause"]["batch_id"]

    def test_answer_completes_task(self, client: TestClient) -> None:
        context_id, batch_id = self._paused(client)

        response = client.post(
            f"/api/tasks/{context_id}/ui-response",
            json={"request_id": batch_id, "response": {"field": "ein", "value": "12-3456789"}},
            headers=TENANT_A,
        )

        assert response.status_code == 200
        assert response.json()["state"] == "completed"
        context = client.get(f"/api/tasks/{context_id}", headers=TENANT_A).json()
        assert context["current_state"]["status"] == "completed"
        assert context["current_state"]["data"]["ein"] == "12-3456789"

    def test_missing_field_is_422(self, client: TestClient) -> None:
        context_id, batch_id = self._paused(client)

        response = client.post(
            f"/api/tasks/{context_id}/ui-response",
            json={"request_id": batch_id, "response": {}},
            headers=TENANT_A,
        )

        assert response.status_code == 422
        assert response.json()["detail"]["fields"] == ["ein"]

    def test_unknown_request_is_404(self, client: TestClient) -> None:
        context_id, _ = self._paused(client)

        response = client.post(
            f"/api/tasks/{context_id}/ui-response",
            json={"request_id": "uireq_nope", "response": {"ein": "1"}},
            headers=TENANT_A,
        )

        assert response.status_code == 404

    def test_bad_action_is_422(self, client: TestClient) -> None:
        context_id, batch_id = self._paused(client)

        response = client.post(
            f"/api/tasks/{context_id}/ui-response",
            json={"request_id": batch_id, "action": "shrug"},
            headers=TENANT_A,
        )

        assert response.status_code == 422

    def test_expired_pause_is_410(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        context_id, batch_id = self._paused(client)
        monkeypatch.setattr("orchestrator.utc_now", lambda: utc_now() + timedelta(days=2))

        response = client.post(
            f"/api/tasks/{context_id}/ui-response",
            json={"request_id": batch_id, "response": {"ein": "1"}},
            headers=TENANT_A,
        )

        assert response.status_code == 410
        context = client.get(f"/api/tasks/{context_id}", headers=TENANT_A).json()
        assert context["current_state"]["status"] == "cancelled"


class TestCancel:
    """POST /api/tasks/{id}/cancel"""

    def test_cancel_with_reason(self, client: TestClient) -> None:
        context_id = _create(client)
        _wait_for_status(client, context_id, "blocked")

        response = client.post(
            f"/api/tasks/{context_id}/cancel",
            json={"reason": "duplicate signup"},
            headers=TENANT_A,
        )

        assert response.status_code == 200
        assert response.json()["state"] == "cancelled"
        entries = client.get(f"/api/tasks/{context_id}/events", headers=TENANT_A).json()
        assert entries[-1]["reasoning"] == "duplicate signup"

    def test_cancel_without_body_is_idempotent(self, client: TestClient) -> None:
        context_id = _create(client)
        _wait_for_status(client, context_id, "blocked")

        first = client.post(f"/api/tasks/{context_id}/cancel", headers=TENANT_A)
        count = len(client.get(f"/api/tasks/{context_id}/events", headers=TENANT_A).json())
        second = client.post(f"/api/tasks/{context_id}/cancel", headers=TENANT_A)

        assert first.status_code == second.status_code == 200
        assert second.json()["state"] == "cancelled"
        assert len(client.get(f"/api/tasks/{context_id}/events", headers=TENANT_A).json()) == count


# ============================================================================
# Streaming endpoint
# ============================================================================


class TestStreamEndpoint:
    """GET /api/tasks/{id}/stream"""

    def test_unknown_context_is_404(self, client: TestClient) -> None:
        assert client.get("/api/tasks/ctx_nope/stream", headers=TENANT_A).status_code == 404

    def test_terminal_context_streams_snapshot(self, client: TestClient) -> None:
        context_id = _create(client)
        _wait_for_status(client, context_id, "blocked")
        client.post(f"/api/tasks/{context_id}/cancel", headers=TENANT_A)

        with client.stream("GET", f"/api/tasks/{context_id}/stream", headers=TENANT_A) as response:
            assert response.status_code == 200
            assert response.headers["content-type"].startswith("text/event-stream")
            body = "".join(response.iter_text())

        assert body.startswith("event: CONTEXT_INITIALIZED\n")
        payload = json.loads(body.split("data: ", 1)[1].split("\n", 1)[0])
        assert payload["data"]["context"]["current_state"]["status"] == "cancelled"


# ============================================================================
# Health
# ============================================================================


class TestHealth:
    def test_healthy(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["store_available"] is True
        assert "events_broadcast" in data["event_bus"]

    def test_unhealthy_when_store_fails(
        self, orchestrator: Orchestrator, event_bus: EventBus
    ) -> None:
        broken = MagicMock()
        broken.store.get_record = AsyncMock(side_effect=StoreUnavailableError("disk gone"))
        app = _make_app(broken, orchestrator, event_bus)

        with TestClient(app) as test_client:
            data = test_client.get("/health").json()

        assert data["status"] == "unhealthy"
        assert data["store_available"] is False


# ============================================================================
# Error mapping
# ============================================================================


class TestErrorMapping:
    """Engine errors map onto HTTP status codes."""

    @pytest.mark.parametrize(
        ("error", "status_code"),
        [
            (TemplateNotFoundError("t"), 404),
            (ContextNotFoundError("ctx"), 404),
            (UIRequestNotFoundError("r"), 404),
            (PauseExpiredError("late"), 410),
            (ContextTerminatedError("ctx", "cancelled"), 409),
            (InputValidationError("bad", fields=["ein"]), 422),
            (HistoryIntegrityError("gap"), 500),
            (StoreUnavailableError("down"), 503),
        ],
    )
    def test_status_codes(self, error: Exception, status_code: int) -> None:
        assert to_http_exception(error).status_code == status_code  # type: ignore[arg-type]

    def test_validation_detail_lists_fields(self) -> None:
        exc = to_http_exception(InputValidationError("missing", fields=["ein"]))
        assert exc.detail == {"message": "missing", "fields": ["ein"]}

    def test_store_outage_is_503(self, orchestrator: Orchestrator, event_bus: EventBus) -> None:
        service = MagicMock()
        service.list_tasks = AsyncMock(side_effect=StoreUnavailableError("database is locked"))
        app = _make_app(service, orchestrator, event_bus)

        with TestClient(app) as test_client:
            response = test_client.get("/api/tasks", headers=TENANT_A)

        assert response.status_code == 503
