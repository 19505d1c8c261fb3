"""End-to-end run of the bundled business_onboarding template.

Uses the built-in agents and the real template file; only the store is
in-memory.
"""

import pytest

from agents import build_default_registry
from config import Settings, settings
from events.bus import EventBus
from models.context import TaskStatus
from models.database import InMemoryEventStore
from orchestrator import OrchestrationState, Orchestrator
from task_service import TaskService
from template_registry import TemplateRegistry


@pytest.fixture()
def onboarding(event_bus: EventBus, fast_settings: Settings) -> tuple[TaskService, Orchestrator]:
    service = TaskService(
        InMemoryEventStore(),
        TemplateRegistry(settings.templates_dir),
        event_bus,
        retry_attempts=0,
        retry_delay=0.0,
    )
    registry = build_default_registry()
    orchestrator = Orchestrator(service, registry, event_bus, fast_settings)
    registry.register(orchestrator)
    return service, orchestrator


class TestBusinessOnboarding:
    async def test_full_run(self, onboarding: tuple[TaskService, Orchestrator]) -> None:
        service, orchestrator = onboarding
        context = await service.create(
            "business_onboarding", "tenant_a", {"email": "owner@acme-bakery.com"}
        )

        profile = await orchestrator.orchestrate(context.context_id)

        assert profile.state == OrchestrationState.AWAITING_USER_INPUT
        assert profile.phase_id == "profile"
        assert profile.batch is not None
        assert sorted(profile.batch.fields) == ["ein", "entity_type", "state"]

        billing = await orchestrator.submit_ui_response(
            context.context_id,
            profile.batch.batch_id,
            {"entity_type": "LLC", "state": "DE", "ein": "12-3456789"},
        )

        assert billing.state == OrchestrationState.AWAITING_USER_INPUT
        assert billing.phase_id == "billing"
        assert billing.batch is not None

        done = await orchestrator.submit_ui_response(
            context.context_id, billing.batch.batch_id, {}, action="skip"
        )

        assert done.state == OrchestrationState.COMPLETED
        final = await service.require_task(context.context_id)
        data = final.current_state.data
        assert final.current_state.status == TaskStatus.COMPLETED
        assert final.current_state.completeness == 100
        assert data["business"]["name"] == "Acme Bakery"
        assert data["compliance"]["state"] == "DE"
        assert "federal_tax_id" in [r["id"] for r in data["compliance"]["requirements"]]
        assert "Acme Bakery" in data["celebration"]["message"]
        assert "payment" not in data

    async def test_payment_on_file_needs_one_pause(
        self, onboarding: tuple[TaskService, Orchestrator]
    ) -> None:
        service, orchestrator = onboarding
        context = await service.create(
            "business_onboarding",
            "tenant_a",
            {
                "business_name": "Acme",
                "entity_type": "corporation",
                "state": "CA",
                "ein": "98-7654321",
                "payment_method": "ach",
            },
        )

        outcome = await orchestrator.orchestrate(context.context_id)

        assert outcome.state == OrchestrationState.COMPLETED
        final = await service.require_task(context.context_id)
        assert final.entries("ui_requests_batched") == []
        assert final.current_state.data["payment"]["method"] == "ach"
