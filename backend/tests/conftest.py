"""Shared test fixtures for backend tests.

Provides fresh event buses, event stores (in-memory and SQLite on a temp
file), a template registry with in-memory templates, scripted agents, and
settings with short timeouts so tests never wait on real delays.
"""

import sys
from collections.abc import Callable
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from models.context import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.base import Agent  # noqa: E402
from agents.registry import AgentRegistry  # noqa: E402
from config import Settings  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import StreamEvent  # noqa: E402
from models.agents import (  # noqa: E402
    AgentCompleted,
    AgentError,
    AgentNeedsInput,
    AgentRequest,
    AgentRole,
    Presentation,
    UIRequest,
)
from models.context import Actor, ContextEntry, NewEntry, TaskContext, Trigger, utc_now  # noqa: E402
from models.database import InMemoryEventStore, SQLiteEventStore  # noqa: E402
from models.templates import TaskTemplate  # noqa: E402
from orchestrator import Orchestrator  # noqa: E402
from task_service import TaskService  # noqa: E402
from template_registry import TemplateRegistry  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


class EventRecorder:
    """Bus handler that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list[StreamEvent] = []

    def __call__(self, event: StreamEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.type.value for event in self.events]


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture()
def memory_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture()
async def sqlite_store(tmp_path: Any) -> SQLiteEventStore:
    store = SQLiteEventStore(str(tmp_path / "events.db"))
    await store.init()
    return store


@pytest.fixture(params=["memory", "sqlite"])
async def store(request: pytest.FixtureRequest, tmp_path: Any) -> Any:
    """Both store implementations, for contract tests."""
    if request.param == "memory":
        return InMemoryEventStore()
    sqlite = SQLiteEventStore(str(tmp_path / "contract.db"))
    await sqlite.init()
    return sqlite


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def fast_settings() -> Settings:
    """Settings with short timeouts and no retry delays."""
    return Settings(
        database_path=":memory:",
        agent_timeout_seconds=1.0,
        agent_retry_attempts=2,
        agent_retry_delay_seconds=0.0,
        store_retry_attempts=2,
        store_retry_delay_seconds=0.0,
        ui_request_timeout_seconds=3600,
        sse_heartbeat_seconds=0.05,
        recover_tasks_on_startup=False,
        pause_sweep_interval_seconds=0.0,
    )


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def make_template(
    phases: list[dict[str, Any]],
    template_id: str = "test_flow",
    goals: dict[str, Any] | None = None,
    version: str = "1.0.0",
) -> TaskTemplate:
    """Build a TaskTemplate from plain phase dicts."""
    return TaskTemplate.model_validate(
        {
            "id": template_id,
            "version": version,
            "metadata": {"name": template_id.replace("_", " ").title()},
            "goals": goals or {},
            "phases": phases,
        }
    )


# Phase A: one sequential subtask; phase B: two parallel subtasks.
AB_PHASES: list[dict[str, Any]] = [
    {
        "id": "A",
        "subtasks": [
            {"id": "x", "agent": "business_discovery", "instruction": "run X"},
        ],
    },
    {
        "id": "B",
        "depends_on": ["A"],
        "parallel_execution": True,
        "subtasks": [
            {"id": "y", "agent": "data_collection", "instruction": "run Y"},
            {"id": "z", "agent": "entity_compliance", "instruction": "run Z"},
        ],
    },
]


@pytest.fixture()
def template_registry(tmp_path: Any) -> TemplateRegistry:
    registry = TemplateRegistry(tmp_path / "templates")
    registry.register(make_template(AB_PHASES, template_id="ab_flow"))
    return registry


@pytest.fixture()
def task_service(
    memory_store: InMemoryEventStore,
    template_registry: TemplateRegistry,
    event_bus: EventBus,
) -> TaskService:
    return TaskService(
        memory_store, template_registry, event_bus, retry_attempts=2, retry_delay=0.0
    )


# ---------------------------------------------------------------------------
# Scripted agents
# ---------------------------------------------------------------------------

Script = Callable[[AgentRequest, TaskContext], Any]


class ScriptedAgent(Agent):
    """Agent that answers from a script and records every call.

    ``script`` is either a response object (returned on every call), a list
    of responses / exceptions consumed in order, or an async/sync callable.
    """

    def __init__(self, role: AgentRole, script: Any) -> None:
        self.role = role
        self.script = script
        self.calls: list[tuple[AgentRequest, TaskContext]] = []

    async def process_request(
        self, request: AgentRequest, context: TaskContext
    ) -> AgentCompleted | AgentNeedsInput | AgentError:
        self.calls.append((request, context))
        script = self.script
        if isinstance(script, list):
            script = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(script, BaseException):
            raise script
        if callable(script):
            result = script(request, context)
            if hasattr(result, "__await__"):
                result = await result
            return result
        return script


def completed(reasoning: str = "done", **data: Any) -> AgentCompleted:
    return AgentCompleted(data=data, reasoning=reasoning)


def needs_input(*fields: str, title: str = "Need input", **config: Any) -> AgentNeedsInput:
    return AgentNeedsInput(
        ui_requests=[
            UIRequest(
                presentation=Presentation(title=title),
                required_fields=list(fields),
                response_config=config,
            )
        ],
        reasoning=f"missing {', '.join(fields)}",
    )


def failed(code: str = "boom", message: str = "it broke") -> AgentError:
    return AgentError(code=code, message=message, reasoning="agent failed")


@pytest.fixture()
def make_orchestrator(
    task_service: TaskService,
    event_bus: EventBus,
    fast_settings: Settings,
) -> Callable[..., tuple[Orchestrator, dict[AgentRole, ScriptedAgent]]]:
    """Factory: ``make_orchestrator({role: script, ...})``."""

    def _make(
        scripts: dict[AgentRole, Any], settings: Settings | None = None
    ) -> tuple[Orchestrator, dict[AgentRole, ScriptedAgent]]:
        agents = {role: ScriptedAgent(role, script) for role, script in scripts.items()}
        registry = AgentRegistry(list(agents.values()))
        return Orchestrator(task_service, registry, event_bus, settings or fast_settings), agents

    return _make


# ---------------------------------------------------------------------------
# Entry factories
# ---------------------------------------------------------------------------


def make_new_entry(
    operation: str = "note",
    data: dict[str, Any] | None = None,
    reasoning: str = "because",
) -> NewEntry:
    return NewEntry(
        actor=Actor.system("tests"),
        operation=operation,
        data=data or {},
        reasoning=reasoning,
    )


def make_entry(
    sequence_number: int,
    data: dict[str, Any] | None = None,
    context_id: str = "ctx_test",
    operation: str = "note",
) -> ContextEntry:
    return ContextEntry(
        entry_id=f"e{sequence_number}",
        context_id=context_id,
        timestamp=utc_now(),
        sequence_number=sequence_number,
        actor=Actor.system("tests"),
        operation=operation,
        data=data or {},
        reasoning=f"entry {sequence_number}",
        trigger=Trigger(),
    )
