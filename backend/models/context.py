"""Event-sourced task context models.

A task context is an append-only history of ``ContextEntry`` events plus a
``CurrentState`` that is always derived from that history (see
``state_computer.compute_state``). Nothing in this module stores state that
could diverge from the history.

Well-known ``data`` keys on an entry:
    status: one of ``TaskStatus``
    phase: the orchestration phase id the context is in
    completeness: integer percentage, clamped to [0, 100] on replay

Every other key is opaque business data merged into ``CurrentState.data``.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

WELL_KNOWN_STATE_KEYS = frozenset({"status", "phase", "completeness"})


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


class TaskStatus(StrEnum):
    """Lifecycle status of a task context."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)


class ActorType(StrEnum):
    """Who produced an entry."""

    SYSTEM = "system"
    AGENT = "agent"
    USER = "user"


class Actor(BaseModel):
    """Identity of the producer of a context entry."""

    model_config = ConfigDict(frozen=True)

    type: ActorType
    id: str = Field(min_length=1)
    version: str = "1.0.0"

    @classmethod
    def system(cls, actor_id: str) -> "Actor":
        return cls(type=ActorType.SYSTEM, id=actor_id)

    @classmethod
    def agent(cls, role: str, version: str = "1.0.0") -> "Actor":
        return cls(type=ActorType.AGENT, id=role, version=version)

    @classmethod
    def user(cls, user_id: str) -> "Actor":
        return cls(type=ActorType.USER, id=user_id)


class Trigger(BaseModel):
    """What caused an entry to be appended.

    Orchestrator bookkeeping (phase id, subtask id, UI request id) lives in
    ``details`` so it never leaks into the business data of the context.
    """

    model_config = ConfigDict(frozen=True)

    type: str = "system_event"
    source: str = "system"
    details: dict[str, Any] = Field(default_factory=dict)


class NewEntry(BaseModel):
    """The caller-supplied part of an entry, before the store sequences it."""

    actor: Actor
    operation: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    reasoning: str = ""
    trigger: Trigger = Field(default_factory=Trigger)


class ContextEntry(BaseModel):
    """One immutable, sequenced fact in a context history."""

    model_config = ConfigDict(frozen=True)

    entry_id: str
    context_id: str
    timestamp: datetime
    sequence_number: int = Field(ge=1)
    actor: Actor
    operation: str
    data: dict[str, Any] = Field(default_factory=dict)
    reasoning: str
    trigger: Trigger = Field(default_factory=Trigger)

    @field_validator("reasoning")
    @classmethod
    def reasoning_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reasoning must not be empty")
        return v


class CurrentState(BaseModel):
    """State derived from a history. Never persisted as authoritative."""

    status: TaskStatus = TaskStatus.PENDING
    phase: str | None = None
    completeness: int = Field(default=0, ge=0, le=100)
    data: dict[str, Any] = Field(default_factory=dict)
    last_sequence_number: int = 0
    last_updated: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class TaskContext(BaseModel):
    """The aggregate: identity, frozen template snapshot, history and state.

    ``current_state`` is always the result of replaying ``history``; the
    task service never builds a context any other way.
    """

    context_id: str
    task_template_id: str
    tenant_id: str
    created_at: datetime
    template_snapshot: dict[str, Any]
    metadata: dict[str, Any] = Field(default_factory=dict)
    history: list[ContextEntry] = Field(default_factory=list)
    current_state: CurrentState = Field(default_factory=CurrentState)

    @property
    def is_terminal(self) -> bool:
        return self.current_state.is_terminal

    def entries(self, operation: str) -> list[ContextEntry]:
        """Entries with the given operation tag, in sequence order."""
        return [entry for entry in self.history if entry.operation == operation]


class ContextRecord(BaseModel):
    """The key-value task record a store keeps next to the event ledger."""

    context_id: str
    task_template_id: str
    tenant_id: str
    created_at: datetime
    template_snapshot: dict[str, Any]
    metadata: dict[str, Any] = Field(default_factory=dict)
