"""Pydantic schemas for API request/response models.

This module defines the bodies used by the HTTP API. Domain models
(``TaskContext``, ``ContextEntry``) are returned as-is where the API exposes
them whole; the schemas here cover requests and summaries.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from models.context import WELL_KNOWN_STATE_KEYS, TaskStatus


class CreateTaskRequest(BaseModel):
    """Request body for creating a new task context."""

    template_id: str = Field(
        min_length=1,
        max_length=200,
        description="Task template to instantiate",
        examples=["business_onboarding"],
    )
    version: str | None = Field(
        default=None,
        description="Pin a template version; the latest version is used when omitted",
        examples=["1.0.0"],
    )
    initial_data: dict[str, Any] = Field(
        default_factory=dict,
        description="Business data known up front, merged into the context state",
        examples=[{"email": "owner@acme-bakery.com", "business_name": "Acme Bakery"}],
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form request metadata kept on the task record",
    )

    @field_validator("initial_data")
    @classmethod
    def no_reserved_keys(cls, v: dict[str, Any]) -> dict[str, Any]:
        reserved = sorted(WELL_KNOWN_STATE_KEYS & v.keys())
        if reserved:
            raise ValueError(f"initial_data may not set: {', '.join(reserved)}")
        return v


class CreateTaskResponse(BaseModel):
    """Response for task creation."""

    context_id: str = Field(
        description="Unique context identifier",
        examples=["ctx_3f2a9b0c1d4e5f60"],
    )
    status: TaskStatus = Field(description="Status right after creation")
    stream_url: str = Field(
        description="Server-sent events URL for real-time updates",
        examples=["/api/tasks/ctx_3f2a9b0c1d4e5f60/stream"],
    )


class TaskSummaryResponse(BaseModel):
    """Summary information for listing task contexts."""

    context_id: str = Field(description="Unique context identifier")
    task_template_id: str = Field(description="Template the context was created from")
    status: TaskStatus = Field(description="Current status")
    phase: str | None = Field(default=None, description="Current phase id")
    completeness: int = Field(ge=0, le=100, description="Progress percentage")
    created_at: datetime = Field(description="Creation time")
    last_updated: datetime | None = Field(
        default=None,
        description="Timestamp of the latest entry",
    )
    event_count: int = Field(ge=0, description="Number of history entries")


class UIResponseRequest(BaseModel):
    """Request body for answering an open UI request."""

    request_id: str = Field(
        min_length=1,
        description="UI request id, or the batch id to answer the whole batch",
        examples=["uireq_1a2b3c4d5e6f"],
    )
    response: dict[str, Any] = Field(
        default_factory=dict,
        description=(
            "Answer payload: {field, value}, {fields: [{field, value}, ...]} "
            "or a plain field mapping"
        ),
        examples=[{"field": "ein", "value": "12-3456789"}],
    )
    action: Literal["submit", "skip", "cancel"] = Field(
        default="submit",
        description="submit answers, skip (when allowed) or cancel the task",
    )
    user_id: str | None = Field(
        default=None,
        description="Id of the answering user; defaults to the tenant",
    )


class CancelTaskRequest(BaseModel):
    """Request body for cancelling a task."""

    reason: str = Field(
        default="Cancelled by the user",
        min_length=1,
        max_length=1000,
        description="Why the task is being cancelled",
    )


class HealthResponse(BaseModel):
    """Health check response with engine status."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    store_available: bool = Field(
        default=False,
        description="Whether the event store answered a health-check read",
    )
    active_runs: int = Field(
        default=0,
        ge=0,
        description="Orchestration runs currently in flight",
    )
    event_bus: dict[str, Any] = Field(
        default_factory=dict,
        description="Event bus counters",
    )
