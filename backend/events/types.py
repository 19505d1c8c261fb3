"""Event type definitions for the onboarding event system.

This module defines the events that flow from the task service and the
orchestrator to connected clients. Every appended context entry, every UI
request batch and every terminal transition produces an event.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from models.context import utc_now


class StreamEventType(StrEnum):
    """All event types pushed to context subscribers.

    - CONTEXT_INITIALIZED: first frame of a stream, full context snapshot
    - EVENT_ADDED: a context entry was appended
    - UI_REQUEST: the orchestrator paused on a UI request batch
    - TASK_COMPLETED: all phases completed and goals were satisfied
    - ERROR: the task failed, was cancelled, or its pause expired
    """

    CONTEXT_INITIALIZED = "CONTEXT_INITIALIZED"
    EVENT_ADDED = "EVENT_ADDED"
    UI_REQUEST = "UI_REQUEST"
    TASK_COMPLETED = "TASK_COMPLETED"
    ERROR = "ERROR"


# Events after which a context receives no further events
TERMINAL_EVENT_TYPES = frozenset({StreamEventType.TASK_COMPLETED, StreamEventType.ERROR})


class StreamEvent(BaseModel):
    """An event broadcast for one task context.

    Payload schemas by event type:

    CONTEXT_INITIALIZED:
        - context: dict - TaskContext dump (history and current_state)

    EVENT_ADDED:
        - entry: dict - The appended ContextEntry

    UI_REQUEST:
        - batch_id: str - Pause point id
        - phase_id: str - Phase that produced the batch
        - requests: list - UIRequest dumps
        - fields: list - Union of required fields

    TASK_COMPLETED:
        - completeness: int - Always 100
        - data: dict - Final business data

    ERROR:
        - code: str - Machine-readable error code
        - message: str - Human-readable description
        - phase_id: Optional[str]
        - subtask_id: Optional[str]
    """

    type: StreamEventType
    context_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "EVENT_ADDED",
                    "context_id": "ctx_3f2a9b0c1d4e5f60",
                    "timestamp": "2026-01-05T10:15:00Z",
                    "data": {
                        "entry": {
                            "sequence_number": 2,
                            "operation": "subtask_completed",
                        }
                    },
                }
            ]
        }
    }
