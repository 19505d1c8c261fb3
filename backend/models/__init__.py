"""Models module for domain models and API schemas.

This module exposes the task context models, template models, agent
contract models and the request/response models used by the API.
"""

from models.agents import (
    AgentCompleted,
    AgentError,
    AgentNeedsInput,
    AgentRequest,
    AgentResponse,
    AgentRole,
    PausePoint,
    Presentation,
    ResponseConfig,
    UIRequest,
    UIRequestStatus,
)
from models.context import (
    Actor,
    ActorType,
    ContextEntry,
    ContextRecord,
    CurrentState,
    NewEntry,
    TaskContext,
    TaskStatus,
    Trigger,
)
from models.schemas import (
    CancelTaskRequest,
    CreateTaskRequest,
    CreateTaskResponse,
    HealthResponse,
    TaskSummaryResponse,
    UIResponseRequest,
)
from models.templates import Goal, Goals, Phase, Subtask, TaskTemplate, TemplateMetadata

__all__ = [
    # Context
    "Actor",
    "ActorType",
    "ContextEntry",
    "ContextRecord",
    "CurrentState",
    "NewEntry",
    "TaskContext",
    "TaskStatus",
    "Trigger",
    # Templates
    "Goal",
    "Goals",
    "Phase",
    "Subtask",
    "TaskTemplate",
    "TemplateMetadata",
    # Agents
    "AgentCompleted",
    "AgentError",
    "AgentNeedsInput",
    "AgentRequest",
    "AgentResponse",
    "AgentRole",
    "PausePoint",
    "Presentation",
    "ResponseConfig",
    "UIRequest",
    "UIRequestStatus",
    # API
    "CancelTaskRequest",
    "CreateTaskRequest",
    "CreateTaskResponse",
    "HealthResponse",
    "TaskSummaryResponse",
    "UIResponseRequest",
]
