"""Agent contract models: requests, responses and UI requests.

``AgentResponse`` is a closed, tagged union discriminated on ``status``:

    AgentCompleted   status="completed"
    AgentNeedsInput  status="needs_input"  (at least one UIRequest)
    AgentError       status="error"        (machine code + human message)

The orchestrator matches on the concrete class, so an unknown status cannot
slip through unhandled.
"""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter


class AgentRole(StrEnum):
    """Roles an agent can be registered under."""

    BUSINESS_DISCOVERY = "business_discovery"
    DATA_COLLECTION = "data_collection"
    ENTITY_COMPLIANCE = "entity_compliance"
    UX_OPTIMIZATION = "ux_optimization"
    PAYMENT = "payment"
    CELEBRATION = "celebration"
    ORCHESTRATOR = "orchestrator"


class UIRequestStatus(StrEnum):
    """Lifecycle of a single UI request."""

    PENDING = "pending"
    RESPONDED = "responded"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Presentation(BaseModel):
    """Semantic presentation hints; rendering is up to the client."""

    title: str
    description: str = ""
    template: str = "form"


class ResponseConfig(BaseModel):
    """Where and how a user's answer is merged back into context data."""

    target_path: str | None = Field(
        default=None,
        description="Key under which the answer is nested; None merges at top level",
    )
    allow_skip: bool = False
    timeout_seconds: int | None = Field(default=None, gt=0)


def _new_request_id() -> str:
    return f"uireq_{uuid.uuid4().hex[:12]}"


class UIRequest(BaseModel):
    """A request for user input produced by an agent mid-turn."""

    request_id: str = Field(default_factory=_new_request_id)
    agent_role: str = ""
    phase_id: str | None = None
    subtask_id: str | None = None
    presentation: Presentation
    required_fields: list[str] = Field(default_factory=list)
    optional_fields: list[str] = Field(default_factory=list)
    response_config: ResponseConfig = Field(default_factory=ResponseConfig)
    status: UIRequestStatus = UIRequestStatus.PENDING
    response: dict[str, Any] | None = None

    @property
    def fields(self) -> list[str]:
        return [*self.required_fields, *self.optional_fields]


class PausePoint(BaseModel):
    """Persisted marker for an orchestrator waiting on the user.

    One pause point carries the whole progressive-disclosure batch for a
    phase run.
    """

    batch_id: str
    phase_id: str
    waiting_on: str
    requests: list[UIRequest]
    fields: list[str] = Field(default_factory=list)
    subtask_ids: list[str] = Field(
        default_factory=list,
        description="Subtasks satisfied once every request in the batch is answered",
    )
    created_at: datetime
    expires_at: datetime

    def find(self, request_id: str) -> UIRequest | None:
        for request in self.requests:
            if request.request_id == request_id:
                return request
        return None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def request_ids(self) -> list[str]:
        return [request.request_id for request in self.requests]


class AgentRequest(BaseModel):
    """Instruction plus input data handed to an agent."""

    request_id: str = Field(default_factory=lambda: f"req_{uuid.uuid4().hex[:12]}")
    instruction: str
    data: dict[str, Any] = Field(default_factory=dict)


class AgentCompleted(BaseModel):
    status: Literal["completed"] = "completed"
    data: dict[str, Any] = Field(default_factory=dict)
    reasoning: str
    next_agent: str | None = None


class AgentNeedsInput(BaseModel):
    status: Literal["needs_input"] = "needs_input"
    ui_requests: list[UIRequest] = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    reasoning: str
    next_agent: str | None = None


class AgentError(BaseModel):
    status: Literal["error"] = "error"
    code: str = Field(min_length=1)
    message: str = Field(min_length=1)
    recoverable: bool = False
    data: dict[str, Any] = Field(default_factory=dict)
    reasoning: str = ""


AgentResponse = Annotated[
    AgentCompleted | AgentNeedsInput | AgentError,
    Field(discriminator="status"),
]

agent_response_adapter: TypeAdapter[AgentCompleted | AgentNeedsInput | AgentError] = (
    TypeAdapter(AgentResponse)
)
