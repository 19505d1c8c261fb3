"""Agent contract.

An agent receives an ``AgentRequest`` (instruction + input data) and the
current ``TaskContext`` and answers with one ``AgentResponse`` variant. Agents
never write to the store: the orchestrator turns their responses into
context entries. Agents keep no per-context state, so any instance can
resume any context.
"""

from abc import ABC, abstractmethod
from typing import Any

from models.agents import (
    AgentCompleted,
    AgentError,
    AgentNeedsInput,
    AgentRequest,
    AgentRole,
)
from models.context import TaskContext


class Agent(ABC):
    """Base class for role agents.

    Subclasses set ``role`` (and optionally ``version``) and implement
    ``process_request``.
    """

    role: AgentRole
    version: str = "1.0.0"

    @abstractmethod
    async def process_request(
        self, request: AgentRequest, context: TaskContext
    ) -> AgentCompleted | AgentNeedsInput | AgentError:
        """Handle one request for a context."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(role={self.role.value!r})"


def lookup(data: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path in nested dicts; None when any step is missing."""
    current: Any = data
    for key in path.split("."):
        if not isinstance(current, dict) or key not in current:
            return None
        current = current[key]
    return current


def has_value(data: dict[str, Any], path: str) -> bool:
    """True when ``path`` resolves to something other than None, "" or an empty container."""
    value = lookup(data, path)
    if value is None:
        return False
    if isinstance(value, (str, list, dict, tuple, set)):
        return len(value) > 0
    return True
