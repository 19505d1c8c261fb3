"""Explicit agent registry.

Built once at startup and handed to the orchestrator; there is no global
lookup. A template that names a role nobody registered fails fast with
``AgentNotRegisteredError`` before any subtask runs.
"""

import structlog

from agents.base import Agent
from errors import AgentNotRegisteredError
from models.agents import AgentRole

logger = structlog.get_logger(__name__)


class AgentRegistry:
    """Maps agent roles to agent instances."""

    def __init__(self, agents: list[Agent] | None = None) -> None:
        self._agents: dict[AgentRole, Agent] = {}
        for agent in agents or []:
            self.register(agent)

    def register(self, agent: Agent) -> None:
        """Register (or replace) the agent for its role."""
        previous = self._agents.get(agent.role)
        self._agents[agent.role] = agent
        if previous is not None:
            logger.warning(
                "agent_replaced",
                role=agent.role.value,
                previous=type(previous).__name__,
                current=type(agent).__name__,
            )
        else:
            logger.debug("agent_registered", role=agent.role.value, agent=type(agent).__name__)

    def get(self, role: AgentRole | str) -> Agent:
        """Return the agent for ``role``.

        Raises:
            AgentNotRegisteredError: No agent is registered for the role.
        """
        try:
            return self._agents[AgentRole(role)]
        except (KeyError, ValueError) as e:
            raise AgentNotRegisteredError(f"No agent registered for role '{role}'") from e

    def roles(self) -> list[AgentRole]:
        return list(self._agents)

    def __contains__(self, role: object) -> bool:
        try:
            return AgentRole(role) in self._agents
        except ValueError:
            return False

    def __len__(self) -> int:
        return len(self._agents)


def build_default_registry() -> AgentRegistry:
    """Registry with every built-in role agent (the orchestrator registers itself)."""
    from agents.builtin import BUILTIN_AGENTS

    return AgentRegistry([agent_cls() for agent_cls in BUILTIN_AGENTS])
