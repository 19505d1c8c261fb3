"""Role agents and the agent registry.

This module exports the agent contract and the built-in agents:
- Agent: abstract base every role agent implements
- AgentRegistry: explicit role -> agent mapping built at startup
- Built-in deterministic agents for each onboarding role
"""

from agents.base import Agent, has_value, lookup
from agents.builtin import (
    BUILTIN_AGENTS,
    BusinessDiscoveryAgent,
    CelebrationAgent,
    DataCollectionAgent,
    EntityComplianceAgent,
    PaymentAgent,
    UXOptimizationAgent,
)
from agents.registry import AgentRegistry, build_default_registry

__all__ = [
    # Contract
    "Agent",
    "lookup",
    "has_value",
    # Registry
    "AgentRegistry",
    "build_default_registry",
    # Built-in agents
    "BUILTIN_AGENTS",
    "BusinessDiscoveryAgent",
    "DataCollectionAgent",
    "EntityComplianceAgent",
    "UXOptimizationAgent",
    "PaymentAgent",
    "CelebrationAgent",
]
