"""Built-in role agents.

Small deterministic plug-ins that honour the agent contract well enough to
drive an end-to-end onboarding run. They read ``context.current_state.data``
and the subtask's static input (``request.data``) and never call out to
external services.
"""

from typing import Any

import structlog

from agents.base import Agent, has_value, lookup
from models.agents import (
    AgentCompleted,
    AgentError,
    AgentNeedsInput,
    AgentRequest,
    AgentRole,
    Presentation,
    ResponseConfig,
    UIRequest,
)
from models.context import TaskContext

logger = structlog.get_logger(__name__)

_FREE_MAIL_DOMAINS = frozenset({"gmail.com", "yahoo.com", "outlook.com", "hotmail.com", "icloud.com"})


class BusinessDiscoveryAgent(Agent):
    """Builds a ``business`` profile from what is already known.

    Uses ``business_name`` when present, otherwise the registrable part of a
    non-free-mail ``email`` domain. With neither, asks the user for the name.
    """

    role = AgentRole.BUSINESS_DISCOVERY

    async def process_request(
        self, request: AgentRequest, context: TaskContext
    ) -> AgentCompleted | AgentNeedsInput | AgentError:
        data = context.current_state.data
        name = lookup(data, "business_name") or lookup(data, "business.name")
        email = lookup(data, "email")
        domain = None
        if isinstance(email, str) and "@" in email:
            domain = email.rsplit("@", 1)[1].lower()

        if not name and domain and domain not in _FREE_MAIL_DOMAINS:
            name = domain.split(".")[0].replace("-", " ").title()

        if not name:
            return AgentNeedsInput(
                ui_requests=[
                    UIRequest(
                        agent_role=self.role.value,
                        presentation=Presentation(
                            title="What is your business called?",
                            description="We could not work out your business name.",
                        ),
                        required_fields=["name"],
                        optional_fields=["website"],
                        response_config=ResponseConfig(target_path="business"),
                    )
                ],
                reasoning="No business name or company email domain is known yet",
            )

        profile: dict[str, Any] = {"name": name}
        if domain:
            profile["domain"] = domain
        return AgentCompleted(
            data={"business": profile, "business_discovered": True},
            reasoning=f"Discovered business profile '{name}' from known data",
        )


class DataCollectionAgent(Agent):
    """Asks for whichever ``required_fields`` of the subtask are still missing."""

    role = AgentRole.DATA_COLLECTION

    async def process_request(
        self, request: AgentRequest, context: TaskContext
    ) -> AgentCompleted | AgentNeedsInput | AgentError:
        required = list(request.data.get("required_fields", []))
        optional = list(request.data.get("optional_fields", []))
        data = context.current_state.data
        missing = [field for field in required if not has_value(data, field)]

        if not missing:
            return AgentCompleted(
                data={},
                reasoning=f"All required fields already present: {', '.join(required) or 'none'}",
            )

        return AgentNeedsInput(
            ui_requests=[
                UIRequest(
                    agent_role=self.role.value,
                    presentation=Presentation(
                        title=request.data.get("title", "A few more details"),
                        description=request.instruction,
                    ),
                    required_fields=missing,
                    optional_fields=[f for f in optional if not has_value(data, f)],
                    response_config=ResponseConfig(
                        target_path=request.data.get("target_path"),
                        allow_skip=bool(request.data.get("allow_skip", False)),
                    ),
                )
            ],
            reasoning=f"Missing required fields: {', '.join(missing)}",
        )


class EntityComplianceAgent(Agent):
    """Derives the compliance checklist for the declared entity."""

    role = AgentRole.ENTITY_COMPLIANCE

    async def process_request(
        self, request: AgentRequest, context: TaskContext
    ) -> AgentCompleted | AgentNeedsInput | AgentError:
        data = context.current_state.data
        entity_type = lookup(data, "entity_type")
        state = lookup(data, "state")
        if not entity_type or not state:
            missing = [name for name, value in (("entity_type", entity_type), ("state", state)) if not value]
            return AgentError(
                code="missing_entity_profile",
                message=f"Cannot assess compliance without: {', '.join(missing)}",
                recoverable=False,
                reasoning="Entity profile is incomplete",
            )

        entity_key = str(entity_type).strip().lower().replace(" ", "_")
        requirements = [
            {"id": f"{entity_key}_registration", "jurisdiction": state, "status": "pending"},
            {"id": f"{entity_key}_annual_filing", "jurisdiction": state, "status": "pending"},
        ]
        if has_value(data, "ein"):
            requirements.append({"id": "federal_tax_id", "jurisdiction": "federal", "status": "on_file"})

        return AgentCompleted(
            data={
                "compliance": {
                    "entity_type": entity_key,
                    "state": state,
                    "requirements": requirements,
                }
            },
            reasoning=f"Compiled {len(requirements)} requirements for a {entity_key} in {state}",
        )


class UXOptimizationAgent(Agent):
    """Merges a batch of UI requests so no field is asked twice.

    Input ``request.data["ui_requests"]`` is a list of UIRequest dumps. A
    field already asked by an earlier request is dropped from later ones;
    requests left with no fields are removed.
    """

    role = AgentRole.UX_OPTIMIZATION

    async def process_request(
        self, request: AgentRequest, context: TaskContext
    ) -> AgentCompleted | AgentNeedsInput | AgentError:
        raw_requests = request.data.get("ui_requests", [])
        asked: set[str] = set()
        optimized: list[dict[str, Any]] = []
        removed = 0

        for raw in raw_requests:
            ui_request = UIRequest.model_validate(raw)
            # Fields nested under a target path live in their own namespace
            namespace = ui_request.response_config.target_path or ""
            required = [f for f in ui_request.required_fields if (namespace, f) not in asked]
            asked.update((namespace, f) for f in required)
            optional = [f for f in ui_request.optional_fields if (namespace, f) not in asked]
            asked.update((namespace, f) for f in optional)

            if not required and not optional:
                removed += 1
                continue
            optimized.append(
                ui_request.model_copy(
                    update={"required_fields": required, "optional_fields": optional}
                ).model_dump(mode="json")
            )

        return AgentCompleted(
            data={"ui_requests": optimized},
            reasoning=(
                f"Merged {len(raw_requests)} UI requests into {len(optimized)}"
                f" ({removed} fully redundant)"
            ),
        )


class PaymentAgent(Agent):
    """Records the payment method, or asks for one (skippable)."""

    role = AgentRole.PAYMENT

    async def process_request(
        self, request: AgentRequest, context: TaskContext
    ) -> AgentCompleted | AgentNeedsInput | AgentError:
        method = lookup(context.current_state.data, "payment_method")
        if method:
            return AgentCompleted(
                data={"payment": {"method": method, "status": "on_file"}},
                reasoning=f"Payment method '{method}' is on file",
            )
        return AgentNeedsInput(
            ui_requests=[
                UIRequest(
                    agent_role=self.role.value,
                    presentation=Presentation(
                        title="How would you like to pay?",
                        description=request.instruction,
                    ),
                    required_fields=["payment_method"],
                    response_config=ResponseConfig(allow_skip=True),
                )
            ],
            reasoning="No payment method on file",
        )


class CelebrationAgent(Agent):
    role = AgentRole.CELEBRATION

    async def process_request(
        self, request: AgentRequest, context: TaskContext
    ) -> AgentCompleted | AgentNeedsInput | AgentError:
        name = lookup(context.current_state.data, "business.name") or "your business"
        return AgentCompleted(
            data={"celebration": {"message": f"Congratulations! {name} is all set up."}},
            reasoning="Onboarding finished; celebrating with the user",
        )


BUILTIN_AGENTS: tuple[type[Agent], ...] = (
    BusinessDiscoveryAgent,
    DataCollectionAgent,
    EntityComplianceAgent,
    UXOptimizationAgent,
    PaymentAgent,
    CelebrationAgent,
)
