"""Orchestrator: drives a task context through its template's phases.

The orchestrator is a state machine over the context history. It keeps no
progress of its own: which subtasks and phases are finished, and whether the
context is paused on the user, are derived from the history every time it
runs, so any instance can resume any context after a restart.

States:
    INITIALIZING         template snapshot loaded and validated
    RUNNING_PHASE        subtasks of one phase are being dispatched
    AWAITING_USER_INPUT  a UI request batch is open (status blocked)
    COMPLETED            all phases done and required goals satisfied
    FAILED               a required subtask or goal check failed
    CANCELLED            cancelled by the user
    PAUSE_EXPIRED        the open batch was not answered in time

Entries appended (operation tags):
    subtask_completed, subtask_failed, subtask_skipped, ui_requests_batched,
    ui_response_submitted, phase_completed, all_phases_completed,
    task_failed, task_cancelled, pause_expired, task_recovered

Usage:
    >>> orchestrator = Orchestrator(task_service, agent_registry, event_bus)
    >>> outcome = await orchestrator.orchestrate(context_id)
    >>> if outcome.state == OrchestrationState.AWAITING_USER_INPUT:
    ...     outcome = await orchestrator.submit_ui_response(
    ...         context_id, outcome.batch.batch_id, {"field": "ein", "value": "12-3456789"}
    ...     )
"""

import asyncio
import contextlib
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum
from typing import Any, Literal

import structlog
from pydantic import BaseModel, ValidationError

from agents.base import Agent, has_value
from agents.registry import AgentRegistry
from config import Settings, settings as default_settings
from errors import (
    AgentNotRegisteredError,
    ConfigurationError,
    ContextNotFoundError,
    ContextTerminatedError,
    InputValidationError,
    PauseExpiredError,
    TerminalAgentError,
    TransientError,
    UIRequestNotFoundError,
)
from events import EventBus, StreamEvent, StreamEventType
from models.agents import (
    AgentCompleted,
    AgentError,
    AgentNeedsInput,
    AgentRequest,
    AgentRole,
    PausePoint,
    UIRequest,
    UIRequestStatus,
    agent_response_adapter,
)
from models.context import (
    Actor,
    NewEntry,
    TaskContext,
    TaskStatus,
    Trigger,
    WELL_KNOWN_STATE_KEYS,
    utc_now,
)
from models.templates import Phase, Subtask, TaskTemplate
from task_service import TaskService
from template_registry import validate_phases

logger = structlog.get_logger(__name__)

ORCHESTRATOR_ACTOR = Actor.system("orchestrator")

UIAction = Literal["submit", "skip", "cancel"]


class OrchestrationState(StrEnum):
    INITIALIZING = "initializing"
    RUNNING_PHASE = "running_phase"
    AWAITING_USER_INPUT = "awaiting_user_input"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSE_EXPIRED = "pause_expired"


class OrchestrationOutcome(BaseModel):
    """Where a run of the state machine stopped."""

    state: OrchestrationState
    context_id: str
    status: TaskStatus
    phase_id: str | None = None
    completeness: int = 0
    batch: PausePoint | None = None
    error: dict[str, Any] | None = None


@dataclass
class _Progress:
    """Progress of a context as derived from its history."""

    done_subtasks: set[str] = field(default_factory=set)
    done_phases: set[str] = field(default_factory=set)
    open_pause: PausePoint | None = None
    answered: set[str] = field(default_factory=set)


def _derive_progress(context: TaskContext) -> _Progress:
    progress = _Progress()
    for entry in context.history:
        details = entry.trigger.details
        operation = entry.operation

        if operation in ("subtask_completed", "subtask_skipped"):
            if details.get("subtask_id"):
                progress.done_subtasks.add(details["subtask_id"])
        elif operation == "phase_completed":
            if details.get("phase_id"):
                progress.done_phases.add(details["phase_id"])
        elif operation == "ui_requests_batched":
            progress.open_pause = PausePoint.model_validate(entry.data["pause"])
            progress.answered = set()
        elif operation == "ui_response_submitted":
            pause = progress.open_pause
            if pause is None or details.get("batch_id") != pause.batch_id:
                continue
            progress.answered.update(details.get("request_ids", []))
            if progress.answered >= set(pause.request_ids()):
                progress.done_subtasks.update(pause.subtask_ids)
                progress.open_pause = None
                progress.answered = set()
        elif operation in ("pause_expired", "task_cancelled"):
            progress.open_pause = None
            progress.answered = set()
    return progress


def _group_subtasks(phase: Phase) -> list[list[Subtask]]:
    """Split a phase into dispatch groups.

    Consecutive subtasks that run in parallel share a group; every other
    subtask is a group of one.
    """
    groups: list[list[Subtask]] = []
    for subtask in phase.subtasks:
        if phase.runs_in_parallel(subtask) and groups and phase.runs_in_parallel(groups[-1][-1]):
            groups[-1].append(subtask)
        else:
            groups.append([subtask])
    return groups


def _completeness(template: TaskTemplate, done_subtasks: set[str]) -> int:
    subtask_ids = [s.id for phase in template.phases for s in phase.subtasks]
    if not subtask_ids:
        return 0
    finished = sum(1 for subtask_id in subtask_ids if subtask_id in done_subtasks)
    # 100 is reserved for all_phases_completed
    return min(99, (100 * finished) // len(subtask_ids))


def _nest(path: str | None, values: dict[str, Any]) -> dict[str, Any]:
    if not path:
        return dict(values)
    nested: dict[str, Any] = dict(values)
    for key in reversed(path.split(".")):
        nested = {key: nested}
    return nested


def _deep_merge(base: dict[str, Any], update: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def normalize_response(response: dict[str, Any]) -> dict[str, Any]:
    """Turn the accepted UI payload shapes into a plain ``{field: value}`` mapping.

    Accepted shapes:
        {"field": "ein", "value": "12-3456789"}
        {"fields": [{"field": "ein", "value": "12-3456789"}, ...]}
        {"ein": "12-3456789", ...}

    Raises:
        InputValidationError: Malformed ``fields`` items.
    """
    if "field" in response and "value" in response:
        return {str(response["field"]): response["value"]}

    items = response.get("fields")
    if isinstance(items, list):
        values: dict[str, Any] = {}
        for item in items:
            if not isinstance(item, dict) or "field" not in item:
                raise InputValidationError("Each entry of 'fields' needs a 'field' key")
            values[str(item["field"])] = item.get("value")
        return values

    return dict(response)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class Orchestrator(Agent):
    """Runs task contexts through their phases.

    The orchestrator also implements the agent contract for the
    ``orchestrator`` role: ``process_request`` with instruction
    ``orchestrate`` runs the state machine for the given context.

    Attributes:
        task_service: Reads contexts and appends entries.
        agents: Registry resolving subtask roles to agents.
        event_bus: Receives UI_REQUEST, TASK_COMPLETED and ERROR events.
    """

    role = AgentRole.ORCHESTRATOR

    def __init__(
        self,
        task_service: TaskService,
        agents: AgentRegistry,
        event_bus: EventBus,
        settings: Settings | None = None,
    ) -> None:
        self.task_service = task_service
        self.agents = agents
        self.event_bus = event_bus
        self.settings = settings or default_settings
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._tasks: dict[str, asyncio.Task[OrchestrationOutcome | None]] = {}
        self._sweeper: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Entry and event helpers
    # ------------------------------------------------------------------

    def _lock_for(self, context_id: str) -> asyncio.Lock:
        lock = self._locks.get(context_id)
        if lock is None:
            lock = self._locks[context_id] = asyncio.Lock()
        return lock

    @staticmethod
    def _resolved_requests(
        context: TaskContext,
        requests: list[UIRequest],
        status: UIRequestStatus,
        response: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Requests of earlier batches plus ``requests`` stamped with their final status."""
        resolved = list(context.current_state.data.get("resolved_ui_requests") or [])
        for request in requests:
            update: dict[str, Any] = {"status": status}
            if response is not None:
                update["response"] = dict(response)
            resolved.append(request.model_copy(update=update).model_dump(mode="json"))
        return resolved

    async def _append(
        self,
        context_id: str,
        operation: str,
        data: dict[str, Any],
        reasoning: str,
        actor: Actor = ORCHESTRATOR_ACTOR,
        trigger_type: str = "orchestration",
        **details: Any,
    ) -> None:
        await self.task_service.append_entry(
            context_id,
            NewEntry(
                actor=actor,
                operation=operation,
                data=data,
                reasoning=reasoning,
                trigger=Trigger(type=trigger_type, source="orchestrator", details=details),
            ),
        )

    def _emit(self, context_id: str, event_type: StreamEventType, data: dict[str, Any]) -> None:
        self.event_bus.broadcast(
            context_id,
            StreamEvent(type=event_type, context_id=context_id, data=data),
        )

    @staticmethod
    def _terminal_outcome(context: TaskContext) -> OrchestrationOutcome:
        state = context.current_state
        if state.status == TaskStatus.COMPLETED:
            kind = OrchestrationState.COMPLETED
        elif state.status == TaskStatus.FAILED:
            kind = OrchestrationState.FAILED
        elif context.history and context.history[-1].operation == "pause_expired":
            kind = OrchestrationState.PAUSE_EXPIRED
        else:
            kind = OrchestrationState.CANCELLED
        return OrchestrationOutcome(
            state=kind,
            context_id=context.context_id,
            status=state.status,
            phase_id=state.phase,
            completeness=state.completeness,
            error=state.data.get("error"),
        )

    # ------------------------------------------------------------------
    # Template validation (INITIALIZING)
    # ------------------------------------------------------------------

    def _validated_template(self, context: TaskContext) -> TaskTemplate:
        try:
            template = TaskTemplate.model_validate(context.template_snapshot)
        except ValidationError as e:
            raise ConfigurationError(f"Template snapshot of {context.context_id} is invalid: {e}") from e

        validate_phases(template)
        for phase in template.phases:
            for subtask in phase.subtasks:
                if subtask.agent == AgentRole.ORCHESTRATOR:
                    raise ConfigurationError(
                        f"Subtask '{subtask.id}' cannot be assigned to the orchestrator"
                    )
                if subtask.agent not in self.agents:
                    raise AgentNotRegisteredError(
                        f"Subtask '{subtask.id}' needs unregistered agent '{subtask.agent}'"
                    )
        return template

    async def _load_template(self, context: TaskContext) -> TaskTemplate:
        try:
            return self._validated_template(context)
        except ConfigurationError as e:
            error = {"code": "configuration_error", "message": str(e)}
            logger.error(
                "orchestration_configuration_error",
                context_id=context.context_id,
                error=str(e),
            )
            await self._append(
                context.context_id,
                "task_failed",
                {"status": TaskStatus.FAILED.value, "error": error},
                f"Task template is not runnable: {e}",
            )
            self._emit(context.context_id, StreamEventType.ERROR, error)
            raise

    # ------------------------------------------------------------------
    # Agent dispatch
    # ------------------------------------------------------------------

    async def _invoke(
        self,
        agent: Agent,
        request: AgentRequest,
        context: TaskContext,
        timeout: float,
    ) -> AgentCompleted | AgentNeedsInput | AgentError:
        """Call an agent with timeout and transient-error retries.

        Never raises for agent failures: timeouts and exceptions come back as
        ``AgentError`` so they are recorded like any other agent error.
        """
        role = agent.role.value
        attempts = self.settings.agent_retry_attempts
        for attempt in range(attempts + 1):
            try:
                response = await asyncio.wait_for(
                    agent.process_request(request, context), timeout=timeout
                )
            except TimeoutError:
                logger.warning(
                    "agent_timeout",
                    context_id=context.context_id,
                    role=role,
                    timeout_seconds=timeout,
                )
                return AgentError(
                    code="agent_timeout",
                    message=f"Agent '{role}' did not answer within {timeout:g}s",
                    recoverable=True,
                )
            except TransientError as e:
                if attempt >= attempts:
                    logger.error(
                        "agent_call_failed",
                        context_id=context.context_id,
                        role=role,
                        attempts=attempt + 1,
                        error=str(e),
                    )
                    return AgentError(
                        code="agent_unavailable",
                        message=str(e) or f"Agent '{role}' is unavailable",
                        recoverable=True,
                    )
                delay = min(self.settings.agent_retry_delay_seconds * (2 ** attempt), 4.0)  # Cap backoff at 4s
                logger.warning(
                    "agent_call_retry",
                    context_id=context.context_id,
                    role=role,
                    attempt=attempt + 1,
                    max_retries=attempts,
                    retry_delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
                continue
            except Exception as e:
                logger.exception(
                    "agent_exception",
                    context_id=context.context_id,
                    role=role,
                    error=str(e),
                )
                return AgentError(
                    code="agent_exception",
                    message=f"{type(e).__name__}: {e}",
                )

            if isinstance(response, (AgentCompleted, AgentNeedsInput, AgentError)):
                return response
            try:
                return agent_response_adapter.validate_python(response)
            except ValidationError as e:
                logger.error(
                    "agent_invalid_response",
                    context_id=context.context_id,
                    role=role,
                    error=str(e),
                )
                return AgentError(
                    code="invalid_agent_response",
                    message=f"Agent '{role}' returned an invalid response",
                )
        raise AssertionError("unreachable")

    async def _dispatch(
        self, context: TaskContext, subtask: Subtask
    ) -> AgentCompleted | AgentNeedsInput | AgentError:
        agent = self.agents.get(subtask.agent)
        request = AgentRequest(instruction=subtask.instruction, data=dict(subtask.data))
        timeout = subtask.timeout_seconds or self.settings.agent_timeout_seconds
        logger.debug(
            "subtask_dispatched",
            context_id=context.context_id,
            subtask_id=subtask.id,
            role=subtask.agent.value,
            request_id=request.request_id,
        )
        return await self._invoke(agent, request, context, timeout)

    # ------------------------------------------------------------------
    # Phase execution (RUNNING_PHASE)
    # ------------------------------------------------------------------

    async def _run_phase(
        self,
        context_id: str,
        template: TaskTemplate,
        index: int,
        done: set[str],
    ) -> OrchestrationOutcome | None:
        """Run the unfinished subtasks of one phase.

        Returns:
            An outcome when the run stops in this phase (pause, cancellation),
            or None once ``phase_completed`` has been appended.

        Raises:
            TerminalAgentError: A required subtask failed. Every response of
                its dispatch group has been recorded by then.
        """
        phase = template.phases[index]
        pending: list[UIRequest] = []
        waiting: list[str] = []
        partial_data: dict[str, Any] = {}

        logger.info("phase_started", context_id=context_id, phase_id=phase.id)

        for group in _group_subtasks(phase):
            todo = [subtask for subtask in group if subtask.id not in done]
            if not todo:
                continue

            context = await self.task_service.require_task(context_id)
            if context.is_terminal:
                logger.info("orchestration_stopped_terminal", context_id=context_id, phase_id=phase.id)
                return self._terminal_outcome(context)

            if len(todo) == 1:
                responses = [await self._dispatch(context, todo[0])]
            else:
                responses = await asyncio.gather(
                    *(self._dispatch(context, subtask) for subtask in todo)
                )

            # A cancel may have landed while the agents were working
            latest = await self.task_service.require_task(context_id)
            if latest.is_terminal:
                logger.info(
                    "orchestration_responses_dropped",
                    context_id=context_id,
                    phase_id=phase.id,
                    subtask_ids=[subtask.id for subtask in todo],
                )
                return self._terminal_outcome(latest)

            failure: TerminalAgentError | None = None
            for subtask, response in zip(todo, responses, strict=True):
                agent_actor = Actor.agent(subtask.agent.value, self.agents.get(subtask.agent).version)
                details = {"phase_id": phase.id, "subtask_id": subtask.id}

                if isinstance(response, AgentCompleted):
                    done.add(subtask.id)
                    await self._append(
                        context_id,
                        "subtask_completed",
                        {
                            **response.data,
                            "status": TaskStatus.IN_PROGRESS.value,
                            "phase": phase.id,
                            "completeness": _completeness(template, done),
                        },
                        response.reasoning or f"{subtask.agent} completed {subtask.id}",
                        actor=agent_actor,
                        next_agent=response.next_agent,
                        **details,
                    )
                elif isinstance(response, AgentNeedsInput):
                    for ui_request in response.ui_requests:
                        pending.append(
                            ui_request.model_copy(
                                update={
                                    "agent_role": ui_request.agent_role or subtask.agent.value,
                                    "phase_id": phase.id,
                                    "subtask_id": subtask.id,
                                    "status": UIRequestStatus.PENDING,
                                }
                            )
                        )
                    waiting.append(subtask.id)
                    partial_data.update(response.data)
                    logger.info(
                        "subtask_needs_input",
                        context_id=context_id,
                        subtask_id=subtask.id,
                        ui_requests=len(response.ui_requests),
                    )
                else:
                    error = {
                        "code": response.code,
                        "message": response.message,
                        "recoverable": response.recoverable,
                        "subtask_id": subtask.id,
                        "phase_id": phase.id,
                    }
                    if subtask.required:
                        await self._append(
                            context_id,
                            "subtask_failed",
                            {**response.data, "error": error},
                            response.reasoning or f"Required subtask {subtask.id} failed: {response.message}",
                            actor=agent_actor,
                            **details,
                        )
                        if failure is None:
                            failure = TerminalAgentError(response.code, response.message, error)
                    else:
                        done.add(subtask.id)
                        await self._append(
                            context_id,
                            "subtask_skipped",
                            {
                                **response.data,
                                "skipped_error": error,
                                "status": TaskStatus.IN_PROGRESS.value,
                                "phase": phase.id,
                                "completeness": _completeness(template, done),
                            },
                            f"Optional subtask {subtask.id} skipped after error: {response.message}",
                            actor=agent_actor,
                            **details,
                        )

            if failure is not None:
                raise failure

        if pending:
            return await self._pause(context_id, template, phase, pending, waiting, partial_data, done)

        next_phase = template.phases[index + 1].id if index + 1 < len(template.phases) else phase.id
        await self._append(
            context_id,
            "phase_completed",
            {"phase": next_phase, "completeness": _completeness(template, done)},
            f"Phase '{phase.id}' completed",
            phase_id=phase.id,
        )
        logger.info("phase_completed", context_id=context_id, phase_id=phase.id)
        return None

    # ------------------------------------------------------------------
    # Pause points (AWAITING_USER_INPUT)
    # ------------------------------------------------------------------

    async def _optimize(
        self, context: TaskContext, requests: list[UIRequest]
    ) -> list[UIRequest]:
        """Let the UX optimisation agent merge the batch, if one is registered."""
        if AgentRole.UX_OPTIMIZATION not in self.agents or len(requests) < 2:
            return requests

        agent = self.agents.get(AgentRole.UX_OPTIMIZATION)
        response = await self._invoke(
            agent,
            AgentRequest(
                instruction="optimize_ui_requests",
                data={"ui_requests": [r.model_dump(mode="json") for r in requests]},
            ),
            context,
            self.settings.agent_timeout_seconds,
        )
        if not isinstance(response, AgentCompleted):
            logger.warning("ui_optimization_skipped", context_id=context.context_id)
            return requests
        try:
            optimized = [UIRequest.model_validate(r) for r in response.data.get("ui_requests", [])]
        except ValidationError as e:
            logger.warning("ui_optimization_invalid", context_id=context.context_id, error=str(e))
            return requests
        return optimized or requests

    async def _pause(
        self,
        context_id: str,
        template: TaskTemplate,
        phase: Phase,
        pending: list[UIRequest],
        waiting: list[str],
        partial_data: dict[str, Any],
        done: set[str],
    ) -> OrchestrationOutcome:
        context = await self.task_service.require_task(context_id)
        requests = await self._optimize(context, pending)

        timeouts = [
            r.response_config.timeout_seconds
            for r in requests
            if r.response_config.timeout_seconds is not None
        ]
        timeout = min(timeouts) if timeouts else self.settings.ui_request_timeout_seconds
        now = utc_now()
        fields: list[str] = []
        for request in requests:
            fields.extend(f for f in request.required_fields if f not in fields)

        pause = PausePoint(
            batch_id=f"batch_{uuid.uuid4().hex[:12]}",
            phase_id=phase.id,
            waiting_on=context.tenant_id,
            requests=requests,
            fields=fields,
            subtask_ids=waiting,
            created_at=now,
            expires_at=now + timedelta(seconds=timeout),
        )
        pause_data = pause.model_dump(mode="json")
        completeness = _completeness(template, done)

        await self._append(
            context_id,
            "ui_requests_batched",
            {
                **partial_data,
                "status": TaskStatus.BLOCKED.value,
                "phase": phase.id,
                "completeness": completeness,
                "pause": pause_data,
                "pending_ui_requests": pause_data["requests"],
            },
            f"Waiting on the user for {len(requests)} request(s) in phase '{phase.id}'",
            phase_id=phase.id,
            batch_id=pause.batch_id,
            subtask_ids=waiting,
        )
        self._emit(
            context_id,
            StreamEventType.UI_REQUEST,
            {
                "batch_id": pause.batch_id,
                "phase_id": phase.id,
                "requests": pause_data["requests"],
                "fields": fields,
                "expires_at": pause_data["expires_at"],
            },
        )
        logger.info(
            "orchestration_paused",
            context_id=context_id,
            phase_id=phase.id,
            batch_id=pause.batch_id,
            requests=len(requests),
        )
        return OrchestrationOutcome(
            state=OrchestrationState.AWAITING_USER_INPUT,
            context_id=context_id,
            status=TaskStatus.BLOCKED,
            phase_id=phase.id,
            completeness=completeness,
            batch=pause,
        )

    async def _expire_pause(
        self, context: TaskContext, pause: PausePoint, answered: set[str]
    ) -> OrchestrationOutcome:
        error = {
            "code": "pause_expired",
            "message": f"UI request batch {pause.batch_id} expired at {pause.expires_at.isoformat()}",
            "phase_id": pause.phase_id,
        }
        unanswered = [r for r in pause.requests if r.request_id not in answered]
        await self._append(
            context.context_id,
            "pause_expired",
            {
                "status": TaskStatus.CANCELLED.value,
                "pause": None,
                "pending_ui_requests": [],
                "resolved_ui_requests": self._resolved_requests(
                    context, unanswered, UIRequestStatus.EXPIRED
                ),
                "error": error,
            },
            f"No answer for batch {pause.batch_id} before it expired",
            trigger_type="timeout",
            phase_id=pause.phase_id,
            batch_id=pause.batch_id,
        )
        self._emit(context.context_id, StreamEventType.ERROR, error)
        logger.warning(
            "pause_expired",
            context_id=context.context_id,
            batch_id=pause.batch_id,
            expires_at=pause.expires_at.isoformat(),
        )
        return OrchestrationOutcome(
            state=OrchestrationState.PAUSE_EXPIRED,
            context_id=context.context_id,
            status=TaskStatus.CANCELLED,
            phase_id=pause.phase_id,
            completeness=context.current_state.completeness,
            error=error,
        )

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    async def _fail(
        self, context_id: str, failure: TerminalAgentError, completeness: int
    ) -> OrchestrationOutcome:
        error = {"code": failure.code, **failure.details}
        error.setdefault("message", str(failure))
        await self._append(
            context_id,
            "task_failed",
            {"status": TaskStatus.FAILED.value, "error": error},
            f"Task failed: {error['message']}",
            phase_id=failure.details.get("phase_id"),
            subtask_id=failure.details.get("subtask_id"),
        )
        self._emit(context_id, StreamEventType.ERROR, error)
        logger.error(
            "orchestration_failed",
            context_id=context_id,
            code=failure.code,
            phase_id=failure.details.get("phase_id"),
            subtask_id=failure.details.get("subtask_id"),
        )
        return OrchestrationOutcome(
            state=OrchestrationState.FAILED,
            context_id=context_id,
            status=TaskStatus.FAILED,
            phase_id=failure.details.get("phase_id"),
            completeness=completeness,
            error=error,
        )

    async def _complete(self, context_id: str, template: TaskTemplate) -> OrchestrationOutcome:
        """Check required goals, then append ``all_phases_completed``.

        Raises:
            TerminalAgentError: A required goal's success criteria are unmet.
        """
        context = await self.task_service.require_task(context_id)
        if context.is_terminal:
            # Cancelled while the last phase was running
            logger.info(
                "orchestration_completion_skipped",
                context_id=context_id,
                status=context.current_state.status.value,
            )
            return self._terminal_outcome(context)
        data = context.current_state.data
        unsatisfied = [
            goal.id
            for goal in template.goals.required()
            if not all(has_value(data, criterion) for criterion in goal.success_criteria)
        ]
        if unsatisfied:
            raise TerminalAgentError(
                "goals_unsatisfied",
                f"Required goals not met: {', '.join(unsatisfied)}",
                {
                    "message": f"Required goals not met: {', '.join(unsatisfied)}",
                    "goals": unsatisfied,
                },
            )

        last_phase = template.phases[-1].id if template.phases else None
        await self._append(
            context_id,
            "all_phases_completed",
            {"status": TaskStatus.COMPLETED.value, "phase": last_phase, "completeness": 100},
            f"All {len(template.phases)} phases completed and required goals satisfied",
        )
        final = await self.task_service.require_task(context_id)
        self._emit(
            context_id,
            StreamEventType.TASK_COMPLETED,
            {"completeness": 100, "data": final.current_state.data},
        )
        logger.info("orchestration_completed", context_id=context_id)
        return OrchestrationOutcome(
            state=OrchestrationState.COMPLETED,
            context_id=context_id,
            status=TaskStatus.COMPLETED,
            phase_id=last_phase,
            completeness=100,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def orchestrate(self, context_id: str) -> OrchestrationOutcome:
        """Advance a context as far as it can go.

        Terminal contexts are a no-op. Concurrent calls for the same context
        run one after the other. A context cancelled mid-run stops at the
        next write and reports its terminal outcome.

        Raises:
            ContextNotFoundError: Unknown context id.
            ConfigurationError: The template snapshot is not runnable (a
                ``task_failed`` entry has been recorded).
        """
        async with self._lock_for(context_id):
            try:
                return await self._orchestrate(context_id)
            except ContextTerminatedError as e:
                logger.info(
                    "orchestration_stopped_terminal",
                    context_id=context_id,
                    status=e.status,
                )
                return self._terminal_outcome(await self.task_service.require_task(context_id))

    async def _orchestrate(self, context_id: str) -> OrchestrationOutcome:
        context = await self.task_service.require_task(context_id)
        if context.is_terminal:
            logger.info(
                "orchestration_noop_terminal",
                context_id=context_id,
                status=context.current_state.status.value,
            )
            return self._terminal_outcome(context)

        template = await self._load_template(context)
        progress = _derive_progress(context)

        pause = progress.open_pause
        if pause is not None:
            if pause.is_expired(utc_now()):
                return await self._expire_pause(context, pause, progress.answered)
            return OrchestrationOutcome(
                state=OrchestrationState.AWAITING_USER_INPUT,
                context_id=context_id,
                status=context.current_state.status,
                phase_id=pause.phase_id,
                completeness=context.current_state.completeness,
                batch=pause,
            )

        logger.info(
            "orchestration_started",
            context_id=context_id,
            template_id=template.id,
            phases_done=len(progress.done_phases),
            subtasks_done=len(progress.done_subtasks),
        )

        done = progress.done_subtasks
        try:
            for index, phase in enumerate(template.phases):
                if phase.id in progress.done_phases:
                    continue
                outcome = await self._run_phase(context_id, template, index, done)
                if outcome is not None:
                    return outcome
            return await self._complete(context_id, template)
        except TerminalAgentError as e:
            return await self._fail(context_id, e, _completeness(template, done))

    async def submit_ui_response(
        self,
        context_id: str,
        request_id: str,
        response: dict[str, Any],
        action: UIAction = "submit",
        tenant_id: str | None = None,
        user_id: str | None = None,
    ) -> OrchestrationOutcome:
        """Record a user's answer to an open UI request and resume.

        Args:
            context_id: The paused context.
            request_id: A UIRequest id, or the batch id to answer every
                still-open request of the batch at once.
            response: Answer payload (see ``normalize_response``).
            action: ``submit``, ``skip`` (allowed only with ``allow_skip``)
                or ``cancel`` (cancels the task).
            tenant_id: When given, the context must belong to this tenant.
            user_id: Actor id recorded on the entry (defaults to the tenant).

        Returns:
            The outcome of the resumed run, or AWAITING_USER_INPUT while
            requests of the batch remain unanswered.

        Raises:
            ContextNotFoundError: Unknown context or another tenant's context.
            UIRequestNotFoundError: No open pause, or no open request with that id.
            PauseExpiredError: The pause expired (``pause_expired`` is recorded).
            InputValidationError: Missing required fields, or skip not allowed.
        """
        async with self._lock_for(context_id):
            context = await self.task_service.get_task(context_id, tenant_id)
            if context is None:
                raise ContextNotFoundError(context_id)

            progress = _derive_progress(context)
            pause = progress.open_pause
            if pause is None or context.is_terminal:
                raise UIRequestNotFoundError(f"Context {context_id} is not waiting on user input")

            if pause.is_expired(utc_now()):
                await self._expire_pause(context, pause, progress.answered)
                raise PauseExpiredError(
                    f"UI request batch {pause.batch_id} expired at {pause.expires_at.isoformat()}"
                )

            if request_id == pause.batch_id:
                targets = [r for r in pause.requests if r.request_id not in progress.answered]
            else:
                target = pause.find(request_id)
                if target is None or request_id in progress.answered:
                    raise UIRequestNotFoundError(
                        f"No open UI request {request_id} on context {context_id}"
                    )
                targets = [target]

            actor = Actor.user(user_id or tenant_id or pause.waiting_on)
            request_ids = [r.request_id for r in targets]

            if action == "cancel":
                open_requests = [r for r in pause.requests if r.request_id not in progress.answered]
                await self._append(
                    context_id,
                    "task_cancelled",
                    {
                        "status": TaskStatus.CANCELLED.value,
                        "pause": None,
                        "pending_ui_requests": [],
                        "resolved_ui_requests": self._resolved_requests(
                            context, open_requests, UIRequestStatus.CANCELLED
                        ),
                    },
                    "User cancelled the task from a UI request",
                    actor=actor,
                    trigger_type="user_action",
                    batch_id=pause.batch_id,
                    request_ids=request_ids,
                    action=action,
                )
                self._emit(
                    context_id,
                    StreamEventType.ERROR,
                    {"code": "task_cancelled", "message": "Cancelled by the user"},
                )
                logger.info("task_cancelled", context_id=context_id, source="ui_response")
                return OrchestrationOutcome(
                    state=OrchestrationState.CANCELLED,
                    context_id=context_id,
                    status=TaskStatus.CANCELLED,
                    phase_id=pause.phase_id,
                    completeness=context.current_state.completeness,
                )

            merged: dict[str, Any] = {}
            if action == "skip":
                blocked = [r.request_id for r in targets if not r.response_config.allow_skip]
                if blocked:
                    raise InputValidationError(
                        f"UI request(s) cannot be skipped: {', '.join(blocked)}"
                    )
            elif action == "submit":
                values = normalize_response(response)
                reserved = sorted(WELL_KNOWN_STATE_KEYS & values.keys())
                if reserved:
                    raise InputValidationError(
                        f"Response may not set reserved keys: {', '.join(reserved)}",
                        fields=reserved,
                    )
                missing = [
                    f
                    for r in targets
                    for f in r.required_fields
                    if _is_blank(values.get(f))
                ]
                if missing:
                    raise InputValidationError(
                        f"Missing required fields: {', '.join(dict.fromkeys(missing))}",
                        fields=list(dict.fromkeys(missing)),
                    )
                for r in targets:
                    picked = {f: values[f] for f in r.fields if f in values}
                    merged = _deep_merge(merged, _nest(r.response_config.target_path, picked))
                declared = {f for r in targets for f in r.fields}
                extra = {k: v for k, v in values.items() if k not in declared}
                if extra:
                    # Undeclared answers are kept at the top level
                    logger.debug(
                        "ui_response_extra_fields",
                        context_id=context_id,
                        fields=sorted(extra),
                    )
                    merged = _deep_merge(merged, extra)
            else:
                raise InputValidationError(f"Unknown UI action '{action}'")

            answered = progress.answered | set(request_ids)
            remaining = [r for r in pause.requests if r.request_id not in answered]
            fully_answered = not remaining

            data: dict[str, Any] = {
                **merged,
                "status": (TaskStatus.IN_PROGRESS if fully_answered else TaskStatus.BLOCKED).value,
                "pending_ui_requests": [r.model_dump(mode="json") for r in remaining],
                "resolved_ui_requests": self._resolved_requests(
                    context, targets, UIRequestStatus.RESPONDED, response
                ),
            }
            if fully_answered:
                data["pause"] = None

            await self._append(
                context_id,
                "ui_response_submitted",
                data,
                f"User {'skipped' if action == 'skip' else 'answered'} "
                f"{len(request_ids)} UI request(s) of batch {pause.batch_id}",
                actor=actor,
                trigger_type="user_action",
                batch_id=pause.batch_id,
                phase_id=pause.phase_id,
                request_ids=request_ids,
                action=action,
            )
            logger.info(
                "ui_response_submitted",
                context_id=context_id,
                batch_id=pause.batch_id,
                request_ids=request_ids,
                action=action,
                fully_answered=fully_answered,
            )

            if not fully_answered:
                return OrchestrationOutcome(
                    state=OrchestrationState.AWAITING_USER_INPUT,
                    context_id=context_id,
                    status=TaskStatus.BLOCKED,
                    phase_id=pause.phase_id,
                    completeness=context.current_state.completeness,
                    batch=pause.model_copy(update={"requests": remaining}),
                )

        return await self.orchestrate(context_id)

    async def cancel(
        self,
        context_id: str,
        reason: str = "Cancelled by the user",
        tenant_id: str | None = None,
    ) -> OrchestrationOutcome:
        """Cancel a context. Terminal contexts are left untouched.

        Does not wait for an in-flight run: the run stops at its next write,
        which the task service refuses once the context is cancelled.
        """
        context = await self.task_service.get_task(context_id, tenant_id)
        if context is None:
            raise ContextNotFoundError(context_id)
        if context.is_terminal:
            logger.info("cancel_noop_terminal", context_id=context_id)
            return self._terminal_outcome(context)

        data: dict[str, Any] = {
            "status": TaskStatus.CANCELLED.value,
            "pause": None,
            "pending_ui_requests": [],
        }
        progress = _derive_progress(context)
        if progress.open_pause is not None:
            open_requests = [
                r for r in progress.open_pause.requests if r.request_id not in progress.answered
            ]
            data["resolved_ui_requests"] = self._resolved_requests(
                context, open_requests, UIRequestStatus.CANCELLED
            )
        try:
            await self._append(
                context_id, "task_cancelled", data, reason, trigger_type="user_action"
            )
        except ContextTerminatedError:
            # Ended between the read above and the write
            logger.info("cancel_noop_terminal", context_id=context_id)
            return self._terminal_outcome(await self.task_service.require_task(context_id))
        self._emit(
            context_id,
            StreamEventType.ERROR,
            {"code": "task_cancelled", "message": reason},
        )
        logger.info("task_cancelled", context_id=context_id, reason=reason)
        return OrchestrationOutcome(
            state=OrchestrationState.CANCELLED,
            context_id=context_id,
            status=TaskStatus.CANCELLED,
            phase_id=context.current_state.phase,
            completeness=context.current_state.completeness,
        )

    async def _run_in_background(self, context_id: str) -> OrchestrationOutcome | None:
        try:
            return await self.orchestrate(context_id)
        except asyncio.CancelledError:
            logger.info("orchestration_task_cancelled", context_id=context_id)
            raise
        except Exception as e:
            logger.exception(
                "background_orchestration_failed",
                context_id=context_id,
                error=str(e),
            )
            return None

    def start(self, context_id: str) -> asyncio.Task[OrchestrationOutcome | None]:
        """Schedule ``orchestrate`` in the background.

        Returns the running task for the context if one is already active.
        """
        existing = self._tasks.get(context_id)
        if existing is not None and not existing.done():
            return existing

        background_task = asyncio.create_task(
            self._run_in_background(context_id), name=f"orchestrate_{context_id}"
        )
        self._tasks[context_id] = background_task

        # Clean up task reference when it completes
        def _remove_task(
            t: asyncio.Task[OrchestrationOutcome | None], cid: str = context_id
        ) -> None:
            if self._tasks.get(cid) is t:
                self._tasks.pop(cid, None)

        background_task.add_done_callback(_remove_task)
        return background_task

    def active_runs(self) -> list[str]:
        return [cid for cid, task in self._tasks.items() if not task.done()]

    async def shutdown(self) -> None:
        """Cancel the expiry sweep and every background run, then wait for them to unwind."""
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper

        tasks = list(self._tasks.items())
        self._tasks.clear()
        for context_id, task in tasks:
            if not task.done():
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            logger.debug("orchestration_task_stopped", context_id=context_id)
        logger.info("orchestrator_shutdown", cancelled=len(tasks))

    async def expire_overdue_pauses(self) -> list[str]:
        """Record ``pause_expired`` on every blocked context whose batch has expired.

        Returns:
            Ids of the contexts that were expired.
        """
        now = utc_now()
        expired: list[str] = []
        for context in await self.task_service.list_tasks(None, limit=10_000):
            if context.current_state.status != TaskStatus.BLOCKED:
                continue
            pause = _derive_progress(context).open_pause
            if pause is None or not pause.is_expired(now):
                continue
            try:
                outcome = await self.orchestrate(context.context_id)
            except ConfigurationError as e:
                logger.warning(
                    "pause_expiry_failed",
                    context_id=context.context_id,
                    error=str(e),
                )
                continue
            if outcome.state == OrchestrationState.PAUSE_EXPIRED:
                expired.append(context.context_id)

        if expired:
            logger.info("pauses_expired", count=len(expired), context_ids=expired)
        return expired

    def start_expiry_sweep(self, interval_seconds: float) -> asyncio.Task[None]:
        """Run ``expire_overdue_pauses`` every ``interval_seconds`` until shutdown."""
        if self._sweeper is not None and not self._sweeper.done():
            return self._sweeper

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval_seconds)
                try:
                    await self.expire_overdue_pauses()
                except Exception as e:
                    logger.exception("pause_expiry_sweep_failed", error=str(e))

        self._sweeper = asyncio.create_task(_loop(), name="pause_expiry_sweep")
        logger.info("pause_expiry_sweep_started", interval_seconds=interval_seconds)
        return self._sweeper

    async def recover_interrupted_tasks(self) -> list[str]:
        """Resume contexts left mid-run by a previous process.

        Blocked contexts whose pause expired while the process was down are
        expired first. Every other non-terminal, non-blocked context gets a
        ``task_recovered`` entry and a background run. Blocked contexts with
        a live pause keep waiting on the user.

        Returns:
            Ids of the contexts that were expired or scheduled for resumption.
        """
        recovered = await self.expire_overdue_pauses()
        for context in await self.task_service.list_tasks(None, limit=10_000):
            status = context.current_state.status
            if context.is_terminal or status == TaskStatus.BLOCKED:
                continue
            try:
                await self._append(
                    context.context_id,
                    "task_recovered",
                    {},
                    f"Resuming {status.value} task after restart",
                    trigger_type="startup",
                    last_sequence_number=context.current_state.last_sequence_number,
                )
            except ContextTerminatedError:
                continue
            self.start(context.context_id)
            recovered.append(context.context_id)

        logger.info("tasks_recovered", count=len(recovered), context_ids=recovered)
        return recovered

    async def process_request(
        self, request: AgentRequest, context: TaskContext
    ) -> AgentCompleted | AgentNeedsInput | AgentError:
        """Agent-contract entry point for the orchestrator role."""
        if request.instruction not in ("orchestrate", "resume"):
            return AgentError(
                code="unsupported_instruction",
                message=f"Orchestrator cannot handle '{request.instruction}'",
            )

        outcome = await self.orchestrate(context.context_id)
        summary = outcome.model_dump(mode="json", exclude={"batch"})
        if outcome.state == OrchestrationState.AWAITING_USER_INPUT and outcome.batch:
            return AgentNeedsInput(
                ui_requests=outcome.batch.requests,
                data={"orchestration": summary},
                reasoning=f"Waiting on user input in phase '{outcome.phase_id}'",
            )
        if outcome.state == OrchestrationState.COMPLETED:
            return AgentCompleted(
                data={"orchestration": summary},
                reasoning="All phases completed",
            )
        error = outcome.error or {}
        return AgentError(
            code=str(error.get("code", outcome.state.value)),
            message=str(error.get("message", f"Orchestration ended in {outcome.state.value}")),
            data={"orchestration": summary},
        )
