"""HTTP API routes for the onboarding engine.

This module defines the HTTP endpoints for task creation, inspection, UI
responses, cancellation and health checks. Real-time events are served as
server-sent events by streaming.py.

Every task route is tenant-scoped: the tenant comes from the ``X-Tenant-ID``
header (401 when missing) and contexts of other tenants answer 404.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Path, Query, status

from errors import (
    ConfigurationError,
    ContextNotFoundError,
    ContextTerminatedError,
    HistoryIntegrityError,
    InputValidationError,
    OnboardingError,
    PauseExpiredError,
    TemplateNotFoundError,
    TransientError,
    UIRequestNotFoundError,
)
from models.context import ContextEntry, TaskContext
from models.schemas import (
    CancelTaskRequest,
    CreateTaskRequest,
    CreateTaskResponse,
    HealthResponse,
    TaskSummaryResponse,
    UIResponseRequest,
)
from orchestrator import OrchestrationOutcome

if TYPE_CHECKING:
    from events import EventBus
    from orchestrator import Orchestrator
    from task_service import TaskService

logger = structlog.get_logger(__name__)

router = APIRouter()

# Most specific classes first: the first isinstance match wins.
_ERROR_STATUS: list[tuple[type[OnboardingError], int]] = [
    (TemplateNotFoundError, status.HTTP_404_NOT_FOUND),
    (ContextNotFoundError, status.HTTP_404_NOT_FOUND),
    (UIRequestNotFoundError, status.HTTP_404_NOT_FOUND),
    (PauseExpiredError, status.HTTP_410_GONE),
    (ContextTerminatedError, status.HTTP_409_CONFLICT),
    (ConfigurationError, 422),
    (InputValidationError, 422),
    (HistoryIntegrityError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (TransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
]

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def to_http_exception(error: OnboardingError) -> HTTPException:
    """Map an engine error onto an HTTPException."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _ERROR_STATUS:
        if isinstance(error, error_type):
            status_code = code
            break

    detail: str | dict[str, object] = str(error)
    if isinstance(error, InputValidationError) and error.fields:
        detail = {"message": str(error), "fields": error.fields}

    log = logger.error if status_code >= 500 else logger.warning
    log("request_failed", error_type=type(error).__name__, status_code=status_code, error=str(error))
    return HTTPException(status_code=status_code, detail=detail)


def require_tenant(
    x_tenant_id: Annotated[str | None, Header(alias="X-Tenant-ID")] = None,
) -> str:
    """Resolve the calling tenant from the ``X-Tenant-ID`` header.

    Raises:
        HTTPException: 401 if the header is missing or blank.
    """
    if x_tenant_id is None or not x_tenant_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Tenant-ID header",
        )
    return x_tenant_id.strip()


# Engine dependencies (set during application startup)
_task_service: TaskService | None = None
_orchestrator: Orchestrator | None = None
_event_bus: EventBus | None = None


def set_engine(task_service: TaskService, orchestrator: Orchestrator, event_bus: EventBus) -> None:
    """Set the engine instances for the routes.

    This should be called during application startup to inject the task
    service, orchestrator and event bus.
    """
    global _task_service, _orchestrator, _event_bus
    _task_service = task_service
    _orchestrator = orchestrator
    _event_bus = event_bus
    logger.info("engine_configured")


def get_task_service() -> TaskService:
    """Get the task service instance.

    Raises:
        RuntimeError: If the engine has not been configured.
    """
    if _task_service is None:
        logger.error("engine_not_configured")
        raise RuntimeError("TaskService not configured. Call set_engine() during startup.")
    return _task_service


def get_orchestrator() -> Orchestrator:
    """Get the orchestrator instance.

    Raises:
        RuntimeError: If the engine has not been configured.
    """
    if _orchestrator is None:
        logger.error("engine_not_configured")
        raise RuntimeError("Orchestrator not configured. Call set_engine() during startup.")
    return _orchestrator


TenantId = Annotated[str, Depends(require_tenant)]
ContextId = Annotated[str, Path(description="The context ID")]


@router.post(
    "/api/tasks",
    response_model=CreateTaskResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new task",
    description="Create a task context from a template and start orchestrating it.",
)
async def create_task(request: CreateTaskRequest, tenant_id: TenantId) -> CreateTaskResponse:
    """Create a task context and start orchestration in the background.

    Returns:
        CreateTaskResponse with context_id, stream_url and initial status.

    Raises:
        HTTPException: 404 for an unknown template, 422 for invalid input,
            503 when the store is unavailable.
    """
    task_service = get_task_service()
    orchestrator = get_orchestrator()

    try:
        context = await task_service.create(
            request.template_id,
            tenant_id,
            request.initial_data,
            version=request.version,
            metadata=request.metadata,
        )
    except OnboardingError as e:
        raise to_http_exception(e) from e

    orchestrator.start(context.context_id)

    return CreateTaskResponse(
        context_id=context.context_id,
        status=context.current_state.status,
        stream_url=f"/api/tasks/{context.context_id}/stream",
    )


@router.get(
    "/api/tasks",
    response_model=list[TaskSummaryResponse],
    summary="List tasks",
    description="List the calling tenant's task contexts, newest first.",
)
async def list_tasks(
    tenant_id: TenantId,
    limit: Annotated[int, Query(description="Maximum tasks to return", ge=1, le=200)] = 50,
    offset: Annotated[int, Query(description="Tasks to skip", ge=0)] = 0,
) -> list[TaskSummaryResponse]:
    """List task summaries for the tenant."""
    try:
        contexts = await get_task_service().list_tasks(tenant_id, limit, offset)
    except OnboardingError as e:
        raise to_http_exception(e) from e

    return [
        TaskSummaryResponse(
            context_id=context.context_id,
            task_template_id=context.task_template_id,
            status=context.current_state.status,
            phase=context.current_state.phase,
            completeness=context.current_state.completeness,
            created_at=context.created_at,
            last_updated=context.current_state.last_updated,
            event_count=len(context.history),
        )
        for context in contexts
    ]


@router.get(
    "/api/tasks/{context_id}",
    response_model=TaskContext,
    summary="Get task details",
    description="Full context: template snapshot, history and computed state.",
)
async def get_task(context_id: ContextId, tenant_id: TenantId) -> TaskContext:
    """Get a context with its state recomputed from history.

    Raises:
        HTTPException: 404 if the context is unknown or owned by another tenant.
    """
    try:
        context = await get_task_service().get_task(context_id, tenant_id)
    except OnboardingError as e:
        raise to_http_exception(e) from e

    if context is None:
        logger.warning("task_not_found", context_id=context_id, tenant_id=tenant_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task {context_id} not found",
        )
    return context


@router.get(
    "/api/tasks/{context_id}/events",
    response_model=list[ContextEntry],
    summary="Get task history",
    description="Ordered history entries of a context.",
)
async def get_task_events(context_id: ContextId, tenant_id: TenantId) -> list[ContextEntry]:
    """Return the ordered history of a context."""
    try:
        return await get_task_service().get_history(context_id, tenant_id)
    except OnboardingError as e:
        raise to_http_exception(e) from e


@router.post(
    "/api/tasks/{context_id}/ui-response",
    response_model=OrchestrationOutcome,
    summary="Answer a UI request",
    description="Submit, skip or cancel an open UI request; orchestration resumes when the batch is answered.",
)
async def submit_ui_response(
    context_id: ContextId,
    request: UIResponseRequest,
    tenant_id: TenantId,
) -> OrchestrationOutcome:
    """Hand a user's answer to the orchestrator.

    Raises:
        HTTPException: 404 for an unknown context or request, 410 for an
            expired pause, 422 for missing required fields.
    """
    try:
        outcome = await get_orchestrator().submit_ui_response(
            context_id,
            request.request_id,
            request.response,
            action=request.action,
            tenant_id=tenant_id,
            user_id=request.user_id,
        )
    except OnboardingError as e:
        raise to_http_exception(e) from e

    logger.info(
        "ui_response_handled",
        context_id=context_id,
        request_id=request.request_id,
        state=outcome.state.value,
    )
    return outcome


@router.post(
    "/api/tasks/{context_id}/cancel",
    response_model=OrchestrationOutcome,
    status_code=status.HTTP_200_OK,
    summary="Cancel a task",
    description="Cancel a task; already finished tasks are left unchanged.",
)
async def cancel_task(
    context_id: ContextId,
    tenant_id: TenantId,
    request: Annotated[CancelTaskRequest | None, Body()] = None,
) -> OrchestrationOutcome:
    """Cancel a task context.

    Raises:
        HTTPException: 404 if the context is unknown or owned by another tenant.
    """
    reason = request.reason if request is not None else CancelTaskRequest().reason
    try:
        return await get_orchestrator().cancel(context_id, reason, tenant_id=tenant_id)
    except OnboardingError as e:
        raise to_http_exception(e) from e


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with event store and event bus status.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint with engine status.

    Returns:
        HealthResponse with status, store availability and bus counters.
    """
    store_available = False
    active_runs = 0
    bus_stats: dict[str, object] = {}

    try:
        task_service = get_task_service()
        await task_service.store.get_record("__health_check__")
        store_available = True
        active_runs = len(get_orchestrator().active_runs())
        if _event_bus is not None:
            bus_stats = _event_bus.get_stats()
    except RuntimeError:
        # Engine not configured yet (e.g., during startup)
        pass
    except Exception as e:
        logger.warning("health_check_partial_failure", error=str(e))

    return HealthResponse(
        status="healthy" if store_available else "unhealthy",
        timestamp=time.time(),
        store_available=store_available,
        active_runs=active_runs,
        event_bus=bus_stats,
    )
