"""FastAPI application entry point for the onboarding engine.

This module initializes the FastAPI application with all middleware,
routers, and lifecycle handlers configured. Every collaborator (event
store, template registry, event bus, task service, agent registry,
orchestrator) is built once in ``lifespan`` and injected by reference.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agents import build_default_registry
from api.routes import router, set_engine
from api.streaming import set_stream_dependencies, stream_router
from config import configure_logging, settings
from events import get_event_bus
from models.database import create_event_store
from orchestrator import Orchestrator
from task_service import TaskService
from template_registry import TemplateRegistry

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Builds the engine, optionally resumes interrupted tasks, and cancels
    outstanding orchestration runs on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        database_path=settings.database_path,
        templates_dir=settings.templates_dir,
    )

    store = create_event_store(settings.database_path)
    await store.init()

    event_bus = get_event_bus()
    templates = TemplateRegistry(settings.templates_dir)
    task_service = TaskService(store, templates, event_bus)

    agent_registry = build_default_registry()
    orchestrator = Orchestrator(task_service, agent_registry, event_bus, settings)
    agent_registry.register(orchestrator)

    # Register engine with routes
    set_engine(task_service, orchestrator, event_bus)
    set_stream_dependencies(task_service, event_bus)

    # Store on app.state for access
    app.state.store = store
    app.state.task_service = task_service
    app.state.orchestrator = orchestrator
    app.state.event_bus = event_bus

    if settings.recover_tasks_on_startup:
        await orchestrator.recover_interrupted_tasks()
    if settings.pause_sweep_interval_seconds > 0:
        orchestrator.start_expiry_sweep(settings.pause_sweep_interval_seconds)

    logger.info(
        "application_started",
        agent_roles=[role.value for role in agent_registry.roles()],
        templates=templates.list_templates(),
    )

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await orchestrator.shutdown()
    await store.close()
    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Onboarding Engine",
    description="Multi-agent business onboarding backend built on event-sourced task contexts.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Include HTTP routes
app.include_router(router, tags=["tasks"])

# Include SSE routes
app.include_router(stream_router, tags=["streaming"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint that points to API documentation.

    Returns:
        A welcome message with documentation URL.
    """
    return {
        "message": "Onboarding Engine API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
