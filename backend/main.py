"""FastAPI application entry point for the orchestration backend.

This module initializes the FastAPI application with all middleware,
routers, exception handlers and lifespan wiring configured.

Usage:
    uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agents.client import AgentClient
from api.errors import register_exception_handlers
from api.routes import router, set_orchestration_manager
from api.webhooks import router as webhook_router
from api.websocket import set_event_hub, websocket_router
from config import configure_logging, settings
from events import EventHub
from models.database import OrchestrationStore
from orchestration_manager import OrchestrationManager
from supervisor import TaskSupervisor

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Builds the store, agent client, event hub, supervisor and manager on
    startup; on shutdown stops background polls first, then closes the
    client and every open connection.

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
        polling_enabled=settings.polling_enabled,
        webhooks_enabled=settings.webhook_url is not None,
    )
    if not settings.agent_api_key:
        logger.warning("agent_api_key_missing")

    store = OrchestrationStore(settings.database_path)
    await store.init()

    agent_client = AgentClient(
        api_key=settings.agent_api_key,
        base_url=settings.agent_api_base_url,
        timeout=settings.agent_request_timeout_seconds,
    )
    event_hub = EventHub()
    supervisor = TaskSupervisor()
    manager = OrchestrationManager(store, agent_client, event_hub, supervisor)

    set_orchestration_manager(manager)
    set_event_hub(event_hub)

    # Store on app.state for access
    app.state.orchestration_manager = manager
    app.state.event_hub = event_hub

    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    await supervisor.shutdown()
    await agent_client.close()
    await event_hub.close()
    set_orchestration_manager(None)
    set_event_hub(None)

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="Feature Orchestrator",
    description="Backend API that turns feature requests into clarified, "
    "planned and executed coding-agent work.",
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
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

register_exception_handlers(app)

# Include HTTP routes
app.include_router(router, tags=["orchestrations"])
app.include_router(webhook_router, tags=["webhooks"])

# Include WebSocket routes
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint that points at the API documentation."""
    return {
        "message": "Feature Orchestrator API",
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
