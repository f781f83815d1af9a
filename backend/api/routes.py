"""HTTP API routes for the orchestration backend.

This module defines the endpoints for repositories, orchestrations and
health checks. Inbound agent webhooks live in webhooks.py and real-time
events are handled via WebSocket in websocket.py.

Domain errors raised by the manager propagate to the central handlers in
errors.py; routes do not translate them.
"""

import time
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Response, status

from models.schemas import (
    CreateOrchestrationRequest,
    HealthResponse,
    LinkRepositoryRequest,
    OrchestrationDetailResponse,
    OrchestrationResponse,
    RepositoryResponse,
    SubmitAnswersRequest,
)
from orchestration_manager import OrchestrationManager

logger = structlog.get_logger(__name__)

router = APIRouter()


# Orchestration manager dependency (set during application startup)
_orchestration_manager: OrchestrationManager | None = None


def set_orchestration_manager(manager: OrchestrationManager | None) -> None:
    """Set the orchestration manager instance for the routes.

    This should be called during application startup to inject the manager
    dependency.

    Args:
        manager: The OrchestrationManager instance to use for all routes.
    """
    global _orchestration_manager
    _orchestration_manager = manager
    logger.info("orchestration_manager_configured", configured=manager is not None)


def get_orchestration_manager() -> OrchestrationManager:
    """Get the orchestration manager instance.

    Raises:
        RuntimeError: If the manager has not been configured.
    """
    if _orchestration_manager is None:
        logger.error("orchestration_manager_not_configured")
        raise RuntimeError(
            "OrchestrationManager not configured. "
            "Call set_orchestration_manager() during startup."
        )
    return _orchestration_manager


def get_user_id(
    x_user_id: Annotated[str | None, Header(description="Authenticated user id")] = None,
) -> str:
    """Resolve the caller's identity from the ``X-User-Id`` header."""
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id.strip()


UserId = Annotated[str, Depends(get_user_id)]
Manager = Annotated[OrchestrationManager, Depends(get_orchestration_manager)]
OrchestrationId = Annotated[str, Path(description="The orchestration ID")]


# -----------------------------------------------------------------------------
# Repositories
# -----------------------------------------------------------------------------


@router.post(
    "/api/repositories",
    response_model=RepositoryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Link a repository",
    description="Link a code repository to the current user.",
)
async def link_repository(
    request: LinkRepositoryRequest,
    user_id: UserId,
    manager: Manager,
) -> RepositoryResponse:
    repository = await manager.link_repository(
        user_id,
        provider=request.provider,
        name=request.name,
        full_name=request.full_name,
        default_branch=request.default_branch,
        clone_url=request.clone_url,
        alias=request.alias,
    )
    return repository.to_response()


@router.get(
    "/api/repositories",
    response_model=list[RepositoryResponse],
    summary="List repositories",
    description="List repositories linked to the current user.",
)
async def list_repositories(user_id: UserId, manager: Manager) -> list[RepositoryResponse]:
    repositories = await manager.list_repositories(user_id)
    return [repository.to_response() for repository in repositories]


# -----------------------------------------------------------------------------
# Orchestrations
# -----------------------------------------------------------------------------


@router.post(
    "/api/orchestrations",
    response_model=OrchestrationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a feature request",
    description="Create an orchestration and launch its orchestrator agent.",
)
async def create_orchestration(
    request: CreateOrchestrationRequest,
    user_id: UserId,
    manager: Manager,
) -> OrchestrationResponse:
    """Create a new orchestration.

    Returns:
        The orchestration, normally in COLLECTING_REQUIREMENTS.
    """
    orchestration = await manager.create_orchestration(
        user_id=user_id,
        repository_id=request.repository_id,
        title=request.title,
        description=request.description,
        branch=request.branch,
    )
    return orchestration.to_response()


@router.get(
    "/api/orchestrations",
    response_model=list[OrchestrationResponse],
    summary="List orchestrations",
    description="List the current user's orchestrations, newest first.",
)
async def list_orchestrations(
    user_id: UserId,
    manager: Manager,
    limit: Annotated[int, Query(description="Maximum items to return", ge=1, le=200)] = 50,
    offset: Annotated[int, Query(description="Items to skip", ge=0)] = 0,
) -> list[OrchestrationResponse]:
    orchestrations = await manager.list_orchestrations(user_id, limit=limit, offset=offset)
    return [orchestration.to_response() for orchestration in orchestrations]


@router.get(
    "/api/orchestrations/{orchestration_id}",
    response_model=OrchestrationDetailResponse,
    summary="Get orchestration details",
    description="Get an orchestration with its agent runs and messages.",
)
async def get_orchestration(
    orchestration_id: OrchestrationId,
    user_id: UserId,
    manager: Manager,
) -> OrchestrationDetailResponse:
    detail = await manager.get_orchestration_detail(orchestration_id, user_id)
    return OrchestrationDetailResponse(
        **detail.orchestration.to_response().model_dump(),
        agent_runs=[run.to_response() for run in detail.runs],
        messages=[message.to_response() for message in detail.messages],
    )


@router.delete(
    "/api/orchestrations/{orchestration_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete an orchestration",
    description="Cancel live agents, then delete the orchestration and its history.",
)
async def delete_orchestration(
    orchestration_id: OrchestrationId,
    user_id: UserId,
    manager: Manager,
) -> Response:
    await manager.delete_orchestration(orchestration_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/api/orchestrations/{orchestration_id}/answers",
    response_model=OrchestrationResponse,
    summary="Answer follow-up questions",
    description="Forward answers to the orchestrator agent and resume planning.",
)
async def submit_answers(
    orchestration_id: OrchestrationId,
    request: SubmitAnswersRequest,
    user_id: UserId,
    manager: Manager,
) -> OrchestrationResponse:
    orchestration = await manager.submit_answers(
        orchestration_id, user_id, request.as_pairs()
    )
    return orchestration.to_response()


@router.post(
    "/api/orchestrations/{orchestration_id}/accept-plan",
    response_model=OrchestrationResponse,
    summary="Accept the plan",
    description="Approve the plan and start the execution agents.",
)
async def accept_plan(
    orchestration_id: OrchestrationId,
    user_id: UserId,
    manager: Manager,
) -> OrchestrationResponse:
    orchestration = await manager.accept_plan(orchestration_id, user_id)
    return orchestration.to_response()


@router.post(
    "/api/orchestrations/{orchestration_id}/cancel",
    response_model=OrchestrationResponse,
    summary="Cancel an orchestration",
    description="Cancel every live agent and mark the orchestration cancelled.",
)
async def cancel_orchestration(
    orchestration_id: OrchestrationId,
    user_id: UserId,
    manager: Manager,
) -> OrchestrationResponse:
    orchestration = await manager.cancel_orchestration(orchestration_id, user_id)
    return orchestration.to_response()


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check with connection and background task counts.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint.

    Reports unhealthy until the orchestration manager has been configured.
    """
    try:
        manager = get_orchestration_manager()
    except RuntimeError:
        return HealthResponse(status="unhealthy", timestamp=time.time())

    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        connected_clients=manager.event_hub.connection_count,
        background_tasks=manager.supervisor.active_count,
    )
