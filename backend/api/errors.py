"""Central mapping from domain errors to HTTP responses.

Request handlers let domain errors propagate; the handlers registered here
turn them into ``{"detail": ...}`` JSON responses.
"""

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from agents.client import AgentApiError
from errors import OrchestrationError

logger = structlog.get_logger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Register the domain exception handlers on ``app``."""

    @app.exception_handler(OrchestrationError)
    async def orchestration_error_handler(
        request: Request, exc: OrchestrationError
    ) -> JSONResponse:
        """Handle domain errors with the status code their class carries."""
        logger.warning(
            "request_rejected",
            path=request.url.path,
            error_type=type(exc).__name__,
            status_code=exc.status_code,
            detail=exc.message,
        )
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(AgentApiError)
    async def agent_api_error_handler(request: Request, exc: AgentApiError) -> JSONResponse:
        """Handle agent service failures with 502 Bad Gateway."""
        logger.error(
            "agent_service_error",
            path=request.url.path,
            upstream_status=exc.status_code,
            body=exc.body[:500],
        )
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={
                "detail": "Agent service request failed",
                "upstreamStatus": exc.status_code,
            },
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle anything else with a generic 500."""
        logger.error(
            "unhandled_request_error",
            path=request.url.path,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )
