"""Inbound webhooks from the coding-agent service.

The signature is checked against the raw body before anything is parsed,
so a bad signature never mutates state or publishes events. Events for
unknown agents are acknowledged (200) to stop redelivery.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import ValidationError

from api.routes import get_orchestration_manager
from models.schemas import WebhookEvent
from orchestration_manager import OrchestrationManager
from reconciler import verify_signature

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post(
    "/api/webhooks/agents",
    status_code=status.HTTP_200_OK,
    summary="Agent service webhook",
    description="Signed status/message notifications from the coding-agent service.",
)
async def receive_agent_webhook(
    request: Request,
    manager: Annotated[OrchestrationManager, Depends(get_orchestration_manager)],
    x_webhook_signature: Annotated[str | None, Header()] = None,
    x_cursor_signature: Annotated[str | None, Header()] = None,
) -> dict[str, bool]:
    raw_body = await request.body()
    signature = x_webhook_signature or x_cursor_signature

    if not verify_signature(raw_body, signature, manager.config.webhook_secret):
        logger.warning(
            "webhook_signature_invalid",
            has_signature=signature is not None,
            body_bytes=len(raw_body),
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    try:
        event = WebhookEvent.model_validate_json(raw_body)
    except ValidationError as e:
        logger.warning("webhook_payload_invalid", errors=e.error_count())
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook payload",
        ) from e

    try:
        await manager.reconciler.handle_webhook(event)
    except Exception as e:
        logger.error(
            "webhook_processing_failed",
            event_id=event.id,
            event_type=event.type,
            external_agent_id=event.agent.id,
            error=str(e),
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook processing failed",
        ) from e

    return {"received": True}
