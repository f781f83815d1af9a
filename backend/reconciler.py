"""Webhook/poll reconciliation of external agent state.

Two ingestion paths feed the same handler (``AgentReconciler.apply_update``):

1. Push: signed webhooks from the agent service (``handle_webhook``)
2. Poll: a bounded loop querying the agent service (``poll_run``)

The handler looks the run up by external agent id, maps the external status
vocabulary onto AgentRunStatus, writes the status only when it changed (and
never out of a terminal status), appends new assistant messages, hands
structured-looking text to the orchestration manager, and publishes
``agent.status`` / ``agent.message`` events.
"""

import asyncio
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from agents.client import AgentApiError, AgentClient
from agents.schemas import looks_structured
from events.types import EventType
from models.database import OrchestrationStore
from models.entities import AgentMessage, AgentRun, new_id
from models.schemas import AgentRunStatus, AgentType, MessageRole, WebhookEvent

if TYPE_CHECKING:
    from orchestration_manager import OrchestrationManager

logger = structlog.get_logger(__name__)

SEEN_MESSAGES_KEY = "seenMessageIds"

_STATUS_MAP: dict[str, AgentRunStatus] = {
    "CREATING": AgentRunStatus.CREATING,
    "QUEUED": AgentRunStatus.QUEUED,
    "RUNNING": AgentRunStatus.RUNNING,
    "WAITING_FOR_USER": AgentRunStatus.WAITING_FOR_USER,
    "COMPLETED": AgentRunStatus.COMPLETED,
    "FINISHED": AgentRunStatus.COMPLETED,
    "FAILED": AgentRunStatus.FAILED,
    "ERROR": AgentRunStatus.FAILED,
    "CANCELLED": AgentRunStatus.CANCELLED,
    "CANCELED": AgentRunStatus.CANCELLED,
}

_MESSAGE_EVENTS = frozenset({"message.created", "plan.ready"})


class PollTimeoutError(Exception):
    """A poll loop exhausted its attempts without the run settling."""

    def __init__(self, run_id: str, attempts: int) -> None:
        super().__init__(f"Run '{run_id}' did not settle after {attempts} poll attempts")
        self.run_id = run_id
        self.attempts = attempts


def verify_signature(raw_body: bytes, signature: str | None, secret: str | None) -> bool:
    """Check an HMAC-SHA256 hex signature over the raw request body.

    A ``sha256=`` prefix on the signature is accepted. Missing signature or
    secret is always invalid.
    """
    if not signature or not secret:
        return False
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode(), provided.lower().encode())


def map_agent_status(raw: str | None) -> AgentRunStatus:
    """Map an external status onto AgentRunStatus (unknown -> RUNNING)."""
    if not raw:
        return AgentRunStatus.RUNNING
    return _STATUS_MAP.get(raw.strip().upper(), AgentRunStatus.RUNNING)


def normalize_event_type(raw: str) -> str:
    """Lowercase an event type and drop the ``agent.`` prefix."""
    event_type = raw.strip().lower()
    if event_type.startswith("agent."):
        event_type = event_type[len("agent."):]
    return event_type


def _message_from_data(data: Any, fallback_id: str | None) -> tuple[str | None, str] | None:
    """Pull ``(message_id, text)`` out of a webhook ``data`` field."""
    if data is None:
        return None
    if isinstance(data, str):
        return fallback_id, data
    if isinstance(data, dict):
        for key in ("text", "content", "message"):
            value = data.get(key)
            if isinstance(value, str):
                return data.get("id") or fallback_id, value
        # plan.ready may carry the structured payload itself
        return data.get("id") or fallback_id, json.dumps(data)
    return None


@dataclass
class ReconcileResult:
    """Outcome of one update for one run."""

    run: AgentRun
    status_changed: bool
    messages_ingested: int


class AgentReconciler:
    """Feeds external agent updates into the orchestration manager.

    Attributes:
        poll_interval_seconds: Delay between two poll ticks.
        poll_max_attempts: Ticks before ``poll_run`` raises PollTimeoutError.
    """

    def __init__(
        self,
        manager: "OrchestrationManager",
        store: OrchestrationStore,
        agent_client: AgentClient,
        poll_interval_seconds: float = 5.0,
        poll_max_attempts: int = 120,
    ) -> None:
        self.manager = manager
        self.store = store
        self.agent_client = agent_client
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_max_attempts = poll_max_attempts

    async def handle_webhook(self, event: WebhookEvent) -> ReconcileResult | None:
        """Process one verified webhook event.

        Returns:
            The reconcile result, or None if the agent is unknown.
        """
        event_type = normalize_event_type(event.type)
        raw_status = event.agent.status
        if raw_status is None and event_type in ("completed", "failed"):
            raw_status = event_type.upper()

        messages: list[tuple[str | None, str]] = []
        if event_type in _MESSAGE_EVENTS:
            message = _message_from_data(event.data, event.id)
            if message is not None:
                messages.append(message)

        logger.info(
            "webhook_received",
            event_type=event_type,
            event_id=event.id,
            external_agent_id=event.agent.id,
            status=raw_status,
        )
        return await self.apply_update(
            event.agent.id,
            raw_status,
            messages,
            raw_event=event.model_dump(mode="json", by_alias=True),
        )

    async def apply_update(
        self,
        external_agent_id: str,
        raw_status: str | None,
        messages: list[tuple[str | None, str]],
        raw_event: dict[str, Any] | None = None,
    ) -> ReconcileResult | None:
        """The single handler both ingestion paths converge on."""
        run = await self.store.get_run_by_external_id(external_agent_id)
        if run is None:
            logger.warning("reconcile_unknown_agent", external_agent_id=external_agent_id)
            return None
        orchestration = await self.store.get_orchestration(run.orchestration_id)
        if orchestration is None:
            return None

        new_status: AgentRunStatus | None = None
        if raw_status is not None:
            mapped = map_agent_status(raw_status)
            # An orchestrator that ends a turn before the plan is accepted is
            # waiting on the user, not done.
            if (
                run.agent_type == AgentType.ORCHESTRATOR
                and mapped == AgentRunStatus.COMPLETED
                and not orchestration.plan_accepted
            ):
                mapped = AgentRunStatus.WAITING_FOR_USER
            if mapped != run.status and not run.status.is_terminal:
                new_status = mapped

        seen: list[str] = list(run.metadata.get(SEEN_MESSAGES_KEY, []))
        ingested: list[AgentMessage] = []
        for message_id, text in messages:
            if not text.strip():
                continue
            if message_id is not None:
                if message_id in seen:
                    continue
                seen.append(message_id)
            ingested.append(
                AgentMessage(
                    id=new_id("msg"),
                    orchestration_id=run.orchestration_id,
                    agent_run_id=run.id,
                    role=MessageRole.ASSISTANT,
                    content=text,
                )
            )

        fields: dict[str, Any] = {}
        if new_status is not None:
            fields["status"] = new_status
        if raw_event is not None:
            fields["last_webhook_event"] = raw_event
        if len(seen) != len(run.metadata.get(SEEN_MESSAGES_KEY, [])):
            fields["metadata"] = {**run.metadata, SEEN_MESSAGES_KEY: seen}
            run.metadata = fields["metadata"]

        if fields or ingested:
            async with self.store.transaction() as tx:
                if fields:
                    await tx.update_run(run.id, **fields)
                for message in ingested:
                    await tx.append_message(message)

        if new_status is not None:
            logger.info(
                "agent_run_status_changed",
                run_id=run.id,
                external_agent_id=external_agent_id,
                previous=run.status.value,
                status=new_status.value,
            )
            run.status = new_status

        user_id = orchestration.user_id
        for message in ingested:
            await self.manager.publish(
                user_id,
                EventType.AGENT_MESSAGE,
                {
                    "orchestrationId": run.orchestration_id,
                    "agentRunId": run.id,
                    "messageId": message.id,
                    "role": message.role.value,
                    "content": message.content,
                },
            )
            if looks_structured(message.content):
                await self.manager.ingest_agent_output(run, message.content)

        if new_status is not None or ingested:
            await self.manager.publish(
                user_id,
                EventType.AGENT_STATUS,
                {
                    "orchestrationId": run.orchestration_id,
                    "agentRunId": run.id,
                    "externalAgentId": external_agent_id,
                    "status": run.status.value,
                },
            )

        if new_status is not None:
            await self.manager.handle_run_status_change(run, new_status)

        return ReconcileResult(
            run=run,
            status_changed=new_status is not None,
            messages_ingested=len(ingested),
        )

    async def poll_run(self, run_id: str, expect_new_message: bool = False) -> None:
        """Poll one run until it settles.

        Settled means the run is terminal or waiting for the user; in both
        cases the conversation is fetched and unseen assistant messages are
        ingested. With ``expect_new_message`` a settled run keeps being
        polled until at least one new assistant message arrives (used after
        a follow-up, when the agent may still report its previous turn).

        The loop also exits as soon as the owning orchestration is terminal.
        External errors are logged and the tick is retried.

        Raises:
            PollTimeoutError: If the run has not settled after
                ``poll_max_attempts`` ticks.
        """
        for attempt in range(1, self.poll_max_attempts + 1):
            run = await self.store.get_run(run_id)
            if run is None:
                logger.info("poll_run_gone", run_id=run_id)
                return
            orchestration = await self.store.get_orchestration(run.orchestration_id)
            if orchestration is None or orchestration.status.is_terminal:
                logger.info("poll_stopped_orchestration_terminal", run_id=run_id)
                return
            if run.status.is_terminal:
                return

            try:
                snapshot = await self.agent_client.get_agent(run.external_agent_id)
                mapped = map_agent_status(snapshot.status)
                settled = mapped.is_terminal or mapped == AgentRunStatus.WAITING_FOR_USER
                messages: list[tuple[str | None, str]] = []
                if settled:
                    conversation = await self.agent_client.get_conversation(
                        run.external_agent_id
                    )
                    messages = [
                        (m.id, m.text) for m in conversation if m.type == "assistant_message"
                    ]
                result = await self.apply_update(run.external_agent_id, snapshot.status, messages)
            except AgentApiError as e:
                logger.warning(
                    "poll_tick_failed",
                    run_id=run_id,
                    attempt=attempt,
                    status_code=e.status_code,
                )
                await asyncio.sleep(self.poll_interval_seconds)
                continue

            if result is None:
                return
            if settled and (
                not expect_new_message
                or result.messages_ingested > 0
                or result.run.status.is_terminal
            ):
                logger.info(
                    "poll_run_settled",
                    run_id=run_id,
                    status=result.run.status.value,
                    attempts=attempt,
                )
                return

            await asyncio.sleep(self.poll_interval_seconds)

        raise PollTimeoutError(run_id, self.poll_max_attempts)
