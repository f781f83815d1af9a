"""Orchestration manager: the state machine behind every feature request.

This module provides the OrchestrationManager class that owns the
orchestration lifecycle:

    PENDING -> COLLECTING_REQUIREMENTS -> {AWAITING_USER <-> PLANNING}
        -> AWAITING_APPROVAL -> APPROVED -> EXECUTING -> {COMPLETED | FAILED}

CANCELLED is reachable from any non-terminal state.

The OrchestrationManager coordinates between:
- OrchestrationStore: The single source of truth for all persisted state
- AgentClient: For creating, following up on, and cancelling agents
- EventHub: For real-time notifications to the owning user
- AgentReconciler: For webhook/poll updates flowing back in
- TaskSupervisor: For the background poll loops

Usage:
    >>> manager = OrchestrationManager(store, agent_client, event_hub, supervisor)
    >>> orch = await manager.create_orchestration(
    ...     user_id="user_1",
    ...     repository_id="repo_abc",
    ...     title="Dark mode",
    ...     description="Add dark mode toggle",
    ... )
    >>> await manager.submit_answers(orch.id, "user_1", [("q1", "All pages")])
    >>> await manager.accept_plan(orch.id, "user_1")
"""

import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any

import structlog

from agents.client import AgentApiError, AgentClient, AgentSpec
from agents.prompts import (
    branch_name_for,
    build_orchestrator_prompt,
    build_sub_agent_prompt,
    format_answer_line,
    format_answers,
    slugify,
)
from agents.schemas import (
    FollowUpQuestionsResponse,
    Plan,
    StructuredOutputError,
    parse_agent_output,
    validate_plan_payload,
)
from config import Settings, settings
from errors import InvalidRequestError, InvalidStateError, NotFoundError
from events import EventHub, EventType, ServerEvent
from models.database import OrchestrationStore
from models.entities import (
    AgentMessage,
    AgentRun,
    Orchestration,
    Repository,
    new_id,
)
from models.schemas import (
    AgentRunStatus,
    AgentType,
    MessageRole,
    OrchestrationStatus,
)
from reconciler import AgentReconciler, PollTimeoutError
from supervisor import TaskSupervisor

logger = structlog.get_logger(__name__)

_RAW_OUTPUT_LOG_CHARS = 2000

_PARSEABLE_STATES = frozenset(
    {OrchestrationStatus.COLLECTING_REQUIREMENTS, OrchestrationStatus.PLANNING}
)


@dataclass
class OrchestrationDetail:
    """An orchestration with its agent runs and message history."""

    orchestration: Orchestration
    runs: list[AgentRun] = field(default_factory=list)
    messages: list[AgentMessage] = field(default_factory=list)


@dataclass
class _ExecutionAgent:
    spec: AgentSpec
    plan_payload: dict[str, Any]


class OrchestrationManager:
    """Owns every orchestration state transition.

    Request handlers call the public operations; the reconciler calls
    ``ingest_agent_output`` and ``handle_run_status_change``. Nothing else
    writes orchestration state.

    Attributes:
        store: Persistence for orchestrations, runs and messages
        agent_client: Client for the external coding-agent service
        event_hub: Real-time fan-out to connected clients
        supervisor: Owner of background poll loops
        reconciler: Webhook/poll ingestion bound to this manager
    """

    def __init__(
        self,
        store: OrchestrationStore,
        agent_client: AgentClient,
        event_hub: EventHub,
        supervisor: TaskSupervisor,
        config: Settings | None = None,
    ) -> None:
        """Initialize the OrchestrationManager.

        Args:
            store: Orchestration store (already initialized)
            agent_client: Agent service client
            event_hub: Hub used to publish events
            supervisor: Supervisor for background poll loops
            config: Settings override (defaults to the global settings)
        """
        self.store = store
        self.agent_client = agent_client
        self.event_hub = event_hub
        self.supervisor = supervisor
        self.config = config or settings
        self.reconciler = AgentReconciler(
            manager=self,
            store=store,
            agent_client=agent_client,
            poll_interval_seconds=self.config.poll_interval_seconds,
            poll_max_attempts=self.config.poll_max_attempts,
        )
        logger.info(
            "orchestration_manager_initialized",
            polling_enabled=self.config.polling_enabled,
            webhooks_enabled=self.config.webhook_url is not None,
        )

    # -----------------------------------------------------------------
    # Events
    # -----------------------------------------------------------------

    async def publish(
        self,
        user_id: str,
        event_type: EventType,
        payload: dict[str, Any],
    ) -> None:
        """Publish an event to one user. Failures are logged, never raised."""
        event = ServerEvent(type=event_type, payload=payload)
        try:
            await self.event_hub.broadcast_to_user(user_id, event)
        except Exception as e:
            logger.warning(
                "event_publish_failed",
                user_id=user_id,
                event_type=event_type.value,
                error=str(e),
            )

    async def _publish_plan_event(
        self,
        user_id: str,
        event_type: EventType,
        payload: dict[str, Any],
    ) -> None:
        if not self.config.broadcast_plan_events_to_all:
            await self.publish(user_id, event_type, payload)
            return
        try:
            await self.event_hub.broadcast_all(ServerEvent(type=event_type, payload=payload))
        except Exception as e:
            logger.warning(
                "event_publish_failed",
                scope="*",
                event_type=event_type.value,
                error=str(e),
            )

    async def _publish_updated(self, orchestration: Orchestration) -> None:
        await self.publish(
            orchestration.user_id,
            EventType.ORCHESTRATION_UPDATED,
            {
                "orchestrationId": orchestration.id,
                "status": orchestration.status.value,
                "planAccepted": orchestration.plan_accepted,
            },
        )

    # -----------------------------------------------------------------
    # Lookups
    # -----------------------------------------------------------------

    async def _require(self, orchestration_id: str) -> Orchestration:
        orchestration = await self.store.get_orchestration(orchestration_id)
        if orchestration is None:
            raise NotFoundError(f"Orchestration '{orchestration_id}' not found")
        return orchestration

    async def _get_owned(self, orchestration_id: str, user_id: str) -> Orchestration:
        orchestration = await self.store.get_orchestration(orchestration_id)
        if orchestration is None or orchestration.user_id != user_id:
            raise NotFoundError(f"Orchestration '{orchestration_id}' not found")
        return orchestration

    async def _orchestrator_run(self, orchestration_id: str) -> AgentRun:
        runs = await self.store.list_runs(orchestration_id, AgentType.ORCHESTRATOR)
        if not runs:
            raise NotFoundError(
                f"Orchestration '{orchestration_id}' has no orchestrator run"
            )
        return runs[0]

    async def get_orchestration(self, orchestration_id: str, user_id: str) -> Orchestration:
        return await self._get_owned(orchestration_id, user_id)

    async def get_orchestration_detail(
        self, orchestration_id: str, user_id: str
    ) -> OrchestrationDetail:
        orchestration = await self._get_owned(orchestration_id, user_id)
        runs = await self.store.list_runs(orchestration_id)
        messages = await self.store.list_messages(orchestration_id)
        return OrchestrationDetail(orchestration=orchestration, runs=runs, messages=messages)

    async def list_orchestrations(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> list[Orchestration]:
        return await self.store.list_orchestrations(user_id, limit=limit, offset=offset)

    # -----------------------------------------------------------------
    # Repositories
    # -----------------------------------------------------------------

    async def link_repository(
        self,
        user_id: str,
        *,
        provider: str,
        name: str,
        full_name: str,
        default_branch: str | None = None,
        clone_url: str | None = None,
        alias: str | None = None,
    ) -> Repository:
        repository = Repository(
            id=new_id("repo"),
            provider=provider,
            name=name,
            full_name=full_name,
            default_branch=default_branch,
            clone_url=clone_url,
            alias=alias,
        )
        return await self.store.link_repository(user_id, repository)

    async def list_repositories(self, user_id: str) -> list[Repository]:
        return await self.store.list_repositories(user_id)

    # -----------------------------------------------------------------
    # Lifecycle operations
    # -----------------------------------------------------------------

    async def create_orchestration(
        self,
        user_id: str,
        repository_id: str,
        title: str,
        description: str,
        branch: str | None = None,
    ) -> Orchestration:
        """Create an orchestration and launch its orchestrator agent.

        This method:
        1. Persists the orchestration (PENDING) with the initial user message
        2. Creates the orchestrator agent with the JSON-only prompt
        3. Atomically records the orchestrator run and moves to
           COLLECTING_REQUIREMENTS
        4. Publishes ``orchestration.updated`` and starts polling

        Raises:
            NotFoundError: If the repository is not linked to the user.
            InvalidRequestError: If title or description is blank.
            AgentApiError: If the agent could not be created (the
                orchestration is FAILED before this propagates).
        """
        title = title.strip()
        description = description.strip()
        if not title or not description:
            raise InvalidRequestError("Title and description are required")

        repository = await self.store.get_repository_for_user(user_id, repository_id)
        if repository is None:
            raise NotFoundError("Repository not linked to user")

        orchestration = Orchestration(
            id=new_id("orch"),
            user_id=user_id,
            repository_id=repository.id,
            title=title,
            description=description,
        )
        async with self.store.transaction() as tx:
            await tx.insert_orchestration(orchestration)
            await tx.append_message(
                AgentMessage(
                    id=new_id("msg"),
                    orchestration_id=orchestration.id,
                    role=MessageRole.USER,
                    content=description,
                )
            )

        target_branch = branch or repository.default_branch or "main"
        spec = AgentSpec(
            prompt=build_orchestrator_prompt(
                title=title,
                description=description,
                repository_full_name=repository.full_name,
                provider=repository.provider,
                branch=target_branch,
            ),
            repository=repository.full_name,
            ref=target_branch,
            name=f"Orchestrator for {title}",
            webhook_url=self.config.webhook_url,
            webhook_secret=self.config.webhook_secret or None,
            metadata={"role": "orchestrator", "orchestrationId": orchestration.id},
        )

        try:
            handle = await self.agent_client.create_agent(spec)
        except Exception as e:
            await self.fail_orchestration(
                orchestration.id, f"Failed to create orchestrator agent: {e}"
            )
            raise

        run = AgentRun(
            id=new_id("run"),
            orchestration_id=orchestration.id,
            external_agent_id=handle.id,
            agent_type=AgentType.ORCHESTRATOR,
            name=handle.name or title,
            metadata={"role": "orchestrator"},
        )
        try:
            async with self.store.transaction() as tx:
                await tx.insert_run(run)
                await tx.update_orchestration(
                    orchestration.id,
                    status=OrchestrationStatus.COLLECTING_REQUIREMENTS,
                )
        except Exception as e:
            logger.error(
                "orchestrator_run_persist_failed",
                orchestration_id=orchestration.id,
                orphaned_agent_id=handle.id,
                error=str(e),
            )
            await self.fail_orchestration(
                orchestration.id, f"Failed to record orchestrator agent: {e}"
            )
            raise

        orchestration = await self._require(orchestration.id)
        logger.info(
            "orchestration_created",
            orchestration_id=orchestration.id,
            user_id=user_id,
            repository=repository.full_name,
            external_agent_id=handle.id,
        )
        await self._publish_updated(orchestration)
        self._start_polling(orchestration.id, run.id)
        return orchestration

    async def ingest_agent_output(self, run: AgentRun, text: str) -> bool:
        """Try to turn an agent message into a state transition.

        Only orchestrator runs whose orchestration is collecting
        requirements or planning are considered. Text that does not yield a
        valid payload is logged and leaves everything unchanged.

        Returns:
            True if the orchestration transitioned.
        """
        if run.agent_type != AgentType.ORCHESTRATOR:
            return False

        orchestration = await self.store.get_orchestration(run.orchestration_id)
        if orchestration is None or orchestration.status not in _PARSEABLE_STATES:
            logger.debug(
                "agent_output_ignored",
                run_id=run.id,
                status=orchestration.status.value if orchestration else None,
            )
            return False

        try:
            output = parse_agent_output(text)
        except StructuredOutputError as e:
            logger.warning(
                "agent_output_unparseable",
                orchestration_id=orchestration.id,
                run_id=run.id,
                reason=e.reason,
                raw=text[:_RAW_OUTPUT_LOG_CHARS],
            )
            return False

        payload = output.model_dump(mode="json", by_alias=True, exclude_none=True)

        if isinstance(output, FollowUpQuestionsResponse):
            await self.store.update_orchestration(
                orchestration.id,
                status=OrchestrationStatus.AWAITING_USER,
                plan_payload=payload,
            )
            orchestration = await self._require(orchestration.id)
            logger.info(
                "orchestration_questions_received",
                orchestration_id=orchestration.id,
                question_count=len(output.questions),
            )
            await self._publish_updated(orchestration)
            await self._publish_plan_event(
                orchestration.user_id,
                EventType.ORCHESTRATION_QUESTION,
                {
                    "orchestrationId": orchestration.id,
                    "agentRunId": run.id,
                    "questions": payload["questions"],
                },
            )
            return True

        async with self.store.transaction() as tx:
            await tx.update_orchestration(
                orchestration.id,
                status=OrchestrationStatus.AWAITING_APPROVAL,
                plan_payload=payload,
            )
            await tx.update_run(run.id, plan_payload=payload)

        orchestration = await self._require(orchestration.id)
        logger.info(
            "orchestration_plan_ready",
            orchestration_id=orchestration.id,
            step_count=len(output.plan.steps),
            sub_agent_count=len(output.plan.sub_agents),
        )
        await self._publish_updated(orchestration)
        await self._publish_plan_event(
            orchestration.user_id,
            EventType.ORCHESTRATION_PLAN_READY,
            {
                "orchestrationId": orchestration.id,
                "agentRunId": run.id,
                "plan": payload["plan"],
            },
        )
        return True

    async def submit_answers(
        self,
        orchestration_id: str,
        user_id: str,
        answers: list[tuple[str, str]],
    ) -> Orchestration:
        """Forward the user's answers to the orchestrator agent.

        Rejections happen before anything is written or sent.

        Raises:
            InvalidStateError: If the orchestration is not AWAITING_USER.
            InvalidRequestError: If answers are empty, blank, reference
                unknown questions, or leave a required question unanswered.
        """
        orchestration = await self._get_owned(orchestration_id, user_id)
        if orchestration.status != OrchestrationStatus.AWAITING_USER:
            raise InvalidStateError(
                f"Cannot submit answers while orchestration is {orchestration.status.value}"
            )

        cleaned = [(qid.strip(), answer.strip()) for qid, answer in answers]
        if not cleaned or any(not qid or not answer for qid, answer in cleaned):
            raise InvalidRequestError("Every answer needs a question id and non-empty text")

        try:
            questions = FollowUpQuestionsResponse.model_validate(
                orchestration.plan_payload or {}
            ).questions
        except ValueError:
            questions = []
        if questions:
            known = {q.id for q in questions}
            answered = {qid for qid, _ in cleaned}
            unknown = sorted(answered - known)
            if unknown:
                raise InvalidRequestError(f"Unknown question ids: {', '.join(unknown)}")
            missing = [q.id for q in questions if q.required and q.id not in answered]
            if missing:
                raise InvalidRequestError(
                    f"Missing answers for required questions: {', '.join(missing)}"
                )

        run = await self._orchestrator_run(orchestration.id)
        await self.agent_client.send_followup(run.external_agent_id, format_answers(cleaned))

        async with self.store.transaction() as tx:
            for index, (question_id, answer) in enumerate(cleaned, start=1):
                await tx.append_message(
                    AgentMessage(
                        id=new_id("msg"),
                        orchestration_id=orchestration.id,
                        agent_run_id=run.id,
                        role=MessageRole.USER,
                        content=format_answer_line(index, question_id, answer),
                    )
                )
            await tx.update_orchestration(
                orchestration.id, status=OrchestrationStatus.PLANNING
            )

        orchestration = await self._require(orchestration.id)
        logger.info(
            "orchestration_answers_submitted",
            orchestration_id=orchestration.id,
            answer_count=len(cleaned),
        )
        await self._publish_updated(orchestration)
        self._start_polling(orchestration.id, run.id, expect_new_message=True)
        return orchestration

    async def accept_plan(self, orchestration_id: str, user_id: str) -> Orchestration:
        """Approve the stored plan and fan out execution agents.

        A plan with N sub-agents yields N execution runs; a plan without
        sub-agents yields a single executor run. External agents are created
        first, then every run record commits in one transaction together with
        the ``plan_accepted`` flip. Agents created before a failure cannot be
        rolled back and are logged as orphans.

        Returns:
            The orchestration (unchanged if the plan was already accepted).

        Raises:
            InvalidStateError: If not AWAITING_APPROVAL or the stored plan
                is invalid.
        """
        orchestration = await self._get_owned(orchestration_id, user_id)
        if orchestration.plan_accepted:
            logger.info("accept_plan_noop_already_accepted", orchestration_id=orchestration_id)
            return orchestration
        if orchestration.status != OrchestrationStatus.AWAITING_APPROVAL:
            raise InvalidStateError(
                f"Cannot accept plan while orchestration is {orchestration.status.value}"
            )
        try:
            plan = validate_plan_payload(orchestration.plan_payload)
        except StructuredOutputError as e:
            raise InvalidStateError(f"Stored plan is invalid: {e.reason}") from e

        orchestrator_run = await self._orchestrator_run(orchestration.id)
        repository = await self.store.get_repository(orchestration.repository_id)
        if repository is None:
            raise NotFoundError(f"Repository '{orchestration.repository_id}' not found")

        agents = self._build_execution_agents(orchestration, plan, repository)
        created: list[str] = []
        try:
            runs: list[AgentRun] = []
            for agent in agents:
                handle = await self.agent_client.create_agent(agent.spec)
                created.append(handle.id)
                runs.append(
                    AgentRun(
                        id=new_id("run"),
                        orchestration_id=orchestration.id,
                        parent_run_id=orchestrator_run.id,
                        external_agent_id=handle.id,
                        agent_type=AgentType.SUB_AGENT,
                        name=handle.name or agent.spec.name or "",
                        plan_payload=agent.plan_payload,
                        metadata=dict(agent.spec.metadata),
                    )
                )

            async with self.store.transaction() as tx:
                await tx.update_orchestration(
                    orchestration.id, status=OrchestrationStatus.APPROVED
                )
                await tx.update_orchestration(
                    orchestration.id,
                    status=OrchestrationStatus.EXECUTING,
                    plan_accepted=True,
                )
                for run in runs:
                    await tx.insert_run(run)
        except Exception as e:
            if created:
                logger.error(
                    "plan_fanout_orphaned_agents",
                    orchestration_id=orchestration.id,
                    external_agent_ids=created,
                )
            await self.fail_orchestration(
                orchestration.id, f"Plan execution could not start: {e}"
            )
            raise

        orchestration = await self._require(orchestration.id)
        logger.info(
            "orchestration_plan_accepted",
            orchestration_id=orchestration.id,
            execution_runs=len(runs),
        )
        await self._publish_updated(orchestration)
        for run in runs:
            self._start_polling(orchestration.id, run.id)
        return orchestration

    def _build_execution_agents(
        self,
        orchestration: Orchestration,
        plan: Plan,
        repository: Repository,
    ) -> list[_ExecutionAgent]:
        base_branch = repository.default_branch or "main"
        webhook_secret = self.config.webhook_secret or None

        if not plan.sub_agents:
            short_id = orchestration.id.rsplit("_", 1)[-1][:6]
            return [
                _ExecutionAgent(
                    spec=AgentSpec(
                        prompt=build_sub_agent_prompt(
                            plan=plan,
                            orchestration_title=orchestration.title,
                            repository_full_name=repository.full_name,
                            base_branch=base_branch,
                        ),
                        repository=repository.full_name,
                        ref=base_branch,
                        name=f"{orchestration.title} executor",
                        branch_name=branch_name_for(orchestration.title, short_id),
                        webhook_url=self.config.webhook_url,
                        webhook_secret=webhook_secret,
                        metadata={"role": "sub_agent", "orchestrationId": orchestration.id},
                    ),
                    plan_payload=plan.model_dump(mode="json", by_alias=True, exclude_none=True),
                )
            ]

        return [
            _ExecutionAgent(
                spec=AgentSpec(
                    prompt=build_sub_agent_prompt(
                        plan=plan,
                        orchestration_title=orchestration.title,
                        repository_full_name=repository.full_name,
                        base_branch=base_branch,
                        focus=sub_agent,
                    ),
                    repository=repository.full_name,
                    ref=base_branch,
                    name=sub_agent.name,
                    branch_name=branch_name_for(sub_agent.name, slugify(sub_agent.id)),
                    webhook_url=self.config.webhook_url,
                    webhook_secret=webhook_secret,
                    metadata={
                        "role": "sub_agent",
                        "orchestrationId": orchestration.id,
                        "subAgentId": sub_agent.id,
                    },
                ),
                plan_payload=sub_agent.model_dump(mode="json", by_alias=True, exclude_none=True),
            )
            for sub_agent in plan.sub_agents
        ]

    async def handle_run_status_change(
        self, run: AgentRun, status: AgentRunStatus
    ) -> None:
        """React to a persisted run status change reported by the reconciler."""
        orchestration = await self.store.get_orchestration(run.orchestration_id)
        if orchestration is None or orchestration.status.is_terminal:
            return

        if run.agent_type == AgentType.ORCHESTRATOR:
            if (
                status in (AgentRunStatus.FAILED, AgentRunStatus.CANCELLED)
                and not orchestration.plan_accepted
            ):
                await self.fail_orchestration(
                    orchestration.id,
                    f"Orchestrator agent {status.value.lower()}",
                )
            return

        if orchestration.status != OrchestrationStatus.EXECUTING:
            return

        runs = await self.store.list_runs(orchestration.id, AgentType.SUB_AGENT)
        failed = [
            r for r in runs
            if r.status in (AgentRunStatus.FAILED, AgentRunStatus.CANCELLED)
        ]
        if failed:
            await self._finish(
                orchestration,
                OrchestrationStatus.FAILED,
                error_message=f"Execution agent '{failed[0].name}' {failed[0].status.value.lower()}",
            )
        elif runs and all(r.status == AgentRunStatus.COMPLETED for r in runs):
            await self._finish(orchestration, OrchestrationStatus.COMPLETED)

    async def _finish(
        self,
        orchestration: Orchestration,
        status: OrchestrationStatus,
        error_message: str | None = None,
    ) -> None:
        completed_at = time.time()
        fields: dict[str, Any] = {"status": status, "completed_at": completed_at}
        if error_message is not None:
            fields["error_message"] = error_message
        await self.store.update_orchestration(orchestration.id, **fields)

        orchestration = await self._require(orchestration.id)
        logger.info(
            "orchestration_finished",
            orchestration_id=orchestration.id,
            status=status.value,
            error=error_message,
        )
        await self._publish_updated(orchestration)
        await self.publish(
            orchestration.user_id,
            EventType.ORCHESTRATION_COMPLETED,
            {
                "orchestrationId": orchestration.id,
                "status": status.value,
                "completedAt": completed_at,
            },
        )

    async def cancel_orchestration(self, orchestration_id: str, user_id: str) -> Orchestration:
        """Cancel a non-terminal orchestration and its live runs.

        Raises:
            InvalidStateError: If the orchestration is already terminal.
        """
        orchestration = await self._get_owned(orchestration_id, user_id)
        if orchestration.status.is_terminal:
            raise InvalidStateError(
                f"Cannot cancel orchestration in status {orchestration.status.value}"
            )

        await self.store.update_orchestration(
            orchestration.id, status=OrchestrationStatus.CANCELLED
        )
        cancelled = await self._cancel_runs(orchestration.id)

        orchestration = await self._require(orchestration.id)
        logger.info(
            "orchestration_cancelled",
            orchestration_id=orchestration.id,
            runs_cancelled=cancelled,
        )
        await self._publish_updated(orchestration)
        return orchestration

    async def _cancel_runs(self, orchestration_id: str) -> int:
        """Best-effort cancel of every non-terminal run. Returns the count."""
        runs = await self.store.list_runs(orchestration_id)
        count = 0
        for run in runs:
            if run.status.is_terminal:
                continue
            try:
                await self.agent_client.cancel_agent(run.external_agent_id)
            except AgentApiError as e:
                logger.warning(
                    "agent_cancel_failed",
                    orchestration_id=orchestration_id,
                    run_id=run.id,
                    external_agent_id=run.external_agent_id,
                    status_code=e.status_code,
                )
            await self.store.update_run(run.id, status=AgentRunStatus.CANCELLED)
            count += 1
        return count

    async def delete_orchestration(self, orchestration_id: str, user_id: str) -> None:
        """Delete an orchestration, cancelling live runs first."""
        orchestration = await self._get_owned(orchestration_id, user_id)
        if not orchestration.status.is_terminal:
            await self.cancel_orchestration(orchestration_id, user_id)
        else:
            await self._cancel_runs(orchestration_id)
        await self.store.delete_orchestration(orchestration_id)

    async def fail_orchestration(self, orchestration_id: str, reason: str) -> None:
        """Move an orchestration to FAILED and publish an error event.

        No-op for unknown or already terminal orchestrations. Payload and
        message history are kept.
        """
        orchestration = await self.store.get_orchestration(orchestration_id)
        if orchestration is None:
            logger.warning("fail_orchestration_not_found", orchestration_id=orchestration_id)
            return
        if orchestration.status.is_terminal:
            logger.info(
                "fail_orchestration_noop_terminal_state",
                orchestration_id=orchestration_id,
                status=orchestration.status.value,
            )
            return

        await self.store.update_orchestration(
            orchestration_id,
            status=OrchestrationStatus.FAILED,
            error_message=reason,
        )
        orchestration = await self._require(orchestration_id)
        logger.error(
            "orchestration_failed",
            orchestration_id=orchestration_id,
            reason=reason,
        )
        await self._publish_updated(orchestration)
        await self.publish(
            orchestration.user_id,
            EventType.ORCHESTRATION_ERROR,
            {"orchestrationId": orchestration_id, "message": reason},
        )

    # -----------------------------------------------------------------
    # Background polling
    # -----------------------------------------------------------------

    def _start_polling(
        self,
        orchestration_id: str,
        run_id: str,
        expect_new_message: bool = False,
    ) -> None:
        if not self.config.polling_enabled:
            return
        # A poll still waiting on the previous turn would settle on stale state.
        launch = self.supervisor.restart if expect_new_message else self.supervisor.start
        launch(
            f"poll_{run_id}",
            self.reconciler.poll_run(run_id, expect_new_message=expect_new_message),
            on_error=partial(self._on_poll_error, orchestration_id),
        )

    async def _on_poll_error(self, orchestration_id: str, error: Exception) -> None:
        if isinstance(error, PollTimeoutError) and self.config.webhook_url is not None:
            logger.warning(
                "poll_timeout_awaiting_webhooks",
                orchestration_id=orchestration_id,
                run_id=error.run_id,
            )
            return
        await self.fail_orchestration(orchestration_id, f"Agent tracking failed: {error}")
