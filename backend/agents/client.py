"""Client for the external coding-agent REST API.

Thin typed wrapper around ``httpx.AsyncClient``. It builds the Basic auth
header from the API key and turns every non-success response or transport
failure into ``AgentApiError``. It never retries; retry policy belongs to
the caller (the reconciler retries poll ticks, nothing else does).

Usage:
    >>> async with AgentClient(api_key="key_...") as client:
    ...     handle = await client.create_agent(AgentSpec(prompt="...", repository="acme/web"))
    ...     snapshot = await client.get_agent(handle.id)
"""

import json
from typing import Any, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = structlog.get_logger(__name__)

_BODY_PREVIEW_CHARS = 500

ModelT = TypeVar("ModelT", bound=BaseModel)


class AgentApiError(Exception):
    """Non-success response (or transport failure) from the agent service.

    Attributes:
        status_code: HTTP status returned by the service, or 503 when the
            service could not be reached at all.
        body: Response body text (empty for transport failures).
    """

    def __init__(self, status_code: int, body: str = "", message: str | None = None) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message or f"Agent API request failed with status {status_code}")


class AgentSpec(BaseModel):
    """Everything needed to launch one agent."""

    prompt: str = Field(min_length=1)
    repository: str = Field(min_length=1, description="Owner-qualified repository name")
    ref: str | None = None
    name: str | None = None
    branch_name: str | None = None
    auto_create_pr: bool = False
    webhook_url: str | None = None
    webhook_secret: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        """Serialize into the ``POST /agents`` request body."""
        payload: dict[str, Any] = {
            "prompt": {"text": self.prompt},
            "source": {"repository": self.repository},
        }
        if self.ref:
            payload["source"]["ref"] = self.ref
        if self.name:
            payload["name"] = self.name
        if self.branch_name:
            payload["target"] = {
                "branchName": self.branch_name,
                "autoCreatePr": self.auto_create_pr,
            }
        if self.webhook_url and self.webhook_secret:
            payload["webhook"] = {"url": self.webhook_url, "secret": self.webhook_secret}
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


class AgentHandle(BaseModel):
    """Response of a successful agent creation."""

    model_config = ConfigDict(extra="allow")

    id: str
    status: str | None = None
    name: str | None = None


class AgentSnapshot(BaseModel):
    """Point-in-time view of an agent."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    status: str
    name: str | None = None
    summary: str | None = None
    created_at: str | None = Field(default=None, alias="createdAt")


class ConversationMessage(BaseModel):
    id: str
    type: str = Field(description="user_message, assistant_message or system_message")
    text: str = ""


class AgentClient:
    """Async client for the coding-agent service.

    Attributes:
        base_url: Root URL of the agent API (no trailing slash).
        timeout: Per-request timeout in seconds.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.cursor.com/v0",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: Agent service API key (sent as Basic auth user name).
            base_url: Root URL of the agent API.
            timeout: Per-request timeout in seconds.
            http_client: Pre-built client to use instead of creating one
                lazily (tests inject one backed by ``httpx.MockTransport``).
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._auth = httpx.BasicAuth(api_key, "")
        self._client = http_client
        self._owns_client = http_client is None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=20),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "AgentClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._get_client().request(
                method, url, json=json_body, auth=self._auth
            )
        except httpx.RequestError as e:
            logger.warning(
                "agent_api_unreachable",
                method=method,
                path=path,
                error=str(e),
            )
            raise AgentApiError(503, "", f"Agent API unreachable: {e}") from e

        if response.is_error:
            body = response.text
            logger.warning(
                "agent_api_error",
                method=method,
                path=path,
                status_code=response.status_code,
                body=body[:_BODY_PREVIEW_CHARS],
            )
            raise AgentApiError(response.status_code, body)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise AgentApiError(
                502, response.text, "Agent API returned a non-JSON response"
            ) from e

    @staticmethod
    def _parse(model: type[ModelT], data: Any, path: str) -> ModelT:
        """Validate a success body, treating a shape mismatch as an upstream error."""
        try:
            return model.model_validate(data)
        except ValidationError as e:
            body = json.dumps(data, default=str)
            logger.warning(
                "agent_api_malformed_response",
                path=path,
                model=model.__name__,
                error_count=e.error_count(),
                body=body[:_BODY_PREVIEW_CHARS],
            )
            raise AgentApiError(
                502, body, f"Agent API returned a malformed {model.__name__}"
            ) from e

    async def create_agent(self, spec: AgentSpec) -> AgentHandle:
        """Launch a new agent and return its handle."""
        data = await self._request("POST", "/agents", spec.to_payload())
        handle = self._parse(AgentHandle, data, "/agents")
        logger.info(
            "agent_created",
            agent_id=handle.id,
            repository=spec.repository,
            branch=spec.branch_name,
        )
        return handle

    async def get_agent(self, agent_id: str) -> AgentSnapshot:
        path = f"/agents/{agent_id}"
        data = await self._request("GET", path)
        return self._parse(AgentSnapshot, data, path)

    async def get_conversation(self, agent_id: str) -> list[ConversationMessage]:
        """Return the agent's conversation, oldest message first."""
        path = f"/agents/{agent_id}/conversation"
        data = await self._request("GET", path)
        messages = data.get("messages", []) if isinstance(data, dict) else []
        return [self._parse(ConversationMessage, m, path) for m in messages]

    async def send_followup(self, agent_id: str, text: str) -> None:
        await self._request(
            "POST", f"/agents/{agent_id}/followup", {"prompt": {"text": text}}
        )
        logger.info("agent_followup_sent", agent_id=agent_id, chars=len(text))

    async def cancel_agent(self, agent_id: str) -> None:
        await self._request("POST", f"/agents/{agent_id}/cancel")
        logger.info("agent_cancel_requested", agent_id=agent_id)
