"""
Agent service client - httpx transport for runs, reviews and stored state.

Streaming calls (chat, review) return an async iterator of raw body chunks
for the run loop to decode. Plain calls go through the service's
``{code, info, data}`` envelope.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from dagwatch.config import ClientConfig
from dagwatch.errors import ApiError, UnauthorizedError
from dagwatch.graph.document import GraphDocument, from_document, to_document
from dagwatch.graph.model import GraphModel
from dagwatch.runtime.intervention import ReviewDecision
from dagwatch.schemas.conversation import ConversationTurn
from dagwatch.schemas.snapshot import ContextSnapshot

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0000"
UNAUTHORIZED_CODE = "0401"
DEFAULT_MAX_STEPS = 20


def unwrap_envelope(body: Any) -> Any:
    """
    Return the ``data`` of a successful envelope.

    Bodies that are not envelopes (no ``code``) are returned unchanged.
    """
    if not isinstance(body, dict) or "code" not in body:
        return body
    code = str(body["code"])
    if code == SUCCESS_CODE:
        return body.get("data")
    if code == UNAUTHORIZED_CODE:
        raise UnauthorizedError(body.get("info"))
    raise ApiError(code, body.get("info"))


class AgentClient:
    """
    Async client for the agent service.

    Example:
        async with AgentClient() as client:
            stream = await client.open_chat_stream("agent_1", "hello")
            signal = await run_loop.consume(stream)
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or ClientConfig()
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            headers=self.config.headers(),
            timeout=self.config.timeout,
            transport=transport,
        )

    async def __aenter__(self) -> AgentClient:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # === STREAMS ===

    async def open_chat_stream(
        self,
        agent_id: str,
        message: str,
        conversation_id: str | None = None,
        max_steps: int = DEFAULT_MAX_STEPS,
    ) -> EventStream:
        """Start a run and return its event stream."""
        payload = {
            "aiAgentId": agent_id,
            "message": message,
            "sessionId": conversation_id or "",
            "maxStep": max_steps,
        }
        return await self._open_stream(self.config.chat_path, payload)

    async def open_review_stream(self, decision: ReviewDecision) -> EventStream:
        """Deliver a review decision and return the resumed event stream."""
        return await self._open_stream(self.config.review_path, decision.to_payload())

    async def _open_stream(self, path: str, payload: dict[str, Any]) -> EventStream:
        request = self._client.build_request(
            "POST",
            path,
            json=payload,
            headers={"Accept": "text/event-stream"},
            # no read timeout: a run may stay silent while a node works
            timeout=httpx.Timeout(self.config.timeout, read=None),
        )
        response = await self._client.send(request, stream=True)

        if response.status_code >= 400:
            try:
                await response.aread()
            finally:
                await response.aclose()
            if response.status_code == 401:
                raise UnauthorizedError()
            raise ApiError(str(response.status_code), _error_info(response))

        logger.debug(f"Opened event stream {path} (status: {response.status_code})")
        return EventStream(response)

    # === ENVELOPE CALLS ===

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._client.request(method, path, **kwargs)
        if response.status_code == 401:
            raise UnauthorizedError()
        response.raise_for_status()
        if not response.content:
            return None
        return unwrap_envelope(response.json())

    async def get_agent_detail(self, agent_id: str) -> dict[str, Any]:
        data = await self._request("GET", self.config.detail_path.format(agent_id=agent_id))
        return data or {}

    async def load_graph(self, agent_id: str) -> GraphModel:
        """Fetch an agent and parse its stored graph document."""
        detail = await self.get_agent_detail(agent_id)
        return from_document(detail.get("graphJson"))

    async def save_graph(
        self,
        agent_id: str,
        graph: GraphModel | GraphDocument,
        agent_name: str | None = None,
        description: str | None = None,
    ) -> Any:
        """Store a graph as the agent's document."""
        document = graph if isinstance(graph, GraphDocument) else to_document(graph, description)
        payload: dict[str, Any] = {"agentId": agent_id, "graphJson": document.to_json()}
        if agent_name is not None:
            payload["agentName"] = agent_name
        if description is not None:
            payload["description"] = description
        return await self._request("POST", self.config.save_path, json=payload)

    async def get_context_snapshot(
        self, agent_id: str, conversation_id: str
    ) -> ContextSnapshot | None:
        path = self.config.snapshot_path.format(agent_id=agent_id, conversation_id=conversation_id)
        data = await self._request("GET", path)
        if not data:
            return None
        return ContextSnapshot.model_validate(data)

    async def update_context_snapshot(
        self,
        agent_id: str,
        conversation_id: str,
        last_node_id: str,
        state_data: dict[str, Any],
    ) -> Any:
        """Apply edits to a paused execution's state before it resumes."""
        path = self.config.snapshot_path.format(agent_id=agent_id, conversation_id=conversation_id)
        payload = {"lastNodeId": last_node_id, "modifications": state_data}
        return await self._request("PUT", path, json=payload)

    async def get_history(self, conversation_id: str) -> list[ConversationTurn]:
        path = self.config.history_path.format(conversation_id=conversation_id)
        data = await self._request("GET", path)
        return [ConversationTurn.model_validate(turn) for turn in data or []]


class EventStream:
    """
    Body of an open event-stream response.

    ``aclose()`` releases the connection whether or not reading started,
    so a stream that is discarded unread does not leak it.
    """

    def __init__(self, response: httpx.Response):
        self._response = response
        self._chunks = response.aiter_bytes()

    @property
    def closed(self) -> bool:
        return self._response.is_closed

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> bytes:
        try:
            return await self._chunks.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        await self._response.aclose()


def _error_info(response: httpx.Response) -> str:
    try:
        body = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("info") or body.get("message") or response.reason_phrase)
    return response.reason_phrase
