"""
Per-session agent.

A ``SessionAgent`` owns one conversation's state and is its only writer.
Every mutation goes through one of five operations (configure, list models,
send message, get messages, clear) which are also exposed through an
HTTP-shaped ``handle()`` entry point used by the router.

State machine per session: ``Idle -> Processing -> Idle``.  The processing
flag is checked and set without yielding to the event loop, so a second
``send_message`` racing the first is rejected with ``SessionBusyError``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from starlette.responses import JSONResponse, Response, StreamingResponse

from agentchat.config import AppConfig
from agentchat.errors import (
    INTERNAL_ERROR,
    NOT_FOUND,
    AgentChatError,
    SessionBusyError,
    ValidationError,
)
from agentchat.llm.factory import build_client
from agentchat.llm.providers.base import CompletionClient
from agentchat.llm.types import ChatResult, ModelInfo
from agentchat.orchestrator.core import ChatHandler
from agentchat.session.channel import StreamChannel
from agentchat.session.store import SessionStore
from agentchat.tools.registry import ToolRegistry
from agentchat.types import ChatMessage, ProviderKind, Role, SessionState

logger = logging.getLogger(__name__)

ClientFactory = Callable[[SessionState], CompletionClient]

MISSING_MESSAGE = "Message is required"
MISSING_CREDENTIALS = "apiKey and provider are required"


@dataclass
class AgentRequest:
    """A request already rewritten to the agent-local path (e.g. ``/chat``)."""

    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def json(self) -> dict[str, Any]:
        if not self.body.strip():
            return {}
        try:
            data = json.loads(self.body)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError("Request body must be valid JSON") from exc
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data


def _ok(data: Any = None, *, include_data: bool = True) -> JSONResponse:
    content: dict[str, Any] = {"success": True}
    if include_data:
        content["data"] = data
    return JSONResponse(content)


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


class SessionAgent:
    """
    Owns one session's state and serialises its mutations.

    Parameters
    ----------
    session_id : str
        Identifier this agent is bound to.
    registry : ToolRegistry
        Tools offered to the model.
    config : AppConfig
        Defaults for credentials, prompt, history limit and stream buffer.
    store : SessionStore | None
        Durable backing for the state; ``None`` keeps it in memory only.
    client_factory : callable
        Builds a completion client for the current state.  Defaults to
        ``agentchat.llm.factory.build_client``.
    """

    def __init__(
        self,
        session_id: str,
        registry: ToolRegistry,
        config: AppConfig,
        store: SessionStore | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.session_id = session_id
        self.registry = registry
        self.config = config
        self.store = store
        self._client_factory = client_factory or (lambda state: build_client(state, config.llm))
        self._state = SessionState(session_id=session_id, model=config.llm.model)
        self._handler: ChatHandler | None = None
        self._turn_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load persisted state, if any."""
        if self.store is None:
            return
        stored = await self.store.load_state(self.session_id)
        if stored is None:
            return
        if stored.is_processing:
            # A turn was cut off by a restart; nothing is in flight any more.
            logger.warning("Session %s was left processing; resetting", self.session_id)
            stored.is_processing = False
            stored.streaming_message = None
        self._state = stored
        logger.info(
            "Agent %s restored with %d messages", self.session_id, len(stored.messages)
        )

    async def wait_idle(self) -> None:
        """Wait for an in-flight streaming turn to finish."""
        task = self._turn_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def aclose(self) -> None:
        task = self._turn_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._handler is not None:
            await self._handler.client.aclose()

    @property
    def is_processing(self) -> bool:
        return self._state.is_processing

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def configure(
        self,
        api_key: str | None,
        provider: str | None,
        base_url: str | None = None,
    ) -> None:
        if not api_key or not provider:
            raise ValidationError(MISSING_CREDENTIALS)
        if not isinstance(api_key, str) or not isinstance(provider, str):
            raise ValidationError("apiKey and provider must be strings")
        if base_url is not None and not isinstance(base_url, str):
            raise ValidationError("baseUrl must be a string")
        if ProviderKind.parse(provider) is None:
            choices = ", ".join(p.value for p in ProviderKind)
            raise ValidationError(f"Unknown provider {provider!r}; expected one of: {choices}")

        candidate = replace(
            self._state, api_key=api_key, provider=provider, base_url=base_url or None
        )
        # State stays untouched until the client builds.
        # In-flight turns keep the handler they started with.
        handler = self._client_handler(candidate)

        self._state.api_key = candidate.api_key
        self._state.provider = candidate.provider
        self._state.base_url = candidate.base_url
        self._handler = handler
        await self._persist()
        logger.info("Session %s configured for provider %s", self.session_id, provider)

    async def list_models(self) -> list[ModelInfo]:
        return await self._ensure_handler().client.list_models()

    def get_messages(self) -> SessionState:
        return self._state.snapshot()

    async def clear_messages(self) -> SessionState:
        self._state.messages = []
        await self._persist()
        return self._state.snapshot()

    async def send_message(self, text: str | None, model: str | None = None) -> SessionState:
        """Run a whole turn and return the resulting state."""
        handler, message, history = self._begin_turn(text, model)

        try:
            await self._persist()
            result = await handler.process_message(message, history)
            self._state.messages.append(self._assistant_message(result))
        finally:
            self._state.is_processing = False
            await self._persist()
        return self._state.snapshot()

    async def stream_message(self, text: str | None, model: str | None = None) -> StreamChannel:
        """
        Start a streaming turn and return its output channel.

        The turn runs as a background task; the channel is closed exactly
        once when it ends, whatever the outcome.
        """
        handler, message, history = self._begin_turn(text, model)
        self._state.streaming_message = ""
        try:
            await self._persist()
        except Exception:
            self._state.is_processing = False
            self._state.streaming_message = None
            raise

        channel = StreamChannel(self.config.server.stream_buffer)
        self._turn_task = asyncio.create_task(
            self._run_stream(handler, message, history, channel),
            name=f"turn-{self.session_id}",
        )
        return channel

    # ------------------------------------------------------------------
    # Turn internals
    # ------------------------------------------------------------------

    def _begin_turn(
        self, text: str | None, model: str | None
    ) -> tuple[ChatHandler, str, list[ChatMessage]]:
        """Validate and enter ``Processing``.  Never awaits."""
        if not isinstance(text, str) or not text.strip():
            raise ValidationError(MISSING_MESSAGE)
        if self._state.is_processing:
            raise SessionBusyError(self.session_id)

        handler = self._ensure_handler()
        if model and model != self._state.model:
            self._state.model = model
            handler.update_model(model)

        message = text.strip()
        history = list(self._state.messages)
        self._state.messages.append(ChatMessage(role=Role.USER, content=message))
        self._state.is_processing = True
        return handler, message, history

    async def _run_stream(
        self,
        handler: ChatHandler,
        message: str,
        history: list[ChatMessage],
        channel: StreamChannel,
    ) -> None:
        async def on_chunk(delta: str) -> None:
            self._state.streaming_message = (self._state.streaming_message or "") + delta
            await channel.write(delta)

        reply = ChatMessage(role=Role.ASSISTANT, content="")
        try:
            result = await handler.process_message(message, history, on_chunk)
            reply = self._assistant_message(result)
        except asyncio.CancelledError:
            reply = ChatMessage(role=Role.ASSISTANT, content=self._state.streaming_message or "")
            raise
        except Exception as exc:
            logger.exception("Streaming error in session %s", self.session_id)
            detail = exc.message if isinstance(exc, AgentChatError) else str(exc)
            error_text = (
                f"Sorry, an error occurred: {detail}" if detail else "Sorry, I encountered an error."
            )
            await channel.write(error_text)
            reply = ChatMessage(role=Role.ASSISTANT, content=error_text)
        finally:
            await channel.close()
            self._state.messages.append(reply)
            self._state.is_processing = False
            self._state.streaming_message = None
            await self._persist()

    @staticmethod
    def _assistant_message(result: ChatResult) -> ChatMessage:
        return ChatMessage(
            role=Role.ASSISTANT,
            content=result.content,
            tool_calls=tuple(result.tool_calls) if result.tool_calls else None,
        )

    def _client_handler(self, state: SessionState | None = None) -> ChatHandler:
        chat = self.config.chat
        return ChatHandler(
            client=self._client_factory(state or self._state),
            registry=self.registry,
            system_prompt=chat.system_prompt,
            history_limit=chat.history_limit,
            timeout=float(self.config.llm.timeout_seconds),
        )

    def _ensure_handler(self) -> ChatHandler:
        if self._handler is None:
            self._handler = self._client_handler()
        return self._handler

    async def _persist(self) -> None:
        if self.store is not None:
            await self.store.save_state(self._state)

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    async def handle(self, request: AgentRequest) -> Response:
        """Dispatch an agent-local request to the matching operation."""
        method = request.method.upper()
        try:
            if method == "POST" and request.path == "/configure":
                body = request.json()
                await self.configure(body.get("apiKey"), body.get("provider"), body.get("baseUrl"))
                return _ok(include_data=False)
            if method == "GET" and request.path == "/messages":
                return _ok(self.get_messages().to_dict())
            if method == "POST" and request.path == "/chat":
                return await self._handle_chat(request.json())
            if method == "DELETE" and request.path == "/clear":
                return _ok((await self.clear_messages()).to_dict())
            if method == "GET" and request.path == "/models":
                models = await self.list_models()
                return _ok([m.to_dict() for m in models])
            return _error(NOT_FOUND, 404)
        except AgentChatError as exc:
            if exc.status_code >= 500:
                logger.warning("Session %s: %s %s failed: %s", self.session_id, method, request.path, exc.message)
            return _error(exc.message, exc.status_code)
        except Exception:
            logger.exception("Request handling error in session %s", self.session_id)
            return _error(INTERNAL_ERROR, 500)

    async def _handle_chat(self, body: dict[str, Any]) -> Response:
        model = body.get("model")
        if model is not None and not isinstance(model, str):
            raise ValidationError("model must be a string")
        if body.get("stream"):
            channel = await self.stream_message(body.get("message"), model)
            return StreamingResponse(
                channel,
                media_type="text/plain; charset=utf-8",
                headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            )
        state = await self.send_message(body.get("message"), model)
        return _ok(state.to_dict())
