"""
Chat handler -- drives one user turn against the completion client.

The handler:
1. Builds the outgoing message list (system prompt, bounded history, user
   message)
2. Streams a completion with the registry's tool schemas
3. Forwards content deltas and accumulates tool-call fragments
4. Executes a complete tool-call round through the registry
5. Issues one non-streaming follow-up completion with the tool results
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

from agentchat.errors import ToolExecutionError
from agentchat.llm.accumulator import StreamAccumulator
from agentchat.llm.providers.base import CompletionClient
from agentchat.llm.types import ChatResult, Message, ToolCall
from agentchat.tools.registry import ToolRegistry
from agentchat.types import ChatMessage, Role, ToolCallResult

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Awaitable[None]]

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."


class ChatHandler:
    """
    Produces the assistant answer for one user turn.

    Parameters
    ----------
    client : CompletionClient
        Bound completion client (credentials and model).
    registry : ToolRegistry
        Tools offered to the model.
    system_prompt : str
        Leading system message of every request.
    history_limit : int
        Number of prior messages carried into a request; oldest dropped
        first.
    timeout : float | None
        Per-request upstream timeout, ``None`` for the client default.
    """

    def __init__(
        self,
        client: CompletionClient,
        registry: ToolRegistry,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        history_limit: int = 10,
        timeout: float | None = None,
    ) -> None:
        self.client = client
        self.registry = registry
        self.system_prompt = system_prompt
        self.history_limit = history_limit
        self.timeout = timeout

    def update_model(self, model: str) -> None:
        self.client.set_model(model)

    def build_messages(self, user_message: str, history: list[ChatMessage]) -> list[Message]:
        """System message, the last ``history_limit`` prior messages, then the user message."""
        recent = history[-self.history_limit:] if self.history_limit > 0 else []
        return [
            Message(role=Role.SYSTEM, content=self.system_prompt),
            *(Message(role=m.role, content=m.content) for m in recent),
            Message(role=Role.USER, content=user_message),
        ]

    async def process_message(
        self,
        user_message: str,
        history: list[ChatMessage],
        on_chunk: ChunkCallback | None = None,
    ) -> ChatResult:
        """
        Run one turn.

        *history* holds the messages that precede *user_message*.  Content
        deltas are passed to *on_chunk* in the order they arrive; the
        follow-up answer after a tool round arrives as one final chunk.
        """
        messages = self.build_messages(user_message, history)
        schemas = self.registry.list_schemas()

        acc = StreamAccumulator()
        async for chunk in self.client.chat(
            messages, tools=schemas or None, stream=True, timeout=self.timeout
        ):
            delta = acc.feed(chunk)
            if delta and on_chunk is not None:
                await on_chunk(delta)

        content = acc.content
        requested = acc.tool_calls()
        if not requested:
            return ChatResult(content=content)

        executed = await self._execute_tool_calls(requested)
        follow_up = await self._follow_up(messages, content, requested, executed)
        if follow_up:
            if on_chunk is not None:
                await on_chunk(follow_up)
            content += follow_up
        return ChatResult(content=content, tool_calls=executed)

    async def _execute_tool_calls(self, calls: list[ToolCall]) -> list[ToolCallResult]:
        """Execute calls in slot order; one failure never stops the others."""
        results: list[ToolCallResult] = []
        for tc in calls:
            arguments: dict = {}
            try:
                arguments = _parse_arguments(tc.arguments)
                result = _json_safe(await self.registry.execute(tc.name, arguments))
            except ToolExecutionError as exc:
                logger.warning("Tool execution failed for %s (%s): %s", tc.name, tc.id, exc.message)
                result = {"error": f"Failed to execute {tc.name}: {exc.message}"}
            results.append(
                ToolCallResult(id=tc.id, name=tc.name, arguments=arguments, result=result)
            )
        return results

    async def _follow_up(
        self,
        messages: list[Message],
        content: str,
        requested: list[ToolCall],
        executed: list[ToolCallResult],
    ) -> str:
        follow_up = [
            *messages,
            Message(role=Role.ASSISTANT, content=content, tool_calls=requested),
            *(
                Message(
                    role=Role.TOOL,
                    content=json.dumps(r.result),
                    tool_call_id=r.id,
                )
                for r in executed
            ),
        ]
        answer = ""
        async for chunk in self.client.chat(follow_up, stream=False, timeout=self.timeout):
            answer += chunk.delta
        return answer


def _parse_arguments(raw: str) -> dict:
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ToolExecutionError(f"Malformed arguments: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ToolExecutionError("Arguments must be a JSON object")
    return parsed


def _json_safe(value: Any) -> Any:
    """Coerce a tool result to plain JSON data; unknown objects become strings."""
    try:
        return json.loads(json.dumps(value, default=str))
    except (TypeError, ValueError) as exc:
        raise ToolExecutionError(f"Result is not JSON-serialisable: {exc}") from exc
