"""Core types for the LLM subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field

from agentchat.types import ToolCallResult


@dataclass
class Message:
    """A single message as sent on the chat-completion wire."""

    role: str  # "user", "assistant", "system", "tool"
    content: str
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None


@dataclass
class ToolCall:
    """
    A tool call exactly as the model requested it.

    *arguments* is the raw JSON text; it is only parsed when the call is
    executed so a malformed payload fails that call alone.
    """

    id: str
    name: str
    arguments: str = ""


@dataclass
class RawToolDelta:
    """
    An incremental fragment of a streaming tool call.

    Providers emit these as tool-call pieces arrive.  ``call_index`` is the
    slot number assigned by the upstream stream.
    """

    call_index: int
    id: str | None = None
    name_delta: str = ""
    args_delta: str = ""


@dataclass
class StreamChunk:
    """
    A single chunk yielded while streaming a chat completion.

    *delta* carries new text content.
    *tool_deltas* carries incremental tool-call fragments.
    *done* is ``True`` on the final chunk.
    """

    delta: str = ""
    tool_deltas: list[RawToolDelta] | None = None
    done: bool = False


@dataclass
class ModelInfo:
    id: str
    name: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name}


@dataclass
class ChatResult:
    """The resolved assistant answer for one user turn."""

    content: str
    tool_calls: list[ToolCallResult] = field(default_factory=list)
