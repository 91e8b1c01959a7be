"""Session-level data model shared by the agent, the store and the HTTP layer."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

DEFAULT_MODEL = "gpt-4o"


class ProviderKind(str, Enum):
    BUILTIN = "builtin"
    OPENAI_COMPATIBLE = "openai-compatible"
    GOOGLE = "google"
    ANTHROPIC = "anthropic"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: str) -> ProviderKind | None:
        try:
            return cls(value)
        except ValueError:
            return None


class Role:
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ToolCallResult:
    id: str
    name: str
    arguments: dict
    result: Any

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCallResult:
        return cls(
            id=data["id"],
            name=data["name"],
            arguments=data.get("arguments") or {},
            result=data.get("result"),
        )


@dataclass(frozen=True)
class ChatMessage:
    """One conversation entry.  Frozen: never edited after it is appended."""

    role: str
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: int = field(default_factory=_now_ms)
    tool_calls: tuple[ToolCallResult, ...] | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.tool_calls:
            d["toolCalls"] = [tc.to_dict() for tc in self.tool_calls]
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        raw_calls = data.get("toolCalls")
        return cls(
            id=data["id"],
            role=data["role"],
            content=data.get("content", ""),
            timestamp=int(data.get("timestamp", 0)),
            tool_calls=tuple(ToolCallResult.from_dict(c) for c in raw_calls) if raw_calls else None,
        )


@dataclass
class SessionState:
    """
    Durable state of one session.

    ``is_processing`` is true exactly while an assistant turn is in flight;
    ``streaming_message`` is only set during a streaming turn.
    """

    session_id: str
    model: str = DEFAULT_MODEL
    api_key: str | None = None
    base_url: str | None = None
    provider: str | None = None
    messages: list[ChatMessage] = field(default_factory=list)
    is_processing: bool = False
    streaming_message: str | None = None

    def snapshot(self) -> SessionState:
        return replace(self, messages=list(self.messages))

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "sessionId": self.session_id,
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
            "isProcessing": self.is_processing,
        }
        if self.api_key is not None:
            d["apiKey"] = self.api_key
        if self.base_url is not None:
            d["baseUrl"] = self.base_url
        if self.provider is not None:
            d["provider"] = self.provider
        if self.streaming_message is not None:
            d["streamingMessage"] = self.streaming_message
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionState:
        return cls(
            session_id=data["sessionId"],
            model=data.get("model") or DEFAULT_MODEL,
            api_key=data.get("apiKey"),
            base_url=data.get("baseUrl"),
            provider=data.get("provider"),
            messages=[ChatMessage.from_dict(m) for m in data.get("messages", [])],
            is_processing=bool(data.get("isProcessing", False)),
            streaming_message=data.get("streamingMessage"),
        )


@dataclass(frozen=True)
class SessionDirectoryEntry:
    session_id: str
    title: str
    created_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "title": self.title,
            "createdAt": self.created_at,
        }
