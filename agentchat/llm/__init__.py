"""LLM subsystem -- completion clients and streaming tool-call accumulation."""

from agentchat.llm.accumulator import StreamAccumulator
from agentchat.llm.types import (
    ChatResult,
    Message,
    ModelInfo,
    RawToolDelta,
    StreamChunk,
    ToolCall,
)

__all__ = [
    "ChatResult",
    "Message",
    "ModelInfo",
    "RawToolDelta",
    "StreamAccumulator",
    "StreamChunk",
    "ToolCall",
]
