"""Abstract base class for completion clients."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator

from agentchat.llm.types import Message, ModelInfo, StreamChunk


class CompletionClient(ABC):
    """
    A client encapsulates access to a single chat-completion endpoint.

    Implementations must support:
      - Streamed and non-streamed chat completions (``chat``).
      - Listing the models the endpoint serves (``list_models``).
    """

    def __init__(self, model: str) -> None:
        self._model = model

    @property
    def model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        self._model = model

    @abstractmethod
    async def chat(
        self,
        messages: list[Message],
        tools: list[dict] | None = None,
        stream: bool = True,
        timeout: float | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Start a chat completion.

        Yields ``StreamChunk`` objects.  The last chunk has ``done=True``.
        A non-streamed call yields exactly one chunk.
        Raises ``UpstreamError`` when the endpoint fails.
        """
        ...
        # Make the method an async generator so sub-classes can ``yield``.
        # This line is unreachable but satisfies the type checker.
        if False:  # pragma: no cover
            yield StreamChunk()  # type: ignore[misc]

    @abstractmethod
    async def list_models(self) -> list[ModelInfo]:
        """Return the models served by the endpoint, sorted by name."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable client name (e.g. ``"openai-compat"``)."""
        ...

    async def aclose(self) -> None:
        """Release pooled connections, if any."""
        return None
