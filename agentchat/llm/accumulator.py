"""
Accumulates streaming content and tool-call fragments for one completion.

Design goals:
  - Tool-call fragments are buffered in a growable list addressed by the
    stream's slot index.  Slots are created on first sight; gaps stay
    ``None`` and are skipped.
  - ``id`` is set once, ``name`` and argument text are concatenated in
    arrival order.  Arguments are kept as raw text; parsing happens per call
    at execution time.
  - A slot that never received an id or a name disqualifies the tool round.
    That is not an error: the accumulated text already holds whatever the
    model said, so the caller just sees no tool calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from agentchat.llm.types import RawToolDelta, StreamChunk, ToolCall

logger = logging.getLogger(__name__)


@dataclass
class _Slot:
    id: str = ""
    name: str = ""
    arguments: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.id) and bool(self.name)


class StreamAccumulator:
    """Buffers content deltas and tool-call fragments from one stream."""

    def __init__(self) -> None:
        self._parts: list[str] = []
        self._slots: list[_Slot | None] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, chunk: StreamChunk) -> str:
        """
        Merge one ``StreamChunk``.

        Returns the content delta carried by the chunk (``""`` if none) so
        the caller can forward it.
        """
        if chunk.delta:
            self._parts.append(chunk.delta)
        if chunk.tool_deltas:
            for td in chunk.tool_deltas:
                self.feed_tool_delta(td)
        return chunk.delta

    def feed_tool_delta(self, delta: RawToolDelta) -> None:
        if delta.call_index < 0:
            logger.warning("Ignoring tool-call fragment with slot %d", delta.call_index)
            return
        while len(self._slots) <= delta.call_index:
            self._slots.append(None)
        slot = self._slots[delta.call_index]
        if slot is None:
            slot = self._slots[delta.call_index] = _Slot()

        if delta.id and not slot.id:
            slot.id = delta.id
        if delta.name_delta:
            slot.name += delta.name_delta
        if delta.args_delta:
            slot.arguments += delta.args_delta

    @property
    def content(self) -> str:
        return "".join(self._parts)

    def tool_calls(self) -> list[ToolCall]:
        """
        Return the requested tool calls in slot order.

        Empty when no slot was seen, or when any slot is missing its id or
        name by stream end.
        """
        slots = [s for s in self._slots if s is not None]
        if not slots:
            return []
        incomplete = [i for i, s in enumerate(self._slots) if s is not None and not s.complete]
        if incomplete:
            logger.warning(
                "Dropping tool-call round: slots %s never received an id or name",
                incomplete,
            )
            return []
        return [ToolCall(id=s.id, name=s.name, arguments=s.arguments) for s in slots]
