"""Assemble a stream of ``StreamChunk`` objects into one response.

Text fragments are concatenated in arrival order.  Tool-call fragments are
merged per ``position`` slot:

  - ``id`` and ``function_name`` are last-write-wins (a later non-empty
    value replaces the earlier one).
  - ``arguments`` fragments are concatenated, since backends stream the
    JSON argument string in pieces.

A slot is emitted only if an id, a function name and an arguments string
(possibly empty) were all observed.  Incomplete slots are dropped.

Emitted tool calls are ordered by slot position, which is the order the
backend introduced them.  Callers that execute several calls sequentially
rely on this.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterable, Callable

from llm_relay.types import AssembledResponse, StreamChunk, ToolCall, ToolCallDelta

_logger = logging.getLogger(__name__)

TextCallback = Callable[[str], object]


@dataclass
class _Slot:
    id: str | None = None
    function_name: str | None = None
    arguments: str | None = None

    @property
    def complete(self) -> bool:
        return bool(self.id) and bool(self.function_name) and self.arguments is not None


class StreamAssembler:
    """Accumulates chunks for a single response.

    One instance per call; instances are never shared between concurrent
    requests.
    """

    def __init__(self, on_text: TextCallback | None = None) -> None:
        self._on_text = on_text
        self._text_parts: list[str] = []
        self._slots: dict[int, _Slot] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, chunk: StreamChunk) -> None:
        """Merge one chunk into the accumulated state."""
        text = chunk.text
        if text:
            self._text_parts.append(text)
            if self._on_text is not None:
                self._on_text(text)

        for delta in chunk.tool_call_deltas:
            self._merge(delta)

    def finish(self) -> AssembledResponse:
        """Return the assembled text and complete tool calls."""
        tool_calls: list[ToolCall] = []
        for position in sorted(self._slots):
            slot = self._slots[position]
            if not slot.complete:
                _logger.debug(
                    "Dropping incomplete tool call at position %d "
                    "(id=%r, name=%r, has_arguments=%s)",
                    position, slot.id, slot.function_name,
                    slot.arguments is not None,
                )
                continue
            tool_calls.append(
                ToolCall(
                    id=slot.id or "",
                    function_name=slot.function_name or "",
                    arguments=slot.arguments or "",
                )
            )
        return AssembledResponse(
            text="".join(self._text_parts),
            tool_calls=tuple(tool_calls),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _merge(self, delta: ToolCallDelta) -> None:
        slot = self._slots.get(delta.position)
        if slot is None:
            slot = self._slots[delta.position] = _Slot()
        if delta.id:
            slot.id = delta.id
        if delta.function_name:
            slot.function_name = delta.function_name
        if delta.arguments is not None:
            slot.arguments = (slot.arguments or "") + delta.arguments


async def assemble_stream(
    chunks: AsyncIterable[StreamChunk],
    on_text: TextCallback | None = None,
) -> AssembledResponse:
    """Consume *chunks* fully and return the assembled response.

    *on_text* is called synchronously with each text fragment, exactly as it
    arrived.  A failure raised by the source propagates unchanged and any
    partial state is discarded.
    """
    assembler = StreamAssembler(on_text)
    async for chunk in chunks:
        assembler.feed(chunk)
    return assembler.finish()
