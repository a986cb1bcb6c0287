"""Model session contract: a prompt plus a conversation in, a stream of events out.

The tool loop depends only on :class:`ModelSession`. A session yields three
kinds of events per round:

- :class:`TextDelta` for each streamed text fragment,
- :class:`ToolCallRequested` for each tool call (``input`` may itself carry a
  batch under ``toolCalls``; the loop flattens it),
- :class:`StreamDone` once the round is over.

Sessions must stop producing events promptly once ``cancel_event`` is set.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from codemap.core.contracts.conversation import Message


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ToolCallRequested:
    call_id: str
    name: str
    input: Any = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StreamDone:
    finish_reason: str | None = None


StreamEvent = TextDelta | ToolCallRequested | StreamDone


@runtime_checkable
class ModelSession(Protocol):
    """Anything that can stream one model round."""

    def open(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        require_tool: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]: ...


__all__ = ["ModelSession", "StreamDone", "StreamEvent", "TextDelta", "ToolCallRequested"]
