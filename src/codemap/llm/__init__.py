"""Model session contract and the OpenAI-compatible streaming session."""

from __future__ import annotations

from .client import OpenAIChatSession
from .session import ModelSession, StreamDone, StreamEvent, TextDelta, ToolCallRequested

__all__ = [
    "ModelSession",
    "OpenAIChatSession",
    "StreamDone",
    "StreamEvent",
    "TextDelta",
    "ToolCallRequested",
]
