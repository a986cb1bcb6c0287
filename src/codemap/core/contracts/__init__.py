"""Data contracts shared by the loop, the pipeline and persisted artifacts."""

from __future__ import annotations

from .checkpoint import SCHEMA_VERSION, FlatMessage, StageContext
from .codemap import Codemap, Location, Suggestion, Trace
from .conversation import Conversation, Message, ToolCallRecord

__all__ = [
    "SCHEMA_VERSION",
    "Codemap",
    "Conversation",
    "FlatMessage",
    "Location",
    "Message",
    "StageContext",
    "Suggestion",
    "ToolCallRecord",
    "Trace",
]
