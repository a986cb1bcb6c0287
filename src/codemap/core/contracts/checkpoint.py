"""Stage context checkpoint captured right after the Structure stage.

The checkpoint is what makes later stages replayable: it holds everything a
trace or diagram stage needs to rebuild its initial prompt context without
re-running Research or Structure.

Format
------
A versioned JSON record (``schemaVersion`` = 1) with camelCase keys. The
conversation prefix is stored as role+content pairs; tool calls and results
have already been flattened to text, so the prefix is lossy on purpose.

Unknown keys are kept (``extra="allow"``) and written back out, so a file
produced by a newer version survives a load/save cycle here.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..settings import DetailLevel, Mode
from .conversation import Conversation

SCHEMA_VERSION = 1


class FlatMessage(BaseModel):
    """One flattened conversation entry."""

    model_config = ConfigDict(frozen=True, extra="allow")

    role: Literal["user", "assistant"]
    content: str


class StageContext(BaseModel):
    """Immutable snapshot of the conversation after Structure."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True, extra="allow"
    )

    schema_version: Literal[1] = SCHEMA_VERSION
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    query: str
    mode: Mode
    detail_level: DetailLevel
    workspace_root: str
    current_date: str
    language: str
    system_prompt: str
    base_messages: tuple[FlatMessage, ...] = ()

    @classmethod
    def capture(
        cls,
        conversation: Conversation,
        **fields: object,
    ) -> StageContext:
        """Snapshot ``conversation`` together with the rendering variables."""
        pairs = conversation.flatten()
        return cls.model_validate(
            {
                **fields,
                "base_messages": [{"role": r, "content": t} for r, t in pairs],
            }
        )

    def prefix(self) -> list[tuple[str, str]]:
        """The flattened conversation prefix as ``(role, text)`` pairs."""
        return [(m.role, m.content) for m in self.base_messages]

    def conversation(self) -> Conversation:
        """Build a fresh private conversation seeded from the prefix."""
        return Conversation.from_flat(self.prefix())

    def variables(self) -> dict[str, str]:
        """Prompt-rendering variables recorded at capture time."""
        return {
            "query": self.query,
            "current_date": self.current_date,
            "language": self.language,
            "workspace_root": self.workspace_root,
            "detail_level": self.detail_level,
        }

    def to_json(self, *, indent: int | None = None) -> str:
        return self.model_dump_json(by_alias=True, indent=indent)

    @classmethod
    def from_json(cls, text: str | bytes) -> StageContext:
        return cls.model_validate_json(text)



__all__ = ["SCHEMA_VERSION", "FlatMessage", "StageContext"]
