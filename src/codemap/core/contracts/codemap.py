"""Codemap contracts: locations, traces, the codemap itself and suggestions.

These are Pydantic v2 models. Field names are snake_case in Python and
camelCase on the wire, matching the JSON the model is asked to emit inside
the ``<CODEMAP>`` block (``lineNumber``, ``lineContent``, ...). Both spellings
are accepted on input.

Write-once locations
--------------------
``Location`` and ``Trace`` are frozen. The Structure stage assigns a trace's
locations once; later stages only attach a diagram, a guide or an error,
always through :meth:`Trace.with_updates`, which returns a new object.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..settings import DetailLevel, Mode
from .checkpoint import StageContext


_WIRE = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Location(BaseModel):
    """A single file+line reference with explanatory text."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(description="Location id, e.g. '1a'")
    path: str = Field(description="Workspace-relative or absolute file path")
    line_number: int = Field(default=0, ge=0, description="1-based line number (0 = unknown)")
    line_content: str = Field(default="", description="Verbatim source line")
    title: str = ""
    description: str = ""


class Trace(BaseModel):
    """One narrative execution path through the codebase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    title: str = ""
    description: str = ""
    locations: tuple[Location, ...] = ()
    trace_text_diagram: str | None = None
    trace_guide: str | None = None
    error: str | None = Field(default=None, description="Why per-trace work failed, if it did")

    def with_updates(self, **changes: Any) -> Trace:
        """Return a copy with diagram/guide/error fields replaced.

        Raises
        ------
        ValueError
            If a change would touch ``id`` or ``locations``.
        """
        forbidden = {"id", "locations"} & set(changes)
        if forbidden:
            raise ValueError(f"trace fields are write-once: {sorted(forbidden)}")
        return self.model_copy(update=changes)


class Codemap(BaseModel):
    """The aggregated artifact: traces plus one optional global diagram."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    title: str = ""
    description: str = ""
    traces: list[Trace] = Field(default_factory=list)
    mermaid_diagram: str | None = None

    # Metadata attached when the codemap is produced or saved.
    stage_context: StageContext | None = None
    query: str | None = None
    mode: Mode | None = None
    detail_level: DetailLevel | None = None
    workspace_path: str | None = None
    schema_version: int | None = None
    saved_at: datetime | None = None
    updated_at: datetime | None = None

    def trace(self, trace_id: str) -> Trace | None:
        for t in self.traces:
            if t.id == trace_id:
                return t
        return None

    def replace_trace(self, updated: Trace) -> Codemap:
        """Return a copy with the trace of the same id swapped for ``updated``."""
        traces = [updated if t.id == updated.id else t for t in self.traces]
        return self.model_copy(update={"traces": traces, "updated_at": datetime.now(UTC)})

    def to_json(self, *, indent: int | None = 2) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=indent)

    @classmethod
    def from_json(cls, text: str | bytes) -> Codemap:
        return cls.model_validate_json(text)


class Suggestion(BaseModel):
    """A suggested codemap query derived from recently opened files."""

    model_config = _WIRE

    id: str
    text: str
    sub: str | None = None
    starting_points: list[str] = Field(default_factory=list)
    timestamp: float = Field(default_factory=lambda: datetime.now(UTC).timestamp())


__all__ = ["Codemap", "DetailLevel", "Location", "Mode", "Suggestion", "Trace"]
