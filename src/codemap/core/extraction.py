"""Parsing helpers for free-form model output.

Everything the model writes is untrusted text. Each helper tries the
tag-delimited or fenced form first, falls back to a looser heuristic where
one exists, and otherwise returns ``None``. None of them raise on malformed
input.
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import ValidationError

from .contracts.codemap import Codemap
from .settings import get_logger

log = get_logger(__name__)

_CODEMAP_TAG = re.compile(r"<CODEMAP>\s*([\s\S]*?)\s*</CODEMAP>")
_LOOSE_CODEMAP = re.compile(r'\{[\s\S]*"title"[\s\S]*"traces"[\s\S]*\}')
_MERMAID_FENCE = re.compile(r"```mermaid\s*([\s\S]*?)\s*```", re.IGNORECASE)
_ANY_FENCE = re.compile(r"```[\s\S]*?```")

TRACE_DIAGRAM_TAG = "TRACE_TEXT_DIAGRAM"
TRACE_GUIDE_TAG = "TRACE_GUIDE"

RESEARCH_COMPLETE_MARKERS = (
    "I am done researching",
    "done researching",
    "research is complete",
    "finished exploring",
    "completed my analysis",
    "Would you like to hear more?",
)


def _load_codemap(raw: str) -> Codemap | None:
    try:
        payload: Any = json.loads(raw)
    except json.JSONDecodeError as exc:
        log.warning("Codemap JSON decode failed: %s", exc)
        return None
    if not isinstance(payload, dict):
        log.warning("Codemap payload is not a JSON object")
        return None
    try:
        return Codemap.model_validate(payload)
    except ValidationError as exc:
        log.warning("Codemap payload failed validation: %s", exc.errors()[:3])
        return None


def extract_codemap(text: str) -> Codemap | None:
    """Extract the Structure stage payload.

    Tries the ``<CODEMAP>...</CODEMAP>`` block first, then the widest
    ``{ ... "title" ... "traces" ... }`` span in the text.
    """
    tagged = _CODEMAP_TAG.search(text)
    if tagged:
        found = _load_codemap(tagged.group(1))
        if found is not None:
            return found
    loose = _LOOSE_CODEMAP.search(text)
    if loose:
        return _load_codemap(loose.group(0))
    return None


def extract_tagged_block(text: str, tag: str) -> str | None:
    """Return the trimmed body of the first ``<TAG>...</TAG>`` block."""
    match = re.search(rf"<{tag}>\s*([\s\S]*?)\s*</{tag}>", text)
    if not match:
        return None
    body = match.group(1).strip()
    return body or None


def extract_trace_diagram(text: str) -> str | None:
    return extract_tagged_block(text, TRACE_DIAGRAM_TAG)


def extract_trace_guide(text: str) -> str | None:
    return extract_tagged_block(text, TRACE_GUIDE_TAG)


def extract_diagram(text: str) -> str | None:
    """Pull diagram source out of a response.

    Order: a ```` ```mermaid ```` block, then any fenced block with the fences
    removed, then the whole trimmed response. Empty input gives ``None``.
    """
    fenced = _MERMAID_FENCE.search(text)
    if fenced:
        return fenced.group(1).strip() or None
    generic = _ANY_FENCE.search(text)
    if generic:
        return generic.group(0).replace("```", "").strip() or None
    trimmed = text.strip()
    return trimmed or None


def is_research_complete(text: str) -> bool:
    """Best-effort check for the model saying research is finished."""
    lowered = text.lower()
    return any(marker.lower() in lowered for marker in RESEARCH_COMPLETE_MARKERS)


__all__ = [
    "RESEARCH_COMPLETE_MARKERS",
    "TRACE_DIAGRAM_TAG",
    "TRACE_GUIDE_TAG",
    "extract_codemap",
    "extract_diagram",
    "extract_tagged_block",
    "extract_trace_diagram",
    "extract_trace_guide",
    "is_research_complete",
]
