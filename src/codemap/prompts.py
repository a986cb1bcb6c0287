"""Prompt templates and providers.

The pipeline treats rendered prompts as opaque strings. Templates use
``{{ name }}`` placeholders; a placeholder with no matching variable is left
in place and logged.

Stage ids
---------
``system``, ``parallel_addon``, ``research``, ``structure``,
``trace_diagram``, ``trace_locations``, ``trace_guide``, ``diagram`` and
``suggestion``.

:class:`BuiltinPrompts` serves the in-package templates below.
:class:`DirectoryPrompts` reads ``<stage_id>.md`` from a directory (for
example ``CODEMAP_PROMPTS_DIR``) and falls back to the built-ins for files
that do not exist.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable

from .core.settings import DetailLevel, Mode, Settings, get_logger

log = get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_LEADING_HEADER = re.compile(r"^#[^\n]*\n+")

SYSTEM = """\
You are a senior engineer mapping how a codebase works. You answer questions
by exploring the code with the provided tools and then describing concrete
execution paths, grounded in real files and line numbers.

Workspace root: {{ workspace_root }}
Workspace URI: {{ workspace_uri }}
Corpus: {{ corpus_name }}
User OS: {{ user_os }}

Workspace layout:
{{ workspace_layout }}

Rules:
- Use the tools to read code. Never invent files, symbols or line numbers.
- Prefer grep_search and read_file over repeated directory listings.
- Emit real tool calls through the tool calling mechanism, never as text.
- Write all prose in {{ language }}.
"""

PARALLEL_ADDON = """\
Maximize parallel tool calls: when several reads or searches are independent,
request all of them in the same turn instead of one at a time.
"""

RESEARCH = """\
Current date: {{ current_date }}

Research the following question about this codebase:

{{ query }}

Find the entry points, the main execution paths and the files involved.
{{ detail_level }}
When you have gathered enough evidence, say "I am done researching" and
summarize what you found.
"""

STRUCTURE = """\
Based on your research, produce a codemap for: {{ query }}

{{ detail_instruction }}

Return a single JSON object wrapped in <CODEMAP></CODEMAP> tags with this shape:
{
  "title": "...",
  "description": "...",
  "traces": [
    {
      "id": "1",
      "title": "...",
      "description": "...",
      "locations": [
        {"id": "1a", "path": "...", "lineNumber": 1, "lineContent": "...",
         "title": "...", "description": "..."}
      ]
    }
  ]
}
Only use locations you have actually seen. Write titles and descriptions in {{ language }}.
"""

TRACE_DIAGRAM = """\
Focus on trace {{ trace_id }} of the codemap above.

Draw a plain-text diagram of this trace: the sequence of calls and data
hand-offs between its locations, as an indented tree with arrows.
Write labels in {{ language }}.
"""

TRACE_LOCATIONS = """\
Now annotate the diagram for trace {{ trace_id }} with exact references.
Every node that corresponds to a location must show its id and its
file:line, for example `[1a] src/app.py:42`.

Return the final diagram inside <TRACE_TEXT_DIAGRAM></TRACE_TEXT_DIAGRAM> tags.
"""

TRACE_GUIDE = """\
Write a short guide for trace {{ trace_id }}: what triggers it, what each
location does in order, and what to read first when changing it.
Write it in {{ language }} as Markdown inside <TRACE_GUIDE></TRACE_GUIDE> tags.
"""

DIAGRAM = """\
Current date: {{ current_date }}

Draw one Mermaid flowchart that shows the whole codemap above: one subgraph
per trace, nodes for the key locations, edges for calls and data flow.

Requirements:
- Output ONLY a single ```mermaid code block, no other text.
- Start with `flowchart TD`.
- Use explicit subgraph ids: subgraph t1 [Label].
- Do not use end, subgraph, graph or flowchart as node ids.
- Do not add colours or style lines.
- Write labels in {{ language }}.
"""

SUGGESTION = """\
The user recently opened these files:
{{ recent_files }}

Suggest up to 3 questions they could ask to get a codemap of how this code
works. Reply with a JSON array only:
[{"title": "...", "subtitle": "...", "starting_points": ["path", "..."]}]
Write title and subtitle in {{ language }}.
"""

BUILTIN_TEMPLATES: dict[str, str] = {
    "system": SYSTEM,
    "parallel_addon": PARALLEL_ADDON,
    "research": RESEARCH,
    "structure": STRUCTURE,
    "trace_diagram": TRACE_DIAGRAM,
    "trace_locations": TRACE_LOCATIONS,
    "trace_guide": TRACE_GUIDE,
    "diagram": DIAGRAM,
    "suggestion": SUGGESTION,
}

DETAIL_INSTRUCTIONS: dict[str, str] = {
    "overview": "",
    "low": (
        "The resulting codemap should be detailed, containing at least 10 "
        "nodes/locations across all traces combined."
    ),
    "medium": (
        "The resulting codemap should be very detailed, containing at least 30 "
        "nodes/locations across all traces combined."
    ),
    "high": (
        "The resulting codemap should be extremely detailed, containing at least 60 "
        "nodes/locations across all traces combined."
    ),
    "ultra": (
        "The resulting codemap MUST be massive and exhaustive (ULTRA detail). Aim for a "
        "minimum of 100 nodes/locations across all traces combined. Break down every "
        "significant component and interaction."
    ),
}


@runtime_checkable
class PromptProvider(Protocol):
    """Renders the prompt for one stage."""

    def render(self, stage_id: str, variables: Mapping[str, str]) -> str: ...


def substitute(template: str, variables: Mapping[str, str]) -> str:
    """Replace ``{{ name }}`` placeholders; unknown names are kept as-is."""

    def repl(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in variables:
            return str(variables[name])
        log.warning("Template variable not provided: %s", name)
        return match.group(0)

    return _PLACEHOLDER.sub(repl, template)


class BuiltinPrompts:
    """Templates shipped with the package."""

    def __init__(self, templates: Mapping[str, str] | None = None) -> None:
        self._templates = dict(BUILTIN_TEMPLATES if templates is None else templates)

    def template(self, stage_id: str) -> str:
        try:
            return self._templates[stage_id]
        except KeyError:
            raise KeyError(f"Unknown prompt stage: {stage_id}") from None

    def render(self, stage_id: str, variables: Mapping[str, str]) -> str:
        return substitute(self.template(stage_id), variables).strip()


class DirectoryPrompts:
    """Markdown templates loaded from ``directory/<stage_id>.md``.

    A leading ``# ...`` header line is dropped. Files are read once and
    cached; call :meth:`clear_cache` to pick up edits.
    """

    def __init__(self, directory: str | Path, fallback: BuiltinPrompts | None = None) -> None:
        self.directory = Path(directory)
        self.fallback = fallback or BuiltinPrompts()
        self._cache: dict[str, str] = {}

    def template(self, stage_id: str) -> str:
        if stage_id not in self._cache:
            path = self.directory / f"{stage_id}.md"
            if path.is_file():
                text = path.read_text(encoding="utf-8")
                self._cache[stage_id] = _LEADING_HEADER.sub("", text, count=1).strip()
            else:
                self._cache[stage_id] = self.fallback.template(stage_id)
        return self._cache[stage_id]

    def render(self, stage_id: str, variables: Mapping[str, str]) -> str:
        return substitute(self.template(stage_id), variables).strip()

    def clear_cache(self) -> None:
        self._cache.clear()


def prompts_from_settings(s: Settings) -> PromptProvider:
    if s.prompts_dir:
        return DirectoryPrompts(s.prompts_dir)
    return BuiltinPrompts()


def detail_instruction(level: DetailLevel) -> str:
    return DETAIL_INSTRUCTIONS.get(level, "")


def research_detail(level: DetailLevel) -> str:
    """Extra research instruction; empty for ``overview``."""
    if level == "overview":
        return ""
    return (
        "Please be very thorough and exhaustive. "
        f"Aim for a high level of detail (level: {level})."
    )


def build_system_prompt(
    prompts: PromptProvider, mode: Mode, variables: Mapping[str, str]
) -> str:
    """Render the system prompt; fast mode appends the parallel-tool addon."""
    base = prompts.render("system", variables)
    if mode == "fast":
        return f"{base}\n\n{prompts.render('parallel_addon', variables)}"
    return base


__all__ = [
    "BUILTIN_TEMPLATES",
    "DETAIL_INSTRUCTIONS",
    "BuiltinPrompts",
    "DirectoryPrompts",
    "PromptProvider",
    "build_system_prompt",
    "detail_instruction",
    "prompts_from_settings",
    "research_detail",
    "substitute",
]
