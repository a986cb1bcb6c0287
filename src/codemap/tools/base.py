"""Tool contract and catalog.

The tool loop only ever sees :class:`Tool`: a name, a description, a JSON
input schema, an ``idempotent_listing`` flag and an async :meth:`Tool.execute`.
Two variants exist:

- :class:`BuiltinTool` wraps a Python callable (sync or async) taking
  keyword arguments.
- :class:`RegisteredTool` wraps any externally registered object exposing
  ``name``, ``description``, an input schema and ``execute``. Loose inputs
  (JSON strings, ``<parameter name="...">`` snippets, bare strings) are
  coerced into an argument mapping before the call.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Iterator, Mapping
from typing import Any

_XML_PARAM = re.compile(r'<parameter\s+name="([^"]+)">([\s\S]*?)</parameter>', re.IGNORECASE)
_PREFERRED_KEYS = ("query", "search", "q", "text", "pattern")


def stringify_result(value: Any) -> str:
    """Render a tool return value as text for the conversation."""
    if isinstance(value, str):
        return value
    if value is None:
        return "null"
    try:
        return json.dumps(value, indent=2, default=str)
    except (TypeError, ValueError):
        return str(value)


class Tool(ABC):
    """A named operation the model may call."""

    name: str
    description: str
    input_schema: Mapping[str, Any]
    idempotent_listing: bool = False

    @abstractmethod
    async def execute(self, arguments: Any) -> str:
        """Run the tool and return its textual result. May raise."""

    def declaration(self) -> dict[str, Any]:
        """Function declaration sent to the model."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.input_schema) or {"type": "object", "properties": {}},
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class BuiltinTool(Tool):
    """In-process tool backed by a plain function."""

    def __init__(
        self,
        name: str,
        description: str,
        input_schema: Mapping[str, Any],
        fn: Callable[..., Any],
        *,
        idempotent_listing: bool = False,
    ) -> None:
        self.name = name
        self.description = description
        self.input_schema = input_schema
        self.idempotent_listing = idempotent_listing
        self._fn = fn

    async def execute(self, arguments: Any) -> str:
        kwargs = dict(arguments) if isinstance(arguments, Mapping) else {}
        if inspect.iscoroutinefunction(self._fn):
            value = await self._fn(**kwargs)
        else:
            value = await asyncio.to_thread(self._fn, **kwargs)
        return stringify_result(value)


class RegisteredTool(Tool):
    """Adapter for an externally registered tool object."""

    def __init__(self, wrapped: Any, *, idempotent_listing: bool = False) -> None:
        self.name = str(wrapped.name)
        self.description = str(getattr(wrapped, "description", "") or "")
        schema = getattr(wrapped, "input_schema", None) or getattr(wrapped, "inputSchema", None)
        self.input_schema = dict(schema or {})
        self.idempotent_listing = idempotent_listing
        self._wrapped = wrapped

    async def execute(self, arguments: Any) -> str:
        value = self._wrapped.execute(coerce_tool_input(self.input_schema, arguments))
        if inspect.isawaitable(value):
            value = await value
        return stringify_result(value)


def coerce_tool_input(schema: Mapping[str, Any] | None, value: Any) -> Any:
    """Best-effort conversion of loose model input into an argument mapping."""
    properties = list((schema or {}).get("properties") or {})
    required = list((schema or {}).get("required") or [])
    preferred = next((k for k in _PREFERRED_KEYS if k in properties), None)
    if preferred is None and len(required) == 1:
        preferred = required[0]
    if preferred is None and len(properties) == 1:
        preferred = properties[0]

    if isinstance(value, str) and value.strip():
        text = value.strip()
        if (text[0], text[-1]) in {("{", "}"), ("[", "]")}:
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                pass
        params = {k.strip(): v.strip() for k, v in _XML_PARAM.findall(text) if k.strip()}
        if params:
            return params
        if preferred:
            return {preferred: text}
    if isinstance(value, Mapping | list):
        return value
    if preferred:
        return {preferred: ""}
    return {} if value is None else value


class ToolCatalog:
    """Tools keyed by name; later additions replace earlier ones."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.add(tool)

    def add(self, tool: Tool) -> None:
        self._tools[tool.name] = tool

    def merged(self, other: Iterable[Tool]) -> ToolCatalog:
        """Return a new catalog with ``other`` layered over this one."""
        return ToolCatalog([*self._tools.values(), *other])

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def declarations(self) -> list[dict[str, Any]]:
        return [t.declaration() for t in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)


__all__ = [
    "BuiltinTool",
    "RegisteredTool",
    "Tool",
    "ToolCatalog",
    "coerce_tool_input",
    "stringify_result",
]
