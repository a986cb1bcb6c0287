"""Mermaid validation used by the diagram retry loop.

Validation runs in two steps:

1. :func:`find_dangling_edge` is a cheap line scan for edges with no target
   (``A -->`` or ``A -->|label|`` at end of line). A hit is rejected
   without calling the parser.
2. A :class:`DiagramParser` parses the full text. :func:`default_parser`
   picks :class:`MermaidCliParser` when ``mmdc`` is on ``PATH`` and the
   in-process :class:`MermaidSyntaxParser` otherwise; any object with a
   compatible ``parse`` can be injected instead.

Parser failures caused by the HTML sanitizer dependency being unavailable
(common in headless runs) are treated as a pass.
"""

from __future__ import annotations

import re
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

from codemap.core.result import Err, Ok, Result, err, ok

_SANITIZER_UNAVAILABLE = re.compile(r"DOMPurify|purify\.(addHook|sanitize)", re.I)
_DANGLING_EDGE = re.compile(r"[\w\])}\"]\s*(-->|---|-\.->|==>|--[xo])\s*(\|[^|]*\|)?\s*;?\s*$")
_EDGE = re.compile(r"-->|---|-\.->|==>|--[xo]")
_HEADER = re.compile(
    r"^(graph|flowchart|sequenceDiagram|classDiagram|stateDiagram(-v2)?|erDiagram|gantt|pie"
    r"|journey|mindmap|timeline|gitGraph|quadrantChart|requirementDiagram)\b"
)
_FLOW_DIRECTIONS = {"TD", "TB", "BT", "RL", "LR"}
_RESERVED_NODE = re.compile(r"(?:^|[\s&>|-])(end|subgraph|graph|flowchart)\s*(?:$|[\s&;\[({-])")
_PAIRS = {")": "(", "]": "[", "}": "{"}
MMDC_TIMEOUT_SECONDS = 60


@runtime_checkable
class DiagramParser(Protocol):
    """Grammar parser: ``Ok(None)`` on success, ``Err(message)`` otherwise."""

    def parse(self, text: str) -> Result[None, str]: ...


def find_dangling_edge(text: str) -> str | None:
    """Return an error message for the first edge with no target, if any."""
    for number, line in enumerate(text.split("\n"), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("%%"):
            continue
        if _DANGLING_EDGE.search(stripped):
            return f"Dangling edge on line {number}: '{stripped}' has no target node"
    return None


def mask_labels(line: str) -> tuple[str, bool]:
    """Blank out label text in one flowchart line.

    Quoted strings, ``|edge labels|`` and everything inside node shapes
    (``[...]``, ``(...)``, ``{...}`` and the asymmetric ``id>...]``) become
    spaces; the shape delimiters themselves are kept.

    Returns
    -------
    tuple[str, bool]
        The masked line and whether its brackets and quotes are balanced.
    """
    out: list[str] = []
    stack: list[str] = []
    in_quote = in_pipe = False
    prev = ""
    for ch in line:
        if in_quote:
            in_quote = ch != '"'
            out.append(" ")
        elif ch == '"':
            in_quote = True
            out.append(" ")
        elif in_pipe or (ch == "|" and not stack):
            if ch == "|":
                in_pipe = not in_pipe
            out.append("|" if ch == "|" else " ")
        elif ch in "([{" or (ch == ">" and not stack and (prev.isalnum() or prev == "_")):
            # ``A>Flag]`` opens with ``>`` and closes with ``]``.
            stack.append("[" if ch == ">" else ch)
            out.append(ch)
        elif ch in _PAIRS:
            if not stack or stack.pop() != _PAIRS[ch]:
                return "".join(out), False
            out.append(ch)
        else:
            out.append(" " if stack else ch)
        prev = ch
    return "".join(out), not stack and not in_quote and not in_pipe


class MermaidSyntaxParser:
    """Structural Mermaid checks with parser-style error messages.

    Covers the header, flowchart direction, ``subgraph``/``end`` nesting,
    bracket balance per line and reserved words used as node ids on edge
    lines. Only flowcharts get the nesting and node checks; other diagram
    types are accepted once the header is recognised.
    """

    def parse(self, text: str) -> Result[None, str]:
        lines = text.replace("\r\n", "\n").split("\n")
        body = [
            (n, line.strip())
            for n, line in enumerate(lines, start=1)
            if line.strip() and not line.strip().startswith("%%")
        ]
        if not body:
            return err("No diagram type detected: empty diagram")

        first_no, header = body[0]
        m = _HEADER.match(header)
        if not m:
            return err(f"No diagram type detected matching given configuration for text: {header}")
        if m.group(1) not in {"graph", "flowchart"}:
            return ok(None)

        parts = header.split()
        if len(parts) > 1 and parts[1].rstrip(";") not in _FLOW_DIRECTIONS:
            return err(f"Parse error on line {first_no}: invalid direction '{parts[1]}'")

        depth = 0
        for number, line in body[1:]:
            keyword = line.split()[0].rstrip(";")
            if keyword == "subgraph":
                if len(line.split()) < 2:
                    return err(f"Parse error on line {number}: subgraph needs an id")
                depth += 1
                continue
            if keyword == "end" and line.rstrip(";") == "end":
                depth -= 1
                if depth < 0:
                    return err(f"Parse error on line {number}: unexpected 'end'")
                continue
            masked, balanced = mask_labels(line)
            if not balanced:
                return err(f"Parse error on line {number}: unbalanced brackets in '{line}'")
            if _EDGE.search(masked):
                reserved = _RESERVED_NODE.search(masked)
                if reserved:
                    return err(
                        f"Parse error on line {number}: reserved keyword "
                        f"'{reserved.group(1)}' used as a node id"
                    )
        if depth > 0:
            return err(f"Parse error on line {len(lines)}: {depth} unclosed subgraph(s)")
        return ok(None)


class MermaidCliParser:
    """Compile diagrams with mermaid-cli (``mmdc``).

    A non-zero exit is reported as ``Err`` carrying the tool's stderr, which
    holds the Mermaid parser message the fix prompt needs.
    """

    def __init__(self, executable: str = "mmdc", timeout: float = MMDC_TIMEOUT_SECONDS) -> None:
        self.executable = executable
        self.timeout = timeout

    def parse(self, text: str) -> Result[None, str]:
        with tempfile.TemporaryDirectory() as td:
            source = Path(td) / "diagram.mmd"
            source.write_text(text, encoding="utf-8")
            proc = subprocess.run(
                [self.executable, "-i", str(source), "-o", str(Path(td) / "diagram.svg")],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        if proc.returncode == 0:
            return ok(None)
        message = (proc.stderr or proc.stdout).strip()
        return err(message or f"mmdc exited with status {proc.returncode}")


def default_parser() -> DiagramParser:
    """``MermaidCliParser`` when ``mmdc`` is installed, else the structural parser."""
    mmdc = shutil.which("mmdc")
    if mmdc:
        return MermaidCliParser(mmdc)
    return MermaidSyntaxParser()


def validate_diagram(text: str, parser: DiagramParser | None = None) -> Result[str, str]:
    """Validate ``text``; ``Ok(text)`` when it is acceptable.

    Exceptions raised by ``parser`` are treated like an ``Err`` result.
    """
    dangling = find_dangling_edge(text)
    if dangling:
        return Err(dangling)
    active = parser or default_parser()
    try:
        outcome = active.parse(text)
    except Exception as exc:  # noqa: BLE001
        outcome = Err(str(exc) or type(exc).__name__)
    if isinstance(outcome, Err):
        message = str(outcome.error)
        if _SANITIZER_UNAVAILABLE.search(message):
            return Ok(text)
        return Err(message)
    return Ok(text)


__all__ = [
    "DiagramParser",
    "MermaidCliParser",
    "MermaidSyntaxParser",
    "default_parser",
    "find_dangling_edge",
    "mask_labels",
    "validate_diagram",
]
