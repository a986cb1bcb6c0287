"""Mermaid validation and post-processing."""

from __future__ import annotations

from .colorize import SUBGRAPH_FILL_PALETTE, colorize_diagram, subgraph_ids
from .validate import (
    DiagramParser,
    MermaidCliParser,
    MermaidSyntaxParser,
    default_parser,
    find_dangling_edge,
    validate_diagram,
)

__all__ = [
    "SUBGRAPH_FILL_PALETTE",
    "DiagramParser",
    "MermaidCliParser",
    "MermaidSyntaxParser",
    "colorize_diagram",
    "default_parser",
    "find_dangling_edge",
    "subgraph_ids",
    "validate_diagram",
]
