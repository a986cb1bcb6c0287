"""Codemap engine: turn a question about a codebase into a traced, diagrammed codemap.

The package drives a language model through a fixed stage pipeline
(research → structure → per-trace stages ∥ global diagram → aggregation).
"""

from __future__ import annotations

__all__ = ["__version__"]
__version__ = "0.1.0"
