"""Pipeline entry points for codemap generation.

Currently exposed:

- :class:`CodemapPipeline`: Research → Structure → (traces ∥ diagram) →
  Aggregation, plus replay from a saved checkpoint.
"""

from __future__ import annotations

from .codemap_generation import CodemapPipeline, PipelineState, merge_trace_outcome

__all__ = ["CodemapPipeline", "PipelineState", "merge_trace_outcome"]
