"""Model-driven stages: the tool loop and the agents built on it."""

from __future__ import annotations

from .callbacks import PipelineCallbacks
from .diagram_agent import build_fix_prompt, synthesize_diagram
from .suggestion_agent import generate_suggestions, parse_suggestions
from .tool_loop import LoopResult, StreamedToolLoop, ToolSlotPool, run_streamed_tool_loop
from .trace_agent import TraceOutcome, process_trace

__all__ = [
    "LoopResult",
    "PipelineCallbacks",
    "StreamedToolLoop",
    "ToolSlotPool",
    "TraceOutcome",
    "build_fix_prompt",
    "generate_suggestions",
    "parse_suggestions",
    "process_trace",
    "run_streamed_tool_loop",
    "synthesize_diagram",
]
