"""Progress callbacks exposed to callers (CLI, UIs, tests).

Every hook is optional. A hook that raises is logged as a warning and
otherwise ignored: observers never change the outcome of a generation.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from codemap.core.settings import get_logger

if TYPE_CHECKING:
    from codemap.core.contracts.checkpoint import StageContext
    from codemap.core.contracts.codemap import Codemap

log = get_logger(__name__)

TraceStatus = Literal["start", "complete"]


@dataclass(slots=True)
class PipelineCallbacks:
    """Optional observers for one generation.

    Attributes
    ----------
    on_message:
        ``(role, text)`` for user/assistant/system/error narration.
    on_tool_call:
        ``(tool_name, arguments_text, result_preview)`` after each call.
    on_parallel_tools:
        Number of tool executions currently in flight.
    on_phase_change:
        ``(phase_name, stage_number)``.
    on_trace_stage:
        ``(trace_id, stage_number, "start" | "complete")``.
    on_checkpoint:
        The stage context, once captured.
    on_token:
        Each streamed text fragment.
    on_codemap_update:
        The codemap after Structure and again after Aggregation.
    """

    on_message: Callable[[str, str], Any] | None = None
    on_tool_call: Callable[[str, str, str], Any] | None = None
    on_parallel_tools: Callable[[int], Any] | None = None
    on_phase_change: Callable[[str, int], Any] | None = None
    on_trace_stage: Callable[[str, int, TraceStatus], Any] | None = None
    on_checkpoint: Callable[[StageContext], Any] | None = None
    on_token: Callable[[str], Any] | None = None
    on_codemap_update: Callable[[Codemap], Any] | None = None

    def emit(self, hook: str, *args: Any) -> None:
        """Call ``hook`` with ``args`` if it is set, logging any failure."""
        fn = getattr(self, hook)
        if fn is None:
            return
        try:
            fn(*args)
        except Exception as exc:  # noqa: BLE001
            log.warning("Callback %s failed: %s", hook, exc)


__all__ = ["PipelineCallbacks", "TraceStatus"]
