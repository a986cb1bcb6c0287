"""Per-trace stages: diagram draft, location annotation, optional guide.

Each trace runs against its own conversation seeded from the checkpoint, so
traces share nothing mutable. Failures of any kind, cancellation included,
are returned as ``Err`` for that trace only; the pipeline decides what to do
with them after the join.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass

from codemap.core.contracts.conversation import Conversation
from codemap.core.errors import GenerationCancelled
from codemap.core.extraction import extract_trace_diagram, extract_trace_guide
from codemap.core.result import Result, err, ok
from codemap.core.settings import PipelineConfig, get_logger
from codemap.llm.session import ModelSession
from codemap.prompts import PromptProvider

from .callbacks import PipelineCallbacks
from .tool_loop import run_streamed_tool_loop

log = get_logger(__name__)

DIAGRAM_STAGE = 3
LOCATIONS_STAGE = 4
GUIDE_STAGE = 5

_STAGE_PROMPTS = {
    DIAGRAM_STAGE: "trace_diagram",
    LOCATIONS_STAGE: "trace_locations",
    GUIDE_STAGE: "trace_guide",
}


@dataclass(frozen=True, slots=True)
class TraceOutcome:
    """What the per-trace stages produced. Missing blocks stay ``None``."""

    trace_id: str
    diagram: str | None = None
    guide: str | None = None


async def process_trace(
    session: ModelSession,
    trace_id: str,
    *,
    system_prompt: str,
    conversation: Conversation,
    variables: Mapping[str, str],
    prompts: PromptProvider,
    config: PipelineConfig,
    include_guide: bool = True,
    cancel_event: asyncio.Event | None = None,
    callbacks: PipelineCallbacks | None = None,
) -> Result[TraceOutcome, str]:
    """Run stages 3-5 (3-4 when ``include_guide`` is false) for one trace.

    ``conversation`` must be a private copy; it is appended to.
    """
    cb = callbacks or PipelineCallbacks()
    stage_vars = {**variables, "trace_id": trace_id}
    stages = [DIAGRAM_STAGE, LOCATIONS_STAGE] + ([GUIDE_STAGE] if include_guide else [])
    diagram: str | None = None
    guide: str | None = None

    try:
        for stage in stages:
            log.info("[Trace %s] Stage %d: starting", trace_id, stage)
            cb.emit("on_trace_stage", trace_id, stage, "start")
            conversation.add_user(prompts.render(_STAGE_PROMPTS[stage], stage_vars))
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelled()

            result = await run_streamed_tool_loop(
                session,
                conversation,
                label=f"Trace {trace_id} Stage {stage}",
                system_prompt=system_prompt,
                max_rounds=config.stage_max_rounds,
                max_output_chars=config.max_output_chars,
                max_parallel_tools=config.trace_parallel_tools,
                cancel_event=cancel_event,
                callbacks=cb,
            )
            text = result.text or ""
            if not text:
                log.warning("[Trace %s] Stage %d: no text in response", trace_id, stage)
            log.debug("[Trace %s Stage %d] RESPONSE:\n%s", trace_id, stage, text)

            if stage == LOCATIONS_STAGE and text:
                diagram = extract_trace_diagram(text)
                log.info("[Trace %s] Diagram extracted: %s", trace_id, "YES" if diagram else "NO")
            elif stage == GUIDE_STAGE and text:
                guide = extract_trace_guide(text)
                log.info("[Trace %s] Guide extracted: %s", trace_id, "YES" if guide else "NO")
            cb.emit("on_trace_stage", trace_id, stage, "complete")

        return ok(TraceOutcome(trace_id=trace_id, diagram=diagram, guide=guide))
    except GenerationCancelled as exc:
        log.info("[Trace %s] Trace processing cancelled", trace_id)
        return err(str(exc))
    except Exception as exc:  # noqa: BLE001
        log.error("[Trace %s] Error during trace processing: %s", trace_id, exc, exc_info=True)
        return err(str(exc) or type(exc).__name__)


__all__ = ["DIAGRAM_STAGE", "GUIDE_STAGE", "LOCATIONS_STAGE", "TraceOutcome", "process_trace"]
