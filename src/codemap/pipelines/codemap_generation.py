"""
Codemap generation pipeline: from a question about a codebase to a codemap.

Flow Overview
-------------
1. **Research** (phase 1): a tool-using loop that must inspect the codebase.
   Finishing without a single tool call is fatal and nothing later runs.
2. **Structure** (phase 2): one round whose ``<CODEMAP>`` payload becomes the
   codemap skeleton. No parsable payload means no codemap (``None``).
3. **Checkpoint**: the conversation so far is frozen into a
   :class:`StageContext`. Everything after this point is seeded from it.
4. **Fan-out** (phases 3 and 6): per-trace stages for every trace and the
   global diagram synthesis run concurrently, each on a private conversation.
5. **Aggregation**: diagrams and guides are merged into the codemap. A
   failed trace keeps its error on the trace; a failed global diagram fails
   the pipeline when one is mandatory.

Replay
------
:meth:`CodemapPipeline.replay` and the named retry methods rerun only the
fan-out stages from a saved checkpoint, skipping Research and Structure.

Design Principles
-----------------
- **Fixed topology**: stage order and fan-out shape are not configurable.
- **Isolation**: per-unit outcomes are ``Result`` values; Aggregation alone
  decides escalation.
- **One cancellation signal** is threaded through every loop and checked at
  every stage boundary.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from codemap.agents.callbacks import PipelineCallbacks
from codemap.agents.diagram_agent import synthesize_diagram
from codemap.agents.tool_loop import run_streamed_tool_loop
from codemap.agents.trace_agent import TraceOutcome, process_trace
from codemap.core.contracts.checkpoint import SCHEMA_VERSION, StageContext
from codemap.core.contracts.codemap import Codemap, Trace
from codemap.core.contracts.conversation import Conversation
from codemap.core.errors import (
    CodemapError,
    DiagramSynthesisError,
    GenerationCancelled,
    ResearchToolUseError,
)
from codemap.core.extraction import extract_codemap, is_research_complete
from codemap.core.result import Err, Result, err
from codemap.core.settings import Mode, PipelineConfig, get_logger
from codemap.diagram.validate import DiagramParser
from codemap.llm.session import ModelSession
from codemap.prompts import (
    BuiltinPrompts,
    PromptProvider,
    build_system_prompt,
    detail_instruction,
    research_detail,
)
from codemap.tools.base import Tool, ToolCatalog
from codemap.tools.builtin import workspace_tools
from codemap.workspace import format_current_date, user_os, workspace_layout

log = get_logger(__name__)

# --------------------------------------------------------------------------- #
# Phase names and numbers reported through ``on_phase_change``
# --------------------------------------------------------------------------- #

RESEARCH_PHASE = ("Research", 1)
STRUCTURE_PHASE = ("Codemap Generation", 2)
TRACE_PHASE = ("Trace Processing", 3)


class PipelineState(str, Enum):
    INIT = "init"
    RESEARCH = "research"
    STRUCTURE = "structure"
    FAN_OUT = "fan_out"
    AGGREGATION = "aggregation"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


# --------------------------------------------------------------------------- #
# Helpers
# --------------------------------------------------------------------------- #


def system_variables(workspace_root: str, language: str) -> dict[str, str]:
    """Variables for the system prompt of a workspace."""
    return {
        "workspace_root": workspace_root,
        "workspace_layout": workspace_layout(workspace_root) if workspace_root else "",
        "workspace_uri": workspace_root.replace("\\", "\\\\"),
        "corpus_name": workspace_root.replace("\\", "/"),
        "user_os": user_os(),
        "language": language,
    }


def merge_trace_outcome(trace: Trace, outcome: Result[TraceOutcome, str]) -> Trace:
    """Return ``trace`` with the diagram/guide (or error) of ``outcome`` applied.

    Fields the outcome did not produce keep their previous value.
    """
    if isinstance(outcome, Err):
        return trace.with_updates(error=outcome.error)
    value = outcome.unwrap()
    return trace.with_updates(
        trace_text_diagram=value.diagram or trace.trace_text_diagram,
        trace_guide=value.guide or trace.trace_guide,
        error=None,
    )


def _snapshot_message(codemap: Codemap) -> str:
    snapshot = json.dumps(
        {
            "title": codemap.title,
            "description": codemap.description,
            "traces": [t.model_dump(by_alias=True, exclude_none=True) for t in codemap.traces],
        },
        indent=2,
    )
    return (
        "Here is the codemap snapshot as JSON. Use it as the source of truth.\n\n"
        f"```json\n{snapshot}\n```"
    )


# --------------------------------------------------------------------------- #
# Pipeline driver
# --------------------------------------------------------------------------- #


class CodemapPipeline:
    """Drives one codemap generation (or a replay) against a model session.

    Parameters
    ----------
    session:
        Model backend shared by every stage.
    config:
        Immutable knobs. A different configuration means a new pipeline.
    prompts:
        Template provider; defaults to the built-in templates.
    tools:
        Extra tools layered over the built-in workspace tools for Research.
    parser:
        Diagram grammar parser; defaults to the structural Mermaid parser.
    callbacks:
        Progress observers.
    cancel_event:
        Shared cancellation signal; :meth:`cancel` sets it.
    """

    def __init__(
        self,
        session: ModelSession,
        config: PipelineConfig | None = None,
        *,
        prompts: PromptProvider | None = None,
        tools: list[Tool] | None = None,
        parser: DiagramParser | None = None,
        callbacks: PipelineCallbacks | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.session = session
        self.config = config or PipelineConfig()
        self.prompts = prompts or BuiltinPrompts()
        self.extra_tools = list(tools or [])
        self.parser = parser
        self.callbacks = callbacks or PipelineCallbacks()
        self.cancel_event = cancel_event or asyncio.Event()
        self.state = PipelineState.INIT
        self.checkpoint: StageContext | None = None

    def cancel(self) -> None:
        """Signal every running stage to stop."""
        self.cancel_event.set()

    def _set_state(self, state: PipelineState) -> None:
        log.debug("Pipeline state %s -> %s", self.state.value, state.value)
        self.state = state

    def _check_cancel(self) -> None:
        if self.cancel_event.is_set():
            raise GenerationCancelled(checkpoint=self.checkpoint)

    def _phase(self, phase: tuple[str, int]) -> None:
        log.info("=== STAGE %d: %s ===", phase[1], phase[0].upper())
        self.callbacks.emit("on_phase_change", *phase)

    # ------------------------------------------------------------------ #
    # Full generation
    # ------------------------------------------------------------------ #
    async def generate(self, query: str, workspace_root: str | Path) -> Codemap | None:
        """Run the whole pipeline.

        Returns
        -------
        Codemap | None
            The aggregated codemap with its checkpoint embedded, or ``None``
            when Structure produced no parsable codemap.

        Raises
        ------
        ResearchToolUseError
            Research never called a tool.
        OutputBudgetExceeded
            A Research or Structure loop exceeded its output budget.
        DiagramSynthesisError
            The global diagram failed and one is mandatory.
        GenerationCancelled
            The cancellation signal was set.
        """
        cfg = self.config
        root = str(workspace_root)
        current_date = format_current_date()
        sys_vars = system_variables(root, cfg.language)
        system_prompt = build_system_prompt(self.prompts, cfg.mode, sys_vars)
        conversation = Conversation()
        self.checkpoint = None

        log.info("CODEMAP GENERATION START - %s MODE", cfg.mode.upper())
        log.info("Query: %s | Workspace: %s | Detail: %s", query, root, cfg.detail_level)
        log.debug("System prompt:\n%s", system_prompt)
        self.callbacks.emit("on_message", "system", f"Starting {cfg.mode} codemap generation...")

        try:
            await self._research(query, current_date, system_prompt, conversation, root)
            codemap = await self._structure(query, current_date, system_prompt, conversation)
            if codemap is None:
                self._set_state(PipelineState.DONE)
                return None

            self.checkpoint = StageContext.capture(
                conversation,
                query=query,
                mode=cfg.mode,
                detail_level=cfg.detail_level,
                workspace_root=root,
                current_date=current_date,
                language=cfg.language,
                system_prompt=system_prompt,
            )
            codemap = codemap.model_copy(
                update={
                    "stage_context": self.checkpoint,
                    "query": query,
                    "mode": cfg.mode,
                    "detail_level": cfg.detail_level,
                    "workspace_path": root,
                    "schema_version": SCHEMA_VERSION,
                }
            )
            self.callbacks.emit("on_checkpoint", self.checkpoint)
            self.callbacks.emit("on_codemap_update", codemap)

            codemap = await self._fan_out_and_aggregate(codemap, self.checkpoint)
            self._set_state(PipelineState.DONE)
            log.info("CODEMAP GENERATION COMPLETE: %d traces", len(codemap.traces))
            self.callbacks.emit("on_message", "system", "Codemap generation complete.")
            return codemap
        except GenerationCancelled as exc:
            self._set_state(PipelineState.CANCELLED)
            exc.checkpoint = exc.checkpoint or self.checkpoint
            log.info("Codemap generation cancelled")
            raise
        except CodemapError as exc:
            self._set_state(PipelineState.ERROR)
            exc.checkpoint = exc.checkpoint or self.checkpoint
            log.error("CODEMAP GENERATION ERROR: %s", exc)
            self.callbacks.emit("on_message", "error", f"Error: {exc}")
            raise
        except Exception as exc:
            self._set_state(PipelineState.ERROR)
            log.error("CODEMAP GENERATION ERROR: %s", exc, exc_info=True)
            self.callbacks.emit("on_message", "error", f"Error: {exc}")
            raise

    async def _research(
        self,
        query: str,
        current_date: str,
        system_prompt: str,
        conversation: Conversation,
        root: str,
    ) -> None:
        cfg = self.config
        self._set_state(PipelineState.RESEARCH)
        self._phase(RESEARCH_PHASE)
        conversation.add_user(
            self.prompts.render(
                "research",
                {
                    "query": query,
                    "current_date": current_date,
                    "language": cfg.language,
                    "detail_level": research_detail(cfg.detail_level),
                },
            )
        )
        self.callbacks.emit("on_message", "user", f"[Stage 1] Research query: {query}")
        self._check_cancel()

        result = await run_streamed_tool_loop(
            self.session,
            conversation,
            label="Stage 1 Research",
            system_prompt=system_prompt,
            tools=workspace_tools(root).merged(self.extra_tools),
            require_tool_use=True,
            max_rounds=cfg.research_max_rounds,
            max_output_chars=cfg.max_output_chars,
            max_parallel_tools=cfg.research_parallel_tools,
            cancel_event=self.cancel_event,
            callbacks=self.callbacks,
        )
        if result.text:
            log.debug("[Stage 1 Research] RESPONSE:\n%s", result.text)
            if not is_research_complete(result.text):
                log.warning("Research did not emit a completion marker")
        else:
            log.warning("Research: no text in final response")
        if not result.used_tools:
            raise ResearchToolUseError(
                "Research stage never used a tool; aborting before Structure"
            )
        log.info("Research complete")

    async def _structure(
        self,
        query: str,
        current_date: str,
        system_prompt: str,
        conversation: Conversation,
    ) -> Codemap | None:
        cfg = self.config
        self._set_state(PipelineState.STRUCTURE)
        self._phase(STRUCTURE_PHASE)
        conversation.add_user(
            self.prompts.render(
                "structure",
                {
                    "query": query,
                    "current_date": current_date,
                    "language": cfg.language,
                    "detail_instruction": detail_instruction(cfg.detail_level),
                },
            )
        )
        self.callbacks.emit("on_message", "user", "[Stage 2] Generating codemap structure...")
        self._check_cancel()

        result = await run_streamed_tool_loop(
            self.session,
            conversation,
            label="Stage 2 Structure",
            system_prompt=system_prompt,
            max_rounds=1,
            max_output_chars=cfg.max_output_chars,
            max_parallel_tools=cfg.research_parallel_tools,
            cancel_event=self.cancel_event,
            callbacks=self.callbacks,
        )
        if not result.text:
            log.error("Structure: no text in model response")
            return None
        log.debug("[Stage 2 Structure] RESPONSE:\n%s", result.text)
        codemap = extract_codemap(result.text)
        if codemap is None:
            log.error("Structure: failed to extract codemap; preview: %s", result.text[:500])
            return None
        log.info("Structure: codemap extracted with %d traces", len(codemap.traces))
        self.callbacks.emit(
            "on_message", "system", f"Codemap structure generated with {len(codemap.traces)} traces"
        )
        return codemap

    async def _fan_out_and_aggregate(self, codemap: Codemap, checkpoint: StageContext) -> Codemap:
        self._set_state(PipelineState.FAN_OUT)
        diagram_task = asyncio.create_task(self._diagram(checkpoint))
        trace_tasks = []
        if codemap.traces:
            self._phase(TRACE_PHASE)
            self.callbacks.emit(
                "on_message", "system", f"Processing {len(codemap.traces)} traces in parallel..."
            )
            trace_tasks = [
                asyncio.create_task(self._trace(checkpoint, t.id, include_guide=True))
                for t in codemap.traces
            ]
        else:
            log.warning("Codemap has no traces; skipping trace processing")

        try:
            trace_results = await asyncio.gather(*trace_tasks)
            diagram_result = await diagram_task
        except BaseException:
            pending = [*trace_tasks, diagram_task]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise
        self._check_cancel()

        self._set_state(PipelineState.AGGREGATION)
        traces = []
        failed = 0
        for trace, outcome in zip(codemap.traces, trace_results, strict=True):
            if isinstance(outcome, Err):
                failed += 1
                log.error("Trace %s failed: %s", trace.id, outcome.error)
                self.callbacks.emit(
                    "on_message", "error", f"Error processing trace {trace.id}: {outcome.error}"
                )
            traces.append(merge_trace_outcome(trace, outcome))
        log.info("Trace processing complete: %d success, %d errors", len(traces) - failed, failed)

        update: dict[str, Any] = {"traces": traces, "updated_at": datetime.now(UTC)}
        if isinstance(diagram_result, Err):
            log.error("[Mermaid] Diagram generation failed: %s", diagram_result.error)
            self.callbacks.emit(
                "on_message", "error", f"Mermaid diagram error: {diagram_result.error}"
            )
            if self.config.require_global_diagram:
                raise DiagramSynthesisError(
                    f"Mermaid diagram failed to compile: {diagram_result.error}",
                    checkpoint=checkpoint,
                    partial=codemap.model_copy(update=update),
                )
        else:
            update["mermaid_diagram"] = diagram_result.unwrap()
            self.callbacks.emit("on_message", "assistant", "[Mermaid] Diagram saved to codemap")

        codemap = codemap.model_copy(update=update)
        self.callbacks.emit("on_codemap_update", codemap)
        return codemap

    # ------------------------------------------------------------------ #
    # Units seeded from a checkpoint
    # ------------------------------------------------------------------ #
    async def _trace(
        self, checkpoint: StageContext, trace_id: str, *, include_guide: bool
    ) -> Result[TraceOutcome, str]:
        return await process_trace(
            self.session,
            trace_id,
            system_prompt=checkpoint.system_prompt,
            conversation=checkpoint.conversation(),
            variables=checkpoint.variables(),
            prompts=self.prompts,
            config=self.config,
            include_guide=include_guide,
            cancel_event=self.cancel_event,
            callbacks=self.callbacks,
        )

    async def _diagram(self, checkpoint: StageContext) -> Result[str, str]:
        return await synthesize_diagram(
            self.session,
            system_prompt=checkpoint.system_prompt,
            conversation=checkpoint.conversation(),
            variables=checkpoint.variables(),
            prompts=self.prompts,
            config=self.config,
            parser=self.parser,
            cancel_event=self.cancel_event,
            callbacks=self.callbacks,
        )

    # ------------------------------------------------------------------ #
    # Replay entry points
    # ------------------------------------------------------------------ #
    async def replay(
        self,
        checkpoint: StageContext,
        trace_id: str | None = None,
        *,
        include_guide: bool = True,
    ) -> Result[Any, str]:
        """Rerun fan-out work from ``checkpoint`` without Research/Structure.

        With ``trace_id`` the per-trace stages for that trace run (the guide
        only if ``include_guide``) and the result holds a
        :class:`TraceOutcome`. Without it the global diagram is synthesized
        and the result holds the diagram text.
        """
        self.checkpoint = checkpoint
        if trace_id is None:
            log.info("Replaying global diagram from checkpoint")
            return await self._diagram(checkpoint)
        log.info("Replaying trace %s from checkpoint (guide=%s)", trace_id, include_guide)
        return await self._trace(checkpoint, trace_id, include_guide=include_guide)

    async def retry_trace(
        self, checkpoint: StageContext, trace_id: str
    ) -> Result[TraceOutcome, str]:
        """Regenerate diagram and guide for one trace."""
        return await self.replay(checkpoint, trace_id, include_guide=True)

    async def retry_trace_diagram(
        self, checkpoint: StageContext, trace_id: str
    ) -> Result[TraceOutcome, str]:
        """Regenerate only the diagram of one trace."""
        return await self.replay(checkpoint, trace_id, include_guide=False)

    async def retry_diagram(self, checkpoint: StageContext) -> Result[str, str]:
        """Regenerate the global diagram."""
        return await self.replay(checkpoint)

    async def diagram_from_snapshot(self, codemap: Codemap) -> Result[str, str]:
        """Synthesize a global diagram for a codemap saved without a checkpoint.

        The conversation is seeded with a JSON snapshot of the codemap.
        """
        try:
            root = codemap.workspace_path or ""
            mode: Mode = codemap.mode or "smart"
            system_prompt = build_system_prompt(
                self.prompts, mode, system_variables(root, self.config.language)
            )
            conversation = Conversation()
            conversation.add_user(_snapshot_message(codemap))
            return await synthesize_diagram(
                self.session,
                system_prompt=system_prompt,
                conversation=conversation,
                variables={"current_date": format_current_date(), "language": self.config.language},
                prompts=self.prompts,
                config=self.config,
                parser=self.parser,
                cancel_event=self.cancel_event,
                callbacks=self.callbacks,
            )
        except Exception as exc:  # noqa: BLE001
            return err(str(exc))


__all__ = [
    "CodemapPipeline",
    "PipelineState",
    "merge_trace_outcome",
    "system_variables",
]
