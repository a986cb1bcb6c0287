"""End-to-end tests for the codemap generation pipeline.

Scenarios
---------
1. Happy path: Research uses a tool, Structure yields two traces, the traces
   and the global diagram fan out from one checkpoint.
2. Replay from the saved checkpoint sends the exact same message prefix.
3. Research that never calls a tool is fatal after three corrections.
4. Structure without a parsable codemap yields ``None``.
5. A failing trace stays on its trace; a failing diagram escalates only
   when a global diagram is mandatory.
6. Cancellation after the checkpoint is raised with that checkpoint.
7. Cancelling the run during fan-out waits for every trace and diagram
   task before the cancellation propagates.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Any

import pytest
from fakes import ScriptedSession, codemap_responder

from codemap.agents.callbacks import PipelineCallbacks
from codemap.agents.trace_agent import TraceOutcome
from codemap.core.contracts.checkpoint import StageContext
from codemap.core.contracts.codemap import Codemap, Location, Trace
from codemap.core.contracts.conversation import Message
from codemap.core.errors import DiagramSynthesisError, GenerationCancelled, ResearchToolUseError
from codemap.core.result import Result, err, ok
from codemap.core.settings import PipelineConfig
from codemap.llm.session import StreamEvent
from codemap.pipelines.codemap_generation import (
    CodemapPipeline,
    PipelineState,
    merge_trace_outcome,
)


class _FlakyParser:
    """Rejects the first ``failures`` diagrams."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def parse(self, text: str) -> Result[None, str]:
        self.calls += 1
        if self.calls <= self.failures:
            return err("Parse error on line 2: Expecting 'SEMI'")
        return ok(None)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    (tmp_path / "app.py").write_text("def login():\n    return session()\n", encoding="utf-8")
    return tmp_path


def _generate(pipeline: CodemapPipeline, workspace: Path) -> Codemap | None:
    return asyncio.run(pipeline.generate("How does login work?", workspace))


# --------------------------------------------------------------------------- #
# Happy path and replay
# --------------------------------------------------------------------------- #


def test_generate_end_to_end(workspace: Path) -> None:
    phases: list[tuple[str, int]] = []
    session = ScriptedSession(responder=codemap_responder())
    parser = _FlakyParser(failures=1)
    pipeline = CodemapPipeline(
        session,
        PipelineConfig(diagram_max_attempts=3),
        parser=parser,
        callbacks=PipelineCallbacks(on_phase_change=lambda *p: phases.append(p)),
    )

    codemap = _generate(pipeline, workspace)

    assert codemap is not None
    assert pipeline.state is PipelineState.DONE
    assert codemap.title == "Auth flow"
    assert [t.id for t in codemap.traces] == ["1", "2"]
    assert codemap.traces[0].trace_text_diagram == "[1a] app.py:1"
    assert codemap.traces[1].trace_guide == "Guide for 2"
    assert codemap.mermaid_diagram is not None
    assert "style t1 fill:" in codemap.mermaid_diagram
    assert parser.calls == 2
    assert codemap.query == "How does login work?"
    assert codemap.workspace_path == str(workspace)
    assert codemap.stage_context is not None
    assert codemap.stage_context.schema_version == 1

    assert phases[:2] == [("Research", 1), ("Codemap Generation", 2)]
    assert set(phases[2:]) == {("Trace Processing", 3), ("Mermaid Diagram", 6)}

    research = session.calls[0]
    assert research.require_tool is True
    assert {"read_file", "list_dir", "grep_search"} <= set(research.tools)
    assert research.messages[-1][0] == "user"
    assert "How does login work?" in research.messages[-1][1]

    structure = next(c for c in session.calls if c.last_prompt.startswith("Based on"))
    assert structure.tools == []
    assert structure.require_tool is False


def test_fan_out_shares_the_checkpoint_prefix(workspace: Path) -> None:
    session = ScriptedSession(responder=codemap_responder())
    codemap = _generate(CodemapPipeline(session), workspace)
    assert codemap is not None and codemap.stage_context is not None
    prefix = codemap.stage_context.prefix()

    # The prefix ends with the Structure answer.
    assert prefix[-1][0] == "assistant"
    assert "<CODEMAP>" in prefix[-1][1]

    first_stage = [c for c in session.calls if c.last_prompt.startswith("Focus on")]
    assert len(first_stage) == 2
    for call in first_stage:
        assert call.messages[:-1] == prefix

    mermaid = next(c for c in session.calls if "Mermaid" in c.last_prompt)
    assert mermaid.messages[:-1] == prefix


def test_replay_from_saved_checkpoint_sends_identical_prefix(workspace: Path) -> None:
    codemap = _generate(CodemapPipeline(ScriptedSession(responder=codemap_responder())), workspace)
    assert codemap is not None
    reloaded = Codemap.from_json(codemap.to_json()).stage_context
    assert reloaded is not None
    checkpoint = StageContext.from_json(reloaded.to_json())

    replay_session = ScriptedSession(responder=codemap_responder())
    outcome = asyncio.run(CodemapPipeline(replay_session).retry_trace(checkpoint, "2"))

    assert outcome.unwrap() == TraceOutcome("2", diagram="[2a] app.py:2", guide="Guide for 2")
    assert len(replay_session.calls) == 3
    assert replay_session.calls[0].messages[:-1] == checkpoint.prefix()
    assert not any("Research the following" in c.last_prompt for c in replay_session.calls)


def test_retry_trace_diagram_skips_the_guide(workspace: Path) -> None:
    codemap = _generate(CodemapPipeline(ScriptedSession(responder=codemap_responder())), workspace)
    assert codemap is not None and codemap.stage_context is not None

    session = ScriptedSession(responder=codemap_responder())
    outcome = asyncio.run(
        CodemapPipeline(session).retry_trace_diagram(codemap.stage_context, "1")
    )

    assert outcome.unwrap() == TraceOutcome("1", diagram="[1a] app.py:1")
    assert len(session.calls) == 2
    merged = merge_trace_outcome(codemap.traces[0], outcome)
    assert merged.trace_guide == "Guide for 1"


def test_retry_diagram_and_snapshot_fallback(workspace: Path) -> None:
    codemap = _generate(CodemapPipeline(ScriptedSession(responder=codemap_responder())), workspace)
    assert codemap is not None and codemap.stage_context is not None

    retried = asyncio.run(
        CodemapPipeline(ScriptedSession(responder=codemap_responder())).retry_diagram(
            codemap.stage_context
        )
    )
    assert retried.unwrap().startswith("flowchart TD")

    session = ScriptedSession(responder=codemap_responder())
    bare = Codemap(
        title="Auth flow",
        traces=[Trace(id="1", locations=(Location(id="1a", path="app.py", line_number=1),))],
    )
    from_snapshot = asyncio.run(CodemapPipeline(session).diagram_from_snapshot(bare))
    assert from_snapshot.is_ok()
    assert session.calls[0].messages[0][1].startswith("Here is the codemap snapshot as JSON.")


# --------------------------------------------------------------------------- #
# Failures
# --------------------------------------------------------------------------- #


def test_research_without_tools_is_fatal(workspace: Path) -> None:
    session = ScriptedSession(responder=codemap_responder(research_uses_tools=False))
    pipeline = CodemapPipeline(session)

    with pytest.raises(ResearchToolUseError) as info:
        _generate(pipeline, workspace)

    assert info.value.checkpoint is None
    assert len(session.calls) == 3
    assert not any(c.last_prompt.startswith("Based on") for c in session.calls)
    assert pipeline.state is PipelineState.ERROR


def test_unparsable_structure_yields_none(workspace: Path) -> None:
    session = ScriptedSession(
        responder=codemap_responder(structure_text="Here is your codemap: it is great.")
    )
    pipeline = CodemapPipeline(session)

    assert _generate(pipeline, workspace) is None
    assert pipeline.checkpoint is None
    assert not any(c.last_prompt.startswith("Focus on") for c in session.calls)


def test_failed_trace_is_isolated(workspace: Path) -> None:
    session = ScriptedSession(responder=codemap_responder(fail_trace="2"))

    codemap = _generate(CodemapPipeline(session), workspace)

    assert codemap is not None
    assert codemap.traces[0].error is None
    assert codemap.traces[0].trace_guide == "Guide for 1"
    assert codemap.traces[1].error == "model crashed on trace 2"
    assert codemap.mermaid_diagram is not None


def test_mandatory_diagram_failure_escalates_with_partial(workspace: Path) -> None:
    pipeline = CodemapPipeline(
        ScriptedSession(responder=codemap_responder()),
        PipelineConfig(diagram_max_attempts=2),
        parser=_FlakyParser(failures=99),
    )

    with pytest.raises(DiagramSynthesisError) as info:
        _generate(pipeline, workspace)

    exc = info.value
    assert "after 2 attempts" in str(exc)
    assert exc.checkpoint is not None
    assert exc.partial is not None
    assert exc.partial.mermaid_diagram is None
    assert exc.partial.traces[0].trace_text_diagram == "[1a] app.py:1"
    assert pipeline.state is PipelineState.ERROR


def test_optional_diagram_failure_keeps_the_codemap(workspace: Path) -> None:
    pipeline = CodemapPipeline(
        ScriptedSession(responder=codemap_responder()),
        PipelineConfig(diagram_max_attempts=2, require_global_diagram=False),
        parser=_FlakyParser(failures=99),
    )

    codemap = _generate(pipeline, workspace)

    assert codemap is not None
    assert codemap.mermaid_diagram is None
    assert all(t.trace_guide for t in codemap.traces)


def test_cancel_after_checkpoint_carries_it(workspace: Path) -> None:
    session = ScriptedSession(responder=codemap_responder())
    pipeline = CodemapPipeline(session)
    pipeline.callbacks.on_checkpoint = lambda _ckpt: pipeline.cancel()

    with pytest.raises(GenerationCancelled) as info:
        _generate(pipeline, workspace)

    assert info.value.checkpoint is not None
    assert info.value.checkpoint is pipeline.checkpoint
    assert pipeline.state is PipelineState.CANCELLED
    assert not any(c.last_prompt.startswith("Focus on") for c in session.calls)


class _StallingSession(ScriptedSession):
    """Plays Research and Structure, then stalls every fan-out round."""

    def __init__(self) -> None:
        super().__init__(responder=codemap_responder())
        self.stalled = 0
        self.released = 0
        self.all_stalled = asyncio.Event()

    async def open(  # type: ignore[override]
        self, system_prompt: str, messages: Sequence[Message], **kwargs: Any
    ) -> AsyncIterator[StreamEvent]:
        prompt = messages[-1].flatten()[1] if messages else ""
        if prompt.startswith("Focus on") or "Mermaid" in prompt:
            self.stalled += 1
            if self.stalled == 3:
                self.all_stalled.set()
            try:
                await asyncio.Event().wait()
            finally:
                self.released += 1
        async for event in super().open(system_prompt, messages, **kwargs):
            yield event


def test_cancelled_fan_out_awaits_every_task(workspace: Path) -> None:
    async def scenario() -> _StallingSession:
        session = _StallingSession()
        pipeline = CodemapPipeline(session)
        run = asyncio.create_task(pipeline.generate("How does login work?", workspace))
        await asyncio.wait_for(session.all_stalled.wait(), timeout=5)
        run.cancel()
        with pytest.raises(asyncio.CancelledError):
            await run
        assert session.released == 3
        return session

    session = asyncio.run(scenario())
    assert session.stalled == 3


def test_merge_keeps_previous_fields_and_records_errors() -> None:
    trace = Trace(id="1", trace_text_diagram="old diagram", trace_guide="old guide")

    assert merge_trace_outcome(trace, ok(TraceOutcome("1", diagram="new"))).trace_guide == (
        "old guide"
    )
    failed = merge_trace_outcome(trace, err("boom"))
    assert failed.error == "boom"
    assert failed.trace_text_diagram == "old diagram"
