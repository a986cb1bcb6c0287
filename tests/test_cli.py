"""CLI tests: every command against a scripted model session."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import Result
from fakes import OpenCall, Responder, ScriptedSession, codemap_responder, text_round
from typer.testing import CliRunner

from codemap import cli
from codemap.core.contracts.codemap import Codemap, Location, Trace
from codemap.core.errors import GenerationCancelled
from codemap.llm.session import StreamEvent
from codemap.pipelines.codemap_generation import CodemapPipeline

runner = CliRunner()
QUERY = "How does login work?"


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    (root / "app.py").write_text("def login():\n    return session()\n", encoding="utf-8")
    return root


def _use_model(monkeypatch: pytest.MonkeyPatch, responder: Responder) -> list[ScriptedSession]:
    sessions: list[ScriptedSession] = []

    def build(_settings: object) -> ScriptedSession:
        session = ScriptedSession(responder=responder)
        sessions.append(session)
        return session

    monkeypatch.setattr(cli, "_build_session", build)
    return sessions


def _broken_mermaid(base: Responder) -> Responder:
    def respond(call: OpenCall) -> list[StreamEvent]:
        if "Mermaid" in call.last_prompt:
            return text_round("```mermaid\nflowchart TD\n  A -->\n```")
        return list(base(call))

    return respond


def _generate(workspace: Path, output: Path) -> Result:
    return runner.invoke(
        cli.app,
        ["generate", QUERY, "-w", str(workspace), "-o", str(output), "--no-interactive"],
    )


# --------------------------------------------------------------------------- #
# generate
# --------------------------------------------------------------------------- #


def test_generate_saves_codemap_with_checkpoint(
    monkeypatch: pytest.MonkeyPatch, workspace: Path, tmp_path: Path
) -> None:
    _use_model(monkeypatch, codemap_responder())
    output = tmp_path / "out" / "auth.json"

    result = _generate(workspace, output)

    assert result.exit_code == 0, result.output
    assert "Auth flow" in result.output
    saved = Codemap.from_json(output.read_text(encoding="utf-8"))
    assert saved.stage_context is not None
    assert saved.saved_at is not None
    assert saved.mermaid_diagram is not None
    assert saved.traces[1].trace_guide == "Guide for 2"


def test_generate_defaults_to_runs_dir(monkeypatch: pytest.MonkeyPatch, workspace: Path) -> None:
    _use_model(monkeypatch, codemap_responder())

    result = runner.invoke(cli.app, ["generate", QUERY, "-w", str(workspace), "--no-interactive"])

    assert result.exit_code == 0, result.output
    runs_dir = Path(cli.load_settings().runs_dir)
    assert len(list(runs_dir.glob("*_How_does_login_work.json"))) == 1


def test_generate_without_codemap_exits_1(
    monkeypatch: pytest.MonkeyPatch, workspace: Path, tmp_path: Path
) -> None:
    _use_model(monkeypatch, codemap_responder(structure_text="No JSON, sorry."))

    result = _generate(workspace, tmp_path / "x.json")

    assert result.exit_code == 1
    assert "No codemap could be extracted" in result.output
    assert not (tmp_path / "x.json").exists()


def test_research_without_tools_is_a_pipeline_error(
    monkeypatch: pytest.MonkeyPatch, workspace: Path, tmp_path: Path
) -> None:
    _use_model(monkeypatch, codemap_responder(research_uses_tools=False))

    result = _generate(workspace, tmp_path / "x.json")

    assert result.exit_code == 1
    assert "Pipeline Error" in result.output


def test_cancelled_generation_exits_130(
    monkeypatch: pytest.MonkeyPatch, workspace: Path, tmp_path: Path
) -> None:
    async def cancelled(self: CodemapPipeline, query: str, root: object) -> None:
        raise GenerationCancelled()

    _use_model(monkeypatch, codemap_responder())
    monkeypatch.setattr(CodemapPipeline, "generate", cancelled)

    result = _generate(workspace, tmp_path / "x.json")

    assert result.exit_code == 130
    assert "cancelled" in result.output


def test_diagram_failure_saves_partial_then_retry_diagram(
    monkeypatch: pytest.MonkeyPatch, workspace: Path, tmp_path: Path
) -> None:
    monkeypatch.setenv("CODEMAP_DIAGRAM_MAX_ATTEMPTS", "2")
    cli.load_settings.cache_clear()
    _use_model(monkeypatch, _broken_mermaid(codemap_responder()))
    output = tmp_path / "partial.json"

    result = _generate(workspace, output)

    assert result.exit_code == 1
    assert "Diagram Error" in result.output
    partial = Codemap.from_json(output.read_text(encoding="utf-8"))
    assert partial.mermaid_diagram is None
    assert partial.stage_context is not None
    assert partial.traces[0].trace_text_diagram == "[1a] app.py:1"

    sessions = _use_model(monkeypatch, codemap_responder())
    retried = runner.invoke(cli.app, ["retry-diagram", str(output)])

    assert retried.exit_code == 0, retried.output
    fixed = Codemap.from_json(output.read_text(encoding="utf-8"))
    assert fixed.mermaid_diagram is not None
    assert "style t1 fill:" in fixed.mermaid_diagram
    # Replay skips research: the first message is the checkpoint's research prompt.
    assert sessions[0].calls[0].messages[:-1] == partial.stage_context.prefix()


# --------------------------------------------------------------------------- #
# retry-trace / retry-diagram
# --------------------------------------------------------------------------- #


def test_retry_trace_clears_the_error(
    monkeypatch: pytest.MonkeyPatch, workspace: Path, tmp_path: Path
) -> None:
    _use_model(monkeypatch, codemap_responder(fail_trace="2"))
    output = tmp_path / "auth.json"
    assert _generate(workspace, output).exit_code == 0
    before = Codemap.from_json(output.read_text(encoding="utf-8"))
    assert before.traces[1].error == "model crashed on trace 2"

    _use_model(monkeypatch, codemap_responder())
    result = runner.invoke(cli.app, ["retry-trace", str(output), "2"])

    assert result.exit_code == 0, result.output
    after = Codemap.from_json(output.read_text(encoding="utf-8"))
    assert after.traces[1].error is None
    assert after.traces[1].trace_guide == "Guide for 2"
    assert after.traces[0] == before.traces[0]


def test_retry_trace_diagram_only(
    monkeypatch: pytest.MonkeyPatch, workspace: Path, tmp_path: Path
) -> None:
    _use_model(monkeypatch, codemap_responder())
    output = tmp_path / "auth.json"
    assert _generate(workspace, output).exit_code == 0

    sessions = _use_model(monkeypatch, codemap_responder())
    result = runner.invoke(cli.app, ["retry-trace", str(output), "1", "--diagram-only"])

    assert result.exit_code == 0, result.output
    assert len(sessions[0].calls) == 2


def test_retry_trace_failure_is_recorded(
    monkeypatch: pytest.MonkeyPatch, workspace: Path, tmp_path: Path
) -> None:
    _use_model(monkeypatch, codemap_responder())
    output = tmp_path / "auth.json"
    assert _generate(workspace, output).exit_code == 0

    _use_model(monkeypatch, codemap_responder(fail_trace="1"))
    result = runner.invoke(cli.app, ["retry-trace", str(output), "1"])

    assert result.exit_code == 1
    assert "Trace 1 failed" in result.output
    after = Codemap.from_json(output.read_text(encoding="utf-8"))
    assert after.traces[0].error == "model crashed on trace 1"
    assert after.traces[0].trace_guide == "Guide for 1"


def test_retry_trace_needs_checkpoint_and_trace(tmp_path: Path) -> None:
    bare = tmp_path / "bare.json"
    bare.write_text(Codemap(title="T", traces=[Trace(id="1")]).to_json(), encoding="utf-8")

    result = runner.invoke(cli.app, ["retry-trace", str(bare), "1"])

    assert result.exit_code == 1
    assert "no stage context" in result.output


def test_retry_diagram_without_checkpoint_uses_snapshot(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    sessions = _use_model(monkeypatch, codemap_responder())
    path = tmp_path / "bare.json"
    codemap = Codemap(
        title="Auth flow",
        traces=[Trace(id="1", locations=(Location(id="1a", path="app.py", line_number=1),))],
    )
    path.write_text(codemap.to_json(), encoding="utf-8")

    result = runner.invoke(cli.app, ["retry-diagram", str(path)])

    assert result.exit_code == 0, result.output
    assert Codemap.from_json(path.read_text(encoding="utf-8")).mermaid_diagram is not None
    first = sessions[0].calls[0].messages[0][1]
    assert first.startswith("Here is the codemap snapshot as JSON.")


# --------------------------------------------------------------------------- #
# show / suggest
# --------------------------------------------------------------------------- #


def test_show_renders_saved_codemap(tmp_path: Path) -> None:
    path = tmp_path / "cm.json"
    codemap = Codemap(
        title="Auth flow",
        traces=[
            Trace(
                id="1",
                title="Login",
                locations=(Location(id="1a", path="app.py", line_number=1),),
                error="timeout",
            )
        ],
    )
    path.write_text(codemap.to_json(), encoding="utf-8")

    result = runner.invoke(cli.app, ["show", str(path)])

    assert result.exit_code == 0
    assert "Auth flow" in result.output
    assert "app.py:1" in result.output
    assert "Trace failed" in result.output


def test_show_rejects_invalid_files(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text(json.dumps({"traces": "nope"}), encoding="utf-8")

    result = runner.invoke(cli.app, ["show", str(path)])

    assert result.exit_code == 1
    assert "Invalid codemap file" in result.output


def test_suggest_prints_suggestions(monkeypatch: pytest.MonkeyPatch) -> None:
    answer = '[{"title": "How are sessions created?", "starting_points": ["src/auth.py"]}]'
    _use_model(monkeypatch, lambda _call: text_round(answer))

    result = runner.invoke(cli.app, ["suggest", "src/auth.py"])

    assert result.exit_code == 0
    assert "How are sessions created?" in result.output
    assert "src/auth.py" in result.output


def test_suggest_without_answer(monkeypatch: pytest.MonkeyPatch) -> None:
    _use_model(monkeypatch, lambda _call: text_round("nothing useful"))

    result = runner.invoke(cli.app, ["suggest", "src/auth.py"])

    assert result.exit_code == 0
    assert "No suggestions." in result.output
