# src/codemap/cli.py
"""
Codemap Command Line Interface (CLI).

This module implements the terminal interface using `typer` and `rich`.

Features
--------
- **Status Spinners**: phase changes of the pipeline are shown live.
- **Rich Rendering**: traces, locations, diagrams and guides in the terminal.
- **Checkpoint Recovery**: every codemap is saved with its stage context, so
  failed traces or the global diagram can be regenerated without research.
- **Cancellation**: Ctrl-C sets the shared cancellation signal.

Usage
-----
    # Generate a codemap for the current workspace
    $ codemap generate "trace the auth flow" --workspace . --mode fast

    # Regenerate one trace or the global diagram from a saved codemap
    $ codemap retry-trace artifacts/codemaps/20261017_auth.json 2
    $ codemap retry-diagram artifacts/codemaps/20261017_auth.json

    # Show a saved codemap / suggest queries from recent files
    $ codemap show artifacts/codemaps/20261017_auth.json
    $ codemap suggest src/app.py src/auth.py
"""

from __future__ import annotations

import asyncio
import re
import signal
import time
import traceback
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, TypeVar

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
from rich.syntax import Syntax
from rich.table import Table

from codemap.agents.callbacks import PipelineCallbacks
from codemap.agents.suggestion_agent import generate_suggestions
from codemap.agents.trace_agent import TraceOutcome
from codemap.core.contracts.codemap import Codemap
from codemap.core.errors import (
    CodemapError,
    DiagramSynthesisError,
    GenerationCancelled,
    OutputBudgetExceeded,
)
from codemap.core.result import Err, Result
from codemap.core.settings import DetailLevel, Mode, PipelineConfig, Settings, load_settings
from codemap.llm.client import OpenAIChatSession
from codemap.llm.session import ModelSession
from codemap.pipelines.codemap_generation import CodemapPipeline, merge_trace_outcome
from codemap.prompts import prompts_from_settings

# Ensure env vars (like OPENAI_API_KEY) are loaded before any logic runs
load_dotenv()

app = typer.Typer(
    help="Codemap: map how a codebase answers your question.",
    rich_markup_mode="markdown",
)
console = Console()

T = TypeVar("T")


# --------------------------------------------------------------------------- #
# Helpers: wiring
# --------------------------------------------------------------------------- #


def _build_session(settings: Settings) -> ModelSession:
    """Model session used by every command (patched in tests)."""
    return OpenAIChatSession.from_settings(settings)


def _build_pipeline(
    settings: Settings,
    *,
    mode: Mode | None = None,
    detail: DetailLevel | None = None,
    callbacks: PipelineCallbacks | None = None,
) -> CodemapPipeline:
    config = PipelineConfig.from_settings(settings, mode=mode, detail_level=detail)
    return CodemapPipeline(
        _build_session(settings),
        config,
        prompts=prompts_from_settings(settings),
        callbacks=callbacks,
    )


def _run(pipeline: CodemapPipeline, make: Callable[[], Awaitable[T]]) -> T:
    """Run a pipeline coroutine; Ctrl-C sets the pipeline's cancel signal."""

    async def main() -> T:
        loop = asyncio.get_running_loop()
        handled = True
        try:
            loop.add_signal_handler(signal.SIGINT, pipeline.cancel)
        except (NotImplementedError, RuntimeError, ValueError):
            # No signal support here (Windows loop or a non-main thread).
            handled = False
        try:
            return await make()
        finally:
            if handled:
                loop.remove_signal_handler(signal.SIGINT)

    return asyncio.run(main())


# --------------------------------------------------------------------------- #
# Helpers: Rendering & I/O
# --------------------------------------------------------------------------- #


def _render_codemap(codemap: Codemap) -> None:
    """Render a codemap with its traces, diagrams and guides."""
    console.rule(f"[bold]{codemap.title or 'Untitled Codemap'}[/bold]")
    if codemap.description:
        console.print(Markdown(codemap.description))
    console.print("")

    for trace in codemap.traces:
        table = Table(show_header=True, header_style="bold", box=None)
        table.add_column("id", style="cyan", no_wrap=True)
        table.add_column("location", style="green")
        table.add_column("title")
        for loc in trace.locations:
            table.add_row(loc.id, f"{loc.path}:{loc.line_number}", loc.title)
        console.print(f"[bold yellow]## Trace {trace.id}: {trace.title}[/bold yellow]")
        if trace.description:
            console.print(trace.description)
        console.print(table)
        if trace.trace_text_diagram:
            console.print(Panel(trace.trace_text_diagram, title="Diagram", border_style="blue"))
        if trace.trace_guide:
            console.print(Markdown(trace.trace_guide))
        if trace.error:
            console.print(f"[bold red]⚠️ Trace failed:[/bold red] {trace.error}")
        console.print("")

    if codemap.mermaid_diagram:
        console.print(Panel(Syntax(codemap.mermaid_diagram, "text"), title="Mermaid"))


def _slug(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9]+", "_", text).strip("_")[:40] or "codemap"


def _save_codemap(codemap: Codemap, settings: Settings, path: Path | None = None) -> Path:
    """Write ``codemap`` (stage context embedded) as JSON; return the path."""
    if path is None:
        runs_dir = Path(settings.runs_dir)
        runs_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        path = runs_dir / f"{timestamp}_{_slug(codemap.query or codemap.title)}.json"
    saved = codemap.model_copy(update={"saved_at": datetime.now().astimezone()})
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(saved.to_json(), encoding="utf-8")
    return path


def _load_codemap(path: Path) -> Codemap:
    return Codemap.from_json(path.read_text(encoding="utf-8"))


def _retry_failed_traces(settings: Settings, codemap: Codemap) -> Codemap:
    """Rerun per-trace stages, on a fresh pipeline, for traces that carry an error."""
    checkpoint = codemap.stage_context
    failed = [t for t in codemap.traces if t.error]
    if checkpoint is None or not failed:
        return codemap
    pipeline = _build_pipeline(settings)

    async def retry_all() -> list[Result[TraceOutcome, str]]:
        return [await pipeline.retry_trace(checkpoint, t.id) for t in failed]

    with console.status(f"[yellow]Retrying {len(failed)} trace(s) from checkpoint..."):
        outcomes = _run(pipeline, retry_all)
    for trace, outcome in zip(failed, outcomes, strict=True):
        codemap = codemap.replace_trace(merge_trace_outcome(trace, outcome))
    return codemap


def _phase_callbacks(progress: Progress, task: Any) -> PipelineCallbacks:
    def on_phase(name: str, number: int) -> None:
        progress.update(task, description=f"[yellow]Stage {number}: {name}...")

    def on_trace(trace_id: str, stage: int, status: str) -> None:
        if status == "start":
            progress.update(task, description=f"[yellow]Trace {trace_id}: stage {stage}...")

    return PipelineCallbacks(on_phase_change=on_phase, on_trace_stage=on_trace)


# --------------------------------------------------------------------------- #
# Commands
# --------------------------------------------------------------------------- #


@app.command()  # type: ignore[misc]
def generate(
    query: Annotated[str, typer.Argument(help="Question about the codebase.")],
    workspace: Annotated[
        Path,
        typer.Option(
            "--workspace", "-w", exists=True, file_okay=False, help="Workspace root to explore."
        ),
    ] = Path("."),
    mode: Annotated[
        str | None, typer.Option("--mode", "-m", help="'fast' or 'smart'.")
    ] = None,
    detail: Annotated[
        str | None,
        typer.Option("--detail", "-d", help="overview, low, medium, high or ultra."),
    ] = None,
    output: Annotated[
        Path | None, typer.Option("--output", "-o", help="Where to save the codemap JSON.")
    ] = None,
    interactive: Annotated[
        bool,
        typer.Option("--interactive/--no-interactive", help="Offer recovery choices on failure."),
    ] = True,
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Show full error tracebacks.")
    ] = False,
) -> None:
    """
    Generate a codemap: research, structure, traces and a global diagram.
    """
    settings = load_settings()
    console.print(
        Panel.fit(
            f"[bold cyan]Codemap[/bold cyan]\nQuery: [u]{query}[/u]\nWorkspace: {workspace}",
            border_style="cyan",
        )
    )
    start_time = time.time()
    codemap: Codemap | None = None

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task("[cyan]Starting...", total=None)
            pipeline = _build_pipeline(
                settings,
                mode=mode,  # type: ignore[arg-type]
                detail=detail,  # type: ignore[arg-type]
                callbacks=_phase_callbacks(progress, task),
            )
            codemap = _run(pipeline, lambda: pipeline.generate(query, workspace.resolve()))
    except GenerationCancelled as e:
        console.print("\n[bold yellow]Generation cancelled.[/bold yellow]")
        raise typer.Exit(code=130) from e
    except DiagramSynthesisError as e:
        console.print(f"\n[bold red]❌ Diagram Error:[/bold red] {e}")
        if e.partial is None:
            raise typer.Exit(code=1) from e
        saved = _save_codemap(e.partial, settings, output)
        console.print(f"[dim]Partial codemap saved to: {saved}[/dim]")
        if interactive and Confirm.ask("Retry the global diagram from the checkpoint?"):
            _retry_diagram_file(saved, settings)
            return
        raise typer.Exit(code=1) from e
    except OutputBudgetExceeded as e:
        console.print(f"\n[bold red]❌ {e}[/bold red]")
        if interactive and Confirm.ask("Retry the whole generation?", default=False):
            generate(query, workspace, mode, detail, output, interactive, verbose)
            return
        raise typer.Exit(code=1) from e
    except (CodemapError, RuntimeError, ValueError) as e:
        console.print(f"\n[bold red]❌ Pipeline Error:[/bold red] {e}")
        if verbose:
            traceback.print_exc()
        raise typer.Exit(code=1) from e

    if codemap is None:
        console.print("[bold red]❌ No codemap could be extracted from the output.[/bold red]")
        raise typer.Exit(code=1)

    duration = time.time() - start_time
    console.print(f"\n[bold green]✅ Complete![/bold green] (took {duration:.1f}s)\n")
    _render_codemap(codemap)

    failed = [t.id for t in codemap.traces if t.error]
    if failed and interactive and Confirm.ask(
        f"{len(failed)} trace(s) failed ({', '.join(failed)}). Retry them from the checkpoint?"
    ):
        codemap = _retry_failed_traces(settings, codemap)
        _render_codemap(codemap)

    saved = _save_codemap(codemap, settings, output)
    console.print(
        Panel(
            f"Saved to: [link=file://{saved}]{saved}[/link]",
            title="Codemap",
            border_style="green",
        )
    )


@app.command("retry-trace")  # type: ignore[misc]
def retry_trace(
    codemap_file: Annotated[
        Path, typer.Argument(exists=True, dir_okay=False, help="Saved codemap JSON.")
    ],
    trace_id: Annotated[str, typer.Argument(help="Id of the trace to regenerate.")],
    diagram_only: Annotated[
        bool, typer.Option("--diagram-only", help="Skip the guide stage.")
    ] = False,
) -> None:
    """
    Regenerate one trace's diagram (and guide) from the saved checkpoint.
    """
    settings = load_settings()
    codemap = _load_codemap(codemap_file)
    checkpoint = codemap.stage_context
    trace = codemap.trace(trace_id)
    if checkpoint is None or trace is None:
        missing = "stage context" if checkpoint is None else f"trace {trace_id}"
        console.print(f"[bold red]❌ Cannot retry: codemap has no {missing}.[/bold red]")
        raise typer.Exit(code=1)

    pipeline = _build_pipeline(settings)
    with console.status(f"[yellow]Regenerating trace {trace_id}..."):
        if diagram_only:
            outcome = _run(pipeline, lambda: pipeline.retry_trace_diagram(checkpoint, trace_id))
        else:
            outcome = _run(pipeline, lambda: pipeline.retry_trace(checkpoint, trace_id))

    codemap = codemap.replace_trace(merge_trace_outcome(trace, outcome))
    _save_codemap(codemap, settings, codemap_file)
    if isinstance(outcome, Err):
        console.print(f"[bold red]❌ Trace {trace_id} failed:[/bold red] {outcome.error}")
        raise typer.Exit(code=1)
    console.print(f"[bold green]✅ Trace {trace_id} regenerated.[/bold green]")


def _retry_diagram_file(path: Path, settings: Settings) -> None:
    codemap = _load_codemap(path)
    pipeline = _build_pipeline(settings)
    with console.status("[yellow]Regenerating global diagram..."):
        if codemap.stage_context is not None:
            checkpoint = codemap.stage_context
            result = _run(pipeline, lambda: pipeline.retry_diagram(checkpoint))
        else:
            result = _run(pipeline, lambda: pipeline.diagram_from_snapshot(codemap))
    if isinstance(result, Err):
        console.print(f"[bold red]❌ Diagram failed:[/bold red] {result.error}")
        raise typer.Exit(code=1)
    codemap = codemap.model_copy(update={"mermaid_diagram": result.unwrap()})
    _save_codemap(codemap, settings, path)
    console.print("[bold green]✅ Global diagram regenerated.[/bold green]")


@app.command("retry-diagram")  # type: ignore[misc]
def retry_diagram(
    codemap_file: Annotated[
        Path, typer.Argument(exists=True, dir_okay=False, help="Saved codemap JSON.")
    ],
) -> None:
    """
    Regenerate the global diagram (from the checkpoint, or from a snapshot).
    """
    _retry_diagram_file(codemap_file, load_settings())


@app.command()  # type: ignore[misc]
def show(
    codemap_file: Annotated[
        Path, typer.Argument(exists=True, dir_okay=False, help="Saved codemap JSON.")
    ],
) -> None:
    """
    Render a saved codemap without calling the model.
    """
    try:
        codemap = _load_codemap(codemap_file)
    except ValueError as e:
        console.print(f"\n[bold red]❌ Invalid codemap file:[/bold red] {e}")
        raise typer.Exit(code=1) from e
    _render_codemap(codemap)


@app.command()  # type: ignore[misc]
def suggest(
    files: Annotated[list[str], typer.Argument(help="Recently opened files.")],
) -> None:
    """
    Suggest up to three codemap queries for recently opened files.
    """
    settings = load_settings()
    session = _build_session(settings)
    suggestions = asyncio.run(
        generate_suggestions(
            session, files, prompts=prompts_from_settings(settings), language=settings.language
        )
    )
    if not suggestions:
        console.print("[dim]No suggestions.[/dim]")
        return
    for s in suggestions:
        console.print(f"[bold cyan]• {s.text}[/bold cyan]")
        if s.sub:
            console.print(f"  {s.sub}")
        for point in s.starting_points:
            console.print(f"  [dim]{point}[/dim]")


if __name__ == "__main__":
    app()
