"""Global diagram synthesis: generate, validate, fix, colorize.

Attempt 1 renders the ``diagram`` prompt. Every later attempt sends a fix
prompt carrying the validator's error and the last extracted diagram. The
first diagram that validates is colorized and returned; running out of
attempts returns ``Err`` with the last error.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping

from codemap.core.contracts.conversation import Conversation
from codemap.core.errors import GenerationCancelled
from codemap.core.extraction import extract_diagram
from codemap.core.result import Result, err, ok
from codemap.core.settings import PipelineConfig, get_logger
from codemap.diagram.colorize import colorize_diagram
from codemap.diagram.validate import DiagramParser, validate_diagram
from codemap.llm.session import ModelSession
from codemap.prompts import PromptProvider

from .callbacks import PipelineCallbacks
from .tool_loop import run_streamed_tool_loop

log = get_logger(__name__)

DIAGRAM_PHASE = ("Mermaid Diagram", 6)


def build_fix_prompt(error_message: str, diagram: str) -> str:
    """Prompt asking the model to repair a diagram that failed to parse."""
    lines = [
        "The Mermaid diagram you produced failed to parse. Fix it so it compiles.",
        "",
        "Requirements:",
        "- Output ONLY a single ```mermaid code block, no other text.",
        "- Do not include XML tags or analysis text (e.g., <thinking>, <BRAINSTORMING>).",
        "- Keep the diagram structure and labels, change only what is needed to fix parsing.",
        "- Avoid reserved keywords as node IDs: end, subgraph, graph, flowchart.",
        "- For subgraphs, use explicit IDs like: subgraph id [Label].",
        "",
        f"Parse error:\n{error_message}",
        "",
    ]
    if diagram.strip():
        lines.append(f"Current diagram:\n```mermaid\n{diagram}\n```")
    else:
        lines.append(
            "No valid diagram was extracted. Generate a fresh, valid Mermaid diagram "
            "using the existing context."
        )
    return "\n".join(lines) + "\n"


async def synthesize_diagram(
    session: ModelSession,
    *,
    system_prompt: str,
    conversation: Conversation,
    variables: Mapping[str, str],
    prompts: PromptProvider,
    config: PipelineConfig,
    parser: DiagramParser | None = None,
    cancel_event: asyncio.Event | None = None,
    callbacks: PipelineCallbacks | None = None,
) -> Result[str, str]:
    """Produce one validated, colorized Mermaid diagram.

    ``conversation`` must be a private copy; every attempt appends to it.
    """
    cb = callbacks or PipelineCallbacks()
    max_attempts = config.diagram_max_attempts
    last_error: str | None = None
    last_diagram = ""

    log.info("[Mermaid] Starting diagram generation")
    cb.emit("on_phase_change", *DIAGRAM_PHASE)
    try:
        for attempt in range(1, max_attempts + 1):
            if attempt == 1:
                prompt = prompts.render("diagram", variables)
                cb.emit("on_message", "user", "[Mermaid] Generating global mermaid diagram...")
            else:
                prompt = build_fix_prompt(last_error or "Unknown parse error", last_diagram)
                cb.emit(
                    "on_message",
                    "user",
                    f"[Mermaid] Fixing diagram (attempt {attempt}/{max_attempts})...",
                )
            conversation.add_user(prompt)
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelled()

            result = await run_streamed_tool_loop(
                session,
                conversation,
                label=f"[Mermaid] Attempt {attempt}",
                system_prompt=system_prompt,
                max_rounds=1,
                max_output_chars=config.max_output_chars,
                max_parallel_tools=config.trace_parallel_tools,
                cancel_event=cancel_event,
                callbacks=cb,
            )
            if not result.text:
                last_error = "No text in mermaid response"
                log.warning("[Mermaid] %s", last_error)
                continue

            extracted = extract_diagram(result.text)
            if not extracted:
                last_error = "No mermaid code block found in response"
                log.warning("[Mermaid] %s", last_error)
                continue

            verdict = validate_diagram(extracted, parser)
            if verdict.is_err():
                last_error = verdict.unwrap_err()
                last_diagram = extracted
                cb.emit("on_message", "error", f"[Mermaid] Parse error: {last_error}")
                log.warning("[Mermaid] Parse error on attempt %d: %s", attempt, last_error)
                continue

            diagram = colorize_diagram(extracted)
            cb.emit("on_message", "assistant", "[Mermaid] Mermaid diagram generated")
            log.info("[Mermaid] Diagram accepted on attempt %d", attempt)
            return ok(diagram)

        return err(
            f"Mermaid diagram failed to compile after {max_attempts} attempts: "
            f"{last_error or 'Unknown error'}"
        )
    except GenerationCancelled as exc:
        log.info("[Mermaid] Diagram generation cancelled")
        return err(str(exc))
    except Exception as exc:  # noqa: BLE001
        log.error("[Mermaid] Error during diagram generation: %s", exc)
        return err(str(exc) or type(exc).__name__)


__all__ = ["DIAGRAM_PHASE", "build_fix_prompt", "synthesize_diagram"]
