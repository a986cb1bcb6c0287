"""Suggest codemap queries from the files a user opened recently."""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError

from codemap.core.contracts.codemap import Suggestion
from codemap.core.contracts.conversation import Conversation
from codemap.core.settings import get_logger
from codemap.llm.session import ModelSession
from codemap.prompts import PromptProvider

from .tool_loop import run_streamed_tool_loop

log = get_logger(__name__)

MAX_SUGGESTIONS = 3
_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")


def parse_suggestions(text: str) -> list[Suggestion]:
    """Parse the model's JSON array; anything unusable yields ``[]``."""
    match = _JSON_ARRAY.search(text)
    if not match:
        return []
    try:
        payload: Any = json.loads(match.group(0))
    except json.JSONDecodeError:
        log.warning("Suggestion JSON decode failed")
        return []
    if not isinstance(payload, list):
        return []

    out: list[Suggestion] = []
    for idx, item in enumerate(payload[:MAX_SUGGESTIONS]):
        if not isinstance(item, dict) or not item.get("title"):
            continue
        try:
            out.append(
                Suggestion(
                    id=f"suggestion-{idx}",
                    text=str(item["title"]),
                    sub=item.get("subtitle"),
                    starting_points=list(item.get("starting_points") or []),
                )
            )
        except ValidationError:
            continue
    return out


async def generate_suggestions(
    session: ModelSession,
    recent_files: Sequence[str],
    *,
    prompts: PromptProvider,
    language: str = "English",
) -> list[Suggestion]:
    """Ask the model (single round, no tools) for up to three suggestions."""
    if not recent_files:
        return []
    prompt = prompts.render(
        "suggestion",
        {
            "recent_files": "\n".join(f"{i}. {f}" for i, f in enumerate(recent_files, start=1)),
            "language": language,
        },
    )
    conversation = Conversation()
    conversation.add_user(prompt)
    try:
        result = await run_streamed_tool_loop(
            session, conversation, label="Suggestions", system_prompt="", max_rounds=1
        )
    except Exception as exc:  # noqa: BLE001
        log.error("Failed to generate suggestions: %s", exc)
        return []
    return parse_suggestions(result.text or "")


__all__ = ["MAX_SUGGESTIONS", "generate_suggestions", "parse_suggestions"]
