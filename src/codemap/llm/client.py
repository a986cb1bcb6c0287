# -----------------------------------------------------------------------------
# Streaming client for OpenAI-compatible Chat Completions endpoints.
#
# The session speaks server-sent events over the standard-library HTTP client
# (`urllib.request`), so it adds no dependencies. Blocking reads happen in a
# worker thread via `asyncio.to_thread`, one line at a time, which keeps the
# event loop free and lets cancellation be observed between lines.
#
# Tool calls arrive as fragments keyed by `index`: the first fragment carries
# the id and function name, later ones append to the JSON argument string.
# Fragments are reassembled and emitted as complete `ToolCallRequested`
# events in index order when the choice finishes.
#
# Unit tests patch `_open_stream()` to feed canned SSE lines, so no real HTTP
# calls are made during CI.
# -----------------------------------------------------------------------------
from __future__ import annotations

import asyncio
import json
import time
import urllib.error
import urllib.request
from collections.abc import AsyncIterator, Iterator, Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from typing import Any

from codemap.core.contracts.conversation import Message
from codemap.core.errors import ConfigurationError
from codemap.core.settings import Settings, get_logger

from .session import StreamDone, StreamEvent, TextDelta, ToolCallRequested

log = get_logger(__name__)


@dataclass(slots=True)
class OpenAIChatSession:
    """Streaming model session for ``POST {base_url}/chat/completions``.

    Parameters
    ----------
    api_key:
        Bearer token. An empty key is rejected when a round is opened.
    base_url:
        Endpoint root, e.g. ``"https://api.openai.com/v1"``.
    model:
        Concrete provider model id.
    timeout_seconds:
        Socket timeout for the streaming request.
    temperature:
        Optional sampling temperature; omitted from the payload when ``None``.
    """

    api_key: str
    base_url: str
    model: str
    timeout_seconds: float = 120.0
    temperature: float | None = None

    @classmethod
    def from_settings(cls, s: Settings) -> OpenAIChatSession:
        """Build a session from loaded settings."""
        return cls(api_key=s.openai_api_key or "", base_url=s.openai_base_url, model=s.model)

    # --------------------------------------------------------------------- #
    # Public API
    # --------------------------------------------------------------------- #
    async def open(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        require_tool: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one round as :mod:`codemap.llm.session` events.

        Raises
        ------
        ConfigurationError
            If no API key is configured.
        RuntimeError
            On HTTP or network failure.
        """
        if not self.api_key:
            raise ConfigurationError("Missing OPENAI_API_KEY; cannot open a model session.")

        url = self.base_url.rstrip("/") + "/chat/completions"
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "Authorization": f"Bearer {self.api_key}",
        }
        payload = self._build_payload(system_prompt, messages, tools, require_tool)
        log.debug("chat.completions payload: %s", json.dumps(payload)[:2000])

        lines = await asyncio.to_thread(self._open_stream, url, headers, payload)
        pending: dict[int, dict[str, str]] = {}
        finish_reason: str | None = None
        started = time.perf_counter()
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    return
                line = await asyncio.to_thread(next, lines, None)
                if line is None:
                    break
                data = _sse_data(line)
                if data is None:
                    continue
                if data == "[DONE]":
                    break
                try:
                    chunk: dict[str, Any] = json.loads(data)
                except json.JSONDecodeError:
                    log.warning("Skipping undecodable stream chunk: %r", data[:200])
                    continue
                for choice in chunk.get("choices") or []:
                    delta = choice.get("delta") or {}
                    content = delta.get("content")
                    if isinstance(content, str) and content:
                        yield TextDelta(content)
                    for fragment in delta.get("tool_calls") or []:
                        _merge_tool_fragment(pending, fragment)
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]
                        for event in _drain_tool_calls(pending):
                            yield event
            for event in _drain_tool_calls(pending):
                yield event
            log.info(
                "Model stream finished in %.2fs (finish_reason=%s)",
                time.perf_counter() - started,
                finish_reason,
            )
            yield StreamDone(finish_reason)
        finally:
            close = getattr(lines, "close", None)
            if close is not None:
                close()

    # --------------------------------------------------------------------- #
    # Payload helpers
    # --------------------------------------------------------------------- #
    def _build_payload(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: Sequence[Mapping[str, Any]] | None,
        require_tool: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "stream": True,
            "messages": to_chat_messages(messages),
        }
        if system_prompt:
            payload["messages"].insert(0, {"role": "system", "content": system_prompt})
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if tools:
            payload["tools"] = [{"type": "function", "function": dict(t)} for t in tools]
            payload["tool_choice"] = "required" if require_tool else "auto"
        return payload

    # --------------------------------------------------------------------- #
    # Internal helpers (test seams)
    # --------------------------------------------------------------------- #
    def _open_stream(
        self,
        url: str,
        headers: Mapping[str, str],
        payload: Mapping[str, Any],
    ) -> Iterator[str]:
        """POST ``payload`` and return an iterator over decoded response lines.

        This is the network seam: tests replace it with a function returning
        canned ``data: ...`` lines.
        """
        body = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(url=url, data=body, headers=dict(headers), method="POST")
        try:
            resp = urllib.request.urlopen(request, timeout=self.timeout_seconds)
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            raise RuntimeError(f"LLM HTTP error {exc.code}: {exc.reason}; body={detail!r}") from exc
        except urllib.error.URLError as exc:
            raise RuntimeError(f"LLM network error: {exc}") from exc
        return _iter_lines(resp)


def _iter_lines(resp: Any) -> Iterator[str]:
    with resp:
        for raw in resp:
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")


def _sse_data(line: str) -> str | None:
    if not line.startswith("data:"):
        return None
    return line[5:].strip()


def _merge_tool_fragment(
    pending: MutableMapping[int, dict[str, str]], fragment: Mapping[str, Any]
) -> None:
    index = int(fragment.get("index", 0))
    slot = pending.setdefault(index, {"id": "", "name": "", "arguments": ""})
    if fragment.get("id"):
        slot["id"] = str(fragment["id"])
    function = fragment.get("function") or {}
    if function.get("name"):
        slot["name"] += str(function["name"])
    if function.get("arguments"):
        slot["arguments"] += str(function["arguments"])


def _drain_tool_calls(pending: dict[int, dict[str, str]]) -> list[ToolCallRequested]:
    events: list[ToolCallRequested] = []
    for index in sorted(pending):
        slot = pending[index]
        raw_args = slot["arguments"].strip()
        try:
            arguments: Any = json.loads(raw_args) if raw_args else {}
        except json.JSONDecodeError:
            arguments = raw_args
        events.append(
            ToolCallRequested(
                call_id=slot["id"] or f"call_{index}",
                name=slot["name"],
                input=arguments,
            )
        )
    pending.clear()
    return events


def to_chat_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Serialize a conversation into Chat Completions ``messages``.

    Tool results become native ``tool`` messages. The ``tool_calls`` they
    answer are attached to the assistant message right before them, or to a
    new content-less assistant message when there is none.
    """
    out: list[dict[str, Any]] = []
    for message in messages:
        if message.role != "tool":
            out.append({"role": message.role, "content": message.text})
            continue
        call = {
            "id": message.tool_call_id or "",
            "type": "function",
            "function": {
                "name": message.tool_name or "",
                "arguments": json.dumps(message.tool_arguments or {}),
            },
        }
        host = _tool_call_host(out)
        host.setdefault("tool_calls", []).append(call)
        out.append(
            {"role": "tool", "tool_call_id": message.tool_call_id or "", "content": message.text}
        )
    return out


def _tool_call_host(out: list[dict[str, Any]]) -> dict[str, Any]:
    # Walk back over the current run of tool messages to the assistant turn.
    i = len(out) - 1
    while i >= 0 and out[i]["role"] == "tool":
        i -= 1
    if i >= 0 and out[i]["role"] == "assistant" and (
        "tool_calls" in out[i] or i == len(out) - 1
    ):
        return out[i]
    host: dict[str, Any] = {"role": "assistant", "content": None}
    out.append(host)
    return host


__all__ = ["OpenAIChatSession", "to_chat_messages"]
