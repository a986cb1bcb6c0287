"""Streamed tool loop: one conversational turn with bounded tool concurrency.

Each round opens one model stream and consumes its events:

- text fragments are accumulated and forwarded as tokens; text arriving
  after a tool call ends consumption for the round,
- every tool call (batched calls are flattened to ``<id>:<index>``) starts
  its own task, which waits for a slot in a :class:`ToolSlotPool`,
- when the stream ends, assistant text is appended, then tool results are
  appended in the order the calls were emitted, whatever order they finished.

The loop ends when a round requests no tools, or after ``max_rounds``.
Tool failures become tool-result text; only cancellation and the output
budget are raised.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections import deque
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from codemap.core.contracts.conversation import Conversation, Message, ToolCallRecord
from codemap.core.errors import GenerationCancelled, OutputBudgetExceeded
from codemap.core.settings import get_logger
from codemap.llm.session import ModelSession, StreamDone, TextDelta, ToolCallRequested
from codemap.tools.base import ToolCatalog, stringify_result

from .callbacks import PipelineCallbacks

log = get_logger(__name__)

CORRECTIVE_TOOL_USE = (
    "You must use the provided tools. Do not describe tool calls in text. "
    "Emit actual tool calls using the tool calling mechanism."
)
MAX_CORRECTIVE_ROUNDS = 3
RESULT_PREVIEW_CHARS = 500


@dataclass(frozen=True, slots=True)
class LoopResult:
    """Outcome of one loop invocation.

    ``text`` is the final assistant text of the last round, or ``None`` when
    the round ceiling was hit while tools were still being requested.
    """

    text: str | None
    used_tools: bool


class ToolSlotPool:
    """Counting semaphore with a FIFO wait queue and an activity gauge."""

    def __init__(self, size: int, on_change: Callable[[int], None] | None = None) -> None:
        if size < 1:
            raise ValueError("size must be >= 1")
        self.size = size
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._on_change = on_change

    @property
    def active(self) -> int:
        return self._active

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(self._active)

    async def acquire(self) -> None:
        if self._active < self.size and not self._waiters:
            self._active += 1
            self._changed()
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut in self._waiters:
                self._waiters.remove(fut)
            elif fut.done() and not fut.cancelled():
                # The slot was handed over just before cancellation.
                self.release()
            raise

    def release(self) -> None:
        self._active = max(0, self._active - 1)
        self._changed()
        while self._waiters:
            fut = self._waiters.popleft()
            if fut.done():
                continue
            self._active += 1
            self._changed()
            fut.set_result(None)
            break

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()


def normalize_arguments(args: Any) -> Any:
    """Decode JSON-string arguments; anything else is returned unchanged."""
    if isinstance(args, str):
        try:
            return json.loads(args)
        except json.JSONDecodeError:
            return args
    return args


def call_key(name: str, args: Any) -> str:
    """Identity of a call for de-duplication: tool name + canonical arguments."""
    return f"{name}:{json.dumps(args, sort_keys=True, default=str)}"


def _listing_path(args: Any) -> str | None:
    if not isinstance(args, Mapping):
        return None
    directories = args.get("directories")
    if isinstance(directories, list) and len(directories) == 1:
        return directories[0] if isinstance(directories[0], str) else None
    value = args.get("DirectoryPath", args.get("directory_path", args.get("path")))
    return value if isinstance(value, str) else None


def _skip_notice(name: str, args: Any) -> str:
    path = _listing_path(args)
    if path:
        return f"Skipped {name}: already listed {path}. Use grep_search or read_file."
    return f"Skipped {name}: already listed those directories. Use grep_search or read_file."


def flatten_tool_event(event: ToolCallRequested) -> list[ToolCallRecord]:
    """Split a possibly batched tool-call event into individual records."""
    batch = event.input.get("toolCalls") if isinstance(event.input, Mapping) else None
    if isinstance(batch, list):
        return [
            ToolCallRecord(
                call_id=f"{event.call_id}:{idx}",
                name=str(item.get("toolName", "")),
                arguments=normalize_arguments(item.get("args") or {}),
            )
            for idx, item in enumerate(batch)
            if isinstance(item, Mapping)
        ]
    return [
        ToolCallRecord(
            call_id=event.call_id, name=event.name, arguments=normalize_arguments(event.input)
        )
    ]


def _check_cancel(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise GenerationCancelled()


class StreamedToolLoop:
    """Drives rounds of model streaming and tool execution for one turn.

    Parameters
    ----------
    session:
        Model backend.
    label:
        Name used in logs and in the output-budget error.
    system_prompt:
        Verbatim system prompt for every round.
    tools:
        Catalog offered to the model; ``None`` means no tools.
    require_tool_use:
        Inject a corrective message (at most ``MAX_CORRECTIVE_ROUNDS`` times)
        while the model has never called a tool.
    max_rounds / max_output_chars / max_parallel_tools:
        Round ceiling, cumulative text ceiling and tool concurrency.
    cancel_event:
        Shared cancellation signal.
    callbacks:
        Progress observers.
    """

    def __init__(
        self,
        session: ModelSession,
        *,
        label: str,
        system_prompt: str,
        tools: ToolCatalog | None = None,
        require_tool_use: bool = False,
        max_rounds: int = 8,
        max_output_chars: int = 400_000,
        max_parallel_tools: int = 4,
        cancel_event: asyncio.Event | None = None,
        callbacks: PipelineCallbacks | None = None,
    ) -> None:
        self.session = session
        self.label = label
        self.system_prompt = system_prompt
        self.tools = tools
        self.require_tool_use = require_tool_use
        self.max_rounds = max_rounds
        self.max_output_chars = max_output_chars
        self.cancel_event = cancel_event
        self.callbacks = callbacks or PipelineCallbacks()
        self.pool = ToolSlotPool(
            max_parallel_tools,
            on_change=lambda n: self.callbacks.emit("on_parallel_tools", n),
        )
        self._seen: set[str] = set()
        self._total_chars = 0

    async def run(self, conversation: Conversation) -> LoopResult:
        used_tools = False
        no_tool_rounds = 0
        declarations = self.tools.declarations() if self.tools else None

        for round_no in range(1, self.max_rounds + 1):
            _check_cancel(self.cancel_event)
            log.debug(
                "[%s Round %d] system=%r messages=%s",
                self.label,
                round_no,
                self.system_prompt,
                conversation.flatten(),
            )
            text, pending = await self._consume_round(conversation, declarations, round_no)

            if text:
                conversation.append(Message.assistant(text))
                self.callbacks.emit("on_message", "assistant", text)

            if not pending:
                if self.require_tool_use and not used_tools:
                    no_tool_rounds += 1
                    conversation.add_user(CORRECTIVE_TOOL_USE)
                    log.warning("[%s] No tool calls in round %d", self.label, round_no)
                    if no_tool_rounds < MAX_CORRECTIVE_ROUNDS:
                        continue
                return LoopResult(text or None, used_tools)

            used_tools = True
            await self._await_tools(pending)
            for record, task in pending:
                conversation.append(
                    Message.tool_result(
                        ToolCallRecord(record.call_id, record.name, record.arguments, task.result())
                    )
                )

        return LoopResult(None, used_tools)

    async def _consume_round(
        self,
        conversation: Conversation,
        declarations: list[dict[str, Any]] | None,
        round_no: int,
    ) -> tuple[str, list[tuple[ToolCallRecord, asyncio.Task[str]]]]:
        parts: list[str] = []
        pending: list[tuple[ToolCallRecord, asyncio.Task[str]]] = []
        first_text: float | None = None
        first_tool: float | None = None
        started = time.perf_counter()

        stream = self.session.open(
            self.system_prompt,
            list(conversation),
            tools=declarations,
            require_tool=self.require_tool_use,
            cancel_event=self.cancel_event,
        )
        try:
            async for event in stream:
                _check_cancel(self.cancel_event)
                if isinstance(event, TextDelta):
                    if pending:
                        break
                    if first_text is None:
                        first_text = time.perf_counter() - started
                    parts.append(event.text)
                    self._total_chars += len(event.text)
                    self.callbacks.emit("on_token", event.text)
                elif isinstance(event, ToolCallRequested):
                    if first_tool is None:
                        first_tool = time.perf_counter() - started
                    for record in flatten_tool_event(event):
                        pending.append((record, self._dispatch(record)))
                elif isinstance(event, StreamDone):
                    break
                if self._total_chars > self.max_output_chars:
                    raise OutputBudgetExceeded(self.label, self.max_output_chars)
            _check_cancel(self.cancel_event)
        except BaseException:
            await _cancel_tasks([task for _, task in pending])
            raise
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        delays = []
        if first_tool is not None:
            delays.append(f"firstToolCall={first_tool * 1000:.0f}ms")
        if first_text is not None:
            delays.append(f"firstText={first_text * 1000:.0f}ms")
        log.info(
            "[%s Round %d] Model stream completed in %.0fms%s",
            self.label,
            round_no,
            (time.perf_counter() - started) * 1000,
            f" ({', '.join(delays)})" if delays else "",
        )
        return "".join(parts), pending

    def _dispatch(self, record: ToolCallRecord) -> asyncio.Task[str]:
        # De-duplication is decided here, in emission order.
        tool = self.tools.get(record.name) if self.tools else None
        key = call_key(record.name, record.arguments)
        duplicate = tool is not None and tool.idempotent_listing and key in self._seen
        self._seen.add(key)
        return asyncio.create_task(self._run_call(record, duplicate))

    async def _run_call(self, record: ToolCallRecord, duplicate: bool) -> str:
        async with self.pool.slot():
            tool = self.tools.get(record.name) if self.tools else None
            if duplicate:
                result = _skip_notice(record.name, record.arguments)
            elif tool is None:
                result = f"Error: Tool not found: {record.name}"
            else:
                started = time.perf_counter()
                try:
                    result = await tool.execute(record.arguments)
                except Exception as exc:  # noqa: BLE001
                    result = f'Error executing tool "{record.name}": {exc}'
                else:
                    log.info(
                        "[%s] Tool %s completed in %.0fms",
                        self.label,
                        record.name,
                        (time.perf_counter() - started) * 1000,
                    )
        args_text = (
            record.arguments
            if isinstance(record.arguments, str)
            else stringify_result(record.arguments)
        )
        self.callbacks.emit("on_tool_call", record.name, args_text, result[:RESULT_PREVIEW_CHARS])
        return result

    async def _await_tools(self, pending: list[tuple[ToolCallRecord, asyncio.Task[str]]]) -> None:
        tasks: set[asyncio.Future[Any]] = {task for _, task in pending}
        waiter = (
            asyncio.ensure_future(self.cancel_event.wait())
            if self.cancel_event is not None
            else None
        )
        try:
            while tasks:
                watch = tasks | {waiter} if waiter is not None else tasks
                done, _ = await asyncio.wait(watch, return_when=asyncio.FIRST_COMPLETED)
                if waiter is not None and waiter in done:
                    raise GenerationCancelled()
                tasks -= done
        except BaseException:
            await _cancel_tasks([task for _, task in pending])
            raise
        finally:
            if waiter is not None:
                waiter.cancel()


async def _cancel_tasks(tasks: list[asyncio.Task[str]]) -> None:
    live = [t for t in tasks if not t.done()]
    for task in live:
        task.cancel()
    if live:
        await asyncio.gather(*live, return_exceptions=True)


async def run_streamed_tool_loop(
    session: ModelSession,
    conversation: Conversation,
    **options: Any,
) -> LoopResult:
    """Run one :class:`StreamedToolLoop` over ``conversation``."""
    return await StreamedToolLoop(session, **options).run(conversation)


__all__ = [
    "CORRECTIVE_TOOL_USE",
    "LoopResult",
    "StreamedToolLoop",
    "ToolSlotPool",
    "call_key",
    "flatten_tool_event",
    "normalize_arguments",
    "run_streamed_tool_loop",
]
