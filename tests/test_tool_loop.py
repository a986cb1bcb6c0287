"""Tests for the streamed tool loop.

Scenarios
---------
1. Tool results are appended in emission order, whatever order they finish.
2. Tool concurrency never exceeds ``max_parallel_tools``; waiters are FIFO.
3. Idempotent listings are de-duplicated within one loop invocation.
4. Unknown tools and failing tools become tool-result text.
5. Batched tool-call events are flattened with ``<id>:<index>`` ids.
6. Required tool use injects at most three corrective messages.
7. Output budget and cancellation are the only raised failures.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from fakes import ScriptedSession, text_round, tool_round

from codemap.agents.callbacks import PipelineCallbacks
from codemap.agents.tool_loop import (
    CORRECTIVE_TOOL_USE,
    StreamedToolLoop,
    ToolSlotPool,
    call_key,
    run_streamed_tool_loop,
)
from codemap.core.contracts.conversation import Conversation, Message
from codemap.core.errors import GenerationCancelled, OutputBudgetExceeded
from codemap.llm.session import StreamDone, TextDelta, ToolCallRequested
from codemap.tools.base import BuiltinTool, ToolCatalog

_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


def _conversation() -> Conversation:
    conv = Conversation()
    conv.add_user("find the login handler")
    return conv


def _tool_messages(conv: Conversation) -> list[Message]:
    return [m for m in conv if m.role == "tool"]


class _Gauge:
    """Async tool recording concurrency and call counts."""

    def __init__(self) -> None:
        self.active = 0
        self.peak = 0
        self.calls: list[str] = []

    async def run(self, name: str = "", delay: float = 0.0) -> str:
        self.calls.append(name)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(delay)
        finally:
            self.active -= 1
        return f"result {name}"


# --------------------------------------------------------------------------- #
# Ordering and concurrency
# --------------------------------------------------------------------------- #


def test_results_follow_emission_order_not_completion_order() -> None:
    gauge = _Gauge()
    tools = ToolCatalog([BuiltinTool("work", "", _SCHEMA, gauge.run)])
    session = ScriptedSession(
        [
            tool_round(
                ("c1", "work", {"name": "slow", "delay": 0.05}),
                ("c2", "work", {"name": "medium", "delay": 0.02}),
                ("c3", "work", {"name": "fast", "delay": 0.0}),
            ),
            text_round("All three done."),
        ]
    )
    conv = _conversation()

    result = asyncio.run(
        run_streamed_tool_loop(session, conv, label="t", system_prompt="s", tools=tools)
    )

    assert result.text == "All three done."
    assert result.used_tools is True
    tool_msgs = _tool_messages(conv)
    assert [m.tool_call_id for m in tool_msgs] == ["c1", "c2", "c3"]
    assert [m.text for m in tool_msgs] == ["result slow", "result medium", "result fast"]
    # The second round saw the tool results.
    assert session.calls[1].messages[-1] == ("user", "[tool work] result fast")


def test_concurrency_is_bounded() -> None:
    gauge = _Gauge()
    seen: list[int] = []
    tools = ToolCatalog([BuiltinTool("work", "", _SCHEMA, gauge.run)])
    calls = [(f"c{i}", "work", {"name": str(i), "delay": 0.01}) for i in range(6)]
    session = ScriptedSession([tool_round(*calls), text_round("ok")])

    asyncio.run(
        run_streamed_tool_loop(
            session,
            _conversation(),
            label="t",
            system_prompt="s",
            tools=tools,
            max_parallel_tools=2,
            callbacks=PipelineCallbacks(on_parallel_tools=seen.append),
        )
    )

    assert gauge.peak == 2
    assert len(gauge.calls) == 6
    assert max(seen) == 2
    assert seen[-1] == 0


def test_slot_pool_wakes_waiters_in_fifo_order() -> None:
    async def scenario() -> list[int]:
        pool = ToolSlotPool(1)
        order: list[int] = []
        await pool.acquire()

        async def waiter(n: int) -> None:
            async with pool.slot():
                order.append(n)

        tasks = [asyncio.create_task(waiter(n)) for n in range(4)]
        await asyncio.sleep(0)
        assert pool.active == 1
        pool.release()
        await asyncio.gather(*tasks)
        assert pool.active == 0
        return order

    assert asyncio.run(scenario()) == [0, 1, 2, 3]


def test_slot_pool_rejects_zero_size() -> None:
    with pytest.raises(ValueError):
        ToolSlotPool(0)


# --------------------------------------------------------------------------- #
# De-duplication
# --------------------------------------------------------------------------- #


def test_idempotent_listing_runs_once_per_loop() -> None:
    listed: list[str] = []

    def list_dir(DirectoryPath: str = ".") -> str:  # noqa: N803
        listed.append(DirectoryPath)
        return f"{DirectoryPath}/ a.py"

    tools = ToolCatalog(
        [BuiltinTool("list_dir", "", _SCHEMA, list_dir, idempotent_listing=True)]
    )
    session = ScriptedSession(
        [
            tool_round(
                ("c1", "list_dir", {"DirectoryPath": "src"}),
                ("c2", "list_dir", '{"DirectoryPath": "src"}'),
            ),
            tool_round(("c3", "list_dir", {"DirectoryPath": "src"})),
            text_round("done"),
        ]
    )
    conv = _conversation()

    asyncio.run(run_streamed_tool_loop(session, conv, label="t", system_prompt="s", tools=tools))

    assert listed == ["src"]
    texts = [m.text for m in _tool_messages(conv)]
    assert texts[0] == "src/ a.py"
    skip = "Skipped list_dir: already listed src. Use grep_search or read_file."
    assert texts[1:] == [skip, skip]


def test_non_idempotent_tools_are_never_deduplicated() -> None:
    gauge = _Gauge()
    tools = ToolCatalog([BuiltinTool("grep", "", _SCHEMA, gauge.run)])
    session = ScriptedSession(
        [
            tool_round(("c1", "grep", {"name": "q"}), ("c2", "grep", {"name": "q"})),
            text_round("done"),
        ]
    )

    asyncio.run(
        run_streamed_tool_loop(session, _conversation(), label="t", system_prompt="s", tools=tools)
    )

    assert gauge.calls == ["q", "q"]


def test_call_key_is_canonical() -> None:
    assert call_key("x", {"b": 1, "a": 2}) == call_key("x", {"a": 2, "b": 1})
    assert call_key("x", {"a": 1}) != call_key("y", {"a": 1})


# --------------------------------------------------------------------------- #
# Tool failures and batches
# --------------------------------------------------------------------------- #


def test_unknown_and_failing_tools_become_result_text() -> None:
    def boom() -> str:
        raise OSError("disk on fire")

    previews: list[tuple[str, str, str]] = []
    tools = ToolCatalog([BuiltinTool("boom", "", _SCHEMA, boom)])
    session = ScriptedSession(
        [tool_round(("c1", "nope", {}), ("c2", "boom", {})), text_round("recovered")]
    )
    conv = _conversation()

    result = asyncio.run(
        run_streamed_tool_loop(
            session,
            conv,
            label="t",
            system_prompt="s",
            tools=tools,
            callbacks=PipelineCallbacks(on_tool_call=lambda *a: previews.append(a)),
        )
    )

    assert result.text == "recovered"
    assert [m.text for m in _tool_messages(conv)] == [
        "Error: Tool not found: nope",
        'Error executing tool "boom": disk on fire',
    ]
    assert {p[0] for p in previews} == {"nope", "boom"}


def test_batched_tool_calls_are_flattened() -> None:
    gauge = _Gauge()
    tools = ToolCatalog([BuiltinTool("work", "", _SCHEMA, gauge.run)])
    batch = ToolCallRequested(
        "b1",
        "parallel",
        {
            "toolCalls": [
                {"toolName": "work", "args": {"name": "x"}},
                {"toolName": "work", "args": '{"name": "y"}'},
            ]
        },
    )
    session = ScriptedSession([[batch, StreamDone()], text_round("ok")])
    conv = _conversation()

    asyncio.run(run_streamed_tool_loop(session, conv, label="t", system_prompt="s", tools=tools))

    msgs = _tool_messages(conv)
    assert [m.tool_call_id for m in msgs] == ["b1:0", "b1:1"]
    assert [m.text for m in msgs] == ["result x", "result y"]


def test_text_after_a_tool_call_ends_the_round() -> None:
    gauge = _Gauge()
    tools = ToolCatalog([BuiltinTool("work", "", _SCHEMA, gauge.run)])
    session = ScriptedSession(
        [
            [
                TextDelta("Let me look. "),
                ToolCallRequested("c1", "work", {"name": "a"}),
                TextDelta("ignored"),
                ToolCallRequested("c2", "work", {"name": "b"}),
                StreamDone(),
            ],
            text_round("final"),
        ]
    )
    conv = _conversation()

    asyncio.run(run_streamed_tool_loop(session, conv, label="t", system_prompt="s", tools=tools))

    assert gauge.calls == ["a"]
    assert conv.flatten()[1] == ("assistant", "Let me look. ")
    assert all("ignored" not in text for _, text in conv.flatten())


def test_round_ceiling_returns_without_text() -> None:
    gauge = _Gauge()
    tools = ToolCatalog([BuiltinTool("work", "", _SCHEMA, gauge.run)])
    session = ScriptedSession([tool_round((f"c{i}", "work", {"name": str(i)})) for i in range(5)])

    result = asyncio.run(
        run_streamed_tool_loop(
            session, _conversation(), label="t", system_prompt="s", tools=tools, max_rounds=2
        )
    )

    assert result.text is None and result.used_tools is True
    assert len(session.calls) == 2


# --------------------------------------------------------------------------- #
# Required tool use
# --------------------------------------------------------------------------- #


def test_required_tool_use_is_bounded_to_three_corrections() -> None:
    session = ScriptedSession([text_round("I would call read_file now.")] * 5)
    conv = _conversation()

    result = asyncio.run(
        run_streamed_tool_loop(
            session,
            conv,
            label="t",
            system_prompt="s",
            tools=ToolCatalog([BuiltinTool("work", "", _SCHEMA, _Gauge().run)]),
            require_tool_use=True,
            max_rounds=12,
        )
    )

    assert result.used_tools is False
    assert len(session.calls) == 3
    assert all(call.require_tool for call in session.calls)
    assert sum(1 for _, text in conv.flatten() if text == CORRECTIVE_TOOL_USE) == 3


def test_required_tool_use_recovers_after_correction() -> None:
    gauge = _Gauge()
    session = ScriptedSession(
        [
            text_round("thinking"),
            tool_round(("c1", "work", {"name": "a"})),
            text_round("done researching"),
        ]
    )
    conv = _conversation()

    result = asyncio.run(
        run_streamed_tool_loop(
            session,
            conv,
            label="t",
            system_prompt="s",
            tools=ToolCatalog([BuiltinTool("work", "", _SCHEMA, gauge.run)]),
            require_tool_use=True,
        )
    )

    assert result.used_tools is True
    assert result.text == "done researching"
    assert session.calls[1].messages[-1] == ("user", CORRECTIVE_TOOL_USE)


# --------------------------------------------------------------------------- #
# Budget and cancellation
# --------------------------------------------------------------------------- #


def test_output_budget_is_enforced() -> None:
    session = ScriptedSession([[TextDelta("12345"), TextDelta("6789"), StreamDone()]])

    with pytest.raises(OutputBudgetExceeded) as info:
        asyncio.run(
            run_streamed_tool_loop(
                session, _conversation(), label="Stage 2", system_prompt="s", max_output_chars=8
            )
        )

    assert info.value.limit == 8
    assert "Stage 2" in str(info.value)


def test_cancel_before_open_raises_without_calling_model() -> None:
    async def scenario() -> None:
        event = asyncio.Event()
        event.set()
        session = ScriptedSession([text_round("never")])
        with pytest.raises(GenerationCancelled):
            await StreamedToolLoop(
                session, label="t", system_prompt="s", cancel_event=event
            ).run(_conversation())
        assert session.calls == []

    asyncio.run(scenario())


def test_cancel_while_tools_run_keeps_earlier_messages() -> None:
    async def scenario() -> None:
        event = asyncio.Event()
        finished: list[str] = []

        async def hang() -> str:
            event.set()
            await asyncio.sleep(10)
            finished.append("hang")
            return "never"

        session = ScriptedSession([tool_round(("c1", "hang", {}), text="Reading. ")])
        conv = _conversation()
        loop = StreamedToolLoop(
            session,
            label="t",
            system_prompt="s",
            tools=ToolCatalog([BuiltinTool("hang", "", _SCHEMA, hang)]),
            cancel_event=event,
        )
        with pytest.raises(GenerationCancelled):
            await loop.run(conv)

        assert finished == []
        assert loop.pool.active == 0
        assert _tool_messages(conv) == []

    asyncio.run(asyncio.wait_for(scenario(), timeout=5))
