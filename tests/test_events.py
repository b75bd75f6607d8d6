"""Event channel: background turns, terminal events and cancellation."""

import asyncio

import httpx
import pytest

from conftest import ScriptedLLM, call_chunk, text
from llm_relay._exceptions import CancellationError, TransportError
from llm_relay.events import (
    ContentDelta,
    ToolCallFinished,
    ToolCallStarted,
    TurnComplete,
    TurnFailed,
    submit,
)
from llm_relay.loop import ToolLoop
from llm_relay.types import AssistantMessage, ToolInfo, ToolMessage, ToolResult, UserMessage


class GatedExecutor:
    """Each call blocks until ``gate`` is set."""

    def __init__(self):
        self.gate = asyncio.Event()
        self.executed = []

    def tool_infos(self):
        return [ToolInfo("edit")]

    async def execute(self, call):
        await self.gate.wait()
        self.executed.append(call.id)
        return ToolResult(call.id, call.name, content="edited")


async def drain(stream):
    return [event async for event in stream]


class TestSubmit:
    @pytest.mark.asyncio
    async def test_completes_with_history(self):
        llm = ScriptedLLM([[text("Hel"), text("lo")]])
        history = [UserMessage("hi")]

        stream, handle = submit(ToolLoop(llm), history)
        events = await drain(stream)

        assert [e for e in events if isinstance(e, ContentDelta)] == [
            ContentDelta("Hel"),
            ContentDelta("lo"),
        ]
        terminal = events[-1]
        assert isinstance(terminal, TurnComplete)
        assert terminal.history is history
        assert terminal.history == [UserMessage("hi"), AssistantMessage(content="Hello")]
        await handle.wait()
        assert handle.done()

    @pytest.mark.asyncio
    async def test_failure_is_a_terminal_event(self):
        llm = ScriptedLLM([[text("par"), httpx.ConnectError("down")]])
        history = [UserMessage("hi")]

        stream, _ = submit(ToolLoop(llm), history)
        terminal = (await drain(stream))[-1]

        assert isinstance(terminal, TurnFailed)
        assert isinstance(terminal.error, TransportError)
        assert terminal.history == [UserMessage("hi"), AssistantMessage(content="par")]

    @pytest.mark.asyncio
    async def test_partial_output_visible_mid_turn(self):
        gate = asyncio.Event()
        llm = ScriptedLLM([[text("first"), gate, text("second")]])

        stream, _ = submit(ToolLoop(llm), [UserMessage("hi")])

        async for event in stream:
            if isinstance(event, ContentDelta):
                assert event.text == "first"
                break
        gate.set()
        rest = await drain(stream)
        assert ContentDelta("second") in rest
        assert isinstance(rest[-1], TurnComplete)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_while_streaming_discards_draft(self):
        never = asyncio.Event()
        llm = ScriptedLLM([[text("Hel"), never]])
        history = [UserMessage("hi")]

        stream, handle = submit(ToolLoop(llm), history)
        async for event in stream:
            if isinstance(event, ContentDelta):
                handle.cancel()
            if isinstance(event, TurnFailed):
                terminal = event

        assert isinstance(terminal.error, CancellationError)
        assert history == [UserMessage("hi")]

    @pytest.mark.asyncio
    async def test_cancel_before_start(self):
        llm = ScriptedLLM([[text("never sent")]])
        history = [UserMessage("hi")]

        stream, handle = submit(ToolLoop(llm), history)
        handle.cancel()
        events = await drain(stream)

        assert len(events) == 1
        assert isinstance(events[0], TurnFailed)
        assert isinstance(events[0].error, CancellationError)
        assert llm.requests == []

    @pytest.mark.asyncio
    async def test_running_tool_finishes_and_rest_are_cancelled(self):
        llm = ScriptedLLM(
            [
                [
                    text("Editing both"),
                    call_chunk(0, id="e1", name="edit", args="{}"),
                    call_chunk(1, id="e2", name="edit", args="{}"),
                ],
                [text("unreachable")],
            ]
        )
        executor = GatedExecutor()
        history = [UserMessage("edit a and b")]

        stream, handle = submit(ToolLoop(llm, executor), history)
        events = []
        async for event in stream:
            events.append(event)
            if isinstance(event, ToolCallStarted) and event.call.id == "e1":
                handle.cancel()
                executor.gate.set()

        assert executor.executed == ["e1"]
        assert [e.call_id for e in events if isinstance(e, ToolCallFinished)] == ["e1"]
        assert isinstance(events[-1], TurnFailed)
        assert isinstance(events[-1].error, CancellationError)
        assert history[1].content == "Editing both"
        assert history[2:] == [
            ToolMessage("e1", "edited", name="edit"),
            ToolMessage("e2", {"error": "cancelled"}, name="edit", is_error=True),
        ]
        assert len(llm.requests) == 1

    @pytest.mark.asyncio
    async def test_repeated_cancel_does_not_interrupt_running_tool(self):
        llm = ScriptedLLM([[call_chunk(0, id="e1", name="edit", args="{}")], [text("unreachable")]])
        executor = GatedExecutor()
        history = [UserMessage("edit a")]

        stream, handle = submit(ToolLoop(llm, executor), history)
        events = []
        async for event in stream:
            events.append(event)
            if isinstance(event, ToolCallStarted):
                handle.cancel()
                await asyncio.sleep(0.01)
                handle.cancel()
                await asyncio.sleep(0.01)
                executor.gate.set()

        assert executor.executed == ["e1"]
        assert [e.call_id for e in events if isinstance(e, ToolCallFinished)] == ["e1"]
        assert isinstance(events[-1].error, CancellationError)
        assert history[2:] == [ToolMessage("e1", "edited", name="edit")]
