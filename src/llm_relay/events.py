"""
Events emitted while a turn runs, and the channel that carries them to a consumer.

``submit`` runs a turn as its own asyncio task and hands back an async
iterator of events plus a handle that cancels the task. The last event is
always ``TurnComplete`` or ``TurnFailed``, both carrying the history as it
stands when the turn ended.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional, Union

from llm_relay._exceptions import CancellationError, LLMRelayError
from llm_relay.types import AssistantMessage, Message, ToolCall, Usage

if TYPE_CHECKING:
    from llm_relay.loop import ToolLoop

__all__ = [
    "RequestStarted",
    "ContentDelta",
    "ThinkingDelta",
    "ToolCallStarted",
    "ToolCallFinished",
    "TurnComplete",
    "TurnFailed",
    "Event",
    "CancelHandle",
    "EventStream",
    "submit",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RequestStarted:
    round: int


@dataclass(frozen=True, slots=True)
class ContentDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ThinkingDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ToolCallStarted:
    call: ToolCall


@dataclass(frozen=True, slots=True)
class ToolCallFinished:
    call_id: str
    name: str
    content: Any
    is_error: bool = False


@dataclass(frozen=True, slots=True)
class TurnComplete:
    history: list[Message]
    message: AssistantMessage
    usage: Optional[Usage] = None


@dataclass(frozen=True, slots=True)
class TurnFailed:
    error: BaseException
    history: list[Message]


Event = Union[
    RequestStarted,
    ContentDelta,
    ThinkingDelta,
    ToolCallStarted,
    ToolCallFinished,
    TurnComplete,
    TurnFailed,
]

_TERMINAL = (TurnComplete, TurnFailed)


class CancelHandle:
    """Cancels a submitted turn. Calling ``cancel`` more than once is harmless."""

    def __init__(self, task: asyncio.Task[Any]) -> None:
        self._task = task

    def cancel(self) -> bool:
        return self._task.cancel()

    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> None:
        """Block until the turn task has finished, however it ended."""
        await asyncio.wait({self._task})


class EventStream:
    """Async iterator over one turn's events; stops after the terminal event."""

    def __init__(self, queue: asyncio.Queue[Event]) -> None:
        self._queue = queue
        self._finished = False

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> Event:
        if self._finished:
            raise StopAsyncIteration
        event = await self._queue.get()
        if isinstance(event, _TERMINAL):
            self._finished = True
        return event


def _put_cancelled(queue: asyncio.Queue[Event], history: list[Message]) -> None:
    error = CancellationError("Turn cancelled", history=history)
    queue.put_nowait(TurnFailed(error, history))


async def _drive(loop: "ToolLoop", history: list[Message], queue: asyncio.Queue[Event]) -> None:
    async def emit(event: Event) -> None:
        queue.put_nowait(event)

    try:
        complete = await loop.run(history, emit)
    except asyncio.CancelledError:
        # Top of our own task: report instead of propagating.
        _put_cancelled(queue, history)
    except LLMRelayError as exc:
        queue.put_nowait(TurnFailed(exc, history))
    except Exception as exc:
        logger.exception("Turn failed unexpectedly")
        queue.put_nowait(TurnFailed(exc, history))
    else:
        queue.put_nowait(complete)


def submit(loop: "ToolLoop", history: list[Message]) -> tuple[EventStream, CancelHandle]:
    """
    Start one turn over *history* in the background.

    *history* is appended to in place; the terminal event carries the same list.
    Must be called from inside a running event loop.
    """
    queue: asyncio.Queue[Event] = asyncio.Queue()
    task = asyncio.create_task(_drive(loop, history, queue), name="llm-relay-turn")

    def on_done(done: asyncio.Task[None]) -> None:
        # Cancelled before its first step, so _drive never ran.
        if done.cancelled():
            _put_cancelled(queue, history)

    task.add_done_callback(on_done)
    return EventStream(queue), CancelHandle(task)
