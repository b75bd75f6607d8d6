"""
The orchestration loop: stream a reply, run the tools it asks for, resubmit.

One ``ToolLoop`` drives one conversation at a time. Several loops may share a
``ToolRegistry`` (through ``registry.dispatcher(...)``) and run concurrently;
nothing else is shared between them.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from enum import StrEnum
from typing import Any, Awaitable, Callable, Optional, Sequence

from llm_relay._exceptions import (
    CancellationError,
    ProviderError,
    ToolExecutionError,
    ToolTimeoutError,
    TurnLimitError,
)
from llm_relay.assembler import CallIdFactory, StreamAssembler
from llm_relay.client import BaseAsyncLLM
from llm_relay.events import (
    ContentDelta,
    Event,
    RequestStarted,
    ThinkingDelta,
    ToolCallFinished,
    ToolCallStarted,
    TurnComplete,
)
from llm_relay.params import merge_params, normalize_params
from llm_relay.tools import ToolExecutor
from llm_relay.types import (
    AssistantMessage,
    ChatRequest,
    Message,
    ToolCall,
    ToolInfo,
    ToolMessage,
    ToolResult,
    Usage,
)

__all__ = ["LoopState", "ToolLoop", "EmitFn"]

EmitFn = Callable[[Event], Awaitable[None]]
ToolFilter = Callable[[ToolInfo], bool]

TIMEOUT_ERROR = "timeout"
CANCELLED_ERROR = "cancelled"


class LoopState(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    EXECUTING = "executing"
    FAILED = "failed"


async def _discard(event: Event) -> None:
    return None


class ToolLoop:
    """
    Run turns against one LLM backend with one tool executor.

    History handling:
      - an assistant message that requests tools is appended before any of
        its results, with its text content alongside the calls
      - every call id gets exactly one Tool message, in call order, even when
        the call timed out, failed to parse or was cancelled
      - a provider failure appends the partial text received so far (if any)
        and re-raises the ``ProviderError`` with ``history`` attached

    Tools of one reply run one after another. A running tool is never
    interrupted by cancellation: it finishes, its result is recorded, the calls
    after it are answered with ``{"error": "cancelled"}`` and the cancellation
    propagates.
    """

    def __init__(
        self,
        llm: BaseAsyncLLM,
        tools: Optional[ToolExecutor] = None,
        *,
        model: Optional[str] = None,
        system: Optional[str] = None,
        tool_filter: Optional[ToolFilter] = None,
        tool_timeout: Optional[float] = None,
        turn_timeout: Optional[float] = None,
        max_rounds: Optional[int] = None,
        params: Optional[dict[str, Any]] = None,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
    ) -> None:
        self.llm = llm
        self.tools = tools
        self.model = model or llm.model
        self.system = system
        self.tool_filter = tool_filter
        self.tool_timeout = tool_timeout
        self.turn_timeout = turn_timeout
        self.max_rounds = max_rounds
        self.params = normalize_params(params or {})
        self.logger = logger or logging.getLogger(__name__)
        self.name = name or self.__class__.__name__
        self.state = LoopState.IDLE

    def visible_tools(self) -> list[ToolInfo]:
        """Catalog subset sent with the next request."""
        if self.tools is None:
            return []
        infos = self.tools.tool_infos()
        if self.tool_filter is not None:
            infos = [info for info in infos if self.tool_filter(info)]
        return infos

    async def run(
        self,
        history: list[Message],
        emit: Optional[EmitFn] = None,
        *,
        params: Optional[dict[str, Any]] = None,
    ) -> TurnComplete:
        """
        Run one turn, appending to *history* in place.

        *params* override the loop defaults for this turn only.

        Raises:
            ProviderError: the backend failed; ``exc.history`` is set.
            TurnLimitError: the model asked for tools more than ``max_rounds`` times.
            CancellationError: ``turn_timeout`` elapsed.
            asyncio.CancelledError: the surrounding task was cancelled.
        """
        emit = emit or _discard
        try:
            async with asyncio.timeout(self.turn_timeout):
                return await self._run_turn(history, emit, merge_params(self.params, params))
        except TimeoutError as exc:
            self._set_state(LoopState.FAILED)
            raise CancellationError(
                f"Turn exceeded its {self.turn_timeout}s deadline", exc, history=history
            ) from exc
        except asyncio.CancelledError:
            self._set_state(LoopState.FAILED)
            raise

    async def _run_turn(
        self, history: list[Message], emit: EmitFn, params: dict[str, Any]
    ) -> TurnComplete:
        ids = CallIdFactory()
        usage: Optional[Usage] = None
        rounds = 0

        while True:
            rounds += 1
            message, round_usage = await self._stream_round(history, emit, ids, rounds, params)
            if round_usage is not None:
                usage = round_usage if usage is None else usage + round_usage

            history.append(message)
            if not message.has_tool_calls:
                self._set_state(LoopState.IDLE)
                return TurnComplete(history=history, message=message, usage=usage)

            self._set_state(LoopState.TOOL_PENDING)
            await self._execute_calls(history, message.tool_calls, emit)

            if self.max_rounds is not None and rounds >= self.max_rounds:
                self._set_state(LoopState.FAILED)
                raise TurnLimitError(
                    f"Model requested tools in {rounds} consecutive rounds", history=history
                )

    async def _stream_round(
        self,
        history: list[Message],
        emit: EmitFn,
        ids: CallIdFactory,
        round_no: int,
        params: dict[str, Any],
    ) -> tuple[AssistantMessage, Optional[Usage]]:
        request = ChatRequest(
            model=self.model,
            messages=list(history),
            system=self.system,
            tools=self.visible_tools(),
            params=params,
        )
        self._set_state(LoopState.STREAMING)
        self._log(f"Round {round_no}: {len(request.messages)} messages", logging.DEBUG)
        await emit(RequestStarted(round=round_no))

        assembler = StreamAssembler(ids)
        try:
            async with aclosing(self.llm.stream(request)) as chunks:
                async for chunk in chunks:
                    assembler.feed(chunk)
                    if chunk.thinking:
                        await emit(ThinkingDelta(chunk.thinking))
                    if chunk.content:
                        await emit(ContentDelta(chunk.content))
        except ProviderError as exc:
            partial = assembler.partial()
            if partial is not None:
                history.append(partial)
            self._set_state(LoopState.FAILED)
            self._log(f"Provider failed mid-turn: {exc}", logging.WARNING)
            exc.history = history
            raise
        return assembler.finalize(), assembler.usage

    async def _execute_calls(
        self,
        history: list[Message],
        calls: Sequence[ToolCall],
        emit: EmitFn,
    ) -> None:
        answered = 0
        try:
            for call in calls:
                await emit(ToolCallStarted(call))
                self._set_state(LoopState.EXECUTING)
                result, interrupted = await self._run_to_completion(call)
                content = result.as_content()
                history.append(
                    ToolMessage(
                        tool_call_id=result.id,
                        content=content,
                        name=result.name,
                        is_error=result.is_error,
                    )
                )
                answered += 1
                await emit(ToolCallFinished(result.id, result.name, content, result.is_error))
                if interrupted is not None:
                    raise interrupted
        except asyncio.CancelledError:
            for call in calls[answered:]:
                history.append(
                    ToolMessage(
                        tool_call_id=call.id,
                        content={"error": CANCELLED_ERROR},
                        name=call.name,
                        is_error=True,
                    )
                )
            raise

    async def _run_to_completion(
        self, call: ToolCall
    ) -> tuple[ToolResult, Optional[asyncio.CancelledError]]:
        """Run *call* to the end even if cancelled, however many times; hand back the cancel."""
        running = asyncio.ensure_future(self._invoke(call))
        interrupted: Optional[asyncio.CancelledError] = None
        while not running.done():
            try:
                await asyncio.shield(running)
            except asyncio.CancelledError as exc:
                if interrupted is None:
                    self._log(f"Cancel requested while {call.name} runs; letting it finish")
                interrupted = exc
        return running.result(), interrupted

    async def _invoke(self, call: ToolCall) -> ToolResult:
        if not call.is_valid:
            return ToolResult(call.id, call.name, error=f"Tool Failed: {call.parse_error}")
        if self.tools is None:
            return ToolResult(
                call.id, call.name, error=f"Tool Failed: {call.name} is not a valid tool name"
            )

        try:
            return await self._execute_with_deadline(self.tools, call)
        except ToolTimeoutError as exc:
            self._log(f"{call.name} ({call.id}) timed out: {exc}", logging.WARNING)
            return ToolResult(call.id, call.name, error=TIMEOUT_ERROR)
        except ToolExecutionError as exc:
            return ToolResult(call.id, call.name, error=f"Tool Failed: {exc}")
        except Exception as exc:
            self.logger.exception(f"[{self.name}] Executor raised for {call.name}")
            return ToolResult(
                call.id, call.name, error=f"Tool Failed: {exc.__class__.__name__}: {exc}"
            )

    async def _execute_with_deadline(self, tools: ToolExecutor, call: ToolCall) -> ToolResult:
        try:
            return await asyncio.wait_for(tools.execute(call), self.tool_timeout)
        except TimeoutError as exc:
            raise ToolTimeoutError(f"no answer within {self.tool_timeout}s", exc) from exc

    def _set_state(self, state: LoopState) -> None:
        if state is not self.state:
            self._log(f"{self.state} -> {state}", logging.DEBUG)
            self.state = state

    def _log(self, message: str, level: int = logging.INFO) -> None:
        self.logger.log(level, f"[{self.name}] {message}")
