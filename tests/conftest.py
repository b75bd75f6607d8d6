"""Scripted stand-ins for LLM backends and tool providers."""

import asyncio
from typing import Any, AsyncIterator, Callable, Optional

import pytest

from llm_relay._exceptions import ToolExecutionError
from llm_relay.client import BaseAsyncLLM
from llm_relay.types import (
    ChatRequest,
    ResponseChunk,
    ToolCallDelta,
    ToolInfo,
    Usage,
)


class _PassthroughNormalizer:
    def feed(self, raw: Any) -> Optional[ResponseChunk]:
        if isinstance(raw, BaseException):
            raise raw
        return raw

    def finish(self) -> Optional[ResponseChunk]:
        return None


class _PassthroughAdapter:
    def to_provider(self, request: ChatRequest) -> dict[str, Any]:
        return {"model": request.model, "request": request}

    def normalizer(self) -> _PassthroughNormalizer:
        return _PassthroughNormalizer()


class ScriptedLLM(BaseAsyncLLM):
    """
    Replays one list of chunks per round.

    A list item that is an exception is raised at that point of the stream;
    an item that is an ``asyncio.Event`` blocks the stream until it is set.
    """

    def __init__(self, rounds: list[list[Any]], model: str = "scripted") -> None:
        super().__init__(model=model)
        self.rounds = list(rounds)
        self.requests: list[ChatRequest] = []
        self._adapter = _PassthroughAdapter()

    @property
    def adapter(self) -> _PassthroughAdapter:
        return self._adapter

    async def _stream_impl(self, args: dict[str, Any]) -> AsyncIterator[Any]:
        self.requests.append(args["request"])
        script = self.rounds.pop(0)
        for item in script:
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            await asyncio.sleep(0)
            yield item


class FakeToolProvider:
    """In-memory ``ToolProvider`` whose behaviour tests can steer per tool."""

    def __init__(self, tools: dict[str, Callable[..., Any]]) -> None:
        self.handlers = dict(tools)
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.callbacks: list[Callable[[], Any]] = []
        self.closed = False
        self.list_error: Optional[BaseException] = None

    async def list_tools(self) -> list[ToolInfo]:
        if self.list_error is not None:
            raise self.list_error
        return [ToolInfo(name) for name in self.handlers]

    async def call(self, name: str, arguments: dict[str, Any]) -> Any:
        self.calls.append((name, arguments))
        try:
            handler = self.handlers[name]
        except KeyError:
            raise ToolExecutionError(f"unknown tool {name}") from None
        result = handler(**arguments)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def on_catalog_changed(self, callback: Callable[[], Any]) -> None:
        self.callbacks.append(callback)

    async def aclose(self) -> None:
        self.closed = True


def text(content: str) -> ResponseChunk:
    return ResponseChunk(content=content)


def call_chunk(
    index: int,
    *,
    id: Optional[str] = None,
    name: Optional[str] = None,
    args: Optional[str] = None,
) -> ResponseChunk:
    return ResponseChunk(
        tool_calls=(ToolCallDelta(index=index, id=id, name=name, arguments_fragment=args),)
    )


def usage(prompt: int, completion: int) -> ResponseChunk:
    return ResponseChunk(usage=Usage(prompt, completion))


@pytest.fixture
def fake_provider():
    return FakeToolProvider(
        {
            "read_file": lambda path: f"contents of {path}",
            "echo": lambda **kwargs: kwargs,
        }
    )
