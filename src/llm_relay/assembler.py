"""Fold a stream of ResponseChunks into one finalized assistant message."""

from __future__ import annotations

import itertools
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Iterator, Optional

from llm_relay._exceptions import ToolCallParseError
from llm_relay.types import AssistantMessage, ResponseChunk, ToolCall, Usage

__all__ = ["ToolCallDraft", "CallIdFactory", "StreamAssembler", "assemble", "parse_arguments"]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolCallDraft:
    """In-flight accumulation for one stream-local tool-call index."""

    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: list[str] = field(default_factory=list)

    @property
    def argument_text(self) -> str:
        return "".join(self.arguments)


class CallIdFactory:
    """
    Assigns ids to tool calls the provider left anonymous.

    One factory lives for one turn: ids are ``call_<token>_<n>`` with a random
    per-turn token and a monotonic counter, so they never collide with ids from
    earlier turns in the same history.
    """

    def __init__(self, token: Optional[str] = None) -> None:
        self.token = token or uuid.uuid4().hex[:8]
        self._counter: Iterator[int] = itertools.count()

    def next_id(self, taken: set[str]) -> str:
        while True:
            candidate = f"call_{self.token}_{next(self._counter)}"
            if candidate not in taken:
                return candidate


class StreamAssembler:
    """
    Reconstruct one assistant draft from arbitrarily fragmented chunks.

    - content and thinking deltas concatenate in arrival order
    - per tool-call index, id and name are fixed by their first non-empty value
    - argument fragments are appended in arrival order and parsed only in
      :meth:`finalize`; they may be split at any byte offset
    - a parse failure is local to its call (``ToolCall.parse_error``)

    Tool calls are returned in order of first appearance of their index.
    """

    def __init__(self, ids: Optional[CallIdFactory] = None) -> None:
        self._ids = ids or CallIdFactory()
        self._content: list[str] = []
        self._thinking: list[str] = []
        self._drafts: dict[int, ToolCallDraft] = {}
        self.usage: Optional[Usage] = None
        self._finalized = False

    @property
    def content(self) -> str:
        return "".join(self._content)

    @property
    def thinking(self) -> str:
        return "".join(self._thinking)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self._drafts)

    def feed(self, chunk: ResponseChunk) -> None:
        if self._finalized:
            raise RuntimeError("StreamAssembler already finalized")

        if chunk.content:
            self._content.append(chunk.content)
        if chunk.thinking:
            self._thinking.append(chunk.thinking)

        for delta in chunk.tool_calls:
            draft = self._drafts.get(delta.index)
            if draft is None:
                draft = self._drafts[delta.index] = ToolCallDraft(index=delta.index)
            if delta.id and not draft.id:
                draft.id = delta.id
            if delta.name and not draft.name:
                draft.name = delta.name
            if delta.arguments_fragment:
                draft.arguments.append(delta.arguments_fragment)

        if chunk.usage is not None:
            self.usage = chunk.usage

    def partial(self) -> Optional[AssistantMessage]:
        """Best-effort text-only message for an interrupted stream, or ``None``."""
        message = AssistantMessage(content=self.content or None, thinking=self.thinking or None)
        return None if message.is_empty else message

    def finalize(self) -> AssistantMessage:
        self._finalized = True
        taken = {d.id for d in self._drafts.values() if d.id}
        calls: list[ToolCall] = []
        for draft in self._drafts.values():
            call_id = draft.id
            if not call_id:
                call_id = self._ids.next_id(taken)
                taken.add(call_id)
            calls.append(self._finish_call(call_id, draft))

        return AssistantMessage(
            content=self.content or None,
            thinking=self.thinking or None,
            tool_calls=tuple(calls),
        )

    def _finish_call(self, call_id: str, draft: ToolCallDraft) -> ToolCall:
        text = draft.argument_text
        try:
            if not draft.name:
                raise ToolCallParseError("missing tool name")
            arguments = parse_arguments(text)
        except ToolCallParseError as exc:
            logger.warning("Unusable tool call %s (%s): %s", call_id, draft.name, exc)
            return ToolCall(
                id=call_id,
                name=draft.name or "",
                arguments={},
                parse_error=str(exc),
                raw_arguments=text,
            )
        return ToolCall(id=call_id, name=draft.name, arguments=arguments)


def parse_arguments(text: str) -> Any:
    """Decode accumulated argument text; blank text means no arguments."""
    if not text.strip():
        return {}
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ToolCallParseError(f"Could not parse arguments as JSON: {exc}", exc) from exc


async def assemble(
    chunks: AsyncIterable[ResponseChunk],
    ids: Optional[CallIdFactory] = None,
) -> tuple[AssistantMessage, Optional[Usage]]:
    """
    Convenience fold of a whole chunk stream.

    Returns:
        The finalized assistant message and the usage reported on the final chunk.
    """
    assembler = StreamAssembler(ids)
    async for chunk in chunks:
        assembler.feed(chunk)
    return assembler.finalize(), assembler.usage
