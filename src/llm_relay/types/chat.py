"""Chat message, request and stream-chunk types shared by every component."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, ClassVar, Optional, Union

from llm_relay.types.tool import ToolCall, ToolInfo

__all__ = [
    "UserMessage",
    "SystemMessage",
    "AssistantMessage",
    "ToolMessage",
    "Message",
    "ChatRequest",
    "ToolCallDelta",
    "Usage",
    "ResponseChunk",
]


@dataclass(frozen=True, slots=True)
class UserMessage:
    role: ClassVar[str] = "user"
    content: str


@dataclass(frozen=True, slots=True)
class SystemMessage:
    role: ClassVar[str] = "system"
    content: str


@dataclass(frozen=True, slots=True)
class AssistantMessage:
    """Finalized assistant output: optional text and thinking, plus tool calls in order."""

    role: ClassVar[str] = "assistant"
    content: Optional[str] = None
    thinking: Optional[str] = None
    tool_calls: tuple[ToolCall, ...] = ()

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def is_empty(self) -> bool:
        return not self.content and not self.thinking and not self.tool_calls


@dataclass(frozen=True, slots=True)
class ToolMessage:
    """Result of a tool call. ``content`` is a structured value; errors are ``{"error": ...}``."""

    role: ClassVar[str] = "tool"
    tool_call_id: str
    content: Any
    name: str = ""
    is_error: bool = False

    def discarded(self) -> "ToolMessage":
        return replace(self, content="<response discarded>")


Message = Union[UserMessage, SystemMessage, AssistantMessage, ToolMessage]


@dataclass(slots=True)
class ChatRequest:
    """Everything an adapter needs for one streamed completion."""

    model: str
    messages: list[Message]
    system: Optional[str] = None
    tools: list[ToolInfo] = field(default_factory=list)
    params: dict[str, Any] = field(default_factory=dict)
    stream: bool = True


@dataclass(frozen=True, slots=True)
class ToolCallDelta:
    """One fragment of a tool call, keyed by its stream-local index."""

    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments_fragment: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            self.prompt_tokens + other.prompt_tokens,
            self.completion_tokens + other.completion_tokens,
        )


@dataclass(frozen=True, slots=True)
class ResponseChunk:
    """A normalized streaming unit. ``usage`` only appears on the final chunk."""

    content: Optional[str] = None
    thinking: Optional[str] = None
    tool_calls: tuple[ToolCallDelta, ...] = ()
    usage: Optional[Usage] = None

    @property
    def is_empty(self) -> bool:
        return (
            not self.content
            and not self.thinking
            and not self.tool_calls
            and self.usage is None
        )
