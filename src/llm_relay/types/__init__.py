from .chat import (
    AssistantMessage,
    ChatRequest,
    Message,
    ResponseChunk,
    SystemMessage,
    ToolCallDelta,
    ToolMessage,
    Usage,
    UserMessage,
)
from .tool import ToolCall, ToolInfo, ToolResult

__all__ = [
    "AssistantMessage",
    "ChatRequest",
    "Message",
    "ResponseChunk",
    "SystemMessage",
    "ToolCallDelta",
    "ToolMessage",
    "Usage",
    "UserMessage",
    "ToolCall",
    "ToolInfo",
    "ToolResult",
]
