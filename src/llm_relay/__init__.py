"""
LLM Relay - Tool-calling conversations over interchangeable LLM backends.
"""

from .client import (
    BaseAsyncLLM,
    OpenAILLM,
    AnthropicLLM,
    GeminiLLM,
    OllamaLLM,
    create_llm,
)
from .config import Provider, get_api_key
from .types import (
    AssistantMessage,
    ChatRequest,
    Message,
    ResponseChunk,
    SystemMessage,
    ToolCall,
    ToolCallDelta,
    ToolInfo,
    ToolMessage,
    ToolResult,
    Usage,
    UserMessage,
)
from .assembler import StreamAssembler, assemble
from .builtins import LocalTools, conversation_tools
from .registry import ServerState, ToolRegistry, load_mcp_servers
from .loop import LoopState, ToolLoop
from .events import CancelHandle, submit
from ._exceptions import (
    LLMRelayError,
    ProviderError,
    TransportError,
    AuthError,
    MalformedResponseError,
    ToolCallParseError,
    ToolExecutionError,
    ToolTimeoutError,
    RegistryConfigError,
    TurnError,
    CancellationError,
    TurnLimitError,
)

__version__ = "0.1.0"

__all__ = [
    "BaseAsyncLLM",
    "OpenAILLM",
    "AnthropicLLM",
    "GeminiLLM",
    "OllamaLLM",
    "create_llm",
    "Provider",
    "get_api_key",
    "AssistantMessage",
    "ChatRequest",
    "Message",
    "ResponseChunk",
    "SystemMessage",
    "ToolCall",
    "ToolCallDelta",
    "ToolInfo",
    "ToolMessage",
    "ToolResult",
    "Usage",
    "UserMessage",
    "StreamAssembler",
    "assemble",
    "LocalTools",
    "conversation_tools",
    "ServerState",
    "ToolRegistry",
    "load_mcp_servers",
    "LoopState",
    "ToolLoop",
    "CancelHandle",
    "submit",
    "LLMRelayError",
    "ProviderError",
    "TransportError",
    "AuthError",
    "MalformedResponseError",
    "ToolCallParseError",
    "ToolExecutionError",
    "ToolTimeoutError",
    "RegistryConfigError",
    "TurnError",
    "CancellationError",
    "TurnLimitError",
]
