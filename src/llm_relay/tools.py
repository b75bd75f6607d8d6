"""Tool capability contracts shared by the registry, built-ins and the loop."""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from llm_relay.types import ToolCall, ToolInfo, ToolResult

__all__ = ["CatalogCallback", "ToolProvider", "ToolExecutor", "decode_tool_output"]

CatalogCallback = Callable[[], Awaitable[None]]


@runtime_checkable
class ToolProvider(Protocol):
    """
    A source of tools with its own lifecycle (an MCP server, a set of local callables).

    ``call`` raises ``ToolExecutionError`` when the tool fails,
    ``ProviderTransportError`` on a transient transport problem and
    ``ProviderClosedError`` once the provider is gone for good.
    """

    async def list_tools(self) -> list[ToolInfo]: ...

    async def call(self, name: str, arguments: dict[str, Any]) -> Any: ...

    def on_catalog_changed(self, callback: CatalogCallback) -> None: ...

    async def aclose(self) -> None: ...


class ToolExecutor(Protocol):
    """What the orchestration loop needs: a catalog and a way to run calls.

    ``execute`` never raises for tool failures; they come back as
    ``ToolResult.error`` so the model can see them.
    """

    def tool_infos(self) -> list[ToolInfo]: ...

    async def execute(self, call: ToolCall) -> ToolResult: ...


def decode_tool_output(text: str) -> Any:
    """Tool output that is valid JSON becomes a structured value; anything else stays text."""
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text
