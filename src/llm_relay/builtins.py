"""Process-local tools: plain Python callables exposed through the ToolProvider contract."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Optional

from llm_relay._exceptions import ToolExecutionError
from llm_relay.tools import CatalogCallback
from llm_relay.types import Message, ToolInfo, ToolMessage

__all__ = ["LocalTools", "conversation_tools"]

logger = logging.getLogger(__name__)

_EMPTY_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


class LocalTools:
    """
    A small in-process tool set.

    Usable as the un-prefixed fallback of a conversation, or registered in a
    ``ToolRegistry`` under a prefix like any external server.
    """

    def __init__(self) -> None:
        self._tools: dict[str, tuple[ToolInfo, Callable[..., Any]]] = {}
        self._callbacks: list[CatalogCallback] = []

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def infos(self) -> list[ToolInfo]:
        return [info for info, _ in self._tools.values()]

    def register(self, info: ToolInfo, func: Callable[..., Any]) -> None:
        """Add or replace a tool. A replaced name keeps the newest definition."""
        if info.name in self._tools:
            logger.warning("Local tool %r redefined", info.name)
        self._tools[info.name] = (info, func)

    def tool(
        self,
        name: Optional[str] = None,
        *,
        description: str = "",
        parameters: Optional[dict[str, Any]] = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of :meth:`register`."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            info = ToolInfo(
                name=name or func.__name__,
                description=description or (inspect.getdoc(func) or ""),
                parameters=parameters or dict(_EMPTY_SCHEMA),
            )
            self.register(info, func)
            return func

        return decorator

    async def notify_changed(self) -> None:
        for callback in list(self._callbacks):
            await callback()

    # --- ToolProvider --------------------------------------------------------
    async def list_tools(self) -> list[ToolInfo]:
        return self.infos()

    async def call(self, name: str, arguments: dict[str, Any]) -> Any:
        try:
            _, func = self._tools[name]
        except KeyError:
            raise ToolExecutionError(f"{name} is not a valid tool name") from None
        if not isinstance(arguments, dict):
            raise ToolExecutionError(f"{name} expects an object of arguments")

        try:
            result = func(**arguments)
            if inspect.isawaitable(result):
                result = await result
        except ToolExecutionError:
            raise
        except TypeError as exc:
            raise ToolExecutionError(f"Invalid arguments for {name}: {exc}", exc) from exc
        except Exception as exc:
            raise ToolExecutionError(f"{exc.__class__.__name__}: {exc}", exc) from exc
        return result

    def on_catalog_changed(self, callback: CatalogCallback) -> None:
        self._callbacks.append(callback)

    async def aclose(self) -> None:
        self._callbacks.clear()


def conversation_tools(history: list[Message]) -> LocalTools:
    """Built-in tools that inspect or trim the conversation they are attached to."""
    tools = LocalTools()

    @tools.tool(description="Returns the number of chat messages")
    def get_message_count() -> int:
        return len(history)

    @tools.tool(
        description="Removes the content from a tool response in history by id",
        parameters={
            "type": "object",
            "properties": {
                "id": {
                    "type": "string",
                    "description": "The id of the ToolCall/Tool response to discard",
                }
            },
            "required": ["id"],
        },
    )
    def discard_function_response(id: str) -> str:
        for idx in range(len(history) - 1, -1, -1):
            msg = history[idx]
            if isinstance(msg, ToolMessage) and msg.tool_call_id == id:
                history[idx] = msg.discarded()
                return "ok"
        return f"Tool response with id '{id}' not found"

    return tools
