"""External tool providers speaking MCP over stdio."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Optional

import anyio
from mcp import ClientSession, StdioServerParameters, types
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError

from llm_relay._exceptions import (
    ProviderClosedError,
    ProviderTransportError,
    ToolExecutionError,
)
from llm_relay.config import McpServerConfig
from llm_relay.tools import CatalogCallback, decode_tool_output
from llm_relay.types import ToolInfo

__all__ = ["McpToolProvider"]

logger = logging.getLogger(__name__)

_CLOSED_ERRORS = (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream)


class McpToolProvider:
    """
    One running MCP server process and its client session.

    The stdio transport and the session are entered and exited inside a single
    background task, because their anyio task groups must be closed by the task
    that opened them. ``aclose`` may therefore be awaited from anywhere.
    """

    def __init__(self, config: McpServerConfig) -> None:
        self.config = config
        self.name = config.name
        self._session: Optional[ClientSession] = None
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._callbacks: list[CatalogCallback] = []
        self._pending: set[asyncio.Task[None]] = set()

    @classmethod
    async def start(cls, config: McpServerConfig) -> "McpToolProvider":
        """Spawn the server, run the MCP handshake and return once it is usable."""
        self = cls(config)
        params = StdioServerParameters(
            command=config.command,
            args=list(config.args),
            env={**os.environ, **config.env},
        )
        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._run(params, ready), name=f"mcp:{self.name}")
        await ready
        logger.info("MCP server %r started (%s)", self.name, config.command)
        return self

    async def _run(self, params: StdioServerParameters, ready: asyncio.Future[None]) -> None:
        try:
            async with stdio_client(params) as (read, write):
                async with ClientSession(read, write, message_handler=self._on_message) as session:
                    await session.initialize()
                    self._session = session
                    ready.set_result(None)
                    await self._stop.wait()
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                logger.warning("MCP server %r terminated: %s", self.name, exc)
        finally:
            self._session = None
            if not ready.done():
                ready.set_exception(ProviderClosedError(f"MCP server {self.name!r} exited"))

    async def _on_message(self, message: Any) -> None:
        if isinstance(message, Exception):
            logger.warning("MCP server %r sent an error: %s", self.name, message)
            return
        if isinstance(message, types.ServerNotification) and isinstance(
            message.root, types.ToolListChangedNotification
        ):
            logger.debug("MCP server %r: tool list changed", self.name)
            # Requests cannot be awaited from inside the session's receive loop.
            for callback in list(self._callbacks):
                task = asyncio.create_task(callback())
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ProviderClosedError(f"MCP server {self.name!r} is not running")
        return self._session

    async def list_tools(self) -> list[ToolInfo]:
        session = self._require_session()
        infos: list[ToolInfo] = []
        cursor: Optional[str] = None
        try:
            while True:
                result = await session.list_tools(cursor=cursor)
                for tool in result.tools:
                    infos.append(
                        ToolInfo(
                            name=tool.name,
                            description=tool.description or "",
                            parameters=dict(tool.inputSchema),
                        )
                    )
                cursor = result.nextCursor
                if not cursor:
                    break
        except _CLOSED_ERRORS as exc:
            raise ProviderClosedError(f"MCP server {self.name!r} closed", exc) from exc
        except McpError as exc:
            raise ProviderTransportError(f"MCP server {self.name!r}: {exc}", exc) from exc
        return infos

    async def call(self, name: str, arguments: dict[str, Any]) -> Any:
        session = self._require_session()
        try:
            result = await session.call_tool(name, arguments if isinstance(arguments, dict) else None)
        except _CLOSED_ERRORS as exc:
            raise ProviderClosedError(f"MCP server {self.name!r} closed", exc) from exc
        except McpError as exc:
            raise ToolExecutionError(str(exc), exc) from exc
        except (OSError, TimeoutError) as exc:
            raise ProviderTransportError(f"MCP server {self.name!r}: {exc}", exc) from exc

        text = "\n".join(c.text for c in result.content if isinstance(c, types.TextContent))
        if result.isError:
            raise ToolExecutionError(text or f"{name} failed")
        if text:
            return decode_tool_output(text)
        if result.structuredContent is not None:
            return result.structuredContent
        return ""

    def on_catalog_changed(self, callback: CatalogCallback) -> None:
        self._callbacks.append(callback)

    async def aclose(self) -> None:
        self._stop.set()
        for task in list(self._pending):
            task.cancel()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("MCP server %r stopped", self.name)
