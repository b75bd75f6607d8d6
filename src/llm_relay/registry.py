"""
Tool registry: owns external tool providers and publishes a merged catalog.

The merged catalog is a :class:`RegistrySnapshot`, an immutable value that is
rebuilt and swapped in wholesale on every change. Readers just take the
current reference; writers serialize on one lock and never mutate a snapshot
after it has been published.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Awaitable, Callable, Iterator, Mapping, Optional

from llm_relay._exceptions import (
    ProviderClosedError,
    ProviderTransportError,
    RegistryConfigError,
    ToolExecutionError,
)
from llm_relay.builtins import LocalTools
from llm_relay.config import DEFAULT_TOOL_DELIMITER, McpServerConfig, load_mcp_config
from llm_relay.mcp import McpToolProvider
from llm_relay.tools import ToolProvider
from llm_relay.types import ToolCall, ToolInfo, ToolResult

__all__ = [
    "ServerState",
    "ServerHandle",
    "CatalogEntry",
    "RegistrySnapshot",
    "ToolRegistry",
    "ToolDispatcher",
    "load_mcp_servers",
]

ProviderStarter = Callable[[McpServerConfig], Awaitable[ToolProvider]]


class ServerState(StrEnum):
    STARTING = "starting"
    READY = "ready"
    DEGRADED = "degraded"
    STOPPED = "stopped"


@dataclass(eq=False)
class ServerHandle:
    """Registration-table row for one running tool provider."""

    prefix: str
    provider: Optional[ToolProvider] = None
    state: ServerState = ServerState.STARTING
    tools: tuple[ToolInfo, ...] = ()
    inflight: int = 0
    _idle: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def __post_init__(self) -> None:
        self._idle.set()

    @property
    def dispatchable(self) -> bool:
        return self.state in (ServerState.READY, ServerState.DEGRADED)

    def _enter_call(self) -> None:
        self.inflight += 1
        self._idle.clear()

    def _exit_call(self) -> None:
        self.inflight -= 1
        if self.inflight == 0:
            self._idle.set()

    async def wait_idle(self) -> None:
        await self._idle.wait()


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    info: ToolInfo            # carries the merged name
    tool_name: str            # name on the owning server
    handle: ServerHandle


@dataclass(frozen=True)
class RegistrySnapshot:
    """Point-in-time merged catalog. Never modified once published."""

    version: int = 0
    entries: Mapping[str, CatalogEntry] = field(default_factory=lambda: MappingProxyType({}))

    def __contains__(self, name: object) -> bool:
        return name in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.entries)

    def resolve(self, name: str) -> Optional[CatalogEntry]:
        return self.entries.get(name)

    def tool_names(self) -> list[str]:
        return list(self.entries)

    def tool_infos(self) -> list[ToolInfo]:
        return [entry.info for entry in self.entries.values()]


class ToolRegistry:
    """
    Merged catalog over many independently-lifecycled tool providers.

    Per server: ``starting → ready ⇄ degraded → stopped``. A server whose
    transport fails is *degraded*: its catalog is kept and calls are still
    dispatched; the next successful call makes it *ready* again. A provider
    that is gone for good is *stopped* and its tools leave the catalog.

    Merged names are ``<prefix><delimiter><tool>``; a prefix containing the
    delimiter is rejected so dispatch can always split on the first delimiter.

    Removing a server while one of its calls is running lets that call finish
    before the provider is closed, unless ``abort_inflight=True`` is passed.
    """

    def __init__(
        self,
        *,
        delimiter: str = DEFAULT_TOOL_DELIMITER,
        logger: Optional[logging.Logger] = None,
        name: Optional[str] = None,
    ) -> None:
        if not delimiter:
            raise RegistryConfigError("Tool name delimiter must not be empty")
        self.delimiter = delimiter
        self.logger = logger or logging.getLogger(__name__)
        self.name = name or self.__class__.__name__
        self._handles: dict[str, ServerHandle] = {}
        self._write_lock = asyncio.Lock()
        self._snapshot = RegistrySnapshot()

    # --- readers -------------------------------------------------------------
    @property
    def snapshot(self) -> RegistrySnapshot:
        """Current published catalog. Safe to hold and read without locking."""
        return self._snapshot

    def tool_names(self) -> list[str]:
        return self._snapshot.tool_names()

    def tool_infos(self) -> list[ToolInfo]:
        return self._snapshot.tool_infos()

    def server(self, prefix: str) -> Optional[ServerHandle]:
        return self._handles.get(prefix)

    def servers(self) -> list[ServerHandle]:
        return list(self._handles.values())

    def merged_name(self, prefix: str, tool_name: str) -> str:
        return f"{prefix}{self.delimiter}{tool_name}"

    # --- writers -------------------------------------------------------------
    async def add_server(self, prefix: str, provider: ToolProvider) -> ServerHandle:
        """Register an already-running provider under *prefix* and publish its tools."""
        handle = await self._reserve(prefix)
        await self._activate(handle, provider)
        return handle

    async def start_server(
        self,
        config: McpServerConfig,
        *,
        starter: Optional[ProviderStarter] = None,
    ) -> ServerHandle:
        """Launch a configured server (MCP over stdio by default) and register it."""
        handle = await self._reserve(config.name)
        start = starter or McpToolProvider.start
        try:
            provider = await start(config)
        except BaseException as exc:
            await self._release(handle)
            if isinstance(exc, Exception):
                raise RegistryConfigError(
                    f"Could not start tool server {config.name!r}: {exc}", exc
                ) from exc
            raise
        await self._activate(handle, provider)
        return handle

    async def remove_server(self, prefix: str, *, abort_inflight: bool = False) -> None:
        """Stop *prefix*: drop its tools from the catalog, then close the provider."""
        async with self._write_lock:
            handle = self._handles.pop(prefix, None)
            if handle is None:
                return
            handle.state = ServerState.STOPPED
            self._publish()
        self._log(f"Server {prefix!r} stopped", logging.INFO)

        if not abort_inflight and handle.inflight:
            self._log(f"Waiting for {handle.inflight} call(s) on {prefix!r}", logging.DEBUG)
            await handle.wait_idle()
        if handle.provider is not None:
            try:
                await handle.provider.aclose()
            except Exception as exc:
                self._log(f"Error closing {prefix!r}: {exc}", logging.WARNING)

    async def refresh(self, prefix: str) -> None:
        """Re-fetch one server's catalog; called on catalog-changed notifications."""
        handle = self._handles.get(prefix)
        if handle is None or handle.provider is None or not handle.dispatchable:
            return
        try:
            tools = await handle.provider.list_tools()
        except ProviderClosedError as exc:
            self._log(f"Server {prefix!r} closed during refresh: {exc}", logging.WARNING)
            await self.remove_server(prefix, abort_inflight=True)
            return
        except Exception as exc:
            self._log(f"Refresh of {prefix!r} failed, keeping catalog: {exc}", logging.WARNING)
            handle.state = ServerState.DEGRADED
            return

        async with self._write_lock:
            if self._handles.get(prefix) is not handle:
                return
            handle.tools = tuple(tools)
            handle.state = ServerState.READY
            self._publish()
        self._log(f"Catalog of {prefix!r} refreshed ({len(tools)} tools)", logging.DEBUG)

    async def aclose(self) -> None:
        for prefix in list(self._handles):
            await self.remove_server(prefix)

    async def __aenter__(self) -> "ToolRegistry":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _reserve(self, prefix: str) -> ServerHandle:
        if not prefix:
            raise RegistryConfigError("Tool server prefix must not be empty")
        if self.delimiter in prefix:
            raise RegistryConfigError(
                f"Tool server prefix {prefix!r} contains the delimiter {self.delimiter!r}"
            )
        async with self._write_lock:
            if prefix in self._handles:
                raise RegistryConfigError(f"Tool server prefix {prefix!r} is already registered")
            handle = self._handles[prefix] = ServerHandle(prefix=prefix)
        return handle

    async def _release(self, handle: ServerHandle) -> None:
        async with self._write_lock:
            if self._handles.get(handle.prefix) is handle:
                del self._handles[handle.prefix]
            handle.state = ServerState.STOPPED

    async def _activate(self, handle: ServerHandle, provider: ToolProvider) -> None:
        handle.provider = provider
        try:
            tools = await provider.list_tools()
        except BaseException as exc:
            await self._release(handle)
            await provider.aclose()
            if isinstance(exc, Exception):
                raise RegistryConfigError(
                    f"Could not list tools of {handle.prefix!r}: {exc}", exc
                ) from exc
            raise

        provider.on_catalog_changed(functools.partial(self.refresh, handle.prefix))
        async with self._write_lock:
            handle.tools = tuple(tools)
            handle.state = ServerState.READY
            self._publish()
        self._log(f"Server {handle.prefix!r} ready with {len(tools)} tools", logging.INFO)

    def _publish(self) -> None:
        """Rebuild and swap the snapshot. Caller holds the write lock."""
        entries: dict[str, CatalogEntry] = {}
        for handle in self._handles.values():
            if not handle.dispatchable:
                continue
            for tool in handle.tools:
                merged = self.merged_name(handle.prefix, tool.name)
                if merged in entries:
                    self._log(f"Tool {merged!r} redefined; keeping the later one", logging.WARNING)
                entries[merged] = CatalogEntry(
                    info=ToolInfo(merged, tool.description, tool.parameters),
                    tool_name=tool.name,
                    handle=handle,
                )
        self._snapshot = RegistrySnapshot(
            version=self._snapshot.version + 1,
            entries=MappingProxyType(entries),
        )

    # --- dispatch ------------------------------------------------------------
    async def execute(self, call: ToolCall, *, fallback: Optional[LocalTools] = None) -> ToolResult:
        """
        Run *call* on its owning provider; failures come back as ``ToolResult.error``.

        Names found in the published catalog go to their server; anything else
        goes to *fallback* (process-local, un-prefixed tools) if it knows it.
        """
        if not call.is_valid:
            return ToolResult(call.id, call.name, error=f"Tool Failed: {call.parse_error}")

        entry = self._snapshot.resolve(call.name)
        if entry is None:
            if fallback is not None and call.name in fallback:
                return await self._run_local(call, fallback)
            return ToolResult(
                call.id, call.name, error=f"Tool Failed: {call.name} is not a valid tool name"
            )
        return await self._dispatch(call, entry)

    async def _run_local(self, call: ToolCall, tools: LocalTools) -> ToolResult:
        try:
            value = await tools.call(call.name, call.arguments)
        except ToolExecutionError as exc:
            return ToolResult(call.id, call.name, error=f"Tool Failed: {exc}")
        return ToolResult(call.id, call.name, content=value)

    async def _dispatch(self, call: ToolCall, entry: CatalogEntry) -> ToolResult:
        handle = entry.handle
        if not handle.dispatchable or handle.provider is None:
            return ToolResult(
                call.id, call.name, error=f"Tool Failed: server {handle.prefix!r} was removed"
            )

        self._log(f"Dispatching {call.name} ({call.id}) to {handle.prefix!r}", logging.DEBUG)
        closed = False
        handle._enter_call()
        try:
            value = await handle.provider.call(entry.tool_name, call.arguments)
        except ProviderClosedError as exc:
            closed = True
            result = ToolResult(call.id, call.name, error=f"Tool Failed: {exc}")
        except ProviderTransportError as exc:
            if handle.state is ServerState.READY:
                handle.state = ServerState.DEGRADED
                self._log(f"Server {handle.prefix!r} degraded: {exc}", logging.WARNING)
            result = ToolResult(call.id, call.name, error=f"Tool Failed: {exc}")
        except ToolExecutionError as exc:
            self._mark_ready(handle)
            result = ToolResult(call.id, call.name, error=f"Tool Failed: {exc}")
        except Exception as exc:
            result = ToolResult(
                call.id, call.name, error=f"Tool Failed: {exc.__class__.__name__}: {exc}"
            )
        else:
            self._mark_ready(handle)
            result = ToolResult(call.id, call.name, content=value)
        finally:
            handle._exit_call()

        if closed:
            await self.remove_server(handle.prefix, abort_inflight=True)
        return result

    def _mark_ready(self, handle: ServerHandle) -> None:
        if handle.state is ServerState.DEGRADED:
            handle.state = ServerState.READY
            self._log(f"Server {handle.prefix!r} recovered", logging.INFO)

    def dispatcher(self, fallback: Optional[LocalTools] = None) -> "ToolDispatcher":
        """A per-conversation executor over this shared registry."""
        return ToolDispatcher(self, fallback)

    def _log(self, message: str, level: int = logging.INFO) -> None:
        self.logger.log(level, f"[{self.name}] {message}")


class ToolDispatcher:
    """
    ``ToolExecutor`` for one conversation: the shared registry plus that
    conversation's local fallback tools.

    On a name collision the registry entry wins, since servers are treated as
    registered after the built-ins.
    """

    def __init__(self, registry: ToolRegistry, fallback: Optional[LocalTools] = None) -> None:
        self.registry = registry
        self.fallback = fallback

    def tool_infos(self) -> list[ToolInfo]:
        snapshot = self.registry.snapshot
        infos: list[ToolInfo] = []
        if self.fallback is not None:
            infos.extend(t for t in self.fallback.infos() if t.name not in snapshot)
        infos.extend(snapshot.tool_infos())
        return infos

    async def execute(self, call: ToolCall) -> ToolResult:
        return await self.registry.execute(call, fallback=self.fallback)


async def load_mcp_servers(
    path: str | os.PathLike[str],
    registry: Optional[ToolRegistry] = None,
    *,
    starter: Optional[ProviderStarter] = None,
) -> ToolRegistry:
    """
    Start every server listed in an ``mcpServers`` JSON file.

    Each server is registered under its configured name as prefix. Startup
    errors raise ``RegistryConfigError``; servers started before the failure
    stay registered.
    """
    registry = registry or ToolRegistry()
    for config in load_mcp_config(path):
        await registry.start_server(config, starter=starter)
    return registry
