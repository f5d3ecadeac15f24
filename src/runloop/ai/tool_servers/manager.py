"""Race-free lifecycle management for named tool-server connections."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Sequence

from ..errors import ToolServerConnectionError
from ..orchestration.keyed_mutex import KeyedMutex
from ..orchestration.types import ToolResult
from ..tools.registry import ToolRegistry
from ..tools.types import SafetyLevel, ToolSpec
from .types import (
    ConnectionStatus,
    ToolServerConfig,
    ToolServerConnection,
    ToolServerHandle,
    ToolServerTool,
    ToolServerTransport,
)

__all__ = ["ToolServerConnectionManager"]

LOGGER = logging.getLogger(__name__)


class ToolServerConnectionManager:
    """Registry of named tool servers with single-flight connects.

    ``add_server`` may be called concurrently from any number of call sites:
    callers for a name that is already connected get the existing connection,
    callers that arrive while an attempt is in flight share its outcome, and
    the attempt itself runs under :class:`KeyedMutex` so it never overlaps a
    removal of the same name.  A failed attempt is recorded and not retried;
    the next ``add_server`` call starts a fresh one.  A connection whose
    session is lost after the handshake is marked failed the same way.  An
    ``add_server`` that arrives while the name is being removed waits for
    the removal to finish before it connects.
    """

    def __init__(
        self,
        transport: ToolServerTransport,
        *,
        mutex: KeyedMutex | None = None,
        connect_timeout: float | None = 30.0,
        safety_level: SafetyLevel = SafetyLevel.WRITE,
    ) -> None:
        self._transport = transport
        self._mutex = mutex or KeyedMutex()
        self._connect_timeout = connect_timeout
        self._safety_level = safety_level
        self._connections: dict[str, ToolServerConnection] = {}
        self._inflight: dict[str, asyncio.Task[ToolServerConnection]] = {}
        self._removals: dict[str, asyncio.Task[bool]] = {}
        self._disposed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def add_server(self, config: ToolServerConfig) -> ToolServerConnection:
        """Connect ``config.name`` unless it is already connected or connecting.

        Raises:
            ToolServerConnectionError: The handshake failed, timed out, or the
                attempt was cancelled by ``remove_server``/``dispose``.
        """

        removal = self._removals.get(config.name)
        if removal is not None:
            LOGGER.debug("Waiting for removal of tool server %s before connecting", config.name)
            await asyncio.wait([removal])
        if self._disposed:
            raise ToolServerConnectionError(config.name, "manager has been disposed")
        existing = self._connections.get(config.name)
        if existing is not None and existing.status is ConnectionStatus.CONNECTED:
            return existing

        task = self._inflight.get(config.name)
        if task is None:
            task = asyncio.ensure_future(
                self._mutex.run_exclusive(config.name, lambda: self._connect(config))
            )
            self._inflight[config.name] = task
            task.add_done_callback(lambda done, name=config.name: self._clear_inflight(name, done))
        else:
            LOGGER.debug("Joining in-flight connect for tool server %s", config.name)

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and (current is None or not current.cancelling()):
                raise ToolServerConnectionError(config.name, "connect attempt was cancelled") from None
            raise

    async def connect_all(self, configs: Sequence[ToolServerConfig]) -> dict[str, ToolServerConnection | Exception]:
        """Connect every enabled server concurrently; failures are returned, not raised."""

        enabled = [config for config in configs if config.enabled]
        results = await asyncio.gather(
            *(self.add_server(config) for config in enabled), return_exceptions=True
        )
        outcome: dict[str, ToolServerConnection | Exception] = {}
        for config, result in zip(enabled, results):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            outcome[config.name] = result
        return outcome

    async def remove_server(self, name: str) -> bool:
        """Cancel a pending attempt for ``name`` and release its handle.

        Concurrent removals of one name share a single teardown.
        """

        removal = self._removals.get(name)
        if removal is None:
            removal = asyncio.ensure_future(self._remove(name))
            self._removals[name] = removal
            removal.add_done_callback(lambda done, name=name: self._clear_removal(name, done))
        return await asyncio.shield(removal)

    async def dispose(self) -> None:
        """Tear down every connection and clear all lock state."""

        self._disposed = True
        pending = [task for task in self._inflight.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for name in list(self._connections):
            await self._disconnect(name)
        self._mutex.clear_all()
        LOGGER.debug("Tool server manager disposed")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_connection(self, name: str) -> ToolServerConnection | None:
        return self._connections.get(name)

    def get_servers(self) -> list[ToolServerConnection]:
        return list(self._connections.values())

    def is_connecting(self, name: str) -> bool:
        task = self._inflight.get(name)
        return task is not None and not task.done()

    def connection_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in ConnectionStatus}
        for connection in self._connections.values():
            counts[connection.status.value] += 1
        counts["total"] = len(self._connections)
        return counts

    def get_tools(self) -> list[ToolServerTool]:
        tools: list[ToolServerTool] = []
        for connection in self._connections.values():
            if connection.status is ConnectionStatus.CONNECTED:
                tools.extend(connection.tools)
        return tools

    async def call_tool(self, server: str, tool: str, arguments: Mapping[str, Any]) -> ToolResult:
        connection = self._connections.get(server)
        if connection is None or connection.status is not ConnectionStatus.CONNECTED or connection.handle is None:
            raise ToolServerConnectionError(server, "not connected")
        return await connection.handle.call_tool(tool, arguments)

    def register_tools(self, registry: ToolRegistry) -> list[str]:
        """Expose every connected server tool in ``registry`` as ``mcp__<server>__<tool>``."""

        registered: list[str] = []
        for tool in self.get_tools():
            spec = ToolSpec(
                name=tool.qualified_name,
                description=tool.description or f"{tool.name} (from {tool.server})",
                parameters=dict(tool.input_schema),
                safety_level=self._safety_level,
            )
            registry.register_function(
                spec,
                self._make_handler(tool.server, tool.name),
                allow_override=True,
                metadata={"server": tool.server},
            )
            registered.append(spec.name)
        return registered

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _connect(self, config: ToolServerConfig) -> ToolServerConnection:
        connection = self._connections.get(config.name)
        if connection is not None and connection.status is ConnectionStatus.CONNECTED:
            return connection
        if connection is None:
            connection = ToolServerConnection(name=config.name, config=config)
            self._connections[config.name] = connection
        connection.config = config
        connection.status = ConnectionStatus.CONNECTING
        connection.attempts += 1
        timeout = config.connect_timeout if config.connect_timeout is not None else self._connect_timeout
        LOGGER.debug("Connecting tool server %s (attempt %d)", config.name, connection.attempts)

        try:
            if timeout is not None:
                handle = await asyncio.wait_for(self._transport.connect(config, on_lost=self._handle_lost), timeout)
            else:
                handle = await self._transport.connect(config, on_lost=self._handle_lost)
        except asyncio.CancelledError:
            connection.status = ConnectionStatus.DISCONNECTED
            connection.last_error = "cancelled"
            raise
        except asyncio.TimeoutError as exc:
            self._mark_failed(connection, f"handshake timed out after {timeout}s")
            raise ToolServerConnectionError(config.name, f"handshake timed out after {timeout}s") from exc
        except Exception as exc:
            self._mark_failed(connection, str(exc) or type(exc).__name__)
            raise ToolServerConnectionError(config.name, str(exc) or type(exc).__name__) from exc

        try:
            tools = tuple(await handle.list_tools())
        except asyncio.CancelledError:
            await handle.close()
            connection.status = ConnectionStatus.DISCONNECTED
            raise
        except Exception as exc:
            await handle.close()
            self._mark_failed(connection, f"tool listing failed: {exc}")
            raise ToolServerConnectionError(config.name, f"tool listing failed: {exc}") from exc

        connection.handle = handle
        connection.tools = tools
        connection.status = ConnectionStatus.CONNECTED
        connection.last_error = None
        LOGGER.info("Connected tool server %s with %d tool(s)", config.name, len(tools))
        return connection

    async def _remove(self, name: str) -> bool:
        task = self._inflight.get(name)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        return await self._mutex.run_exclusive(name, lambda: self._disconnect(name))

    async def _disconnect(self, name: str) -> bool:
        connection = self._connections.pop(name, None)
        if connection is None:
            return False
        handle = connection.handle
        connection.handle = None
        connection.status = ConnectionStatus.DISCONNECTED
        if handle is not None:
            try:
                await handle.close()
            except Exception:
                LOGGER.warning("Closing tool server %s failed", name, exc_info=True)
        LOGGER.debug("Removed tool server %s", name)
        return True

    def _mark_failed(self, connection: ToolServerConnection, message: str) -> None:
        connection.status = ConnectionStatus.FAILED
        connection.handle = None
        connection.last_error = message
        LOGGER.warning("Tool server %s failed: %s", connection.name, message)

    def _handle_lost(self, handle: ToolServerHandle, reason: str) -> None:
        for connection in self._connections.values():
            if connection.handle is handle:
                connection.tools = ()
                self._mark_failed(connection, f"session lost: {reason}")
                return
        LOGGER.debug("Ignoring lost session for a handle that is no longer tracked")

    def _clear_removal(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._removals.get(name) is task:
            del self._removals[name]
        if not task.cancelled():
            task.exception()

    def _clear_inflight(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._inflight.get(name) is task:
            del self._inflight[name]
        if not task.cancelled():
            # Retrieve the exception so it is never reported as unhandled.
            task.exception()

    def _make_handler(self, server: str, tool: str):
        async def _handler(arguments: Mapping[str, Any]) -> ToolResult:
            return await self.call_tool(server, tool, arguments)

        return _handler
