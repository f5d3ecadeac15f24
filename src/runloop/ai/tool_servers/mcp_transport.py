"""Model Context Protocol transport over a server subprocess's stdio."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import AsyncExitStack
from typing import Any, Mapping, Sequence

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from ..errors import ToolServerConnectionError
from ..orchestration.types import ToolResult
from .types import SessionLostCallback, ToolServerConfig, ToolServerTool

__all__ = ["McpStdioTransport", "McpStdioHandle"]

LOGGER = logging.getLogger(__name__)


class McpStdioHandle:
    """One MCP client session bound to a subprocess.

    The stdio client and session contexts are entered and exited by a
    dedicated task, because their cancel scopes must close in the task that
    opened them.  Tool calls may come from any task.  When the server process
    goes away after the handshake, ``on_lost`` is told once.
    """

    def __init__(self, config: ToolServerConfig, *, on_lost: SessionLostCallback | None = None) -> None:
        self._config = config
        self._on_lost = on_lost
        self._opened = False
        self._session: ClientSession | None = None
        self._ready: asyncio.Future[None] | None = None
        self._closing = asyncio.Event()
        self._runner: asyncio.Task[None] | None = None

    @property
    def name(self) -> str:
        return self._config.name

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._runner = loop.create_task(self._run(), name=f"mcp-server:{self._config.name}")
        try:
            await asyncio.shield(self._ready)
        except BaseException:
            await self._stop_runner()
            raise

    async def list_tools(self) -> Sequence[ToolServerTool]:
        session = self._require_session()
        response = await session.list_tools()
        return [
            ToolServerTool(
                server=self._config.name,
                name=tool.name,
                description=tool.description or "",
                input_schema=dict(tool.inputSchema or {}),
            )
            for tool in response.tools
        ]

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> ToolResult:
        session = self._require_session()
        response = await session.call_tool(name, dict(arguments))
        text = "\n".join(
            getattr(item, "text", "") for item in response.content if getattr(item, "type", "") == "text"
        )
        metadata = {"server": self._config.name, "tool": name}
        if response.isError:
            return ToolResult.failure(text or f"{name} reported an error", **metadata)
        structured = getattr(response, "structuredContent", None)
        return ToolResult.ok(structured if structured is not None else text, **metadata)

    async def close(self) -> None:
        self._closing.set()
        await self._stop_runner()
        self._session = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _run(self) -> None:
        assert self._ready is not None
        params = StdioServerParameters(
            command=self._config.command,
            args=list(self._config.args),
            env={**os.environ, **dict(self._config.env)} if self._config.env else None,
            cwd=self._config.cwd,
        )
        reason = "session ended"
        try:
            async with AsyncExitStack() as stack:
                read, write = await stack.enter_async_context(stdio_client(params))
                session = await stack.enter_async_context(ClientSession(read, write))
                await session.initialize()
                self._session = session
                self._opened = True
                if not self._ready.done():
                    self._ready.set_result(None)
                await self._closing.wait()
        except Exception as exc:
            if not self._ready.done():
                self._ready.set_exception(exc)
            else:
                reason = str(exc) or type(exc).__name__
                LOGGER.warning("MCP server %s session ended with an error: %s", self._config.name, reason)
        finally:
            self._session = None
            if not self._ready.done():
                self._ready.set_exception(
                    ToolServerConnectionError(self._config.name, "session closed before initialization")
                )
            elif self._opened and not self._closing.is_set():
                self._notify_lost(reason)

    def _notify_lost(self, reason: str) -> None:
        if self._on_lost is None:
            return
        try:
            self._on_lost(self, reason)
        except Exception:
            LOGGER.warning("Session-lost callback for MCP server %s failed", self._config.name, exc_info=True)

    async def _stop_runner(self) -> None:
        runner = self._runner
        if runner is None or runner.done():
            return
        if not self._closing.is_set():
            runner.cancel()
        (outcome,) = await asyncio.gather(runner, return_exceptions=True)
        if isinstance(outcome, Exception):
            LOGGER.debug("MCP server %s runner failed during shutdown: %s", self._config.name, outcome)

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ToolServerConnectionError(self._config.name, "session is not open")
        return self._session


class McpStdioTransport:
    """Starts stdio MCP servers and hands back initialized sessions."""

    async def connect(self, config: ToolServerConfig, *, on_lost: SessionLostCallback | None = None) -> McpStdioHandle:
        if not config.command:
            raise ToolServerConnectionError(config.name, "no command configured")
        handle = McpStdioHandle(config, on_lost=on_lost)
        await handle.start()
        LOGGER.debug("MCP server %s initialized (%s)", config.name, config.command)
        return handle
