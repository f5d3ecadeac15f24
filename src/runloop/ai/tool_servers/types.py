"""Tool-server configuration, connection records and transport contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Protocol, Sequence, runtime_checkable

from ..orchestration.types import ToolResult

__all__ = [
    "ConnectionStatus",
    "ToolServerConfig",
    "ToolServerTool",
    "ToolServerConnection",
    "ToolServerHandle",
    "ToolServerTransport",
    "SessionLostCallback",
]


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class ToolServerConfig:
    """How to reach one named tool server.

    Attributes:
        name: Unique server name; the single-flight key.
        command: Executable for stdio servers.
        args: Command-line arguments.
        env: Extra environment variables.
        cwd: Working directory for the server process.
        enabled: Disabled servers are skipped by ``connect_all``.
        connect_timeout: Per-server handshake timeout override in seconds.
    """

    name: str
    command: str = ""
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: str | None = None
    enabled: bool = True
    connect_timeout: float | None = None

    @classmethod
    def from_mapping(cls, name: str, payload: Mapping[str, Any]) -> ToolServerConfig:
        timeout = payload.get("connect_timeout")
        return cls(
            name=name,
            command=str(payload.get("command", "")),
            args=tuple(str(arg) for arg in payload.get("args", ()) or ()),
            env={str(key): str(value) for key, value in (payload.get("env") or {}).items()},
            cwd=payload.get("cwd"),
            enabled=bool(payload.get("enabled", True)),
            connect_timeout=float(timeout) if timeout is not None else None,
        )


@dataclass(slots=True, frozen=True)
class ToolServerTool:
    """A tool advertised by a connected server."""

    server: str
    name: str
    description: str = ""
    input_schema: Mapping[str, Any] = field(default_factory=dict)

    @property
    def qualified_name(self) -> str:
        return f"mcp__{self.server}__{self.name}"


@runtime_checkable
class ToolServerHandle(Protocol):
    """An established session with one tool server."""

    async def list_tools(self) -> Sequence[ToolServerTool]:
        ...

    async def call_tool(self, name: str, arguments: Mapping[str, Any]) -> ToolResult:
        ...

    async def close(self) -> None:
        ...


SessionLostCallback = Callable[[ToolServerHandle, str], None]


@runtime_checkable
class ToolServerTransport(Protocol):
    """Performs the handshake that turns a config into a handle.

    ``on_lost`` is called with the handle and a reason when an established
    session ends without ``close`` having been requested.
    """

    async def connect(
        self, config: ToolServerConfig, *, on_lost: SessionLostCallback | None = None
    ) -> ToolServerHandle:
        ...


@dataclass(slots=True)
class ToolServerConnection:
    """Mutable registry record for one server name."""

    name: str
    config: ToolServerConfig
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    handle: ToolServerHandle | None = None
    tools: tuple[ToolServerTool, ...] = ()
    last_error: str | None = None
    attempts: int = 0
