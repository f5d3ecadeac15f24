"""Named external tool servers.

The stdio MCP transport lives in :mod:`runloop.ai.tool_servers.mcp_transport`
and is imported explicitly by callers that spawn MCP servers.
"""

from .manager import ToolServerConnectionManager
from .types import (
    ConnectionStatus,
    SessionLostCallback,
    ToolServerConfig,
    ToolServerConnection,
    ToolServerHandle,
    ToolServerTool,
    ToolServerTransport,
)

__all__ = [
    "ConnectionStatus",
    "SessionLostCallback",
    "ToolServerConfig",
    "ToolServerConnection",
    "ToolServerConnectionManager",
    "ToolServerHandle",
    "ToolServerTool",
    "ToolServerTransport",
]
