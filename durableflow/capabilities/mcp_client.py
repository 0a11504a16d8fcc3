"""
MCP capability.

Opens a Model Context Protocol session over SSE for the duration of one
tool call. Sessions are async context managers, so the transport is
released on success, error and cancellation alike.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional
import logging

from mcp import ClientSession
from mcp.client.sse import sse_client

from durableflow.config import settings


logger = logging.getLogger(__name__)


class MCPSession:
    """Thin wrapper over ``mcp.ClientSession`` returning plain data."""

    def __init__(self, session: ClientSession):
        self._session = session

    async def list_tools(self) -> List[str]:
        result = await self._session.list_tools()
        return [tool.name for tool in result.tools]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """
        Call a tool.

        Returns:
            ``{"content": [...], "isError": bool, ...}``
        """
        result = await self._session.call_tool(name, arguments=arguments)
        return result.model_dump(mode="json")


class MCPClient:
    """
    Connects to MCP servers.

    Args:
        servers: Server configurations by id, used to resolve
            ``mcpServerId`` references
        timeout: Connection timeout in seconds
    """

    def __init__(
        self,
        servers: Optional[Dict[str, Dict[str, Any]]] = None,
        timeout: Optional[float] = None,
    ):
        self.servers = dict(servers or {})
        self.timeout = timeout if timeout is not None else settings.MCP_TIMEOUT_SECONDS

    async def resolve_server(self, server_id: str) -> Optional[Dict[str, Any]]:
        """Look up a server configuration by id."""
        return self.servers.get(server_id)

    @asynccontextmanager
    async def session(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> AsyncIterator[MCPSession]:
        """
        Open an initialized session.

        Usage:
            async with client.session(url, headers) as session:
                await session.call_tool("search", {"q": "..."})
        """
        logger.info(f"Connecting to MCP server: {url}")
        async with sse_client(url, headers=headers, timeout=self.timeout) as (read_stream, write_stream):
            async with ClientSession(read_stream, write_stream) as session:
                await session.initialize()
                yield MCPSession(session)
        logger.debug(f"Closed MCP session: {url}")
