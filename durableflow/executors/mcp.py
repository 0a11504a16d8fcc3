"""
MCP tool-call executor.

Calls a tool on one of the node's MCP servers. Servers are tried in
declared order and the first successful call wins; every failure is kept
in the node result details under ``attempts``.
"""

from typing import Any, Dict, List, Optional
import asyncio
import json
import logging
import os
import re

from durableflow.config import settings
from durableflow.engine.graph import Node, NodeType
from durableflow.engine.resolver import get_path, resolve_value
from durableflow.engine.state import RunState
from durableflow.executors.base import Capabilities, Completed, ExecResult, Failed, scope_of
from durableflow.executors.registry import register_executor


logger = logging.getLogger(__name__)


URL_VARIABLE = re.compile(r"\{([A-Z0-9_]+)\}")


class MCPCallError(Exception):
    """A single server attempt failed."""


def substitute_url(url: str, secrets: Dict[str, str]) -> str:
    """
    Replace ``{VAR_NAME}`` placeholders from the environment, then secrets.

    Raises:
        MCPCallError: Naming every variable that could not be found
    """
    missing: List[str] = []

    def replace(match: "re.Match[str]") -> str:
        name = match.group(1)
        value = os.environ.get(name) or secrets.get(name)
        if not value:
            missing.append(name)
            return match.group(0)
        return value

    resolved = URL_VARIABLE.sub(replace, url)
    if missing:
        raise MCPCallError(f"Missing configuration: {', '.join(missing)}")
    return resolved


def decode_result(result: Dict[str, Any]) -> Any:
    """Pick the first text content, parsed as JSON when it looks like JSON."""
    content = result.get("content")
    if not isinstance(content, list):
        return result

    text = next((c.get("text") for c in content if c.get("type") == "text" and c.get("text")), None)
    if text is None:
        return content

    stripped = text.strip()
    if stripped.startswith("{") or stripped.startswith("["):
        try:
            return json.loads(stripped)
        except ValueError:
            return text
    return text


def extract_field(data: Any, field: str, custom_path: Optional[str] = None) -> Any:
    """Narrow a decoded result to ``outputField`` (``full`` keeps everything)."""
    if field == "full":
        return data
    if field == "custom" and custom_path:
        return get_path({"data": data}, f"data.{custom_path}")
    if not isinstance(data, dict):
        return data
    if field == "json":
        return data.get("json") or data.get("data") or data
    if field == "metadata":
        return data.get("metadata") or {}
    return data.get(field) or data


async def _call_server(
    caps: Capabilities,
    server: Dict[str, Any],
    tool: str,
    arguments: Dict[str, Any],
    timeout: float,
) -> Dict[str, Any]:
    url = substitute_url(server.get("url") or "", caps.secrets)
    if not url:
        raise MCPCallError("Server has no url")

    headers = dict(server.get("headers") or {})
    if server.get("accessToken"):
        headers["Authorization"] = f"Bearer {server['accessToken']}"

    async def call() -> Dict[str, Any]:
        async with caps.mcp.session(url, headers or None) as session:
            tools = await session.list_tools()
            if tool not in tools:
                raise MCPCallError(f"Tool '{tool}' not offered by server")
            return await session.call_tool(tool, arguments)

    try:
        return await asyncio.wait_for(call(), timeout=timeout)
    except asyncio.TimeoutError:
        raise MCPCallError(f"Timed out after {timeout}s") from None


@register_executor(NodeType.MCP, requires=("mcp", "secrets"))
async def execute_mcp(node: Node, state: RunState, caps: Capabilities) -> ExecResult:
    """
    Call an MCP tool.

    Node data:
        mcpServers or mcpServerId, mcpTool, mcpParams,
        outputField, customOutputPath, timeoutSeconds
    """
    if caps.mcp is None:
        return Failed(error="No MCP client configured")

    servers = list(node.data.get("mcpServers") or [])
    server_id = node.data.get("mcpServerId")
    if server_id:
        resolved = await caps.mcp.resolve_server(server_id)
        if resolved:
            servers = [resolved]
        else:
            logger.warning(f"Could not resolve MCP server id '{server_id}'")
    if not servers:
        return Failed(error="No MCP servers configured or could not resolve server")

    tool = node.data.get("mcpTool")
    if not tool:
        return Failed(error="No tool selected for MCP execution")

    arguments = resolve_value(node.data.get("mcpParams") or {}, scope_of(state))
    timeout = float(node.data.get("timeoutSeconds") or settings.MCP_TIMEOUT_SECONDS)

    attempts = []
    for server in servers:
        name = server.get("name") or server.get("url")
        try:
            logger.info(f"Calling MCP tool '{tool}' on {name}")
            result = await _call_server(caps, server, tool, arguments, timeout)
        except Exception as e:
            logger.warning(f"MCP call '{tool}' on {name} failed: {e}")
            attempts.append({"server": name, "success": False, "error": str(e)})
            continue

        if result.get("isError"):
            attempts.append({"server": name, "success": False, "error": str(decode_result(result))})
            continue

        output = decode_result(result)
        field = node.data.get("outputField")
        if field:
            output = extract_field(output, field, node.data.get("customOutputPath"))

        attempts.append({"server": name, "success": True})
        return Completed(
            output=output,
            details={"server": name, "tool": tool, "attempts": attempts, "raw": result},
        )

    return Failed(
        error="; ".join(a["error"] for a in attempts) or "MCP execution failed",
        details={"tool": tool, "attempts": attempts},
    )
