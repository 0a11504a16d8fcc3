"""
HTTP request executor.
"""

from typing import Any
import json
import logging

import httpx

from durableflow.engine.graph import Node, NodeType
from durableflow.engine.resolver import resolve_value
from durableflow.engine.state import RunState
from durableflow.executors.base import Capabilities, Completed, ExecResult, Failed, scope_of
from durableflow.executors.registry import register_executor


logger = logging.getLogger(__name__)


def _decode_body(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


@register_executor(NodeType.HTTP, requires=("http",))
async def execute_http(node: Node, state: RunState, caps: Capabilities) -> ExecResult:
    """
    Call an HTTP endpoint.

    Node data:
        url, method (GET), headers, query, body, timeoutSeconds,
        failOnError (true)

    Output is ``{status, headers, body}``; a JSON response body is decoded.
    """
    if caps.http is None:
        return Failed(error="No HTTP client configured")

    data = resolve_value(node.data, scope_of(state))
    url = data.get("url")
    if not url:
        return Failed(error=f"HTTP node '{node.id}' has no url")

    method = (data.get("method") or "GET").upper()
    body = data.get("body")
    json_body, content = None, None
    if isinstance(body, (dict, list)):
        json_body = body
    elif body is not None and method not in ("GET", "HEAD"):
        content = body if isinstance(body, str) else json.dumps(body)

    timeout = data.get("timeoutSeconds")
    try:
        response = await caps.http.request(
            method,
            url,
            headers=data.get("headers") or None,
            params=data.get("query") or None,
            json=json_body,
            content=content,
            timeout=float(timeout) if timeout else None,
        )
    except httpx.TimeoutException as e:
        return Failed(error=f"HTTP {method} {url} timed out: {e}")
    except httpx.HTTPError as e:
        return Failed(error=f"HTTP {method} {url} failed: {e}")

    output = {
        "status": response.status_code,
        "headers": dict(response.headers),
        "body": _decode_body(response),
    }

    fail_on_error = data.get("failOnError", True)
    if response.status_code >= 400 and fail_on_error not in (False, "false"):
        return Failed(
            error=f"HTTP {method} {url} returned {response.status_code}",
            output=output,
        )

    logger.debug(f"HTTP node '{node.id}': {method} {url} -> {response.status_code}")
    return Completed(output=output)
