"""
Knowledge retrieval executor.
"""

from typing import Any, Dict, List
import logging

from durableflow.engine.graph import Node, NodeType
from durableflow.engine.resolver import resolve_value
from durableflow.engine.state import RunState
from durableflow.executors.base import Capabilities, Completed, ExecResult, Failed, scope_of
from durableflow.executors.registry import register_executor


logger = logging.getLogger(__name__)


DEFAULT_LIMIT = 5


def format_context(results: List[Dict[str, Any]]) -> str:
    """Join results as ``[Source n]: content`` blocks for prompting."""
    return "\n\n".join(
        f"[Source {i}]: {item.get('content', '')}" for i, item in enumerate(results, start=1)
    )


@register_executor(NodeType.RETRIEVER, requires=("retriever",))
async def execute_retriever(node: Node, state: RunState, caps: Capabilities) -> ExecResult:
    """
    Search a knowledge namespace.

    The query defaults to the last output. Output is
    ``{results, context, summary}``.
    """
    if caps.retriever is None:
        return Failed(error="No retriever configured")

    data = resolve_value(node.data, scope_of(state))
    namespace_id = data.get("namespaceId")
    if not namespace_id:
        return Failed(error=f"Retriever node '{node.id}' has no namespaceId")

    query = data.get("query")
    if query in (None, ""):
        query = state.last_output
    if not isinstance(query, str):
        query = "" if query is None else str(query)
    if not query.strip():
        return Failed(error=f"Retriever node '{node.id}' has an empty query")

    try:
        limit = int(data.get("limit") or DEFAULT_LIMIT)
    except (TypeError, ValueError):
        limit = DEFAULT_LIMIT

    try:
        results = await caps.retriever.search(
            query,
            namespace_id,
            limit=limit,
            rerank=bool(data.get("reRank", False)),
        )
    except Exception as e:
        logger.warning(f"Retriever node '{node.id}' search failed: {e}")
        return Failed(error=f"Retrieval failed: {e}")

    results = list(results or [])[:limit]
    return Completed(
        output={
            "results": results,
            "context": format_context(results),
            "summary": f"Found {len(results)} relevant results for: {query}",
        },
        details={"namespaceId": namespace_id, "count": len(results)},
    )
