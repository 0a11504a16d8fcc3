"""
Shared fixtures and fake capabilities for the test suite.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from durableflow.engine.events import EventBus
from durableflow.engine.executor import Engine
from durableflow.engine.graph import Graph
from durableflow.executors import Capabilities
from durableflow.storage.checkpoints import InMemoryCheckpointStore
from durableflow.storage.memory import GraphStorage
from durableflow.storage.suspensions import SuspensionRegistry


T0 = datetime(2026, 1, 1, 12, 0, 30, tzinfo=timezone.utc)


# ============================================================
# Fake Capabilities
# ============================================================

class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeLLM:
    """Answers with the first response whose keyword appears in the prompt."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None, default: str = "ok"):
        self.responses = responses or {}
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, prompt: str, model: Optional[str] = None, system: Optional[str] = None) -> str:
        self.calls.append({"prompt": prompt, "model": model, "system": system})
        for keyword, response in self.responses.items():
            if keyword in prompt:
                if isinstance(response, Exception):
                    raise response
                return response
        return self.default


class FakeRetriever:
    def __init__(self, results: Optional[List[Dict[str, Any]]] = None):
        self.results = results or []
        self.calls: List[Dict[str, Any]] = []

    async def search(self, query: str, namespace_id: str, limit: int = 5, rerank: bool = False):
        self.calls.append({"query": query, "namespace_id": namespace_id, "limit": limit, "rerank": rerank})
        return self.results


class FakeCodeRunner:
    def __init__(self):
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    async def run(self, code: str, language: str, variables: Dict[str, Any]) -> Any:
        self.calls.append((code, language, variables))
        return {"language": language, "lastOutput": variables.get("lastOutput")}


class FakeMCPSession:
    def __init__(self, tools: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]], calls: List[Any]):
        self.tools = tools
        self.calls = calls

    async def list_tools(self) -> List[str]:
        return list(self.tools)

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append((name, arguments))
        return self.tools[name](arguments)


class FakeMCP:
    """
    MCP client with in-process servers.

    Args:
        servers: url -> {tool name -> handler(arguments) -> result}
        down: urls whose connection fails
        known: server id -> configuration, for ``mcpServerId``
    """

    def __init__(
        self,
        servers: Optional[Dict[str, Dict[str, Callable]]] = None,
        down: Sequence[str] = (),
        known: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.servers = servers or {}
        self.down = set(down)
        self.known = known or {}
        self.opened: List[Tuple[str, Optional[Dict[str, str]]]] = []
        self.calls: List[Any] = []

    async def resolve_server(self, server_id: str) -> Optional[Dict[str, Any]]:
        return self.known.get(server_id)

    @asynccontextmanager
    async def session(self, url: str, headers: Optional[Dict[str, str]] = None):
        self.opened.append((url, headers))
        if url in self.down:
            raise ConnectionError(f"Cannot connect to {url}")
        yield FakeMCPSession(self.servers.get(url, {}), self.calls)


def text_result(text: str, is_error: bool = False) -> Dict[str, Any]:
    """An MCP call_tool result with one text block."""
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


# ============================================================
# Graph Helpers
# ============================================================

def make_graph(
    nodes: Sequence[Tuple],
    edges: Sequence[Tuple] = (),
    graph_id: str = "test-graph",
    name: str = "Test Graph",
) -> Graph:
    """
    Build a graph from tuples.

    Args:
        nodes: ``(id, type)`` or ``(id, type, data)``
        edges: ``(source, target)`` or ``(source, target, handle)``
    """
    graph = Graph(graph_id=graph_id, name=name)
    for node in nodes:
        node_id, node_type = node[0], node[1]
        graph.add_node(node_id, node_type, node[2] if len(node) > 2 else None)
    for edge in edges:
        graph.add_edge(edge[0], edge[1], source_handle=edge[2] if len(edge) > 2 else None)
    return graph


def linear_graph(*middle: Tuple, graph_id: str = "linear") -> Graph:
    """``start -> middle... -> end``."""
    nodes = [("start", "start"), *middle, ("end", "end")]
    ids = [n[0] for n in nodes]
    return make_graph(nodes, list(zip(ids, ids[1:])), graph_id=graph_id)


def approval_graph(graph_id: str = "approval", with_timeout_edge: bool = False, **approval_data) -> Graph:
    """``start -> approve -[approve]-> yes / -[reject]-> no -> end``."""
    data = {"approvalId": "ap-1", "message": "Ship it?", **approval_data}
    nodes = [
        ("start", "start"),
        ("approve", "user-approval", data),
        ("yes", "transform", {"template": "approved"}),
        ("no", "transform", {"template": "rejected"}),
        ("end", "end"),
    ]
    edges = [
        ("start", "approve"),
        ("approve", "yes", "approve"),
        ("approve", "no", "reject"),
        ("yes", "end"),
        ("no", "end"),
    ]
    if with_timeout_edge:
        nodes.append(("late", "transform", {"template": "late"}))
        edges.extend([("approve", "late", "timeout"), ("late", "end")])
    return make_graph(nodes, edges, graph_id=graph_id)


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def capabilities(clock, llm) -> Capabilities:
    return Capabilities(
        llm=llm,
        retriever=FakeRetriever(),
        code_runner=FakeCodeRunner(),
        clock=clock,
    )


@pytest.fixture
def engine(capabilities) -> Engine:
    return Engine(
        checkpoints=InMemoryCheckpointStore(),
        suspensions=SuspensionRegistry(),
        graphs=GraphStorage(),
        capabilities=capabilities,
        events=EventBus(),
    )
