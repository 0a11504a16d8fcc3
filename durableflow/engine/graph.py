"""
Graph Definition for the Execution Engine.

The Graph holds the typed nodes of a workflow and the edges between their
named output handles. It is a passive model: routing decisions are made by
the engine from the handle each executor reports.
"""

from typing import Any, Dict, List, Optional, Set
from dataclasses import dataclass, field
from enum import Enum
import uuid

from durableflow.engine.errors import GraphValidationError


class NodeType(str, Enum):
    """Built-in node type tags."""
    START = "start"
    END = "end"
    TRANSFORM = "transform"
    SET_STATE = "set-state"
    IF_ELSE = "if-else"
    ROUTER = "router"
    WHILE = "while"
    USER_APPROVAL = "user-approval"
    HTTP = "http"
    RETRIEVER = "retriever"
    MCP = "mcp"
    GUARDRAILS = "guardrails"
    AGENT = "agent"
    CODE = "code"
    WEBHOOK = "webhook"
    DELAY = "delay"
    EXTRACT = "extract"


class Handle:
    """Named output handles exposed by the branching node types."""
    IF = "if"
    ELSE = "else"
    CONTINUE = "continue"
    BREAK = "break"
    APPROVE = "approve"
    REJECT = "reject"
    TIMEOUT = "timeout"


# Editor annotations, dropped on load
NOTE_TYPE = "note"

# Node types whose outgoing edges are selected by handle
BRANCHING_TYPES = {
    NodeType.IF_ELSE.value,
    NodeType.ROUTER.value,
    NodeType.WHILE.value,
    NodeType.USER_APPROVAL.value,
}


@dataclass
class Node:
    """
    A node in the workflow graph.

    Attributes:
        id: Unique identifier within the graph
        type: Type tag used to look up the executor
        data: Node configuration (may contain ``{{...}}`` templates)
        label: Human-readable name
    """
    id: str
    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    label: str = ""

    def __post_init__(self):
        if not self.id:
            raise ValueError("Node id cannot be empty")
        if isinstance(self.type, NodeType):
            self.type = self.type.value
        if not self.type:
            raise ValueError(f"Node '{self.id}' has no type")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "label": self.label,
            "data": self.data,
        }


@dataclass
class Edge:
    """A directed connection from a node's output handle to another node."""
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "sourceHandle": self.source_handle,
            "target": self.target,
            "targetHandle": self.target_handle,
        }


@dataclass
class Graph:
    """
    A workflow graph consisting of typed nodes and handle-labelled edges.

    Attributes:
        graph_id: Unique identifier for this graph
        name: Human-readable name
        nodes: Dict of node_id -> Node, in declared order
        edges: List of edges, in declared order
    """

    graph_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "Unnamed Workflow"
    nodes: Dict[str, Node] = field(default_factory=dict)
    edges: List[Edge] = field(default_factory=list)
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def add_node(
        self,
        node_id: str,
        node_type: Any,
        data: Optional[Dict[str, Any]] = None,
        label: str = "",
    ) -> "Graph":
        """
        Add a node to the graph.

        Returns:
            Self for chaining
        """
        if node_id in self.nodes:
            raise ValueError(f"Node '{node_id}' already exists in the graph")
        self.nodes[node_id] = Node(id=node_id, type=node_type, data=data or {}, label=label)
        return self

    def add_edge(
        self,
        source: str,
        target: str,
        source_handle: Optional[str] = None,
        target_handle: Optional[str] = None,
    ) -> "Graph":
        """
        Add an edge from ``source`` (optionally from a named handle) to ``target``.

        Returns:
            Self for chaining
        """
        if source not in self.nodes:
            raise ValueError(f"Source node '{source}' not found in graph")
        if target not in self.nodes:
            raise ValueError(f"Target node '{target}' not found in graph")
        self.edges.append(Edge(
            source=source,
            target=target,
            source_handle=source_handle,
            target_handle=target_handle,
        ))
        return self

    @property
    def start_node(self) -> Optional[Node]:
        """The unique ``start`` node, if the graph has exactly one."""
        starts = [n for n in self.nodes.values() if n.type == NodeType.START.value]
        return starts[0] if len(starts) == 1 else None

    def get_node(self, node_id: str) -> Optional[Node]:
        return self.nodes.get(node_id)

    def outgoing(self, node_id: str, handle: Optional[str] = None) -> List[Edge]:
        """
        Outgoing edges of a node in declared order.

        Args:
            node_id: Source node id
            handle: When given, only edges leaving this handle
        """
        edges = [e for e in self.edges if e.source == node_id]
        if handle is not None:
            edges = [e for e in edges if e.source_handle == handle]
        return edges

    def incoming(self, node_id: str) -> List[Edge]:
        return [e for e in self.edges if e.target == node_id]

    def validate(self, registry: Any = None) -> List[str]:
        """
        Validate the graph structure.

        Args:
            registry: Optional executor registry; when given, every node
                type must be registered

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not self.nodes:
            errors.append("Graph must have at least one node")
            return errors

        starts = [n.id for n in self.nodes.values() if n.type == NodeType.START.value]
        if len(starts) != 1:
            errors.append(f"Graph must have exactly one start node, found {len(starts)}")
        else:
            if self.incoming(starts[0]):
                errors.append(f"Start node '{starts[0]}' must not have incoming edges")

        for edge in self.edges:
            if edge.source not in self.nodes:
                errors.append(f"Edge '{edge.id}' source '{edge.source}' not found")
            if edge.target not in self.nodes:
                errors.append(f"Edge '{edge.id}' target '{edge.target}' not found")

        if registry is not None:
            for node in self.nodes.values():
                if not registry.has(node.type):
                    errors.append(f"Unknown node type '{node.type}' on node '{node.id}'")

        cycle = self._find_unsanctioned_cycle()
        if cycle:
            errors.append(
                f"Cycle {' -> '.join(cycle)} does not pass through a while node's "
                f"'{Handle.CONTINUE}' edge"
            )

        return errors

    def ensure_valid(self, registry: Any = None) -> "Graph":
        """Raise GraphValidationError unless the graph is valid."""
        errors = self.validate(registry)
        if errors:
            raise GraphValidationError(errors)
        return self

    def _forward_adjacency(self) -> Dict[str, List[str]]:
        """Successors of every node, leaving out while ``continue`` edges."""
        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in self.nodes}
        for edge in self.edges:
            source = self.nodes.get(edge.source)
            if source is None or edge.target not in self.nodes:
                continue
            if source.type == NodeType.WHILE.value and edge.source_handle == Handle.CONTINUE:
                continue
            adjacency[edge.source].append(edge.target)
        return adjacency

    def reaches(self, source: str, target: str) -> bool:
        """
        Whether ``target`` is downstream of ``source`` without going around a loop.

        The engine uses this to hold a join node back while one of its
        upstream branches is still queued.
        """
        if source == target:
            return False
        adjacency = self._forward_adjacency()
        seen: Set[str] = set()
        to_visit = list(adjacency.get(source, []))
        while to_visit:
            node_id = to_visit.pop()
            if node_id == target:
                return True
            if node_id in seen:
                continue
            seen.add(node_id)
            to_visit.extend(adjacency.get(node_id, []))
        return False

    def _find_unsanctioned_cycle(self) -> Optional[List[str]]:
        """
        Find a cycle that survives removing every while ``continue`` edge.

        Loops are only legal through a while node, so the remaining graph
        must be acyclic.
        """
        adjacency = self._forward_adjacency()

        visiting: Set[str] = set()
        done: Set[str] = set()
        path: List[str] = []

        def visit(node_id: str) -> Optional[List[str]]:
            visiting.add(node_id)
            path.append(node_id)
            for target in adjacency[node_id]:
                if target in visiting:
                    return path[path.index(target):] + [target]
                if target not in done:
                    found = visit(target)
                    if found:
                        return found
            visiting.discard(node_id)
            done.add(node_id)
            path.pop()
            return None

        for node_id in self.nodes:
            if node_id not in done:
                found = visit(node_id)
                if found:
                    return found
        return None

    def reachable_nodes(self) -> Set[str]:
        """Get all nodes reachable from the start node."""
        start = self.start_node
        if start is None:
            return set()

        reachable = set()
        to_visit = [start.id]
        while to_visit:
            node_id = to_visit.pop()
            if node_id in reachable:
                continue
            reachable.add(node_id)
            to_visit.extend(e.target for e in self.outgoing(node_id))
        return reachable

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the graph to a dictionary."""
        return {
            "id": self.graph_id,
            "name": self.name,
            "description": self.description,
            "nodes": [node.to_dict() for node in self.nodes.values()],
            "edges": [edge.to_dict() for edge in self.edges],
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, definition: Dict[str, Any]) -> "Graph":
        """
        Build a Graph from a serialized definition.

        Accepts the editor's shape, where the type tag may live in
        ``data.nodeType`` and edge handles in ``sourceHandle`` /
        ``targetHandle``. Editor ``note`` nodes and their edges are
        dropped.
        """
        graph = cls(
            graph_id=definition.get("id") or definition.get("graph_id") or str(uuid.uuid4()),
            name=definition.get("name", "Unnamed Workflow"),
            description=definition.get("description", ""),
            metadata=definition.get("metadata", {}),
        )

        notes = set()
        for raw in definition.get("nodes", []):
            data = dict(raw.get("data") or {})
            node_type = data.pop("nodeType", None) or raw.get("type")
            if node_type == NOTE_TYPE:
                notes.add(raw["id"])
                continue
            graph.add_node(
                node_id=raw["id"],
                node_type=node_type,
                data=data,
                label=raw.get("label") or data.get("label", ""),
            )

        for raw in definition.get("edges", []):
            if raw["source"] in notes or raw["target"] in notes:
                continue
            graph.edges.append(Edge(
                id=raw.get("id") or str(uuid.uuid4()),
                source=raw["source"],
                target=raw["target"],
                source_handle=raw.get("sourceHandle", raw.get("source_handle")),
                target_handle=raw.get("targetHandle", raw.get("target_handle")),
            ))

        return graph

    def to_mermaid(self) -> str:
        """Generate a Mermaid diagram of the graph."""
        lines = ["graph TD"]

        for node in self.nodes.values():
            label = node.label or node.id
            if node.type == NodeType.START.value:
                lines.append(f'    {_mermaid_id(node.id)}(["{label}"])')
            elif node.type == NodeType.END.value:
                lines.append(f'    {_mermaid_id(node.id)}((("{label}")))')
            elif node.type in BRANCHING_TYPES:
                lines.append(f'    {_mermaid_id(node.id)}{{"{label}"}}')
            else:
                lines.append(f'    {_mermaid_id(node.id)}["{label}"]')

        for edge in self.edges:
            source, target = _mermaid_id(edge.source), _mermaid_id(edge.target)
            if edge.source_handle:
                lines.append(f"    {source} -->|{edge.source_handle}| {target}")
            else:
                lines.append(f"    {source} --> {target}")

        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"Graph(name='{self.name}', nodes={list(self.nodes.keys())})"


def _mermaid_id(node_id: str) -> str:
    return node_id.replace("-", "_")

