"""
Run State for the Execution Engine.

RunState is everything a run needs to continue after a crash or a
suspension: it is the opaque payload stored in every checkpoint. Updates
follow an immutable pattern - each helper returns a new state.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from copy import deepcopy
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeStatus(str, Enum):
    """Status of a single node within a run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SUSPENDED = "suspended"


class RunStatus(str, Enum):
    """Status of a run as recorded in its checkpoints."""
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NodeResult(BaseModel):
    """Outcome of the last execution of a node."""
    status: NodeStatus = NodeStatus.PENDING
    output: Any = None
    error: Optional[str] = None
    handle: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RunState(BaseModel):
    """
    The state of one run (thread).

    Attributes:
        variables: node id -> last output, plus ``lastOutput`` and the
            flat ``state`` namespace written by set-state nodes
        node_results: node id -> NodeResult
        pending: ordered work queue of node ids still to execute
        loop_counters: while-node id -> iterations taken so far
    """

    thread_id: str
    graph_id: str
    input: Any = None
    variables: Dict[str, Any] = Field(default_factory=lambda: {"lastOutput": None, "state": {}})
    node_results: Dict[str, NodeResult] = Field(default_factory=dict)
    current_node_id: Optional[str] = None
    pending: List[str] = Field(default_factory=list)
    loop_counters: Dict[str, int] = Field(default_factory=dict)
    step_count: int = 0
    status: RunStatus = RunStatus.RUNNING
    error: Optional[str] = None
    error_type: Optional[str] = None
    terminal_node_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def last_output(self) -> Any:
        return self.variables.get("lastOutput")

    def record_output(
        self,
        node_id: str,
        output: Any,
        state_updates: Optional[Dict[str, Any]] = None,
    ) -> "RunState":
        """Store a node's output under its id and as ``lastOutput``."""
        variables = deepcopy(self.variables)
        variables[node_id] = deepcopy(output)
        variables["lastOutput"] = deepcopy(output)
        if state_updates:
            namespace = dict(variables.get("state") or {})
            namespace.update(deepcopy(state_updates))
            variables["state"] = namespace
        return self.model_copy(update={"variables": variables, "updated_at": utcnow()})

    def with_node_result(self, node_id: str, result: NodeResult) -> "RunState":
        node_results = dict(self.node_results)
        node_results[node_id] = result
        return self.model_copy(update={"node_results": node_results, "updated_at": utcnow()})

    def increment_loop(self, node_id: str) -> "RunState":
        counters = dict(self.loop_counters)
        counters[node_id] = counters.get(node_id, 0) + 1
        return self.model_copy(update={"loop_counters": counters})

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict (the checkpoint payload)."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunState":
        return cls.model_validate(data)
