"""
Engine package - Graph model, run state, variable resolution and errors.

The execution engine itself lives in ``durableflow.engine.executor``.
"""

from durableflow.engine.errors import (
    WorkflowError,
    UnknownNodeType,
    NoRouteMatched,
    LoopLimitExceeded,
    ExecutorFailed,
    CheckpointWriteFailed,
    CheckpointConflict,
    ResumeTargetMissing,
    ThreadBusy,
    GraphValidationError,
    ExpressionError,
)
from durableflow.engine.graph import Graph, Node, Edge, NodeType, Handle
from durableflow.engine.state import RunState, RunStatus, NodeResult, NodeStatus
from durableflow.engine.events import EventBus, EventType, RunEvent

__all__ = [
    "WorkflowError",
    "UnknownNodeType",
    "NoRouteMatched",
    "LoopLimitExceeded",
    "ExecutorFailed",
    "CheckpointWriteFailed",
    "CheckpointConflict",
    "ResumeTargetMissing",
    "ThreadBusy",
    "GraphValidationError",
    "ExpressionError",
    "Graph",
    "Node",
    "Edge",
    "NodeType",
    "Handle",
    "RunState",
    "RunStatus",
    "NodeResult",
    "NodeStatus",
    "EventBus",
    "EventType",
    "RunEvent",
]
