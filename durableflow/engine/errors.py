"""
Error taxonomy for the execution engine.

Node-level failures are captured into the run result; the exceptions here
are raised where a caller has to decide what to do (load-time validation,
persistence, resumption).
"""

from typing import List, Optional


class WorkflowError(Exception):
    """Base class for all engine errors."""

    error_type = "WorkflowError"


class UnknownNodeType(WorkflowError):
    """A node declares a type tag with no registered executor."""

    error_type = "UnknownNodeType"

    def __init__(self, node_type: str, node_id: Optional[str] = None):
        self.node_type = node_type
        self.node_id = node_id
        where = f" (node '{node_id}')" if node_id else ""
        super().__init__(f"No executor registered for node type '{node_type}'{where}")


class NoRouteMatched(WorkflowError):
    """A router node had no truthy route."""

    error_type = "NoRouteMatched"

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"No route matched for router node '{node_id}'")


class LoopLimitExceeded(WorkflowError):
    """A loop (or the whole run) went past its iteration cap."""

    error_type = "LoopLimitExceeded"

    def __init__(self, node_id: str, limit: int):
        self.node_id = node_id
        self.limit = limit
        super().__init__(f"Node '{node_id}' exceeded the iteration limit of {limit}")


class ExecutorFailed(WorkflowError):
    """Wraps a node-level error with the failing node id."""

    error_type = "ExecutorFailed"

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        self.message = message
        super().__init__(f"Node '{node_id}' failed: {message}")


class CheckpointWriteFailed(WorkflowError):
    """A checkpoint could not be persisted. Always fatal to the step."""

    error_type = "CheckpointWriteFailed"


class CheckpointConflict(CheckpointWriteFailed):
    """The parent pointer of a write no longer matches the thread's latest checkpoint."""

    error_type = "CheckpointConflict"

    def __init__(self, thread_id: str, expected: Optional[str], actual: Optional[str]):
        self.thread_id = thread_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checkpoint conflict on thread '{thread_id}': "
            f"parent {expected!r} but latest is {actual!r}"
        )


class ResumeTargetMissing(WorkflowError):
    """A resume event arrived for a thread with no matching suspension."""

    error_type = "ResumeTargetMissing"


class ThreadBusy(WorkflowError):
    """Another invocation is already stepping this thread."""

    error_type = "ThreadBusy"

    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__(f"Thread '{thread_id}' is already running")


class GraphValidationError(WorkflowError):
    """The graph failed structural validation."""

    error_type = "GraphValidationError"

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__(f"Graph validation failed: {errors}")


class ExpressionError(WorkflowError):
    """A condition or mapping expression could not be evaluated."""

    error_type = "ExpressionError"
