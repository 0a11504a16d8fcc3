"""
Executor contract.

An executor turns one node plus the current run state into exactly one of
three outcomes: Completed, Failed or Suspend. Executors only ever see the
capabilities they declared, never the engine or its stores.
"""

from typing import Any, Callable, Dict, Iterable, Optional, Union
from dataclasses import dataclass, field, fields, replace
from datetime import datetime

from durableflow.engine.resolver import build_scope
from durableflow.engine.state import utcnow
from durableflow.storage.suspensions import WaitingOn


@dataclass
class Completed:
    """
    The node finished.

    Attributes:
        output: Value stored under the node id and as ``lastOutput``
        handle: Output handle to route on (branching nodes only)
        state_updates: Entries merged into the flat ``state`` namespace
        details: Extra data recorded in the node result for observability
    """
    output: Any = None
    handle: Optional[str] = None
    state_updates: Optional[Dict[str, Any]] = None
    details: Optional[Dict[str, Any]] = None


@dataclass
class Failed:
    """The node failed; ``error_type`` names the failure for the run result."""
    error: str
    error_type: str = "ExecutorFailed"
    output: Any = None
    details: Optional[Dict[str, Any]] = None


@dataclass
class Suspend:
    """The node cannot complete synchronously and waits on an external event."""
    waiting_on: WaitingOn
    output: Any = None


ExecResult = Union[Completed, Failed, Suspend]


@dataclass
class Capabilities:
    """
    Side-effecting services available to executors.

    See ``durableflow.capabilities`` for the expected interface of each.
    """
    llm: Any = None
    http: Any = None
    mcp: Any = None
    retriever: Any = None
    code_runner: Any = None
    secrets: Dict[str, str] = field(default_factory=dict)
    clock: Callable[[], datetime] = utcnow

    def scoped(self, requires: Iterable[str]) -> "Capabilities":
        """
        A copy holding only the required capabilities.

        ``secrets`` is only passed to executors that ask for it; ``clock``
        is always available.
        """
        wanted = set(requires)
        cleared = {}
        for f in fields(self):
            if f.name == "clock" or f.name in wanted:
                continue
            cleared[f.name] = {} if f.name == "secrets" else None
        return replace(self, **cleared)


def scope_of(state: Any) -> Dict[str, Any]:
    """Template/expression namespace for a run state."""
    return build_scope(state.variables, state.input)
