"""
Executor Registry.

Maps a node's type tag to the async function that executes it. Each
executor declares which capabilities it needs; the engine hands it a
capability bundle narrowed to exactly those.
"""

from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
from dataclasses import dataclass, field
from enum import Enum
import logging

from durableflow.engine.errors import UnknownNodeType


logger = logging.getLogger(__name__)


ExecutorFunc = Callable[..., Awaitable[Any]]


@dataclass
class ExecutorSpec:
    """
    A registered executor.

    Attributes:
        node_type: Type tag handled by this executor
        func: ``async (node, state, capabilities) -> ExecResult``
        requires: Capability names passed through to the executor
        description: Human-readable description
    """
    node_type: str
    func: ExecutorFunc
    requires: Tuple[str, ...] = field(default_factory=tuple)
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.node_type,
            "requires": list(self.requires),
            "description": self.description,
        }


class ExecutorRegistry:
    """
    Registry of node executors.

    Usage:
        registry = ExecutorRegistry()

        @registry.register("transform")
        async def execute_transform(node, state, capabilities):
            return Completed(output=...)

        spec = registry.get("transform")
    """

    def __init__(self):
        self._executors: Dict[str, ExecutorSpec] = {}

    def register(
        self,
        node_type: Any,
        requires: Iterable[str] = (),
        description: str = "",
    ) -> Callable[[ExecutorFunc], ExecutorFunc]:
        """
        Decorator to register a function as the executor of a node type.

        Args:
            node_type: Type tag (string or NodeType)
            requires: Capability names the executor needs
            description: Description (defaults to the docstring)
        """
        def decorator(func: ExecutorFunc) -> ExecutorFunc:
            self.add(func, node_type, requires, description)
            return func

        return decorator

    def add(
        self,
        func: ExecutorFunc,
        node_type: Any,
        requires: Iterable[str] = (),
        description: str = "",
    ) -> None:
        """Directly add an executor (non-decorator version)."""
        tag = node_type.value if isinstance(node_type, Enum) else str(node_type)
        self._executors[tag] = ExecutorSpec(
            node_type=tag,
            func=func,
            requires=tuple(requires),
            description=(description or func.__doc__ or "").strip(),
        )
        logger.debug(f"Registered executor: {tag}")

    def get(self, node_type: str, node_id: Optional[str] = None) -> ExecutorSpec:
        """
        Get the executor for a type tag.

        Raises:
            UnknownNodeType: If no executor is registered for the tag
        """
        spec = self._executors.get(node_type)
        if spec is None:
            raise UnknownNodeType(node_type, node_id)
        return spec

    def has(self, node_type: str) -> bool:
        return node_type in self._executors

    def remove(self, node_type: str) -> bool:
        return self._executors.pop(node_type, None) is not None

    def list_types(self) -> List[Dict[str, Any]]:
        return [spec.to_dict() for spec in self._executors.values()]

    def copy(self) -> "ExecutorRegistry":
        """A registry with the same executors, safe to extend independently."""
        clone = ExecutorRegistry()
        clone._executors = dict(self._executors)
        return clone

    def __contains__(self, node_type: str) -> bool:
        return self.has(node_type)

    def __len__(self) -> int:
        return len(self._executors)


# Global executor registry, populated by durableflow.executors
executor_registry = ExecutorRegistry()


def register_executor(
    node_type: Any,
    requires: Iterable[str] = (),
    description: str = "",
) -> Callable[[ExecutorFunc], ExecutorFunc]:
    """Register an executor in the global registry."""
    return executor_registry.register(node_type, requires, description)
