"""
Executors package - the node executor contract, registry and built-ins.

Importing this package registers every built-in executor in
``executor_registry``.
"""

from durableflow.executors.base import (
    Capabilities,
    Completed,
    ExecResult,
    Failed,
    Suspend,
)
from durableflow.executors.registry import (
    ExecutorRegistry,
    ExecutorSpec,
    executor_registry,
    register_executor,
)
from durableflow.executors import flow, data, http, retriever, mcp, guardrails, agent  # noqa: F401

__all__ = [
    "Capabilities",
    "Completed",
    "ExecResult",
    "Failed",
    "Suspend",
    "ExecutorRegistry",
    "ExecutorSpec",
    "executor_registry",
    "register_executor",
]
