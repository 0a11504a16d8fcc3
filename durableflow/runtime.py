"""
Runtime wiring.

Builds the engine, its stores and the scheduler from settings. The API
routes resolve the active runtime through ``get_runtime`` so tests can
swap in their own with ``app.dependency_overrides``.
"""

from typing import Optional
from dataclasses import dataclass
from pathlib import Path
import logging

from durableflow.capabilities import HttpClient, MCPClient
from durableflow.config import settings
from durableflow.engine.events import EventBus
from durableflow.engine.executor import Engine
from durableflow.executors import Capabilities, ExecutorRegistry, executor_registry
from durableflow.scheduler import Scheduler
from durableflow.storage.checkpoints import CheckpointStore, FileCheckpointStore, InMemoryCheckpointStore
from durableflow.storage.memory import GraphStorage, ScheduleStorage, WebhookStorage
from durableflow.storage.suspensions import SuspensionRegistry


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything the service needs, built once per process."""
    engine: Engine
    graphs: GraphStorage
    webhooks: WebhookStorage
    schedules: ScheduleStorage
    scheduler: Scheduler


def build_checkpoint_store() -> CheckpointStore:
    if settings.CHECKPOINT_BACKEND == "file":
        logger.info(f"Using file checkpoints at {settings.CHECKPOINT_DIR}")
        return FileCheckpointStore(settings.CHECKPOINT_DIR)
    if settings.CHECKPOINT_BACKEND != "memory":
        raise ValueError(f"Unknown CHECKPOINT_BACKEND '{settings.CHECKPOINT_BACKEND}'")
    return InMemoryCheckpointStore()


def state_file(name: str) -> Optional[Path]:
    """Where a definition table lives; None keeps it in memory."""
    if settings.CHECKPOINT_BACKEND != "file":
        return None
    return Path(settings.STATE_DIR) / name


def create_runtime(
    capabilities: Optional[Capabilities] = None,
    checkpoints: Optional[CheckpointStore] = None,
    registry: Optional[ExecutorRegistry] = None,
) -> Runtime:
    """
    Build a runtime.

    With ``CHECKPOINT_BACKEND=file`` the graphs, webhooks, schedules and
    suspensions are kept as JSON files under ``STATE_DIR``, so a new
    process picks up where the previous one stopped.

    Args:
        capabilities: Executor capabilities (defaults to HTTP and MCP clients)
        checkpoints: Checkpoint store (defaults to ``CHECKPOINT_BACKEND``)
        registry: Executor registry (defaults to the built-ins)
    """
    graphs = GraphStorage(state_file("graphs.json"))
    schedules = ScheduleStorage(state_file("schedules.json"))
    engine = Engine(
        registry=registry if registry is not None else executor_registry,
        checkpoints=checkpoints if checkpoints is not None else build_checkpoint_store(),
        suspensions=SuspensionRegistry(settings.SUSPENSION_FILE or state_file("suspensions.json")),
        graphs=graphs,
        capabilities=capabilities or Capabilities(http=HttpClient(), mcp=MCPClient()),
        events=EventBus(),
    )
    return Runtime(
        engine=engine,
        graphs=graphs,
        webhooks=WebhookStorage(state_file("webhooks.json")),
        schedules=schedules,
        scheduler=Scheduler(engine, schedules, graphs),
    )


_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    """The process-wide runtime (FastAPI dependency)."""
    global _runtime
    if _runtime is None:
        _runtime = create_runtime()
    return _runtime
