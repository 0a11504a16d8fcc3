"""
Storage package - checkpoints, suspensions and workflow definitions.
"""

from durableflow.storage.checkpoints import (
    Checkpoint,
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
    ThreadRecord,
)
from durableflow.storage.suspensions import (
    Suspension,
    SuspensionRegistry,
    WaitingOn,
    WaitType,
)
from durableflow.storage.memory import (
    GraphStorage,
    Schedule,
    ScheduleStorage,
    StoredGraph,
    WebhookRegistration,
    WebhookStorage,
)

__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
    "ThreadRecord",
    "Suspension",
    "SuspensionRegistry",
    "WaitingOn",
    "WaitType",
    "GraphStorage",
    "Schedule",
    "ScheduleStorage",
    "StoredGraph",
    "WebhookRegistration",
    "WebhookStorage",
]
