"""
Checkpoint Store.

Durable, append-only persistence of ``(thread_id, checkpoint_id) ->
snapshot``. The checkpoints of a thread form a single linked list through
their parent pointers; the most recent one is the authoritative resume
point. Writes are compare-and-set on that pointer so two steppers can never
both extend the same thread.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from pathlib import Path
import asyncio
import logging
import re
from urllib.parse import quote

from filelock import FileLock, Timeout as FileLockTimeout

from durableflow.engine.errors import CheckpointConflict, CheckpointWriteFailed
from durableflow.engine.state import utcnow
from durableflow.storage.atomic import atomic_write


logger = logging.getLogger(__name__)


class Checkpoint(BaseModel):
    """
    An immutable snapshot of run state after a node step.

    Serialized with the stable camelCase field names
    ``threadId, checkpointId, parentCheckpointId, checkpoint, metadata,
    createdAt``.
    """
    thread_id: str = Field(..., alias="threadId")
    checkpoint_id: str = Field(..., alias="checkpointId")
    parent_checkpoint_id: Optional[str] = Field(None, alias="parentCheckpointId")
    checkpoint: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")

    class Config:
        populate_by_name = True
        frozen = True

    def to_record(self) -> Dict[str, Any]:
        """The persisted shape."""
        return self.model_dump(mode="json", by_alias=True)


class ThreadRecord(BaseModel):
    """The identity correlating all checkpoints of one run."""
    thread_id: str
    graph_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    latest_checkpoint_id: Optional[str] = None
    checkpoint_count: int = 0

    def touch(self, checkpoint: Checkpoint) -> "ThreadRecord":
        return self.model_copy(update={
            "graph_id": self.graph_id or checkpoint.metadata.get("graph_id"),
            "updated_at": checkpoint.created_at,
            "latest_checkpoint_id": checkpoint.checkpoint_id,
            "checkpoint_count": self.checkpoint_count + 1,
        })


class CheckpointStore(ABC):
    """Interface shared by the checkpoint store backends."""

    @abstractmethod
    async def save(
        self,
        thread_id: str,
        checkpoint_id: str,
        snapshot: Dict[str, Any],
        parent_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Checkpoint:
        """
        Append a checkpoint to a thread.

        Args:
            thread_id: Thread to extend (created on first write)
            checkpoint_id: New, unique checkpoint id
            snapshot: Serialized run state
            parent_id: Must equal the thread's current latest checkpoint id
                (None for a new thread)
            metadata: Free-form metadata stored alongside

        Raises:
            CheckpointConflict: If ``parent_id`` is not the latest checkpoint
            CheckpointWriteFailed: If the write could not be made durable
        """

    @abstractmethod
    async def get_latest(self, thread_id: str) -> Optional[Checkpoint]:
        """The most recent checkpoint of a thread."""

    @abstractmethod
    async def get(self, thread_id: str, checkpoint_id: str) -> Optional[Checkpoint]:
        """A specific checkpoint."""

    @abstractmethod
    async def list(self, thread_id: str, limit: int = 10) -> List[Checkpoint]:
        """Checkpoints of a thread, most recent first."""

    @abstractmethod
    async def get_thread(self, thread_id: str) -> Optional[ThreadRecord]:
        """The thread record, or None if nothing was written for it."""

    @abstractmethod
    async def list_threads(self) -> List[ThreadRecord]:
        """Every thread with at least one checkpoint."""


def _check_write(
    thread_id: str,
    checkpoint_id: str,
    parent_id: Optional[str],
    thread: Optional[ThreadRecord],
    existing_ids: Any,
) -> None:
    latest = thread.latest_checkpoint_id if thread else None
    if parent_id != latest:
        raise CheckpointConflict(thread_id, parent_id, latest)
    if checkpoint_id in existing_ids:
        raise CheckpointWriteFailed(
            f"Checkpoint '{checkpoint_id}' already exists on thread '{thread_id}'"
        )


class InMemoryCheckpointStore(CheckpointStore):
    """
    Checkpoint store held in process memory.

    Durable only for the lifetime of the process; used for tests and
    single-process deployments.
    """

    def __init__(self):
        self._checkpoints: Dict[str, Dict[str, Checkpoint]] = {}
        self._order: Dict[str, List[str]] = {}
        self._threads: Dict[str, ThreadRecord] = {}
        self._lock = asyncio.Lock()

    async def save(
        self,
        thread_id: str,
        checkpoint_id: str,
        snapshot: Dict[str, Any],
        parent_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Checkpoint:
        async with self._lock:
            thread = self._threads.get(thread_id)
            _check_write(thread_id, checkpoint_id, parent_id, thread, self._checkpoints.get(thread_id, {}))

            checkpoint = Checkpoint(
                thread_id=thread_id,
                checkpoint_id=checkpoint_id,
                parent_checkpoint_id=parent_id,
                checkpoint=snapshot,
                metadata=metadata or {},
            )
            self._checkpoints.setdefault(thread_id, {})[checkpoint_id] = checkpoint
            self._order.setdefault(thread_id, []).append(checkpoint_id)
            self._threads[thread_id] = (thread or ThreadRecord(thread_id=thread_id)).touch(checkpoint)

            logger.debug(f"Saved checkpoint {checkpoint_id} on thread {thread_id}")
            return checkpoint

    async def get_latest(self, thread_id: str) -> Optional[Checkpoint]:
        async with self._lock:
            thread = self._threads.get(thread_id)
            if not thread or not thread.latest_checkpoint_id:
                return None
            return self._checkpoints[thread_id][thread.latest_checkpoint_id]

    async def get(self, thread_id: str, checkpoint_id: str) -> Optional[Checkpoint]:
        async with self._lock:
            return self._checkpoints.get(thread_id, {}).get(checkpoint_id)

    async def list(self, thread_id: str, limit: int = 10) -> List[Checkpoint]:
        async with self._lock:
            ids = self._order.get(thread_id, [])
            recent = list(reversed(ids))[:limit]
            return [self._checkpoints[thread_id][cid] for cid in recent]

    async def get_thread(self, thread_id: str) -> Optional[ThreadRecord]:
        async with self._lock:
            return self._threads.get(thread_id)

    async def list_threads(self) -> List[ThreadRecord]:
        async with self._lock:
            return list(self._threads.values())

    def __len__(self) -> int:
        return len(self._threads)


class ThreadIndex(BaseModel):
    """On-disk index of a thread's checkpoints, oldest first."""
    thread: ThreadRecord
    checkpoint_ids: List[str] = Field(default_factory=list)


_SAFE_ID = re.compile(r"^[A-Za-z0-9_.:@-]+$")
MAX_DIR_NAME_LENGTH = 240


def thread_dir_name(thread_id: str) -> str:
    """
    Directory name of a thread.

    Thread ids are percent-encoded, so any id maps to a single path
    component and two ids never share a directory.
    """
    if not thread_id:
        raise CheckpointWriteFailed("Thread id cannot be empty")
    name = quote(thread_id, safe="")
    if name in (".", ".."):
        name = name.replace(".", "%2E")
    if len(name) > MAX_DIR_NAME_LENGTH:
        raise CheckpointWriteFailed(f"Thread id '{thread_id[:40]}...' is too long to store")
    return name


class FileCheckpointStore(CheckpointStore):
    """
    Checkpoint store on the local filesystem.

    Directory structure:
        {base_path}/
            {thread_id}/                # percent-encoded
                .lock                   # held around every write
                index.json              # ThreadIndex, written last
                {checkpoint_id}.json    # One file per checkpoint

    Checkpoint files and the index are written atomically (temp file +
    fsync + rename). A checkpoint is acknowledged only once the index
    points at it. The parent check and the write happen under a file lock
    on the thread directory, so the compare-and-set holds across store
    instances and processes sharing ``base_path``.
    """

    LOCK_TIMEOUT = 30

    def __init__(self, base_path: Any, lock_timeout: Optional[float] = None):
        self.base_path = Path(base_path)
        self.lock_timeout = lock_timeout if lock_timeout is not None else self.LOCK_TIMEOUT

    def _thread_dir(self, thread_id: str) -> Path:
        return self.base_path / thread_dir_name(thread_id)

    def _stored_dir(self, thread_id: str) -> Optional[Path]:
        """The thread's directory for reads; None for ids that can never be stored."""
        try:
            return self._thread_dir(thread_id)
        except CheckpointWriteFailed:
            return None

    def _read_index(self, thread_id: str) -> Optional[ThreadIndex]:
        thread_dir = self._stored_dir(thread_id)
        if thread_dir is None or not (thread_dir / "index.json").exists():
            return None
        return ThreadIndex.model_validate_json((thread_dir / "index.json").read_text())

    def _read_checkpoint(self, thread_id: str, checkpoint_id: str) -> Optional[Checkpoint]:
        thread_dir = self._stored_dir(thread_id)
        if thread_dir is None or not _SAFE_ID.match(checkpoint_id):
            return None
        path = thread_dir / f"{checkpoint_id}.json"
        if not path.exists():
            return None
        return Checkpoint.model_validate_json(path.read_text())

    def _save_locked(
        self,
        thread_id: str,
        checkpoint_id: str,
        snapshot: Dict[str, Any],
        parent_id: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> Checkpoint:
        thread_dir = self._thread_dir(thread_id)
        try:
            thread_dir.mkdir(parents=True, exist_ok=True)
            lock = FileLock(str(thread_dir / ".lock"), timeout=self.lock_timeout)
            lock.acquire()
        except FileLockTimeout as e:
            raise CheckpointWriteFailed(
                f"Timed out after {self.lock_timeout}s waiting for the lock of thread '{thread_id}'"
            ) from e
        except OSError as e:
            raise CheckpointWriteFailed(f"Cannot lock thread '{thread_id}': {e}") from e

        try:
            index = self._read_index(thread_id)
            _check_write(
                thread_id,
                checkpoint_id,
                parent_id,
                index.thread if index else None,
                set(index.checkpoint_ids) if index else set(),
            )

            checkpoint = Checkpoint(
                thread_id=thread_id,
                checkpoint_id=checkpoint_id,
                parent_checkpoint_id=parent_id,
                checkpoint=snapshot,
                metadata=metadata or {},
            )
            thread = (index.thread if index else ThreadRecord(thread_id=thread_id)).touch(checkpoint)
            new_index = ThreadIndex(
                thread=thread,
                checkpoint_ids=(index.checkpoint_ids if index else []) + [checkpoint_id],
            )

            try:
                with atomic_write(thread_dir / f"{checkpoint_id}.json") as f:
                    f.write(checkpoint.model_dump_json(by_alias=True, indent=2))
                with atomic_write(thread_dir / "index.json") as f:
                    f.write(new_index.model_dump_json(indent=2))
            except OSError as e:
                raise CheckpointWriteFailed(
                    f"Failed to write checkpoint '{checkpoint_id}' on thread '{thread_id}': {e}"
                ) from e
            return checkpoint
        finally:
            lock.release()

    async def save(
        self,
        thread_id: str,
        checkpoint_id: str,
        snapshot: Dict[str, Any],
        parent_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Checkpoint:
        if not _SAFE_ID.match(checkpoint_id):
            raise CheckpointWriteFailed(f"Checkpoint id '{checkpoint_id}' is not safe to use as a file name")

        checkpoint = await asyncio.to_thread(
            self._save_locked, thread_id, checkpoint_id, snapshot, parent_id, metadata
        )
        logger.debug(f"Saved checkpoint {checkpoint_id} on thread {thread_id}")
        return checkpoint

    async def get_latest(self, thread_id: str) -> Optional[Checkpoint]:
        index = await asyncio.to_thread(self._read_index, thread_id)
        if not index or not index.thread.latest_checkpoint_id:
            return None
        return await asyncio.to_thread(self._read_checkpoint, thread_id, index.thread.latest_checkpoint_id)

    async def get(self, thread_id: str, checkpoint_id: str) -> Optional[Checkpoint]:
        return await asyncio.to_thread(self._read_checkpoint, thread_id, checkpoint_id)

    async def list(self, thread_id: str, limit: int = 10) -> List[Checkpoint]:
        index = await asyncio.to_thread(self._read_index, thread_id)
        if not index:
            return []

        def _read_many() -> List[Checkpoint]:
            found = []
            for checkpoint_id in list(reversed(index.checkpoint_ids))[:limit]:
                checkpoint = self._read_checkpoint(thread_id, checkpoint_id)
                if checkpoint is not None:
                    found.append(checkpoint)
            return found

        return await asyncio.to_thread(_read_many)

    async def get_thread(self, thread_id: str) -> Optional[ThreadRecord]:
        index = await asyncio.to_thread(self._read_index, thread_id)
        return index.thread if index else None

    async def list_threads(self) -> List[ThreadRecord]:
        """Every thread stored under ``base_path``."""
        def _scan() -> List[ThreadRecord]:
            if not self.base_path.exists():
                return []
            found = []
            for index_path in self.base_path.glob("*/index.json"):
                found.append(ThreadIndex.model_validate_json(index_path.read_text()).thread)
            return found

        return await asyncio.to_thread(_scan)
