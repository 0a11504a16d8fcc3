"""
Suspension Registry.

Tracks runs parked on an external event (a webhook, a human approval or a
timer) together with the checkpoint to resume from. A parked thread is
only picked up again through one of the lookups here.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
import logging

from durableflow.engine.state import utcnow
from durableflow.storage.tables import JsonTable


logger = logging.getLogger(__name__)


class WaitType(str, Enum):
    """Kinds of external events a run can wait on."""
    WEBHOOK = "webhook"
    APPROVAL = "approval"
    TIMER = "timer"


class WaitingOn(BaseModel):
    """What a suspended run is waiting for."""
    type: WaitType
    id: str
    timeout_at: Optional[datetime] = None


class Suspension(BaseModel):
    """A parked run."""
    thread_id: str
    waiting_on: WaitingOn
    resume_checkpoint_id: str
    node_id: Optional[str] = None
    graph_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class SuspensionRegistry(JsonTable):
    """
    Registry of suspended runs, keyed by thread id.

    A thread has at most one suspension. When ``path`` is given the table
    is kept in that JSON file, shared by every process pointing at it.
    """

    def encode(self, record: Suspension) -> Dict[str, Any]:
        return record.to_dict()

    def decode(self, raw: Dict[str, Any]) -> Suspension:
        return Suspension.model_validate(raw)

    async def park(
        self,
        thread_id: str,
        waiting_on: WaitingOn,
        resume_checkpoint_id: str,
        node_id: Optional[str] = None,
        graph_id: Optional[str] = None,
    ) -> Suspension:
        """
        Park a thread until ``waiting_on`` is delivered.

        Replaces any previous suspension of the same thread.
        """
        record = Suspension(
            thread_id=thread_id,
            waiting_on=waiting_on,
            resume_checkpoint_id=resume_checkpoint_id,
            node_id=node_id,
            graph_id=graph_id,
        )

        def change(records: Dict[str, Suspension]) -> Suspension:
            records[thread_id] = record
            return record

        await self._write(change)
        logger.info(f"Parked thread '{thread_id}' on {waiting_on.type.value} '{waiting_on.id}'")
        return record

    async def get(self, thread_id: str) -> Optional[Suspension]:
        return (await self._read()).get(thread_id)

    async def _find(self, wait_type: WaitType, event_id: str) -> Optional[Suspension]:
        matches = [
            r for r in (await self._read()).values()
            if r.waiting_on.type == wait_type and r.waiting_on.id == event_id
        ]
        if not matches:
            return None
        return min(matches, key=lambda r: r.created_at)

    async def find_by_webhook(self, webhook_id: str) -> Optional[Suspension]:
        """The oldest thread parked on a webhook id."""
        return await self._find(WaitType.WEBHOOK, webhook_id)

    async def find_by_approval(self, approval_id: str) -> Optional[Suspension]:
        return await self._find(WaitType.APPROVAL, approval_id)

    async def find_due_timers(self, now: Optional[datetime] = None) -> List[Suspension]:
        """Every suspension whose ``timeout_at`` has passed, oldest deadline first."""
        now = now or utcnow()
        due = [
            r for r in (await self._read()).values()
            if r.waiting_on.timeout_at is not None and r.waiting_on.timeout_at <= now
        ]
        return sorted(due, key=lambda r: r.waiting_on.timeout_at)

    async def clear(self, thread_id: str, checkpoint_id: Optional[str] = None) -> Optional[Suspension]:
        """
        Remove a thread's suspension.

        Args:
            thread_id: Thread to unpark
            checkpoint_id: Only remove the suspension if it resumes from
                this checkpoint

        Returns:
            The removed record, or None if nothing was removed
        """
        def change(records: Dict[str, Suspension]) -> Optional[Suspension]:
            record = records.get(thread_id)
            if record is None:
                return None
            if checkpoint_id is not None and record.resume_checkpoint_id != checkpoint_id:
                return None
            return records.pop(thread_id)

        return await self._write(change)

    async def list_all(self) -> List[Suspension]:
        return list((await self._read()).values())
