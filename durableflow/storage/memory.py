"""
Storage for workflow definitions and their triggers.

Provides storage for graphs, webhook registrations and cron schedules,
in memory or in JSON files (see ``durableflow.storage.tables``). Can be
easily replaced with a database implementation.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime
from dataclasses import asdict, dataclass, field, fields

from durableflow.engine.graph import Graph
from durableflow.engine.state import utcnow
from durableflow.storage.tables import JsonTable


@dataclass
class StoredGraph:
    """A stored graph definition."""
    graph_id: str
    name: str
    definition: Dict[str, Any]
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def build(self) -> Graph:
        """Rebuild the Graph object from its definition."""
        return Graph.from_dict(self.definition)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "graph_id": self.graph_id,
            "name": self.name,
            "definition": self.definition,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class WebhookRegistration:
    """A stable webhook path bound to a workflow."""
    webhook_id: str
    graph_id: str
    node_id: Optional[str] = None
    secret: Optional[str] = None
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_triggered_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "webhook_id": self.webhook_id,
            "graph_id": self.graph_id,
            "node_id": self.node_id,
            "has_secret": self.secret is not None,
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat(),
            "last_triggered_at": self.last_triggered_at.isoformat() if self.last_triggered_at else None,
        }


@dataclass
class Schedule:
    """A cron trigger for a workflow."""
    schedule_id: str
    graph_id: str
    cron_expression: str
    enabled: bool = True
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "graph_id": self.graph_id,
            "cron_expression": self.cron_expression,
            "enabled": self.enabled,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "created_at": self.created_at.isoformat(),
        }


def _encode(record: Any) -> Dict[str, Any]:
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in asdict(record).items()
    }


def _decode(record_type: type, raw: Dict[str, Any]) -> Any:
    names = {f.name for f in fields(record_type)}
    values = {}
    for key, value in raw.items():
        if key not in names:
            continue
        if key.endswith("_at") and isinstance(value, str):
            value = datetime.fromisoformat(value)
        values[key] = value
    return record_type(**values)


class GraphStorage(JsonTable):
    """
    Storage for workflow graphs.

    Stores graph definitions by their ID, allowing creation,
    retrieval, update, and deletion operations. Pass ``path`` to keep
    them in a JSON file.
    """

    def encode(self, record: StoredGraph) -> Dict[str, Any]:
        return _encode(record)

    def decode(self, raw: Dict[str, Any]) -> StoredGraph:
        return _decode(StoredGraph, raw)

    async def save(self, graph: Graph) -> StoredGraph:
        """
        Save (or replace) a graph definition.

        Args:
            graph: The graph to store under its graph_id

        Returns:
            The stored graph
        """
        stored = StoredGraph(
            graph_id=graph.graph_id,
            name=graph.name,
            definition=graph.to_dict(),
        )

        def change(graphs: Dict[str, StoredGraph]) -> StoredGraph:
            existing = graphs.get(graph.graph_id)
            if existing:
                stored.created_at = existing.created_at
            graphs[graph.graph_id] = stored
            return stored

        return await self._write(change)

    async def get(self, graph_id: str) -> Optional[StoredGraph]:
        """Get a graph by ID."""
        return (await self._read()).get(graph_id)

    async def delete(self, graph_id: str) -> bool:
        """Delete a graph."""
        return await self._write(lambda graphs: graphs.pop(graph_id, None) is not None)

    async def list_all(self) -> List[StoredGraph]:
        """List all stored graphs."""
        return list((await self._read()).values())

    async def exists(self, graph_id: str) -> bool:
        """Check if a graph exists."""
        return graph_id in await self._read()


class WebhookStorage(JsonTable):
    """Storage for webhook registrations."""

    def encode(self, record: WebhookRegistration) -> Dict[str, Any]:
        return _encode(record)

    def decode(self, raw: Dict[str, Any]) -> WebhookRegistration:
        return _decode(WebhookRegistration, raw)

    async def save(self, registration: WebhookRegistration) -> WebhookRegistration:
        def change(webhooks: Dict[str, WebhookRegistration]) -> WebhookRegistration:
            webhooks[registration.webhook_id] = registration
            return registration

        return await self._write(change)

    async def get(self, webhook_id: str) -> Optional[WebhookRegistration]:
        return (await self._read()).get(webhook_id)

    async def mark_triggered(self, webhook_id: str) -> None:
        def change(webhooks: Dict[str, WebhookRegistration]) -> None:
            if webhook_id in webhooks:
                webhooks[webhook_id].last_triggered_at = utcnow()

        await self._write(change)

    async def list_by_graph(self, graph_id: str) -> List[WebhookRegistration]:
        return [w for w in (await self._read()).values() if w.graph_id == graph_id]


class ScheduleStorage(JsonTable):
    """
    Storage for cron schedules.

    ``advance`` is a compare-and-set on ``next_run_at``: only the caller
    that saw the current value moves the schedule forward. With a file
    behind the table this holds across processes.
    """

    def encode(self, record: Schedule) -> Dict[str, Any]:
        return _encode(record)

    def decode(self, raw: Dict[str, Any]) -> Schedule:
        return _decode(Schedule, raw)

    async def save(self, schedule: Schedule) -> Schedule:
        def change(schedules: Dict[str, Schedule]) -> Schedule:
            schedules[schedule.schedule_id] = schedule
            return schedule

        return await self._write(change)

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        return (await self._read()).get(schedule_id)

    async def list_enabled(self) -> List[Schedule]:
        return [s for s in (await self._read()).values() if s.enabled]

    async def list_all(self) -> List[Schedule]:
        return list((await self._read()).values())

    async def advance(
        self,
        schedule_id: str,
        expected_next_run_at: Optional[datetime],
        last_run_at: datetime,
        next_run_at: datetime,
    ) -> bool:
        """
        Move a schedule to its next fire time.

        Returns:
            False if the schedule changed since ``expected_next_run_at`` was read
        """
        def change(schedules: Dict[str, Schedule]) -> bool:
            schedule = schedules.get(schedule_id)
            if schedule is None or schedule.next_run_at != expected_next_run_at:
                return False
            schedule.last_run_at = last_run_at
            schedule.next_run_at = next_run_at
            return True

        return await self._write(change)

    async def set_next_run(self, schedule_id: str, next_run_at: datetime) -> None:
        """Initialize the next fire time of a schedule that has none."""
        def change(schedules: Dict[str, Schedule]) -> None:
            schedule = schedules.get(schedule_id)
            if schedule is not None and schedule.next_run_at is None:
                schedule.next_run_at = next_run_at

        await self._write(change)

    async def delete(self, schedule_id: str) -> bool:
        return await self._write(lambda schedules: schedules.pop(schedule_id, None) is not None)
