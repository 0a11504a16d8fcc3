"""
Tests for checkpoint stores, the suspension registry and definition storage.
"""

from datetime import timedelta
import asyncio
import json

import pytest
from filelock import FileLock

from durableflow.engine.errors import CheckpointConflict, CheckpointWriteFailed
from durableflow.storage.atomic import atomic_write
from durableflow.storage.checkpoints import Checkpoint, FileCheckpointStore, InMemoryCheckpointStore, thread_dir_name
from durableflow.storage.memory import GraphStorage, Schedule, ScheduleStorage, WebhookRegistration, WebhookStorage
from durableflow.storage.suspensions import SuspensionRegistry, WaitingOn, WaitType

from conftest import T0, linear_graph


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryCheckpointStore()
    return FileCheckpointStore(tmp_path / "checkpoints")


async def write_chain(store, thread_id, count):
    parent = None
    for i in range(count):
        await store.save(thread_id, f"c{i}", {"step": i}, parent_id=parent, metadata={"graph_id": "g"})
        parent = f"c{i}"
    return parent


# ============================================================
# Checkpoint Store Tests
# ============================================================

class TestCheckpointStore:
    """Tests shared by both checkpoint backends."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, store):
        saved = await store.save("t1", "c0", {"x": 1}, metadata={"graph_id": "g"})

        assert saved.parent_checkpoint_id is None
        latest = await store.get_latest("t1")
        assert latest.checkpoint_id == "c0"
        assert latest.checkpoint == {"x": 1}
        assert (await store.get("t1", "c0")).metadata == {"graph_id": "g"}

    @pytest.mark.asyncio
    async def test_unknown_thread(self, store):
        assert await store.get_latest("nobody") is None
        assert await store.list("nobody") == []
        assert await store.get_thread("nobody") is None
        assert await store.get("nobody", "c0") is None

    @pytest.mark.asyncio
    async def test_list_most_recent_first(self, store):
        await write_chain(store, "t1", 5)

        listed = await store.list("t1", limit=3)
        assert [c.checkpoint_id for c in listed] == ["c4", "c3", "c2"]
        assert listed[0].parent_checkpoint_id == "c3"

    @pytest.mark.asyncio
    async def test_thread_record(self, store):
        await write_chain(store, "t1", 3)

        thread = await store.get_thread("t1")
        assert thread.latest_checkpoint_id == "c2"
        assert thread.checkpoint_count == 3
        assert thread.graph_id == "g"

    @pytest.mark.asyncio
    async def test_second_root_conflicts(self, store):
        await store.save("t1", "c0", {})
        with pytest.raises(CheckpointConflict):
            await store.save("t1", "other", {}, parent_id=None)

    @pytest.mark.asyncio
    async def test_stale_parent_conflicts(self, store):
        await write_chain(store, "t1", 3)
        with pytest.raises(CheckpointConflict) as exc_info:
            await store.save("t1", "late", {}, parent_id="c1")

        assert exc_info.value.expected == "c1"
        assert exc_info.value.actual == "c2"
        assert (await store.get_latest("t1")).checkpoint_id == "c2"

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store):
        await write_chain(store, "t1", 2)
        with pytest.raises(CheckpointWriteFailed) as exc_info:
            await store.save("t1", "c0", {}, parent_id="c1")
        assert not isinstance(exc_info.value, CheckpointConflict)

    @pytest.mark.asyncio
    async def test_threads_are_independent(self, store):
        await store.save("a", "c0", {"thread": "a"})
        await store.save("b", "c0", {"thread": "b"})
        assert (await store.get_latest("b")).checkpoint == {"thread": "b"}

    @pytest.mark.asyncio
    async def test_record_shape(self, store):
        saved = await store.save("t1", "c0", {"x": 1})
        record = saved.to_record()
        assert set(record) == {"threadId", "checkpointId", "parentCheckpointId", "checkpoint", "metadata", "createdAt"}


class TestFileCheckpointStore:
    """Tests specific to the filesystem backend."""

    @pytest.mark.asyncio
    async def test_survives_new_instance(self, tmp_path):
        await write_chain(FileCheckpointStore(tmp_path), "t1", 2)

        reopened = FileCheckpointStore(tmp_path)
        latest = await reopened.get_latest("t1")
        assert latest.checkpoint_id == "c1"
        assert latest.checkpoint == {"step": 1}

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, tmp_path):
        await write_chain(FileCheckpointStore(tmp_path), "t1", 3)
        names = sorted(p.name for p in (tmp_path / "t1").iterdir())
        assert names == [".lock", "c0.json", "c1.json", "c2.json", "index.json"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("thread_id", ["order 42", "../escape", "..", "a/b", "ünïcode"])
    async def test_any_thread_id_stays_inside_base_path(self, tmp_path, thread_id):
        base = tmp_path / "checkpoints"
        store = FileCheckpointStore(base)
        await store.save(thread_id, "c0", {"ok": True})

        assert (await store.get_latest(thread_id)).checkpoint == {"ok": True}
        assert [p.parent for p in base.glob("*/index.json")] == [base / thread_dir_name(thread_id)]
        assert [t.thread_id for t in await store.list_threads()] == [thread_id]

    @pytest.mark.asyncio
    async def test_similar_thread_ids_do_not_collide(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        await store.save("order 42", "c0", {"which": "space"})
        await store.save("order%2042", "c0", {"which": "literal"})

        assert (await store.get_latest("order 42")).checkpoint == {"which": "space"}
        assert (await store.get_latest("order%2042")).checkpoint == {"which": "literal"}

    @pytest.mark.asyncio
    async def test_unstorable_thread_id(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        with pytest.raises(CheckpointWriteFailed):
            await store.save("", "c0", {})
        with pytest.raises(CheckpointWriteFailed):
            await store.save("x" * 300, "c0", {})
        assert await store.get_latest("x" * 300) is None

    @pytest.mark.asyncio
    async def test_unsafe_checkpoint_id(self, tmp_path):
        with pytest.raises(CheckpointWriteFailed):
            await FileCheckpointStore(tmp_path).save("t1", "../c0", {})

    @pytest.mark.asyncio
    async def test_compare_and_set_across_instances(self, tmp_path):
        first = FileCheckpointStore(tmp_path)
        second = FileCheckpointStore(tmp_path)

        outcomes = await asyncio.gather(
            first.save("shared", "from-first", {}),
            second.save("shared", "from-second", {}),
            return_exceptions=True,
        )

        saved = [o for o in outcomes if isinstance(o, Checkpoint)]
        conflicts = [o for o in outcomes if isinstance(o, CheckpointConflict)]
        assert len(saved) == 1 and len(conflicts) == 1
        thread = await FileCheckpointStore(tmp_path).get_thread("shared")
        assert thread.checkpoint_count == 1
        assert thread.latest_checkpoint_id == saved[0].checkpoint_id

    @pytest.mark.asyncio
    async def test_stale_parent_across_instances(self, tmp_path):
        first = FileCheckpointStore(tmp_path)
        second = FileCheckpointStore(tmp_path)
        await first.save("t1", "c0", {})
        await second.save("t1", "c1", {}, parent_id="c0")

        with pytest.raises(CheckpointConflict):
            await first.save("t1", "c1-again", {}, parent_id="c0")

    @pytest.mark.asyncio
    async def test_lock_timeout_fails_write(self, tmp_path):
        store = FileCheckpointStore(tmp_path, lock_timeout=0.05)
        await store.save("t1", "c0", {})

        with FileLock(str(tmp_path / "t1" / ".lock")):
            with pytest.raises(CheckpointWriteFailed, match="Timed out"):
                await store.save("t1", "c1", {}, parent_id="c0")


class TestAtomicWrite:
    """Tests for crash-safe file replacement."""

    def test_replaces_on_success(self, tmp_path):
        target = tmp_path / "nested" / "file.json"
        with atomic_write(target) as f:
            f.write('{"ok": true}')
        assert json.loads(target.read_text()) == {"ok": True}

    def test_keeps_old_content_on_error(self, tmp_path):
        target = tmp_path / "file.txt"
        target.write_text("old")
        with pytest.raises(RuntimeError):
            with atomic_write(target) as f:
                f.write("half")
                raise RuntimeError("crash")
        assert target.read_text() == "old"
        assert [p.name for p in tmp_path.iterdir()] == ["file.txt"]


# ============================================================
# Suspension Registry Tests
# ============================================================

class TestSuspensionRegistry:
    """Tests for the suspension registry."""

    @pytest.mark.asyncio
    async def test_park_and_find(self):
        registry = SuspensionRegistry()
        await registry.park("t1", WaitingOn(type=WaitType.WEBHOOK, id="hook"), "c1", node_id="w")
        await registry.park("t2", WaitingOn(type=WaitType.APPROVAL, id="ap"), "c2")

        assert (await registry.find_by_webhook("hook")).thread_id == "t1"
        assert (await registry.find_by_approval("ap")).thread_id == "t2"
        assert await registry.find_by_webhook("ap") is None
        assert len(registry) == 2

    @pytest.mark.asyncio
    async def test_park_replaces(self):
        registry = SuspensionRegistry()
        await registry.park("t1", WaitingOn(type=WaitType.WEBHOOK, id="a"), "c1")
        await registry.park("t1", WaitingOn(type=WaitType.WEBHOOK, id="b"), "c2")

        record = await registry.get("t1")
        assert record.waiting_on.id == "b"
        assert record.resume_checkpoint_id == "c2"
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_due_timers(self):
        registry = SuspensionRegistry()
        await registry.park("late", WaitingOn(type=WaitType.TIMER, id="d", timeout_at=T0 + timedelta(seconds=20)), "c")
        await registry.park("early", WaitingOn(type=WaitType.APPROVAL, id="a", timeout_at=T0 + timedelta(seconds=10)), "c")
        await registry.park("never", WaitingOn(type=WaitType.WEBHOOK, id="h"), "c")

        assert await registry.find_due_timers(T0) == []
        due = await registry.find_due_timers(T0 + timedelta(seconds=30))
        assert [r.thread_id for r in due] == ["early", "late"]

    @pytest.mark.asyncio
    async def test_clear(self):
        registry = SuspensionRegistry()
        await registry.park("t1", WaitingOn(type=WaitType.WEBHOOK, id="hook"), "c1")

        assert (await registry.clear("t1")).thread_id == "t1"
        assert await registry.clear("t1") is None
        assert await registry.find_by_webhook("hook") is None

    @pytest.mark.asyncio
    async def test_persisted_to_file(self, tmp_path):
        path = tmp_path / "suspensions.json"
        registry = SuspensionRegistry(path)
        await registry.park("t1", WaitingOn(type=WaitType.TIMER, id="d", timeout_at=T0), "c1", graph_id="g")

        reloaded = SuspensionRegistry(path)
        record = await reloaded.get("t1")
        assert record.waiting_on.timeout_at == T0
        assert record.graph_id == "g"

        await reloaded.clear("t1")
        assert await SuspensionRegistry(path).list_all() == []

    @pytest.mark.asyncio
    async def test_clear_only_matching_checkpoint(self):
        registry = SuspensionRegistry()
        await registry.park("t1", WaitingOn(type=WaitType.WEBHOOK, id="hook"), "c2")

        assert await registry.clear("t1", checkpoint_id="c1") is None
        assert (await registry.get("t1")).resume_checkpoint_id == "c2"
        assert (await registry.clear("t1", checkpoint_id="c2")).thread_id == "t1"
        assert await registry.get("t1") is None

    @pytest.mark.asyncio
    async def test_shared_file_between_registries(self, tmp_path):
        path = tmp_path / "suspensions.json"
        first = SuspensionRegistry(path)
        second = SuspensionRegistry(path)

        await first.park("t1", WaitingOn(type=WaitType.APPROVAL, id="ap"), "c1")
        assert (await second.find_by_approval("ap")).thread_id == "t1"

        await second.clear("t1")
        assert await first.get("t1") is None


# ============================================================
# Definition Storage Tests
# ============================================================

class TestDefinitionStorage:
    """Tests for graph, webhook and schedule storage."""

    @pytest.mark.asyncio
    async def test_graph_storage(self):
        storage = GraphStorage()
        graph = linear_graph(("mid", "transform"))
        stored = await storage.save(graph)

        assert await storage.exists("linear")
        rebuilt = stored.build()
        assert list(rebuilt.nodes) == ["start", "mid", "end"]
        assert await storage.delete("linear") is True
        assert await storage.delete("linear") is False

    @pytest.mark.asyncio
    async def test_resave_keeps_created_at(self):
        storage = GraphStorage()
        first = await storage.save(linear_graph())
        second = await storage.save(linear_graph())
        assert second.created_at == first.created_at

    @pytest.mark.asyncio
    async def test_webhook_storage(self):
        storage = WebhookStorage()
        await storage.save(WebhookRegistration(webhook_id="w1", graph_id="g", secret="s"))
        await storage.mark_triggered("w1")

        registration = await storage.get("w1")
        assert registration.last_triggered_at is not None
        assert registration.to_dict()["has_secret"] is True
        assert [w.webhook_id for w in await storage.list_by_graph("g")] == ["w1"]

    @pytest.mark.asyncio
    async def test_schedule_advance_is_compare_and_set(self):
        storage = ScheduleStorage()
        await storage.save(Schedule(schedule_id="s", graph_id="g", cron_expression="* * * * *", next_run_at=T0))

        later = T0 + timedelta(minutes=1)
        assert await storage.advance("s", T0, last_run_at=T0, next_run_at=later) is True
        assert await storage.advance("s", T0, last_run_at=T0, next_run_at=later) is False
        assert (await storage.get("s")).next_run_at == later

    @pytest.mark.asyncio
    async def test_definitions_persisted_to_files(self, tmp_path):
        graphs = GraphStorage(tmp_path / "graphs.json")
        webhooks = WebhookStorage(tmp_path / "webhooks.json")
        schedules = ScheduleStorage(tmp_path / "schedules.json")
        await graphs.save(linear_graph(("mid", "transform", {"template": "x"})))
        await webhooks.save(WebhookRegistration(webhook_id="w1", graph_id="linear", secret="s"))
        await schedules.save(Schedule(schedule_id="s", graph_id="linear", cron_expression="* * * * *", next_run_at=T0))

        stored = await GraphStorage(tmp_path / "graphs.json").get("linear")
        assert stored.build().nodes["mid"].data == {"template": "x"}
        registration = await WebhookStorage(tmp_path / "webhooks.json").get("w1")
        assert registration.secret == "s"
        schedule = await ScheduleStorage(tmp_path / "schedules.json").get("s")
        assert schedule.next_run_at == T0
        assert schedule.last_run_at is None

    @pytest.mark.asyncio
    async def test_schedule_advance_across_instances(self, tmp_path):
        path = tmp_path / "schedules.json"
        first = ScheduleStorage(path)
        await first.save(Schedule(schedule_id="s", graph_id="g", cron_expression="* * * * *", next_run_at=T0))
        second = ScheduleStorage(path)

        later = T0 + timedelta(minutes=1)
        assert await first.advance("s", T0, last_run_at=T0, next_run_at=later) is True
        assert await second.advance("s", T0, last_run_at=T0, next_run_at=later) is False
        assert (await second.get("s")).next_run_at == later
