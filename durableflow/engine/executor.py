"""
Durable Execution Engine.

The engine steps a graph one node at a time and persists a checkpoint
after every step, so a run can be suspended on an external event (webhook,
approval, timer) or interrupted by a crash and continued later from its
latest checkpoint.
"""

from typing import Any, Dict, List, Optional, Set, Tuple
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import asyncio
import logging
import time
import uuid

from pydantic import BaseModel

from durableflow.config import settings
from durableflow.engine.errors import (
    CheckpointConflict,
    CheckpointWriteFailed,
    ExecutorFailed,
    LoopLimitExceeded,
    ResumeTargetMissing,
    ThreadBusy,
    WorkflowError,
)
from durableflow.engine.events import EventBus, EventType, RunEvent
from durableflow.engine.graph import Edge, Graph, Handle, Node, NodeType
from durableflow.engine.state import NodeResult, NodeStatus, RunState, RunStatus, utcnow
from durableflow.executors import Capabilities, Completed, ExecResult, Failed, Suspend
from durableflow.executors.registry import ExecutorRegistry, executor_registry
from durableflow.storage.checkpoints import CheckpointStore, InMemoryCheckpointStore
from durableflow.storage.memory import GraphStorage
from durableflow.storage.suspensions import Suspension, SuspensionRegistry, WaitingOn, WaitType


logger = logging.getLogger(__name__)


class ExecutionStatus(str, Enum):
    """Outcome of a run / resume call."""
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    IGNORED = "ignored"


class ResumeKind(str, Enum):
    """Kinds of events that wake a suspended run."""
    WEBHOOK = "webhook"
    APPROVAL = "approval"
    TIMER = "timer"
    TIMED_OUT = "timed_out"


class ResumeEvent(BaseModel):
    """
    An external event delivered to a suspended run.

    Attributes:
        kind: What happened
        payload: Webhook body, or ``{decision, comment}`` for approvals
        id: Webhook / approval id the event was addressed to
    """
    kind: ResumeKind
    payload: Any = None
    id: Optional[str] = None


@dataclass
class ExecutionStep:
    """A single step in the execution log."""
    step: int
    node: str
    node_type: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    result: str = "success"
    error: Optional[str] = None
    handle: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "node": self.node,
            "node_type": self.node_type,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "result": self.result,
            "error": self.error,
            "handle": self.handle,
        }


@dataclass
class RunResult:
    """Result of one engine invocation (run, resume or timer sweep)."""
    thread_id: str
    graph_id: Optional[str]
    status: ExecutionStatus
    output: Any = None
    variables: Dict[str, Any] = field(default_factory=dict)
    node_results: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None
    waiting_on: Optional[Dict[str, Any]] = None
    checkpoint_id: Optional[str] = None
    terminal_node_id: Optional[str] = None
    execution_log: List[ExecutionStep] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_duration_ms: Optional[float] = None
    steps: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "graph_id": self.graph_id,
            "status": self.status.value,
            "output": self.output,
            "variables": self.variables,
            "node_results": self.node_results,
            "error": self.error,
            "error_type": self.error_type,
            "waiting_on": self.waiting_on,
            "checkpoint_id": self.checkpoint_id,
            "terminal_node_id": self.terminal_node_id,
            "execution_log": [step.to_dict() for step in self.execution_log],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "total_duration_ms": self.total_duration_ms,
            "steps": self.steps,
        }


_APPROVE_VALUES = {"approve", "approved", "yes", "true"}
_STALE = "suspension is stale"


class Engine:
    """
    Durable, resumable graph engine.

    Executes one node at a time from the run's work queue, writes a
    checkpoint after every step and parks the run in the suspension
    registry when an executor has to wait.

    Usage:
        engine = Engine(checkpoints=FileCheckpointStore(".checkpoints"))
        result = await engine.run(graph, {"x": 5})
        if result.status == ExecutionStatus.SUSPENDED:
            await engine.resume(result.thread_id, ResumeEvent(kind="approval", payload={"decision": "approve"}))
    """

    def __init__(
        self,
        registry: Optional[ExecutorRegistry] = None,
        checkpoints: Optional[CheckpointStore] = None,
        suspensions: Optional[SuspensionRegistry] = None,
        graphs: Optional[GraphStorage] = None,
        capabilities: Optional[Capabilities] = None,
        events: Optional[EventBus] = None,
        max_loop_iterations: Optional[int] = None,
        max_steps: Optional[int] = None,
    ):
        """
        Initialize the engine.

        Args:
            registry: Executor registry (defaults to the built-ins)
            checkpoints: Checkpoint store (defaults to in-memory)
            suspensions: Suspension registry
            graphs: Graph storage used to reload graphs on resume
            capabilities: Services handed (scoped) to executors
            events: Event bus for the run event stream
            max_loop_iterations: Per-while-node iteration cap
            max_steps: Per-run step cap
        """
        self.registry = registry if registry is not None else executor_registry
        self.checkpoints = checkpoints if checkpoints is not None else InMemoryCheckpointStore()
        self.suspensions = suspensions if suspensions is not None else SuspensionRegistry()
        self.graphs = graphs if graphs is not None else GraphStorage()
        self.capabilities = capabilities if capabilities is not None else Capabilities()
        self.events = events if events is not None else EventBus()
        self.max_loop_iterations = (
            max_loop_iterations if max_loop_iterations is not None else settings.MAX_LOOP_ITERATIONS
        )
        self.max_steps = max_steps if max_steps is not None else settings.MAX_STEPS

        self._locks: Dict[str, asyncio.Lock] = {}
        self._cancelled: Set[str] = set()

    # ========================================================================
    # Public API
    # ========================================================================

    async def run(
        self,
        graph: Graph,
        initial_input: Any = None,
        thread_id: Optional[str] = None,
    ) -> RunResult:
        """
        Start a new run.

        Args:
            graph: The workflow graph
            initial_input: Run input, visible as ``input`` / ``{{input...}}``
            thread_id: Thread id (generated if not provided)

        Raises:
            GraphValidationError: If the graph is structurally invalid
            CheckpointConflict: If the thread already has checkpoints
            ThreadBusy: If the thread is being stepped already
        """
        graph.ensure_valid(self.registry)
        thread_id = thread_id or str(uuid.uuid4())

        async with self._exclusive(thread_id):
            existing = await self.checkpoints.get_latest(thread_id)
            if existing is not None:
                raise CheckpointConflict(thread_id, None, existing.checkpoint_id)

            await self._remember_graph(graph)
            state = RunState(
                thread_id=thread_id,
                graph_id=graph.graph_id,
                input=initial_input,
                pending=[graph.start_node.id],
            )
            logger.info(f"Starting run '{thread_id}' of graph '{graph.name}' ({graph.graph_id})")
            await self._publish(EventType.RUN_STARTED, state, data={"input": initial_input})
            return await self._drive(graph, state, None, time.time())

    async def resume(self, thread_id: str, event: ResumeEvent) -> RunResult:
        """
        Continue a suspended run with an external event.

        Events that do not match the thread's current suspension (a
        duplicate delivery, a wrong id, a thread that is not suspended)
        are logged and ignored without writing anything.

        Raises:
            ThreadBusy: If the thread is being stepped already
        """
        async with self._exclusive(thread_id):
            started = time.time()
            suspension = await self.suspensions.get(thread_id)
            latest = await self.checkpoints.get_latest(thread_id)

            reason = self._mismatch(suspension, latest, event)
            if reason:
                logger.warning(f"Ignoring {event.kind.value} event for thread '{thread_id}': {reason}")
                if reason == _STALE:
                    await self._drop_stale(suspension)
                return self._ignored(thread_id, latest, reason)

            state = RunState.from_dict(latest.checkpoint)
            try:
                graph = await self._load_graph(state.graph_id)
            except ResumeTargetMissing as e:
                return await self._abandon(state, latest.checkpoint_id, str(e), started)

            node = graph.get_node(suspension.node_id or state.current_node_id)
            if node is None:
                return await self._abandon(
                    state, latest.checkpoint_id,
                    f"Suspended node '{suspension.node_id}' is no longer in graph '{graph.graph_id}'",
                    started,
                )
            payload, handle = self._resume_payload(graph, node, suspension, event)

            previous = state.node_results.get(node.id)
            state = state.record_output(node.id, payload)
            state = state.with_node_result(node.id, NodeResult(
                status=NodeStatus.COMPLETED,
                output=payload,
                handle=handle,
                started_at=previous.started_at if previous else None,
                completed_at=utcnow(),
            ))
            state = self._advance(graph, node, handle, state, list(state.pending))

            try:
                checkpoint_id = await self._checkpoint(
                    state, suspension.resume_checkpoint_id, node.id, source="resume"
                )
            except CheckpointConflict as e:
                logger.warning(f"Resume of thread '{thread_id}' lost the race, event already consumed: {e}")
                return self._ignored(thread_id, latest, "event already consumed")
            except CheckpointWriteFailed as e:
                logger.error(f"Could not persist resume of thread '{thread_id}': {e}")
                return RunResult(
                    thread_id=thread_id,
                    graph_id=state.graph_id,
                    status=ExecutionStatus.FAILED,
                    error=str(e),
                    error_type=e.error_type,
                    checkpoint_id=latest.checkpoint_id,
                )

            await self.suspensions.clear(thread_id, checkpoint_id=suspension.resume_checkpoint_id)
            logger.info(f"Resumed thread '{thread_id}' at node '{node.id}' ({event.kind.value})")
            await self._publish(
                EventType.RUN_RESUMED, state, node,
                data={"kind": event.kind.value, "handle": handle},
            )
            return await self._drive(graph, state, checkpoint_id, started)

    async def resume_due_timers(self, now: Optional[datetime] = None) -> List[RunResult]:
        """
        Resume every suspension whose ``timeout_at`` has passed.

        Delay nodes resume with a timer event; webhook and approval waits
        resume with a ``timed_out`` event.
        """
        now = now or self.capabilities.clock()
        results = []
        for record in await self.suspensions.find_due_timers(now):
            kind = ResumeKind.TIMER if record.waiting_on.type == WaitType.TIMER else ResumeKind.TIMED_OUT
            try:
                results.append(
                    await self.resume(record.thread_id, ResumeEvent(kind=kind, id=record.waiting_on.id))
                )
            except ThreadBusy:
                logger.debug(f"Thread '{record.thread_id}' busy, timer left for the next sweep")
        return results

    async def recover(self, thread_id: str) -> RunResult:
        """
        Continue a run that stopped between steps.

        Picks up a thread whose latest checkpoint is still ``running`` with
        queued nodes (the process died after writing it) and drives it
        from there. Any other thread is ignored.

        Raises:
            ThreadBusy: If the thread is being stepped already
        """
        async with self._exclusive(thread_id):
            started = time.time()
            latest = await self.checkpoints.get_latest(thread_id)
            if latest is None:
                return self._ignored(thread_id, None, "thread has no checkpoints")
            state = RunState.from_dict(latest.checkpoint)
            if state.status != RunStatus.RUNNING or not state.pending:
                return self._ignored(thread_id, latest, f"thread is {state.status.value}, nothing to recover")

            suspension = await self.suspensions.get(thread_id)
            if suspension is not None:
                await self._drop_stale(suspension)

            try:
                graph = await self._load_graph(state.graph_id)
            except ResumeTargetMissing as e:
                return await self._abandon(state, latest.checkpoint_id, str(e), started)

            logger.info(f"Recovering thread '{thread_id}' at {state.pending}")
            await self._publish(EventType.RUN_RESUMED, state, data={"kind": "recover"})
            return await self._drive(graph, state, latest.checkpoint_id, started)

    async def recover_stalled(self, older_than: Optional[float] = None) -> List[RunResult]:
        """
        Drop stale suspensions and continue every stalled run.

        A run is stalled when its latest checkpoint is ``running`` with
        queued nodes and was written more than ``older_than`` seconds ago;
        younger ones may still be stepped by another process.
        """
        grace = older_than if older_than is not None else settings.RECOVERY_GRACE_SECONDS
        for record in await self.suspensions.list_all():
            latest = await self.checkpoints.get_latest(record.thread_id)
            if latest is None or latest.checkpoint_id != record.resume_checkpoint_id:
                await self._drop_stale(record)

        results = []
        now = utcnow()
        for thread in await self.checkpoints.list_threads():
            if self.is_running(thread.thread_id):
                continue
            if (now - thread.updated_at).total_seconds() < grace:
                continue
            state = await self.get_state(thread.thread_id)
            if state is None or state.status != RunStatus.RUNNING or not state.pending:
                continue
            try:
                results.append(await self.recover(thread.thread_id))
            except (ThreadBusy, CheckpointConflict) as e:
                logger.info(f"Thread '{thread.thread_id}' picked up elsewhere: {e}")
        return results

    async def cancel(self, thread_id: str) -> bool:
        """
        Cancel a run.

        A run being stepped in this process stops before its next node; a
        suspended run is cancelled immediately.

        Returns:
            False if the thread is unknown or already finished
        """
        lock = self._locks.get(thread_id)
        if lock is not None and lock.locked():
            self._cancelled.add(thread_id)
            logger.info(f"Cancellation requested for running thread '{thread_id}'")
            return True

        async with self._exclusive(thread_id):
            latest = await self.checkpoints.get_latest(thread_id)
            if latest is None:
                return False
            state = RunState.from_dict(latest.checkpoint)
            if state.status not in (RunStatus.RUNNING, RunStatus.SUSPENDED):
                return False

            state = state.model_copy(update={
                "status": RunStatus.CANCELLED,
                "pending": [],
                "error": "Cancelled",
                "updated_at": utcnow(),
            })
            await self._checkpoint(state, latest.checkpoint_id, state.current_node_id, source="cancel")
            await self.suspensions.clear(thread_id)
            logger.info(f"Cancelled thread '{thread_id}'")
            await self._publish(EventType.RUN_CANCELLED, state)
            return True

    async def get_state(self, thread_id: str) -> Optional[RunState]:
        """The thread's state as of its latest checkpoint."""
        latest = await self.checkpoints.get_latest(thread_id)
        return RunState.from_dict(latest.checkpoint) if latest else None

    def is_running(self, thread_id: str) -> bool:
        lock = self._locks.get(thread_id)
        return lock is not None and lock.locked()

    # ========================================================================
    # Step loop
    # ========================================================================

    async def _drive(
        self,
        graph: Graph,
        state: RunState,
        checkpoint_id: Optional[str],
        started: float,
    ) -> RunResult:
        """Execute nodes from the work queue until the run stops."""
        log: List[ExecutionStep] = []
        waiting_on: Optional[WaitingOn] = None

        try:
            while state.pending and state.status == RunStatus.RUNNING:
                state = self._next_ready(graph, state)
                node_id = state.pending[0]

                if state.thread_id in self._cancelled:
                    state = state.model_copy(update={
                        "status": RunStatus.CANCELLED,
                        "pending": [],
                        "error": "Cancelled",
                    })
                    checkpoint_id = await self._checkpoint(state, checkpoint_id, node_id, source="cancel")
                    break

                node = graph.get_node(node_id)
                if state.step_count >= self.max_steps:
                    error = LoopLimitExceeded(node_id, self.max_steps)
                    state = state.model_copy(update={
                        "status": RunStatus.FAILED,
                        "pending": [],
                        "error": str(error),
                        "error_type": error.error_type,
                        "terminal_node_id": node_id,
                    })
                    checkpoint_id = await self._checkpoint(state, checkpoint_id, node_id)
                    break

                state, step, waiting_on = await self._step(graph, node, state)
                log.append(step)
                checkpoint_id = await self._checkpoint(state, checkpoint_id, node.id)

                if waiting_on is not None:
                    await self.suspensions.park(
                        state.thread_id,
                        waiting_on,
                        checkpoint_id,
                        node_id=node.id,
                        graph_id=graph.graph_id,
                    )

            if not state.pending and state.status == RunStatus.RUNNING:
                state = state.model_copy(update={"status": RunStatus.COMPLETED})

        except CheckpointWriteFailed as e:
            logger.error(f"Run '{state.thread_id}' stopped, checkpoint write failed: {e}")
            state = state.model_copy(update={
                "status": RunStatus.FAILED,
                "error": str(e),
                "error_type": e.error_type,
            })
        finally:
            self._cancelled.discard(state.thread_id)

        await self._announce(state, waiting_on)
        return self._result(state, checkpoint_id, log, started, waiting_on)

    def _next_ready(self, graph: Graph, state: RunState) -> RunState:
        """Put the first queued node with no queued node upstream of it at the front."""
        pending = state.pending
        for node_id in pending:
            if not any(graph.reaches(other, node_id) for other in pending if other != node_id):
                if node_id != pending[0]:
                    logger.debug(f"Deferring '{pending[0]}' until its upstream branches finish")
                    state = state.model_copy(update={
                        "pending": [node_id] + [p for p in pending if p != node_id],
                    })
                return state
        return state

    async def _step(
        self,
        graph: Graph,
        node: Node,
        state: RunState,
    ) -> Tuple[RunState, ExecutionStep, Optional[WaitingOn]]:
        """Execute one node and fold its outcome into the state."""
        rest = state.pending[1:]
        step = ExecutionStep(
            step=state.step_count + 1,
            node=node.id,
            node_type=node.type,
            started_at=utcnow(),
        )
        step_start = time.time()
        state = state.model_copy(update={"current_node_id": node.id})

        logger.debug(f"Executing node '{node.id}' ({node.type}) step {step.step}")
        await self._publish(EventType.NODE_STARTED, state, node)
        result = await self._invoke(node, state)

        step.completed_at = utcnow()
        step.duration_ms = (time.time() - step_start) * 1000
        state = state.model_copy(update={"step_count": state.step_count + 1})
        waiting_on = None

        if isinstance(result, Completed) and node.type == NodeType.WHILE.value:
            result, state = self._count_iteration(node, result, state)

        if isinstance(result, Completed):
            step.handle = result.handle
            state = state.record_output(node.id, result.output, result.state_updates)
            state = state.with_node_result(node.id, NodeResult(
                status=NodeStatus.COMPLETED,
                output=result.output,
                handle=result.handle,
                details=result.details,
                started_at=step.started_at,
                completed_at=step.completed_at,
            ))
            state = self._advance(graph, node, result.handle, state, rest)
            await self._publish(
                EventType.NODE_COMPLETED, state, node,
                data={"handle": result.handle, "output": result.output},
            )

        elif isinstance(result, Suspend):
            step.result = "suspended"
            waiting_on = result.waiting_on
            state = state.with_node_result(node.id, NodeResult(
                status=NodeStatus.SUSPENDED,
                output=result.output,
                started_at=step.started_at,
            ))
            state = state.model_copy(update={"status": RunStatus.SUSPENDED, "pending": rest})

        else:
            step.result = "failed"
            step.error = result.error
            logger.warning(f"Node '{node.id}' failed: {result.error}")
            state = state.with_node_result(node.id, NodeResult(
                status=NodeStatus.FAILED,
                output=result.output,
                error=result.error,
                details=result.details,
                started_at=step.started_at,
                completed_at=step.completed_at,
            ))
            error = result.error
            if result.error_type != LoopLimitExceeded.error_type:
                error = str(ExecutorFailed(node.id, result.error))
            state = state.model_copy(update={
                "status": RunStatus.FAILED,
                "pending": [],
                "error": error,
                "error_type": result.error_type,
                "terminal_node_id": node.id,
            })
            await self._publish(
                EventType.NODE_FAILED, state, node,
                data={"error": result.error, "error_type": result.error_type},
            )

        return state, step, waiting_on

    async def _invoke(self, node: Node, state: RunState) -> ExecResult:
        try:
            spec = self.registry.get(node.type, node.id)
            return await spec.func(node, state, self.capabilities.scoped(spec.requires))
        except WorkflowError as e:
            return Failed(error=str(e), error_type=e.error_type)
        except Exception as e:
            logger.exception(f"Executor for node '{node.id}' raised")
            return Failed(error=f"{type(e).__name__}: {e}")

    def _count_iteration(
        self,
        node: Node,
        result: Completed,
        state: RunState,
    ) -> Tuple[ExecResult, RunState]:
        """Apply the iteration cap of a while node."""
        if result.handle != Handle.CONTINUE:
            counters = {k: v for k, v in state.loop_counters.items() if k != node.id}
            return result, state.model_copy(update={"loop_counters": counters})

        if state.loop_counters.get(node.id, 0) >= self.max_loop_iterations:
            error = LoopLimitExceeded(node.id, self.max_loop_iterations)
            return Failed(error=str(error), error_type=error.error_type), state
        return result, state.increment_loop(node.id)

    def _route(self, graph: Graph, node: Node, handle: Optional[str]) -> List[Edge]:
        """Edges taken after a node completes with ``handle``."""
        if handle is not None:
            return graph.outgoing(node.id, handle)
        return [e for e in graph.outgoing(node.id) if e.source_handle != Handle.TIMEOUT]

    def _advance(
        self,
        graph: Graph,
        node: Node,
        handle: Optional[str],
        state: RunState,
        rest: List[str],
    ) -> RunState:
        """Enqueue the successors of a completed node."""
        pending = list(rest)
        if node.type == NodeType.END.value:
            pending = []
        else:
            for edge in self._route(graph, node, handle):
                if edge.target not in pending:
                    pending.append(edge.target)
            logger.debug(f"Routed '{node.id}' via {handle or 'default'} -> {pending}")

        update: Dict[str, Any] = {"pending": pending, "status": RunStatus.RUNNING}
        if not pending:
            update["status"] = RunStatus.COMPLETED
            update["terminal_node_id"] = node.id
        return state.model_copy(update=update)

    # ========================================================================
    # Resume helpers
    # ========================================================================

    def _mismatch(self, suspension: Optional[Suspension], latest: Any, event: ResumeEvent) -> Optional[str]:
        """Why ``event`` cannot resume the thread, or None if it can."""
        if suspension is None:
            return "thread is not suspended"
        if latest is None or latest.checkpoint_id != suspension.resume_checkpoint_id:
            return _STALE
        if event.kind == ResumeKind.TIMED_OUT:
            return None
        if event.kind.value != suspension.waiting_on.type.value:
            return f"thread is waiting on {suspension.waiting_on.type.value}, not {event.kind.value}"
        if event.id is not None and event.id != suspension.waiting_on.id:
            return f"thread is waiting on '{suspension.waiting_on.id}', not '{event.id}'"
        return None

    def _resume_payload(
        self,
        graph: Graph,
        node: Node,
        suspension: Suspension,
        event: ResumeEvent,
    ) -> Tuple[Any, Optional[str]]:
        """The suspended node's output and the handle to route on."""
        if event.kind == ResumeKind.TIMED_OUT:
            if graph.outgoing(node.id, Handle.TIMEOUT):
                handle = Handle.TIMEOUT
            elif suspension.waiting_on.type == WaitType.APPROVAL:
                handle = Handle.REJECT
            else:
                handle = None
            return {"timedOut": True}, handle

        if event.kind == ResumeKind.TIMER:
            return {"firedAt": self.capabilities.clock().isoformat()}, None

        if event.kind == ResumeKind.APPROVAL:
            payload = event.payload if isinstance(event.payload, dict) else {"decision": event.payload}
            decision = str(payload.get("decision", "")).strip().lower()
            handle = Handle.APPROVE if decision in _APPROVE_VALUES else Handle.REJECT
            return {
                "decision": handle,
                "comment": payload.get("comment"),
                "approvalId": suspension.waiting_on.id,
            }, handle

        return event.payload, None

    def _ignored(self, thread_id: str, latest: Any, reason: str) -> RunResult:
        return RunResult(
            thread_id=thread_id,
            graph_id=latest.metadata.get("graph_id") if latest else None,
            status=ExecutionStatus.IGNORED,
            error=reason,
            error_type=ResumeTargetMissing.error_type,
            checkpoint_id=latest.checkpoint_id if latest else None,
        )

    async def _drop_stale(self, suspension: Suspension) -> None:
        """Remove a suspension the thread has already moved past."""
        logger.warning(
            f"Clearing stale suspension of thread '{suspension.thread_id}' "
            f"(checkpoint {suspension.resume_checkpoint_id})"
        )
        await self.suspensions.clear(suspension.thread_id, checkpoint_id=suspension.resume_checkpoint_id)

    async def _abandon(
        self,
        state: RunState,
        parent_id: str,
        message: str,
        started: float,
    ) -> RunResult:
        """Fail a thread that can no longer be continued."""
        logger.error(f"Run '{state.thread_id}' cannot continue: {message}")
        state = state.model_copy(update={
            "status": RunStatus.FAILED,
            "pending": [],
            "error": message,
            "error_type": ResumeTargetMissing.error_type,
        })
        checkpoint_id = parent_id
        try:
            checkpoint_id = await self._checkpoint(state, parent_id, state.current_node_id, source="resume")
        except CheckpointWriteFailed as e:
            logger.error(f"Could not record the failure of thread '{state.thread_id}': {e}")
        await self.suspensions.clear(state.thread_id)
        await self._announce(state, None)
        return self._result(state, checkpoint_id, [], started)

    # ========================================================================
    # Persistence, events and results
    # ========================================================================

    @asynccontextmanager
    async def _exclusive(self, thread_id: str):
        """Hold the in-process stepping lock of a thread."""
        lock = self._locks.setdefault(thread_id, asyncio.Lock())
        if lock.locked():
            raise ThreadBusy(thread_id)
        try:
            async with lock:
                yield
        finally:
            if self._locks.get(thread_id) is lock and not lock.locked():
                del self._locks[thread_id]

    async def _checkpoint(
        self,
        state: RunState,
        parent_id: Optional[str],
        node_id: Optional[str],
        source: str = "step",
    ) -> str:
        checkpoint_id = str(uuid.uuid4())
        await self.checkpoints.save(
            state.thread_id,
            checkpoint_id,
            state.to_dict(),
            parent_id=parent_id,
            metadata={
                "graph_id": state.graph_id,
                "node_id": node_id,
                "step": state.step_count,
                "status": state.status.value,
                "source": source,
            },
        )
        return checkpoint_id

    async def _remember_graph(self, graph: Graph) -> None:
        """Store the definition a run starts from so resumes can rebuild it."""
        await self.graphs.save(graph)

    async def _load_graph(self, graph_id: str) -> Graph:
        """Rebuild a graph from storage; resumes use the stored definition."""
        stored = await self.graphs.get(graph_id)
        if stored is None:
            raise ResumeTargetMissing(f"Graph '{graph_id}' is not registered")
        return stored.build()

    async def _publish(
        self,
        event_type: EventType,
        state: RunState,
        node: Optional[Node] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.events.publish(RunEvent(
            type=event_type,
            thread_id=state.thread_id,
            graph_id=state.graph_id,
            node_id=node.id if node else None,
            node_type=node.type if node else None,
            data=data or {},
        ))

    async def _announce(self, state: RunState, waiting_on: Optional[WaitingOn]) -> None:
        if state.status == RunStatus.COMPLETED:
            logger.info(f"Run '{state.thread_id}' completed at node '{state.terminal_node_id}'")
            await self._publish(EventType.RUN_COMPLETED, state, data={"output": state.last_output})
        elif state.status == RunStatus.SUSPENDED:
            waiting = waiting_on.model_dump(mode="json") if waiting_on else None
            logger.info(f"Run '{state.thread_id}' suspended at node '{state.current_node_id}'")
            await self._publish(EventType.RUN_SUSPENDED, state, data={"waiting_on": waiting})
        elif state.status == RunStatus.CANCELLED:
            logger.info(f"Run '{state.thread_id}' cancelled")
            await self._publish(EventType.RUN_CANCELLED, state)
        elif state.status == RunStatus.FAILED:
            logger.info(f"Run '{state.thread_id}' failed: {state.error}")
            await self._publish(
                EventType.RUN_FAILED, state,
                data={"error": state.error, "error_type": state.error_type},
            )

    def _result(
        self,
        state: RunState,
        checkpoint_id: Optional[str],
        log: List[ExecutionStep],
        started: float,
        waiting_on: Optional[WaitingOn] = None,
    ) -> RunResult:
        snapshot = state.to_dict()
        return RunResult(
            thread_id=state.thread_id,
            graph_id=state.graph_id,
            status=ExecutionStatus(state.status.value),
            output=state.last_output,
            variables=snapshot["variables"],
            node_results=snapshot["node_results"],
            error=state.error,
            error_type=state.error_type,
            waiting_on=waiting_on.model_dump(mode="json") if waiting_on else None,
            checkpoint_id=checkpoint_id,
            terminal_node_id=state.terminal_node_id,
            execution_log=log,
            started_at=state.started_at,
            completed_at=utcnow(),
            total_duration_ms=(time.time() - started) * 1000,
            steps=state.step_count,
        )
