"""
Control-flow executors: start, end, branching and the suspending nodes.

Branching executors report the handle to route on; the engine picks the
edges. Suspending executors never complete synchronously - they return
what the run is waiting on and the engine parks the thread.
"""

from typing import Any, Dict, Optional
from datetime import datetime, timedelta
import logging
import uuid

from durableflow.engine.errors import ExpressionError
from durableflow.engine.graph import Handle, Node, NodeType
from durableflow.engine.resolver import evaluate_condition, resolve_value
from durableflow.engine.state import RunState
from durableflow.executors.base import Capabilities, Completed, ExecResult, Failed, Suspend, scope_of
from durableflow.executors.registry import register_executor
from durableflow.storage.suspensions import WaitingOn, WaitType


logger = logging.getLogger(__name__)


@register_executor(NodeType.START)
async def execute_start(node: Node, state: RunState, caps: Capabilities) -> ExecResult:
    """Entry point; outputs the run input."""
    return Completed(output=state.input)


@register_executor(NodeType.END)
async def execute_end(node: Node, state: RunState, caps: Capabilities) -> ExecResult:
    """Terminates the run with ``data.output`` or the last output."""
    if node.data.get("output") is not None:
        return Completed(output=resolve_value(node.data["output"], scope_of(state)))
    return Completed(output=state.last_output)


@register_executor(NodeType.IF_ELSE)
async def execute_if_else(node: Node, state: RunState, caps: Capabilities) -> ExecResult:
    """Routes on ``if`` when ``data.condition`` is truthy, else on ``else``."""
    condition = node.data.get("condition")
    try:
        matched = evaluate_condition(condition, scope_of(state))
    except ExpressionError as e:
        return Failed(error=str(e))

    handle = Handle.IF if matched else Handle.ELSE
    logger.debug(f"if-else '{node.id}': {condition!r} -> {handle}")
    return Completed(
        output=state.last_output,
        handle=handle,
        details={"condition": condition, "result": matched},
    )


@register_executor(NodeType.ROUTER)
async def execute_router(node: Node, state: RunState, caps: Capabilities) -> ExecResult:
    """Routes on the id of the first route whose condition holds."""
    scope = scope_of(state)
    routes = node.data.get("routes") or []

    for index, route in enumerate(routes):
        route_id = route.get("id") or str(index)
        try:
            matched = evaluate_condition(route.get("condition"), scope)
        except ExpressionError as e:
            return Failed(error=f"Route '{route_id}': {e}")
        if matched:
            logger.debug(f"router '{node.id}' matched route '{route_id}'")
            return Completed(
                output=state.last_output,
                handle=route_id,
                details={"route": route_id, "label": route.get("label")},
            )

    return Failed(
        error=f"No route matched at node '{node.id}'",
        error_type="NoRouteMatched",
        details={"routes": [r.get("id") for r in routes]},
    )


@register_executor(NodeType.WHILE)
async def execute_while(node: Node, state: RunState, caps: Capabilities) -> ExecResult:
    """
    Loop guard.

    Routes on ``continue`` while ``data.condition`` holds and on ``break``
    once it does not. The engine counts iterations.
    """
    try:
        matched = evaluate_condition(node.data.get("condition"), scope_of(state))
    except ExpressionError as e:
        return Failed(error=str(e))

    return Completed(
        output=state.last_output,
        handle=Handle.CONTINUE if matched else Handle.BREAK,
        details={"iteration": state.loop_counters.get(node.id, 0)},
    )


def _timeout_at(caps: Capabilities, data: Dict[str, Any]) -> Optional[datetime]:
    seconds = data.get("timeoutSeconds")
    if seconds in (None, ""):
        return None
    return caps.clock() + timedelta(seconds=float(seconds))


@register_executor(NodeType.USER_APPROVAL)
async def execute_user_approval(node: Node, state: RunState, caps: Capabilities) -> ExecResult:
    """Suspends until a human approves or rejects."""
    data = resolve_value(node.data, scope_of(state))
    approval_id = data.get("approvalId") or f"approval_{uuid.uuid4().hex[:12]}"
    return Suspend(
        waiting_on=WaitingOn(
            type=WaitType.APPROVAL,
            id=str(approval_id),
            timeout_at=_timeout_at(caps, data),
        ),
        output={
            "approvalId": approval_id,
            "message": data.get("message"),
            "lastOutput": state.last_output,
        },
    )


@register_executor(NodeType.WEBHOOK)
async def execute_webhook(node: Node, state: RunState, caps: Capabilities) -> ExecResult:
    """Suspends until the webhook ``data.webhookId`` is called."""
    data = resolve_value(node.data, scope_of(state))
    webhook_id = data.get("webhookId")
    if not webhook_id:
        return Failed(error=f"Webhook node '{node.id}' has no webhookId")
    return Suspend(
        waiting_on=WaitingOn(
            type=WaitType.WEBHOOK,
            id=str(webhook_id),
            timeout_at=_timeout_at(caps, data),
        ),
    )


@register_executor(NodeType.DELAY)
async def execute_delay(node: Node, state: RunState, caps: Capabilities) -> ExecResult:
    """Suspends for ``data.seconds``."""
    data = resolve_value(node.data, scope_of(state))
    try:
        seconds = float(data.get("seconds", 0))
    except (TypeError, ValueError):
        return Failed(error=f"Invalid delay: {data.get('seconds')!r}")
    if seconds < 0:
        return Failed(error=f"Delay cannot be negative: {seconds}")

    fire_at = caps.clock() + timedelta(seconds=seconds)
    return Suspend(
        waiting_on=WaitingOn(type=WaitType.TIMER, id=node.id, timeout_at=fire_at),
        output={"fireAt": fire_at.isoformat()},
    )
