"""
Run API Routes.

Endpoints for starting runs, inspecting their checkpoints and delivering
resume events.
"""

from typing import Any, Dict
from fastapi import APIRouter, Depends, HTTPException, Query
import logging

from durableflow.api.routes.graphs import build_graph
from durableflow.api.schemas import (
    CheckpointListResponse,
    ErrorResponse,
    ResumeRequest,
    RunRequest,
    RunStateResponse,
)
from durableflow.engine.errors import CheckpointConflict, GraphValidationError, ThreadBusy
from durableflow.engine.executor import ResumeEvent
from durableflow.runtime import Runtime, get_runtime


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["Runs"])


@router.post(
    "",
    responses={
        400: {"model": ErrorResponse, "description": "Invalid graph"},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "Thread already exists or is running"},
    },
)
async def start_run(request: RunRequest, runtime: Runtime = Depends(get_runtime)) -> Dict[str, Any]:
    """
    Start a run of a stored graph (``graph_id``) or an inline ``graph``.

    Returns when the run completes, fails or suspends; a suspended run
    reports what it is ``waiting_on``.
    """
    if request.graph is not None:
        graph = build_graph(request.graph, runtime.engine.registry)
    elif request.graph_id:
        stored = await runtime.graphs.get(request.graph_id)
        if not stored:
            raise HTTPException(status_code=404, detail=f"Graph '{request.graph_id}' not found")
        graph = stored.build()
    else:
        raise HTTPException(status_code=400, detail="Either graph_id or graph is required")

    try:
        result = await runtime.engine.run(graph, request.input, thread_id=request.thread_id)
    except GraphValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (CheckpointConflict, ThreadBusy) as e:
        raise HTTPException(status_code=409, detail=str(e))

    return result.to_dict()


@router.get(
    "/{thread_id}",
    response_model=RunStateResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_run(thread_id: str, runtime: Runtime = Depends(get_runtime)) -> RunStateResponse:
    """Get the state of a thread as of its latest checkpoint."""
    engine = runtime.engine
    latest = await engine.checkpoints.get_latest(thread_id)
    if latest is None:
        raise HTTPException(status_code=404, detail=f"Run '{thread_id}' not found")

    state = await engine.get_state(thread_id)
    thread = await engine.checkpoints.get_thread(thread_id)
    suspension = await engine.suspensions.get(thread_id)

    return RunStateResponse(
        thread_id=thread_id,
        graph_id=state.graph_id,
        status=state.status.value,
        checkpoint_id=latest.checkpoint_id,
        checkpoint_count=thread.checkpoint_count if thread else 1,
        current_node_id=state.current_node_id,
        pending=state.pending,
        output=state.last_output,
        variables=latest.checkpoint.get("variables", {}),
        node_results=latest.checkpoint.get("node_results", {}),
        error=state.error,
        error_type=state.error_type,
        waiting_on=suspension.waiting_on.model_dump(mode="json") if suspension else None,
        updated_at=state.updated_at.isoformat(),
    )


@router.get(
    "/{thread_id}/checkpoints",
    response_model=CheckpointListResponse,
    responses={404: {"model": ErrorResponse}},
)
async def list_checkpoints(
    thread_id: str,
    limit: int = Query(10, ge=1, le=1000),
    runtime: Runtime = Depends(get_runtime),
) -> CheckpointListResponse:
    """List a thread's checkpoints, most recent first."""
    checkpoints = await runtime.engine.checkpoints.list(thread_id, limit=limit)
    if not checkpoints:
        raise HTTPException(status_code=404, detail=f"Run '{thread_id}' not found")
    records = [c.to_record() for c in checkpoints]
    return CheckpointListResponse(thread_id=thread_id, checkpoints=records, total=len(records))


@router.post(
    "/{thread_id}/resume",
    responses={409: {"model": ErrorResponse, "description": "Thread is running"}},
)
async def resume_run(
    thread_id: str,
    request: ResumeRequest,
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    """
    Deliver an event to a suspended run.

    An event the thread is not waiting for is ignored and reported with
    status ``ignored``.
    """
    try:
        result = await runtime.engine.resume(
            thread_id,
            ResumeEvent(kind=request.kind, payload=request.payload, id=request.id),
        )
    except ThreadBusy as e:
        raise HTTPException(status_code=409, detail=str(e))
    return result.to_dict()


@router.post(
    "/{thread_id}/cancel",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def cancel_run(thread_id: str, runtime: Runtime = Depends(get_runtime)) -> Dict[str, Any]:
    """Cancel a running or suspended run."""
    if await runtime.engine.checkpoints.get_latest(thread_id) is None:
        raise HTTPException(status_code=404, detail=f"Run '{thread_id}' not found")
    try:
        cancelled = await runtime.engine.cancel(thread_id)
    except ThreadBusy as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not cancelled:
        raise HTTPException(status_code=409, detail=f"Run '{thread_id}' is not active")
    return {"thread_id": thread_id, "cancelled": True}


@router.post(
    "/{thread_id}/recover",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def recover_run(thread_id: str, runtime: Runtime = Depends(get_runtime)) -> Dict[str, Any]:
    """
    Continue a run that stopped between steps.

    Runs that are suspended or finished are reported with status
    ``ignored``.
    """
    if await runtime.engine.checkpoints.get_latest(thread_id) is None:
        raise HTTPException(status_code=404, detail=f"Run '{thread_id}' not found")
    try:
        result = await runtime.engine.recover(thread_id)
    except (CheckpointConflict, ThreadBusy) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return result.to_dict()
