"""
Graph API Routes.

Endpoints for storing workflow graphs and attaching triggers to them.
"""

from typing import Any, Dict, List
from fastapi import APIRouter, Depends, HTTPException, status
from uuid import uuid4
import logging

from croniter import croniter

from durableflow.api.schemas import (
    ErrorResponse,
    GraphCreateResponse,
    GraphDefinition,
    GraphInfoResponse,
    GraphListResponse,
    ScheduleCreateRequest,
    WebhookCreateRequest,
)
from durableflow.engine.graph import Graph
from durableflow.executors.registry import ExecutorRegistry
from durableflow.runtime import Runtime, get_runtime
from durableflow.storage.memory import Schedule, StoredGraph, WebhookRegistration


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/graphs", tags=["Graphs"])


def build_graph(definition: GraphDefinition, registry: ExecutorRegistry) -> Graph:
    """
    Build and validate a graph from its API definition.

    Raises:
        HTTPException: 400 if the definition is malformed or invalid
    """
    try:
        graph = Graph.from_dict(definition.model_dump(exclude_none=True))
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid graph definition: {e}")

    errors = graph.validate(registry)
    if errors:
        raise HTTPException(status_code=400, detail=f"Graph validation failed: {errors}")
    return graph


def _graph_info(stored: StoredGraph, with_diagram: bool = True) -> GraphInfoResponse:
    definition = stored.definition
    return GraphInfoResponse(
        graph_id=stored.graph_id,
        name=stored.name,
        description=definition.get("description"),
        node_count=len(definition.get("nodes", [])),
        nodes=definition.get("nodes", []),
        edges=definition.get("edges", []),
        created_at=stored.created_at.isoformat(),
        mermaid_diagram=stored.build().to_mermaid() if with_diagram else None,
    )


async def _require_graph(runtime: Runtime, graph_id: str) -> StoredGraph:
    stored = await runtime.graphs.get(graph_id)
    if not stored:
        raise HTTPException(status_code=404, detail=f"Graph '{graph_id}' not found")
    return stored


# ============================================================
# Graph CRUD Endpoints
# ============================================================

@router.post(
    "",
    response_model=GraphCreateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse, "description": "Invalid graph definition"}},
)
async def create_graph(
    definition: GraphDefinition,
    runtime: Runtime = Depends(get_runtime),
) -> GraphCreateResponse:
    """
    Validate and store a workflow graph.

    Unknown node types, missing edge endpoints and cycles that do not go
    through a while node are rejected here, before any run starts.
    """
    graph = build_graph(definition, runtime.engine.registry)
    await runtime.graphs.save(graph)
    logger.info(f"Created graph: {graph.graph_id} ({graph.name})")

    return GraphCreateResponse(
        graph_id=graph.graph_id,
        name=graph.name,
        node_count=len(graph.nodes),
    )


@router.get("", response_model=GraphListResponse)
async def list_graphs(runtime: Runtime = Depends(get_runtime)) -> GraphListResponse:
    """List all stored graphs."""
    graphs = [_graph_info(stored, with_diagram=False) for stored in await runtime.graphs.list_all()]
    return GraphListResponse(graphs=graphs, total=len(graphs))


@router.get(
    "/{graph_id}",
    response_model=GraphInfoResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_graph(graph_id: str, runtime: Runtime = Depends(get_runtime)) -> GraphInfoResponse:
    """Get a stored graph, with a Mermaid diagram."""
    return _graph_info(await _require_graph(runtime, graph_id))


@router.delete(
    "/{graph_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_graph(graph_id: str, runtime: Runtime = Depends(get_runtime)):
    """Delete a graph. Runs already started keep their checkpoints."""
    deleted = await runtime.graphs.delete(graph_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Graph '{graph_id}' not found")
    logger.info(f"Deleted graph: {graph_id}")


# ============================================================
# Trigger Endpoints
# ============================================================

@router.post(
    "/{graph_id}/webhooks",
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def create_webhook(
    graph_id: str,
    request: WebhookCreateRequest,
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Register a webhook that starts or resumes runs of this graph."""
    await _require_graph(runtime, graph_id)
    webhook_id = request.webhook_id or uuid4().hex
    if await runtime.webhooks.get(webhook_id):
        raise HTTPException(status_code=409, detail=f"Webhook '{webhook_id}' already exists")

    registration = await runtime.webhooks.save(WebhookRegistration(
        webhook_id=webhook_id,
        graph_id=graph_id,
        node_id=request.node_id,
        secret=request.secret,
        enabled=request.enabled,
    ))
    logger.info(f"Registered webhook '{webhook_id}' for graph '{graph_id}'")
    return {**registration.to_dict(), "url": f"/webhooks/{webhook_id}"}


@router.get("/{graph_id}/webhooks", responses={404: {"model": ErrorResponse}})
async def list_webhooks(graph_id: str, runtime: Runtime = Depends(get_runtime)) -> List[Dict[str, Any]]:
    await _require_graph(runtime, graph_id)
    return [w.to_dict() for w in await runtime.webhooks.list_by_graph(graph_id)]


@router.post(
    "/{graph_id}/schedules",
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def create_schedule(
    graph_id: str,
    request: ScheduleCreateRequest,
    runtime: Runtime = Depends(get_runtime),
) -> Dict[str, Any]:
    """Register a cron schedule for this graph."""
    await _require_graph(runtime, graph_id)
    if not croniter.is_valid(request.cron_expression):
        raise HTTPException(
            status_code=400,
            detail=f"Invalid cron expression '{request.cron_expression}'",
        )

    schedule = await runtime.schedules.save(Schedule(
        schedule_id=request.schedule_id or uuid4().hex,
        graph_id=graph_id,
        cron_expression=request.cron_expression,
        enabled=request.enabled,
    ))
    logger.info(f"Registered schedule '{schedule.schedule_id}' ({schedule.cron_expression}) for graph '{graph_id}'")
    return schedule.to_dict()


@router.get("/{graph_id}/schedules", responses={404: {"model": ErrorResponse}})
async def list_schedules(graph_id: str, runtime: Runtime = Depends(get_runtime)) -> List[Dict[str, Any]]:
    await _require_graph(runtime, graph_id)
    return [s.to_dict() for s in await runtime.schedules.list_all() if s.graph_id == graph_id]
