"""
Node Type Routes.

Lists the node types this engine can execute.
"""

from fastapi import APIRouter, Depends, HTTPException

from durableflow.api.schemas import ErrorResponse, NodeTypeInfo, NodeTypeListResponse
from durableflow.runtime import Runtime, get_runtime


router = APIRouter(prefix="/node-types", tags=["Node Types"])


@router.get("", response_model=NodeTypeListResponse)
async def list_node_types(runtime: Runtime = Depends(get_runtime)) -> NodeTypeListResponse:
    """List all registered node executors."""
    infos = [NodeTypeInfo(**t) for t in runtime.engine.registry.list_types()]
    return NodeTypeListResponse(node_types=infos, total=len(infos))


@router.get(
    "/{node_type}",
    response_model=NodeTypeInfo,
    responses={404: {"model": ErrorResponse}},
)
async def get_node_type(node_type: str, runtime: Runtime = Depends(get_runtime)) -> NodeTypeInfo:
    if not runtime.engine.registry.has(node_type):
        raise HTTPException(status_code=404, detail=f"Node type '{node_type}' not found")
    return NodeTypeInfo(**runtime.engine.registry.get(node_type).to_dict())
