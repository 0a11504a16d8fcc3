"""
Pydantic Schemas for API Request/Response Models.

These schemas define the structure of data flowing through the API,
providing automatic validation and documentation.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from durableflow.engine.executor import ResumeKind


# ============================================================
# Graph Schemas
# ============================================================

class GraphDefinition(BaseModel):
    """A workflow graph in the editor's ``{nodes, edges}`` shape."""
    id: Optional[str] = Field(None, description="Graph id (generated if omitted)")
    name: str = Field("Unnamed Workflow", description="Name of the workflow")
    description: Optional[str] = Field(None, description="What this workflow does")
    nodes: List[Dict[str, Any]] = Field(..., description="Nodes: {id, type, data, label}")
    edges: List[Dict[str, Any]] = Field(default_factory=list, description="Edges: {source, target, sourceHandle}")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Double it",
                "nodes": [
                    {"id": "start", "type": "start"},
                    {"id": "double", "type": "transform", "data": {"mapping": {"x": "input.x * 2"}}},
                    {"id": "end", "type": "end"},
                ],
                "edges": [
                    {"source": "start", "target": "double"},
                    {"source": "double", "target": "end"},
                ],
            }
        }


class GraphCreateResponse(BaseModel):
    """Response after creating a graph."""
    graph_id: str
    name: str
    node_count: int
    message: str = "Graph created successfully"


class GraphInfoResponse(BaseModel):
    """Information about a stored graph."""
    graph_id: str
    name: str
    description: Optional[str] = None
    node_count: int
    nodes: List[Dict[str, Any]]
    edges: List[Dict[str, Any]]
    created_at: str
    mermaid_diagram: Optional[str] = None


class GraphListResponse(BaseModel):
    """List of stored graphs."""
    graphs: List[GraphInfoResponse]
    total: int


class WebhookCreateRequest(BaseModel):
    """Register a webhook trigger for a graph."""
    webhook_id: Optional[str] = Field(
        None, max_length=64, description="Stable id used in the URL (generated if omitted)"
    )
    node_id: Optional[str] = Field(None, description="Webhook node the trigger belongs to")
    secret: Optional[str] = Field(None, description="Bearer token / ?token= required by callers")
    enabled: bool = True


class ScheduleCreateRequest(BaseModel):
    """Register a cron schedule for a graph."""
    cron_expression: str = Field(..., description="Five-field cron expression, evaluated in UTC")
    schedule_id: Optional[str] = Field(None, max_length=64)
    enabled: bool = True


# ============================================================
# Run Schemas
# ============================================================

class RunRequest(BaseModel):
    """Start a run of a stored or inline graph."""
    graph_id: Optional[str] = Field(None, description="Id of a stored graph")
    graph: Optional[GraphDefinition] = Field(None, description="Inline graph definition")
    input: Any = Field(None, description="Run input")
    thread_id: Optional[str] = Field(
        None, min_length=1, max_length=80, description="Thread id (generated if omitted)"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "graph_id": "my-graph",
                "input": {"x": 5},
            }
        }


class ResumeRequest(BaseModel):
    """Deliver an external event to a suspended run."""
    kind: ResumeKind
    payload: Any = None
    id: Optional[str] = None


class ApprovalRequest(BaseModel):
    """A human decision for a user-approval node."""
    decision: str = Field(..., description="approve or reject")
    comment: Optional[str] = None


class RunStateResponse(BaseModel):
    """State of a thread as of its latest checkpoint."""
    thread_id: str
    graph_id: Optional[str]
    status: str
    checkpoint_id: str
    checkpoint_count: int
    current_node_id: Optional[str] = None
    pending: List[str] = Field(default_factory=list)
    output: Any = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    node_results: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None
    waiting_on: Optional[Dict[str, Any]] = None
    updated_at: Optional[str] = None


class CheckpointListResponse(BaseModel):
    """Checkpoints of a thread, most recent first."""
    thread_id: str
    checkpoints: List[Dict[str, Any]]
    total: int


class ErrorResponse(BaseModel):
    """Error response."""
    detail: str
    error_type: Optional[str] = None


# ============================================================
# Node Type Schemas
# ============================================================

class NodeTypeInfo(BaseModel):
    """A registered node executor."""
    type: str
    requires: List[str] = Field(default_factory=list, description="Capabilities the executor uses")
    description: str = ""


class NodeTypeListResponse(BaseModel):
    """List of registered node types."""
    node_types: List[NodeTypeInfo]
    total: int
