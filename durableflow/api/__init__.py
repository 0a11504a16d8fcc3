"""
API package - FastAPI routes and schemas.
"""

from durableflow.api.routes import approvals, graphs, node_types, runs, webhooks, websocket

__all__ = ["approvals", "graphs", "node_types", "runs", "webhooks", "websocket"]
