"""
Capabilities package - services node executors call out to.
"""

from durableflow.capabilities.base import LLMClient, Retriever, CodeRunner
from durableflow.capabilities.http import HttpClient
from durableflow.capabilities.mcp_client import MCPClient, MCPSession

__all__ = [
    "LLMClient",
    "Retriever",
    "CodeRunner",
    "HttpClient",
    "MCPClient",
    "MCPSession",
]
