"""
Capability interfaces.

Executors call out to these services through the ``Capabilities`` bundle.
Concrete LLM, vector search and sandbox implementations belong to the
host application; HTTP and MCP clients ship with the engine.
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


@runtime_checkable
class LLMClient(Protocol):
    """Text completion used by agent, extract and guardrails nodes."""

    async def complete(
        self,
        prompt: str,
        model: Optional[str] = None,
        system: Optional[str] = None,
    ) -> str:
        ...


@runtime_checkable
class Retriever(Protocol):
    """Semantic search over a knowledge namespace."""

    async def search(
        self,
        query: str,
        namespace_id: str,
        limit: int = 5,
        rerank: bool = False,
    ) -> List[Dict[str, Any]]:
        ...


@runtime_checkable
class CodeRunner(Protocol):
    """Sandboxed code execution."""

    async def run(self, code: str, language: str, variables: Dict[str, Any]) -> Any:
        ...
