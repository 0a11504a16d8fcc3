"""
Executors that hand work to external runtimes: agent (LLM) and code.
"""

import logging

from durableflow.engine.graph import Node, NodeType
from durableflow.engine.resolver import resolve_value
from durableflow.engine.state import RunState
from durableflow.executors.base import Capabilities, Completed, ExecResult, Failed, scope_of
from durableflow.executors.registry import register_executor


logger = logging.getLogger(__name__)


@register_executor(NodeType.AGENT, requires=("llm",))
async def execute_agent(node: Node, state: RunState, caps: Capabilities) -> ExecResult:
    """Complete ``data.prompt`` (default: the last output) with the LLM."""
    if caps.llm is None:
        return Failed(error="No LLM configured")

    data = resolve_value(node.data, scope_of(state))
    prompt = data.get("prompt") or data.get("instructions")
    if prompt in (None, ""):
        prompt = state.last_output
    if prompt in (None, ""):
        return Failed(error=f"Agent node '{node.id}' has no prompt")

    try:
        response = await caps.llm.complete(
            prompt if isinstance(prompt, str) else str(prompt),
            model=data.get("model"),
            system=data.get("systemPrompt"),
        )
    except Exception as e:
        logger.warning(f"Agent node '{node.id}' failed: {e}")
        return Failed(error=f"LLM call failed: {e}")

    return Completed(output=response, details={"model": data.get("model")})


@register_executor(NodeType.CODE, requires=("code_runner",))
async def execute_code(node: Node, state: RunState, caps: Capabilities) -> ExecResult:
    """
    Run ``data.code`` in the sandbox.

    The code sees ``variables``, ``input`` and ``lastOutput``.
    """
    if caps.code_runner is None:
        return Failed(error="No code runner configured")

    code = node.data.get("code") or ""
    if not code.strip():
        return Failed(error=f"Code node '{node.id}' has no code")

    language = node.data.get("language") or "python"
    variables = {
        **state.variables,
        "input": state.input,
        "lastOutput": state.last_output,
    }
    try:
        result = await caps.code_runner.run(code, language, variables)
    except Exception as e:
        logger.warning(f"Code node '{node.id}' failed: {e}")
        return Failed(error=f"Execution ended with error: {e}")

    return Completed(output=result, details={"language": language})
