"""
Data executors: transform, set-state and extract.
"""

from typing import Any, Dict
import json
import logging

from durableflow.engine.errors import ExpressionError
from durableflow.engine.graph import Node, NodeType
from durableflow.engine.resolver import evaluate_expression, resolve_value
from durableflow.engine.state import RunState
from durableflow.executors.base import Capabilities, Completed, ExecResult, Failed, scope_of
from durableflow.executors.guardrails import parse_verdict
from durableflow.executors.registry import register_executor


logger = logging.getLogger(__name__)


def _evaluate_mapping(mapping: Dict[str, Any], scope: Dict[str, Any]) -> Dict[str, Any]:
    """
    Evaluate each mapping entry.

    Strings containing templates are resolved, other strings are
    evaluated as expressions, and nested dicts are mapped recursively.
    """
    result = {}
    for key, expression in mapping.items():
        if isinstance(expression, dict):
            result[key] = _evaluate_mapping(expression, scope)
        elif isinstance(expression, str) and "{{" in expression:
            result[key] = resolve_value(expression, scope)
        else:
            result[key] = evaluate_expression(expression, scope)
    return result


@register_executor(NodeType.TRANSFORM)
async def execute_transform(node: Node, state: RunState, caps: Capabilities) -> ExecResult:
    """
    Reshape data.

    ``data.mapping`` maps output keys to expressions
    (``{"x": "input.x * 2"}``); ``data.template`` is resolved as a
    template value instead.
    """
    scope = scope_of(state)
    mapping = node.data.get("mapping")

    if mapping is not None:
        if not isinstance(mapping, dict):
            return Failed(error=f"Transform '{node.id}': mapping must be an object")
        try:
            return Completed(output=_evaluate_mapping(mapping, scope))
        except ExpressionError as e:
            return Failed(error=str(e))

    if "template" in node.data:
        return Completed(output=resolve_value(node.data["template"], scope))

    return Completed(output=state.last_output)


def _coerce(value: Any, value_type: str, raw: Any, scope: Dict[str, Any]) -> Any:
    if value_type == "string":
        return "" if value is None else (value if isinstance(value, str) else json.dumps(value))
    if value_type == "number":
        number = float(value)
        return int(number) if number.is_integer() else number
    if value_type == "boolean":
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes")
        return bool(value)
    if value_type == "json":
        return json.loads(value) if isinstance(value, str) else value
    if value_type == "expression":
        return evaluate_expression(raw, scope)
    return value


@register_executor(NodeType.SET_STATE)
async def execute_set_state(node: Node, state: RunState, caps: Capabilities) -> ExecResult:
    """
    Write a value into the flat ``state`` namespace.

    Later nodes read it back as ``{{state.<stateKey>}}``.
    """
    key = node.data.get("stateKey")
    if not key:
        return Failed(error=f"set-state '{node.id}' has no stateKey")

    scope = scope_of(state)
    raw = node.data.get("stateValue")
    value_type = (node.data.get("valueType") or "").lower()

    try:
        value = raw if value_type == "expression" else resolve_value(raw, scope)
        value = _coerce(value, value_type, raw, scope)
    except (ExpressionError, TypeError, ValueError) as e:
        return Failed(error=f"Cannot set state '{key}' as {value_type or 'value'}: {e}")

    logger.debug(f"set-state '{node.id}': state.{key} = {value!r}")
    return Completed(
        output=value,
        state_updates={key: value},
        details={"stateKey": key, "valueType": value_type or None},
    )


DEFAULT_EXTRACT_INSTRUCTIONS = "Extract information from the input"
DEFAULT_EXTRACT_MODEL = "openai/gpt-4o"


def _extract_prompt(instructions: str, schema: Dict[str, Any], content: str) -> str:
    return (
        f"{instructions}\n\n"
        f"Respond with a single JSON object matching this JSON schema:\n"
        f"{json.dumps(schema, indent=2)}\n\n"
        f"Input:\n{content}"
    )


@register_executor(NodeType.EXTRACT, requires=("llm",))
async def execute_extract(node: Node, state: RunState, caps: Capabilities) -> ExecResult:
    """
    Pull structured data out of text with the LLM.

    ``data.jsonSchema`` (an object or its JSON text) describes the fields
    to extract; the node outputs the parsed object. Keys listed in the
    schema's ``required`` must be present.
    """
    if caps.llm is None:
        return Failed(error="No LLM configured")

    data = node.data
    schema = data.get("jsonSchema") or {"type": "object", "properties": {}}
    if isinstance(schema, str):
        try:
            schema = json.loads(schema)
        except ValueError as e:
            return Failed(error=f"Extract '{node.id}': invalid jsonSchema: {e}")
    if not isinstance(schema, dict):
        return Failed(error=f"Extract '{node.id}': jsonSchema must be an object")

    scope = scope_of(state)
    text = resolve_value(data.get("input"), scope) if data.get("input") else state.last_output
    if text in (None, ""):
        return Failed(error=f"Extract '{node.id}' has no input")
    content = text if isinstance(text, str) else json.dumps(text, default=str)

    instructions = resolve_value(data.get("instructions") or DEFAULT_EXTRACT_INSTRUCTIONS, scope)
    model = data.get("model") or DEFAULT_EXTRACT_MODEL
    try:
        response = await caps.llm.complete(_extract_prompt(str(instructions), schema, content), model=model)
        extracted = parse_verdict(response)
    except Exception as e:
        logger.warning(f"Extract '{node.id}' failed: {e}")
        return Failed(error=f"Extraction failed: {e}", details={"model": model})

    missing = [key for key in schema.get("required") or [] if key not in extracted]
    if missing:
        return Failed(
            error=f"Extract '{node.id}': missing required fields {missing}",
            output=extracted,
            details={"model": model},
        )
    return Completed(output=extracted, details={"model": model, "fields": sorted(extracted)})
