"""
Variable Resolver.

Resolves ``{{path.expr}}`` references against run state and evaluates
condition / mapping expressions in a sandbox. Used by the engine to
prepare node configuration and by the branching executors.
"""

from typing import Any, Dict, List, Optional
import json
import logging
import re

from simpleeval import EvalWithCompoundTypes, InvalidExpression

from durableflow.engine.errors import ExpressionError


logger = logging.getLogger(__name__)


TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_PATH_TOKEN = re.compile(r"\[(\d+)\]|([^.\[\]]+)")

_MISSING = object()

SAFE_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
    "round": round,
}

# JavaScript-style literals accepted in conditions written in the editor
LITERAL_NAMES = {
    "true": True,
    "false": False,
    "null": None,
    "True": True,
    "False": False,
    "None": None,
}


def build_scope(variables: Dict[str, Any], input_data: Any = None) -> Dict[str, Any]:
    """
    Build the lookup namespace for templates and expressions.

    Every variable (node outputs keyed by node id, ``lastOutput`` and the
    ``state`` namespace) is visible at the top level, next to ``input``.
    The full mapping is also exposed as ``variables`` so node ids that are
    not valid identifiers stay reachable (``variables["node-1"]``).
    """
    scope = dict(variables)
    scope.setdefault("state", {})
    scope.setdefault("lastOutput", None)
    scope["input"] = input_data
    scope["variables"] = variables
    return scope


def get_path(scope: Dict[str, Any], path: str, default: Any = None) -> Any:
    """
    Look up a dotted path such as ``results[0].content`` in the scope.

    Args:
        scope: Mapping to search
        path: Dot-separated path with optional ``[index]`` segments
        default: Returned when any segment is missing
    """
    value = _walk(scope, path)
    return default if value is _MISSING else value


def _walk(scope: Any, path: str) -> Any:
    current = scope
    for match in _PATH_TOKEN.finditer(path.strip()):
        index, key = match.groups()
        if index is not None:
            if not isinstance(current, (list, tuple)):
                return _MISSING
            position = int(index)
            if position >= len(current):
                return _MISSING
            current = current[position]
        elif isinstance(current, dict):
            if key not in current:
                return _MISSING
            current = current[key]
        elif isinstance(current, (list, tuple)) and key.isdigit():
            position = int(key)
            if position >= len(current):
                return _MISSING
            current = current[position]
        else:
            return _MISSING
    return current


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve_template(template: str, scope: Dict[str, Any]) -> Any:
    """
    Resolve the templates in a single string.

    A string that is exactly one template keeps the referenced value's
    type; otherwise every template is interpolated as text.
    """
    whole = TEMPLATE_PATTERN.fullmatch(template)
    if whole:
        value = _walk(scope, whole.group(1))
        if value is _MISSING:
            logger.debug(f"Template path '{whole.group(1)}' not found")
            return None
        return value

    def replace(match: "re.Match[str]") -> str:
        value = _walk(scope, match.group(1))
        if value is _MISSING:
            logger.debug(f"Template path '{match.group(1)}' not found")
            return ""
        return _render(value)

    return TEMPLATE_PATTERN.sub(replace, template)


def resolve_value(value: Any, scope: Dict[str, Any]) -> Any:
    """Recursively resolve templates in strings, dicts and lists."""
    if isinstance(value, str):
        if "{{" not in value:
            return value
        return resolve_template(value, scope)
    if isinstance(value, dict):
        return {key: resolve_value(item, scope) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, scope) for item in value]
    return value


def find_references(value: Any) -> List[str]:
    """List every template path referenced in a (nested) value."""
    found: List[str] = []
    if isinstance(value, str):
        found.extend(m.group(1) for m in TEMPLATE_PATTERN.finditer(value))
    elif isinstance(value, dict):
        for item in value.values():
            found.extend(find_references(item))
    elif isinstance(value, list):
        for item in value:
            found.extend(find_references(item))
    return found


def evaluate_expression(expression: Any, scope: Dict[str, Any]) -> Any:
    """
    Evaluate an expression such as ``input.x * 2`` in a sandbox.

    Non-string values are returned unchanged.

    Raises:
        ExpressionError: If the expression is malformed or references
            something that does not exist
    """
    if not isinstance(expression, str):
        return expression

    names = {**LITERAL_NAMES, **scope}
    evaluator = EvalWithCompoundTypes(names=names, functions=SAFE_FUNCTIONS)
    try:
        return evaluator.eval(expression)
    except InvalidExpression as e:
        raise ExpressionError(f"Invalid expression '{expression}': {e}") from e
    except (SyntaxError, TypeError, ValueError, ZeroDivisionError, KeyError, IndexError, AttributeError) as e:
        raise ExpressionError(f"Error evaluating '{expression}': {e}") from e


def evaluate_condition(expression: Optional[Any], scope: Dict[str, Any]) -> bool:
    """
    Evaluate a condition to a boolean.

    Empty or missing conditions are false; booleans pass through.
    Templates are substituted before evaluation, so
    ``"{{input.count}} > 3"`` works as well as ``"input.count > 3"``.
    """
    if expression is None:
        return False
    if isinstance(expression, bool):
        return expression
    if isinstance(expression, str):
        if not expression.strip():
            return False
        if TEMPLATE_PATTERN.fullmatch(expression.strip()):
            return bool(resolve_template(expression.strip(), scope))
        if "{{" in expression:
            expression = resolve_template(expression, scope)
    return bool(evaluate_expression(expression, scope))
