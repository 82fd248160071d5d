# condition_evaluator.py

import json
import math
import re
from typing import Any, List, Optional

from execution_context import ExecutionContext
from scenario_errors import ConditionError, ScenarioError
from scenario_logging import get_logger, preview
from scenario_models import Condition, ConditionExpression, ConditionGroup
from variable_resolver import MISSING, get_value_from_context, render, resolve_string, stringify

logger = get_logger("conditions")

_number_regex = re.compile(r'^\s*-?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?\s*$')

ORDERING_OPERATORS = ('>', '>=', '<', '<=')


# ---------------------------
# Value Helpers
# ---------------------------

def parse_expected(raw: Any) -> Any:
    """Turns a string such as 'true', '42' or '[1, 2]' into the value it spells."""
    if not isinstance(raw, str):
        return raw
    text = raw.strip()
    if text == 'true':
        return True
    if text == 'false':
        return False
    if text == 'null':
        return None
    if _number_regex.match(text):
        return float(text) if any(c in text for c in ".eE") else int(text)
    if text[:1] in ('{', '[') and text[-1:] in ('}', ']'):
        try:
            return json.loads(text)
        except ValueError:
            return raw
    return raw


def to_number(value: Any) -> Optional[float]:
    """Numeric view of a value; booleans and non-numeric strings do not coerce."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return None if isinstance(value, float) and math.isnan(value) else value
    if isinstance(value, str) and _number_regex.match(value):
        return float(value)
    return None


def is_empty(value: Any) -> bool:
    if value is None or value is MISSING:
        return True
    if isinstance(value, (str, list, dict)):
        return len(value) == 0
    return False


def _contains(left: Any, right: Any) -> bool:
    if left is None:
        return False
    if isinstance(left, str):
        return stringify(right) in left
    if isinstance(left, list):
        if right in left:
            return True
        right_number = to_number(right)
        return right_number is not None and any(to_number(item) == right_number for item in left)
    if isinstance(left, dict):
        return str(right) in left
    raise ConditionError(f"'contains' is not applicable to {type(left).__name__}")


def _loose_equals(left: Any, right: Any) -> bool:
    # True == 1 holds in Python; booleans only equal booleans here
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def compare(left: Any, operator: str, right: Any) -> bool:
    """Applies a comparison operator. Raises ConditionError for incompatible operands."""
    if left is MISSING:
        left = None

    if operator == 'exists':
        return left is not None
    if operator == 'isEmpty':
        return is_empty(left)
    if operator == 'isNotEmpty':
        return not is_empty(left)
    if operator == 'contains':
        return _contains(left, right)
    if operator == 'notContains':
        return not _contains(left, right)

    left_number = to_number(left)
    right_number = to_number(right)
    numeric = left_number is not None and right_number is not None

    if operator == '==':
        return left_number == right_number if numeric else _loose_equals(left, right)
    if operator == '!=':
        return left_number != right_number if numeric else not _loose_equals(left, right)

    if operator in ORDERING_OPERATORS:
        if numeric:
            a, b = left_number, right_number
        elif isinstance(left, str) and isinstance(right, str):
            a, b = left, right
        else:
            raise ConditionError(
                f"Cannot order {type(left).__name__} and {type(right).__name__} with '{operator}'"
            )
        if operator == '>':
            return a > b
        if operator == '>=':
            return a >= b
        if operator == '<':
            return a < b
        return a <= b

    raise ConditionError(f"Unknown condition operator '{operator}'")


# ---------------------------
# Evaluation
# ---------------------------

def _lookup(condition: Condition, ctx: ExecutionContext) -> Any:
    field_path = render(condition.field, ctx)
    if condition.source == 'params':
        return get_value_from_context(ctx.params, field_path)
    record = ctx.get_response(render(condition.stepId, ctx))
    if record is None:
        return MISSING
    if not field_path:
        return record.data
    return get_value_from_context(record.data, field_path)


def _evaluate_condition(condition: Condition, ctx: ExecutionContext) -> bool:
    left = _lookup(condition, ctx)
    if condition.operator in ('exists', 'isEmpty', 'isNotEmpty'):
        right = None
    else:
        raw = condition.value
        right = parse_expected(resolve_string(raw, ctx)) if isinstance(raw, str) else raw
    result = compare(left, condition.operator, right)
    logger.debug(
        f"Condition {condition.source}:{condition.field} ({preview(left, 80)}) "
        f"{condition.operator} {preview(right, 80)} -> {result}"
    )
    return result


def _evaluate_node(expr: ConditionExpression, ctx: ExecutionContext, warnings: Optional[List[str]]) -> bool:
    if isinstance(expr, ConditionGroup):
        if not expr.conditions:
            return True
        if expr.operator == 'AND':
            return all(_evaluate_node(child, ctx, warnings) for child in expr.conditions)
        return any(_evaluate_node(child, ctx, warnings) for child in expr.conditions)

    try:
        return _evaluate_condition(expr, ctx)
    except ScenarioError as e:
        message = f"Condition on '{expr.field}' evaluated to false: {e.message}"
        logger.warning(message)
        if warnings is not None:
            warnings.append(message)
        return False


def evaluate(expr: Optional[ConditionExpression], ctx: ExecutionContext, warnings: Optional[List[str]] = None) -> bool:
    """
    Evaluates a condition or a condition group against the run context.

    Never raises: evaluation problems (incompatible types, malformed templates)
    make the affected condition false and are appended to 'warnings'.
    A missing expression counts as true.
    """
    if expr is None:
        return True
    return _evaluate_node(expr, ctx, warnings)
