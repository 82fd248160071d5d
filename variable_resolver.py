# variable_resolver.py

import json
import logging
import re
from typing import Any, Dict, List, Tuple, Union

from execution_context import ExecutionContext
from scenario_errors import ResolutionError
from scenario_logging import get_logger, preview

logger = get_logger("resolver")

# --- Sentinel Object for Missing Values ---
class _Missing:
    def __repr__(self):
        return "MISSING"

    def __bool__(self):
        return False


MISSING = _Missing()

# [0] | ['key'] | ["key"] | .key / key
_path_token_regex = re.compile(r"""\[\s*(\d+)\s*\]|\[\s*'([^']*)'\s*\]|\[\s*"([^"]*)"\s*\]|\.?([^.\[\]]+)""")

PathSegment = Union[str, int]


# ---------------------------
# Path Helpers
# ---------------------------

def parse_path(path: str) -> List[PathSegment]:
    """
    Splits 'data.items[0]['some key'].id' into ['data', 'items', 0, 'some key', 'id'].
    Integer segments come only from [n] notation.
    """
    segments: List[PathSegment] = []
    for match in _path_token_regex.finditer(path.strip()):
        index_str, single_quoted, double_quoted, name = match.groups()
        if index_str is not None:
            segments.append(int(index_str))
        elif single_quoted is not None:
            segments.append(single_quoted)
        elif double_quoted is not None:
            segments.append(double_quoted)
        elif name is not None and name.strip():
            segments.append(name.strip())
    return segments


def walk_path(value: Any, segments: List[PathSegment]) -> Any:
    """Follows segments through nested dicts/lists. Returns MISSING when any hop fails."""
    current = value
    for segment in segments:
        if isinstance(current, dict):
            key = segment if isinstance(segment, str) else str(segment)
            if key not in current:
                return MISSING
            current = current[key]
        elif isinstance(current, list):
            if isinstance(segment, int):
                index = segment
            elif segment.isdigit():
                index = int(segment)
            elif segment == 'length':
                current = len(current)
                continue
            else:
                return MISSING
            if not 0 <= index < len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def get_value_from_context(context: Any, key: str) -> Any:
    """
    Safely retrieve a value from nested dicts/lists using dot notation for keys
    and bracket notation for list indices (e.g., 'data.values[0].id').
    Returns the MISSING sentinel if the path is invalid or the key is not found,
    so that a stored None stays distinguishable from an absent key.
    """
    if not key:
        return MISSING
    if not isinstance(context, (dict, list)):
        logger.debug(f"Context is not a dict or list (type: {type(context).__name__}). Cannot retrieve path '{key}'.")
        return MISSING
    return walk_path(context, parse_path(key))


# ---------------------------
# Template Scanning
# ---------------------------

def scan_template(text: str) -> List[Tuple[str, str]]:
    """
    Splits a string into ('text', literal) and ('expr', expression) parts.

    Braces are balanced, so '${params.items[${loop.index}].id}' is a single
    expression whose body contains a nested template.
    """
    parts: List[Tuple[str, str]] = []
    literal: List[str] = []
    i = 0
    length = len(text)
    while i < length:
        if text.startswith('${', i):
            depth = 1
            j = i + 2
            while j < length and depth > 0:
                char = text[j]
                if char == '{':
                    depth += 1
                elif char == '}':
                    depth -= 1
                j += 1
            if depth != 0:
                raise ResolutionError(f"Unbalanced '${{' at position {i} in template", template=text)
            if literal:
                parts.append(('text', ''.join(literal)))
                literal = []
            parts.append(('expr', text[i + 2:j - 1]))
            i = j
        else:
            literal.append(text[i])
            i += 1
    if literal:
        parts.append(('text', ''.join(literal)))
    return parts


def stringify(value: Any) -> str:
    """String form used when a value is concatenated into surrounding text."""
    if value is MISSING or value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


# ---------------------------
# Resolution
# ---------------------------

def _system_scope(ctx: ExecutionContext) -> Dict[str, Any]:
    return {'timestamp': ctx.clock().isoformat().replace('+00:00', 'Z')}


def resolve_path(path: str, ctx: ExecutionContext) -> Any:
    """
    Resolves a bare reference such as 'params.user.id', 'response.login.token',
    'loop.item', 'loops.outer.index' or 'system.timestamp'.
    """
    segments = parse_path(path)
    if not segments:
        return MISSING
    root, rest = segments[0], segments[1:]

    if root == 'params':
        return walk_path(ctx.params, rest)

    if root in ('response', 'responses'):
        if not rest:
            return MISSING
        record = ctx.get_response(str(rest[0]))
        if record is None:
            logger.debug(f"No stored response for '{rest[0]}' (path '{path}').")
            return MISSING
        return walk_path(record.data, rest[1:])

    if root == 'loop':
        frame = ctx.innermost_frame()
        if frame is None:
            logger.debug(f"'{path}' referenced outside of any loop.")
            return MISSING
        return walk_path(frame.as_scope(), rest)

    if root == 'loops':
        if not rest:
            return MISSING
        frame = ctx.find_frame(str(rest[0]))
        if frame is None:
            logger.debug(f"No active loop named '{rest[0]}' (path '{path}').")
            return MISSING
        return walk_path(frame.as_scope(), rest[1:])

    if root == 'system':
        return walk_path(_system_scope(ctx), rest)

    logger.debug(f"Unknown variable root '{root}' in '{path}'.")
    return MISSING


def _resolve_expression(expression: str, ctx: ExecutionContext) -> Any:
    # Inner templates produce the path text, e.g. items[${loop.index}] -> items[2]
    if '${' in expression:
        expression = render(expression, ctx)
    return resolve_path(expression, ctx)


def _join(parts: List[Tuple[str, str]], ctx: ExecutionContext) -> str:
    return ''.join(
        chunk if kind == 'text' else stringify(_resolve_expression(chunk, ctx))
        for kind, chunk in parts
    )


def render(text: str, ctx: ExecutionContext) -> str:
    """Resolves every ${...} in text and always returns a string."""
    return _join(scan_template(text), ctx)


def resolve_string(text: str, ctx: ExecutionContext) -> Any:
    """
    A string consisting of exactly one ${...} resolves to the native value
    (None when missing); anything else resolves to a string.
    """
    if '${' not in text:
        return text
    parts = scan_template(text)
    if len(parts) == 1 and parts[0][0] == 'expr':
        value = _resolve_expression(parts[0][1], ctx)
        if value is MISSING:
            logger.debug(f"Variable '{text}' not found in context. Substituting None.")
            return None
        return value
    result = _join(parts, ctx)
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(f"Substituted: {preview(text, 100)} -> {preview(result, 100)}")
    return result


def resolve(value: Any, ctx: ExecutionContext) -> Any:
    """Recursively resolves templates in strings, dict values and list items."""
    if isinstance(value, str):
        return resolve_string(value, ctx)
    if isinstance(value, dict):
        return {key: resolve(val, ctx) for key, val in value.items()}
    if isinstance(value, list):
        return [resolve(item, ctx) for item in value]
    return value


def resolve_reference(reference: str, ctx: ExecutionContext) -> Any:
    """Accepts either a template ('${params.list}') or a bare path ('params.list')."""
    if '${' in reference:
        return resolve_string(reference, ctx)
    return resolve_path(reference, ctx)
