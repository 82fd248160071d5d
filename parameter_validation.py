# parameter_validation.py

import re
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictStr, ValidationError, create_model

from scenario_errors import ParameterValidationError, ParameterViolation
from scenario_logging import get_logger
from scenario_models import ParameterSchema

logger = get_logger("params")

_BASE_TYPES = {
    'string': StrictStr,
    'number': StrictFloat,
    'boolean': StrictBool,
}

_MODEL_CONFIG = ConfigDict(extra='allow', regex_engine='python-re')


# ---------------------------
# Model Building
# ---------------------------

def _join_path(prefix: str, name: str) -> str:
    return f"{prefix}.{name}" if prefix else name


def _annotation(schema: ParameterSchema, path: str, problems: List[ParameterViolation]) -> Any:
    """Pydantic type for one parameter: the base type plus its validation rules."""
    rules = schema.validation
    constraints: Dict[str, Any] = {}

    if schema.type == 'object':
        annotation = _build_model(schema.properties, path, problems) if schema.properties else Dict[str, Any]
    elif schema.type == 'array':
        item = _annotation(schema.itemSchema, f"{path}[]", problems) if schema.itemSchema is not None else Any
        annotation = List[item]
    else:
        annotation = _BASE_TYPES.get(schema.type, Any)

    if rules is not None:
        # min/max bound the value for numbers and the length for strings and arrays
        if schema.type == 'number':
            if rules.min is not None:
                constraints['ge'] = rules.min
            if rules.max is not None:
                constraints['le'] = rules.max
        elif schema.type in ('string', 'array'):
            if rules.min is not None:
                constraints['min_length'] = int(rules.min)
            if rules.max is not None:
                constraints['max_length'] = int(rules.max)

        if rules.pattern and schema.type == 'string':
            try:
                re.compile(rules.pattern)
                constraints['pattern'] = rf"\A(?:{rules.pattern})\Z"
            except re.error as e:
                problems.append(ParameterViolation(path, f"has an invalid pattern '{rules.pattern}': {e}"))

        if rules.enum:
            try:
                annotation = Literal[tuple(rules.enum)]
            except TypeError:
                problems.append(ParameterViolation(path, "has an enum with non-scalar values"))

    return Annotated[annotation, Field(**constraints)] if constraints else annotation


def _build_model(fields: List[ParameterSchema], prefix: str, problems: List[ParameterViolation]) -> Type[BaseModel]:
    definitions: Dict[str, Tuple[Any, Any]] = {}
    for i, field in enumerate(fields):
        annotation = _annotation(field, _join_path(prefix, field.name), problems)
        # Field names are positional; parameter names travel as aliases so any name is allowed
        if field.required:
            definitions[f"p{i}"] = (annotation, Field(..., alias=field.name))
        else:
            definitions[f"p{i}"] = (annotation, Field(None, alias=field.name))
    return create_model(f"Parameters_{prefix or 'root'}", __config__=_MODEL_CONFIG, **definitions)


# ---------------------------
# Defaults
# ---------------------------

def _with_defaults(fields: List[ParameterSchema], values: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Copy of values where missing or null schema fields take their default, recursively."""
    result = dict(values)
    for field in fields:
        value = result.get(field.name)
        if value is None:
            result.pop(field.name, None)
            if field.defaultValue is not None:
                result[field.name] = field.defaultValue
                logger.debug(f"Parameter '{_join_path(prefix, field.name)}' defaulted to {field.defaultValue!r}")
            continue
        result[field.name] = _nested_defaults(field, value, _join_path(prefix, field.name))
    return result


def _nested_defaults(schema: ParameterSchema, value: Any, path: str) -> Any:
    if schema.type == 'object' and schema.properties and isinstance(value, dict):
        return _with_defaults(schema.properties, value, path)
    if schema.type == 'array' and schema.itemSchema is not None and isinstance(value, list):
        return [_nested_defaults(schema.itemSchema, item, f"{path}[{i}]") for i, item in enumerate(value)]
    return value


# ---------------------------
# Error Mapping
# ---------------------------

def _format_loc(loc: Tuple[Any, ...]) -> str:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path = _join_path(path, str(part))
    return path


def _schema_at(fields: List[ParameterSchema], loc: Tuple[Any, ...]) -> Optional[ParameterSchema]:
    schema: Optional[ParameterSchema] = None
    for part in loc:
        if isinstance(part, int):
            schema = schema.itemSchema if schema is not None else None
        else:
            candidates = (schema.properties if schema is not None else fields) or []
            schema = next((f for f in candidates if f.name == part), None)
        if schema is None:
            return None
    return schema


def _violation(fields: List[ParameterSchema], error: Dict[str, Any]) -> ParameterViolation:
    loc = tuple(error['loc'])
    path = _format_loc(loc)
    kind = error['type']
    value = error.get('input')
    schema = _schema_at(fields, loc)
    rules = schema.validation if schema is not None else None

    if kind == 'missing':
        return ParameterViolation(path, "is required")
    if kind.endswith('_type') and schema is not None:
        return ParameterViolation(path, f"expected {schema.type}, got {type(value).__name__}")
    if rules is not None:
        if kind == 'greater_than_equal':
            return ParameterViolation(path, f"must be >= {rules.min:g}, got {value:g}")
        if kind == 'less_than_equal':
            return ParameterViolation(path, f"must be <= {rules.max:g}, got {value:g}")
        if kind == 'too_short':
            return ParameterViolation(path, f"must be >= {rules.min:g} (length), got {len(value)}")
        if kind == 'too_long':
            return ParameterViolation(path, f"must be <= {rules.max:g} (length), got {len(value)}")
        if kind == 'string_pattern_mismatch':
            return ParameterViolation(path, f"does not match pattern '{rules.pattern}'")
        if kind == 'literal_error':
            return ParameterViolation(path, f"must be one of {rules.enum}, got {value!r}")
    return ParameterViolation(path, error['msg'])


def validate_parameters(schema: List[ParameterSchema], values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Validates run parameters against the scenario parameter schema.

    The schema is turned into a pydantic model (strict types, bounds, pattern
    and enum as field constraints; nested models for object properties).
    Returns the parameters with schema defaults applied. Values without a
    schema entry are passed through. Raises ParameterValidationError listing
    every violation.
    """
    fields = schema or []
    prepared = _with_defaults(fields, values or {})

    violations: List[ParameterViolation] = []
    model = _build_model(fields, "", violations)
    try:
        model.model_validate(prepared)
    except ValidationError as ve:
        violations.extend(_violation(fields, error) for error in ve.errors())

    if violations:
        logger.warning(f"Parameter validation failed with {len(violations)} violation(s)")
        raise ParameterValidationError(violations)
    return prepared
