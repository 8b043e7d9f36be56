"""
Translate JSON-Schema tool inputs into pydantic models.

Supported: objects (optional unless listed in ``required``), string enums,
arrays (typed items or anything), strings, numbers, integers and booleans.
Everything else, including formats, numeric ranges, patterns and
``anyOf``/``oneOf``/``allOf``, becomes ``Any``. That loss is intentional: the
generated model only has to be good enough to describe and sanity-check tool
arguments; the server remains the authority on validation.
"""

import keyword
import re
from typing import Any, Dict, List, Literal, Optional, Set, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, create_model

_SCALARS = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
}


def _model_name(name: str) -> str:
    cleaned = re.sub(r"[^0-9A-Za-z_]", "_", name) or "Arguments"
    return cleaned if not cleaned[0].isdigit() else f"_{cleaned}"


def _is_field_name(key: str) -> bool:
    return (
        key.isidentifier()
        and not keyword.iskeyword(key)
        and not key.startswith("_")
        and not hasattr(BaseModel, key)
    )


def _field_name(key: str, index: int, taken: Set[str]) -> Tuple[str, Optional[str]]:
    """Return ``(python field name, alias)`` for a JSON property name.

    Generated names never reuse a name in ``taken``, which holds every
    property usable as-is plus the names generated so far.
    """
    if _is_field_name(key):
        return key, None
    name = f"field_{index}"
    while name in taken:
        name = f"{name}_"
    taken.add(name)
    return name, key


def _annotation(schema: Any, name: str) -> Any:
    if not isinstance(schema, dict):
        return Any

    schema_type = schema.get("type")
    if schema_type == "string" and isinstance(schema.get("enum"), list) and schema["enum"]:
        return Literal[tuple(schema["enum"])]
    if schema_type in _SCALARS:
        return _SCALARS[schema_type]
    if schema_type == "array":
        items = schema.get("items")
        if isinstance(items, dict) and items:
            return List[_annotation(items, f"{name}_item")]
        return List[Any]
    if schema_type == "object":
        return translate_schema(schema, name)
    return Any


def translate_schema(schema: Optional[Dict[str, Any]], name: str = "Arguments") -> Type[BaseModel]:
    """Build a pydantic model validating arguments for ``schema``.

    A missing schema, or one without ``properties``, yields an empty model.

    Args:
        schema: JSON-Schema-like description of an object
        name: Model name, also used to derive nested model names

    Returns:
        A pydantic model class. Property names that are not valid Python
        identifiers are kept as aliases, so dump with ``by_alias=True``.
    """
    model_name = _model_name(name)
    properties = (schema or {}).get("properties")
    if not isinstance(properties, dict):
        properties = {}
    required = set((schema or {}).get("required") or [])

    taken = {key for key in properties if _is_field_name(key)}
    fields = {}
    for index, (key, prop) in enumerate(properties.items()):
        field_name, alias = _field_name(key, index, taken)
        annotation = _annotation(prop, f"{model_name}_{key}")
        description = prop.get("description") if isinstance(prop, dict) else None

        if key in required:
            fields[field_name] = (annotation, Field(..., alias=alias, description=description))
        else:
            fields[field_name] = (
                Optional[annotation],
                Field(None, alias=alias, description=description),
            )

    return create_model(
        model_name,
        __config__=ConfigDict(populate_by_name=True),
        **fields,
    )
