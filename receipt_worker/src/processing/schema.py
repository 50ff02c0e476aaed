"""Interpret declarative workflow schemas.

A workflow stores its extraction schema as a list of SchemaField records.
They are converted here into a JSON Schema (sent to the model) and a pydantic
model (used to validate the model's answer). Schemas are data only; no
workflow content is ever evaluated as code.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, ValidationError, create_model

from ..errors import ExtractionError
from ..models import SchemaField

_PY_TYPES: Dict[str, Any] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
}


def field_to_json_schema(field: SchemaField) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": field.type}
    if field.description:
        schema["description"] = field.description
    if field.type == "array":
        schema["items"] = field_to_json_schema(field.items) if field.items else {"type": "string"}
    elif field.type == "object":
        schema.update(to_json_schema(field.fields))
    return schema


def to_json_schema(fields: List[SchemaField]) -> Dict[str, Any]:
    """JSON Schema object for a field list."""
    return {
        "type": "object",
        "properties": {field.name: field_to_json_schema(field) for field in fields},
        "required": [field.name for field in fields if field.required],
    }


def _python_type(field: SchemaField, model_name: str) -> Any:
    if field.type == "array":
        inner = _python_type(field.items, f"{model_name}_{field.name}") if field.items else str
        return List[inner]  # type: ignore[valid-type]
    if field.type == "object":
        return build_model(f"{model_name}_{field.name}", field.fields)
    return _PY_TYPES[field.type]


def build_model(name: str, fields: List[SchemaField]) -> Type[BaseModel]:
    """Dynamic pydantic model validating one extracted item."""
    definitions: Dict[str, Tuple[Any, Any]] = {}
    for field in fields:
        py_type = _python_type(field, name)
        if field.required:
            definitions[field.name] = (py_type, ...)
        else:
            definitions[field.name] = (Optional[py_type], None)
    return create_model(name, __config__=ConfigDict(extra="allow"), **definitions)


def validate_items(model: Type[BaseModel], payload: Any) -> List[Dict[str, Any]]:
    """Validate model output (an object, a list of objects, or {"items": [...]})."""
    if isinstance(payload, dict) and isinstance(payload.get("items"), list):
        payload = payload["items"]
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        raise ExtractionError(f"Expected a JSON object or array, got {type(payload).__name__}")

    items: List[Dict[str, Any]] = []
    for index, raw in enumerate(payload):
        try:
            items.append(model.model_validate(raw).model_dump())
        except ValidationError as exc:
            raise ExtractionError(f"Item {index} does not match the workflow schema: {exc}") from exc
    return items
