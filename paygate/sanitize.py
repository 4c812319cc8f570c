"""Allow-list sanitization of client payloads against a JSON-schema subset."""
from __future__ import annotations

from typing import Any, Dict


def sanitize(data: Any, schema: Dict[str, Any]) -> Any:
    """Rebuild ``data`` keeping only what ``schema`` declares.

    Object schemas with ``properties`` keep declared keys only and array
    schemas with ``items`` sanitize each element. Anything else passes through.
    A value whose shape does not match its schema node collapses to an empty
    container of the declared kind.
    """
    kind = schema.get("type")
    if kind == "object" and "properties" in schema:
        if not isinstance(data, dict):
            return {}
        properties = schema["properties"] or {}
        return {
            key: sanitize(data[key], properties[key] or {})
            for key in properties
            if key in data
        }
    if kind == "array" and "items" in schema:
        if not isinstance(data, list):
            return []
        items = schema["items"] or {}
        return [sanitize(item, items) for item in data]
    return data


__all__ = ["sanitize"]
