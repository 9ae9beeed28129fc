"""
CloudEvents Decoder

Turns a webhook HTTP request into a CanonicalEvent, whichever CloudEvents
content mode the provider used:

- structured: ``Content-Type: application/cloudevents+json``, attributes and
  ``data`` all live in the JSON body
- binary: attributes arrive as ``ce-*`` headers, the body carries ``data``

In both modes the affected resource ids are read from ``data.ids``.
"""

import json
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from fic_middleware.models.cloudevents import CanonicalEvent, ContentMode
from fic_middleware.utils.exceptions import CloudEventsDecodeException

STRUCTURED_CONTENT_TYPE = "application/cloudevents+json"

ATTRIBUTES = ("type", "time", "subject", "id", "source", "specversion")


def _parse_body(body: bytes) -> Dict[str, Any]:
    if not body or not body.strip():
        return {}
    try:
        parsed = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise CloudEventsDecodeException("Invalid JSON payload", details={"error": str(e)})
    if not isinstance(parsed, dict):
        raise CloudEventsDecodeException("Payload must be a JSON object")
    return parsed


def _parse_id(value: Any) -> int:
    # bool is an int subclass but never a valid id
    if isinstance(value, bool):
        raise CloudEventsDecodeException("data.ids must contain integers", details={"id": value})
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.isascii() and value.isdigit():
        return int(value)
    raise CloudEventsDecodeException("data.ids must contain integers", details={"id": value})


def _parse_ids(data: Any) -> List[int]:
    if not isinstance(data, dict):
        return []
    ids = data.get("ids")
    if ids is None:
        return []
    if not isinstance(ids, list):
        raise CloudEventsDecodeException("data.ids must be an array")
    return [_parse_id(value) for value in ids]


def is_structured(content_type: Optional[str]) -> bool:
    return bool(content_type) and STRUCTURED_CONTENT_TYPE in content_type.lower()


def decode(headers: Mapping[str, str], body: bytes) -> CanonicalEvent:
    """
    Decode a delivery into a CanonicalEvent.

    Args:
        headers: Request headers (any casing)
        body: Raw request body

    Raises:
        CloudEventsDecodeException: Unparseable body, invalid ids or missing type
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    payload = _parse_body(body)

    if is_structured(lowered.get("content-type")):
        mode = ContentMode.STRUCTURED
        attributes = {
            name: str(payload[name]) if payload.get(name) is not None else None
            for name in ATTRIBUTES
        }
    else:
        mode = ContentMode.BINARY
        attributes = {name: lowered.get(f"ce-{name}") for name in ATTRIBUTES}

    data = payload.get("data")
    resource_ids = _parse_ids(data)

    if not attributes["type"]:
        raise CloudEventsDecodeException(
            "Missing required CloudEvents type attribute",
            details={"content_mode": mode.value},
        )

    try:
        return CanonicalEvent(
            **{key: value for key, value in attributes.items() if value not in (None, "")},
            resource_ids=resource_ids,
            data=data if isinstance(data, dict) else {},
            content_mode=mode,
        )
    except ValidationError as e:
        raise CloudEventsDecodeException(
            "Invalid CloudEvents attributes",
            details={"errors": e.errors(include_url=False, include_input=False, include_context=False)},
        )
