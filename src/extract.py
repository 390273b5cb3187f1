"""
Data Extraction - select values out of fetched backend payloads.

A payload is used as-is unless a property path is requested, in which case
it is decoded as JSON and the dotted path is walked. List elements are
addressed by index (``items.0.name``) and a literal dot inside a field
name is written as ``\\.``.
"""

import json
import re
from typing import Any, Dict, List, Optional

from errors import MalformedPayload, PropertyNotFound

# Split on dots that are not escaped with a backslash
_PATH_SEPARATOR = re.compile(r"(?<!\\)\.")


def split_property_path(path: str) -> List[str]:
    """Split a property path into its segments, unescaping ``\\.``."""
    if not path:
        return []
    return [part.replace("\\.", ".") for part in _PATH_SEPARATOR.split(path)]


def encode_value(value: Any) -> bytes:
    """Encode an extracted JSON value: strings raw, everything else as JSON."""
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value, separators=(",", ":"), sort_keys=True).encode("utf-8")


def _index_in(segment: str, items: list) -> bool:
    return segment.isdigit() and int(segment) < len(items)


def _decode(payload: bytes, key: Optional[str]) -> Any:
    where = f" for key '{key}'" if key else ""
    try:
        return json.loads(payload)
    except (TypeError, ValueError) as e:
        raise MalformedPayload(f"payload{where} is not valid JSON: {e}")


def extract(
    payload: bytes, property_path: Optional[str], key: Optional[str] = None
) -> bytes:
    """
    Extract a value from a payload.

    Args:
        payload: Raw bytes returned by the provider.
        property_path: Dotted path to select, or None for the whole payload.
        key: Remote key the payload came from (used in error messages).

    Returns:
        The selected value as bytes.

    Raises:
        MalformedPayload: If a property is requested and the payload is not JSON.
        PropertyNotFound: If the path does not resolve to a non-null value.
    """
    if property_path is None:
        return payload

    current = _decode(payload, key)
    for segment in split_property_path(property_path):
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and _index_in(segment, current):
            current = current[int(segment)]
        else:
            raise PropertyNotFound(property_path, key=key)

    if current is None:
        raise PropertyNotFound(property_path, key=key)
    return encode_value(current)


def extract_map(payload: bytes, key: Optional[str] = None) -> Dict[str, bytes]:
    """
    Expand a JSON object payload into one entry per top-level field.

    Null fields are skipped.

    Raises:
        MalformedPayload: If the payload is not a JSON object.
    """
    document = _decode(payload, key)
    if not isinstance(document, dict):
        where = f" for key '{key}'" if key else ""
        raise MalformedPayload(f"payload{where} is not a JSON object")
    return {
        name: encode_value(value)
        for name, value in document.items()
        if value is not None
    }
