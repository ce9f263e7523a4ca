"""
Structural validation of the raw Overpass response and the converted
feature collection
"""

import json
from typing import Any, NamedTuple, Optional

POLYGONAL_TYPES = ("Polygon", "MultiPolygon")


class ValidationResult(NamedTuple):
    ok: bool
    reason: Optional[str] = None
    document: Optional[Any] = None


def validate(artifact: Any, required_key: Optional[str] = None) -> ValidationResult:
    """
    Validate an intermediate artifact.

    Args:
        artifact: Raw text/bytes, or an already parsed document
        required_key: Top-level key that must exist, be non-null and, when
            it holds an array, be non-empty

    Returns:
        ValidationResult with the parsed document when ok
    """
    document = artifact

    if isinstance(artifact, (bytes, bytearray)):
        try:
            artifact = artifact.decode("utf-8")
        except UnicodeDecodeError as e:
            return ValidationResult(False, f"not valid UTF-8: {e}")

    if isinstance(artifact, str):
        if not artifact.strip():
            return ValidationResult(False, "empty document")
        try:
            document = json.loads(artifact)
        except json.JSONDecodeError as e:
            return ValidationResult(False, f"not parseable JSON: {e.msg} at line {e.lineno}")

    if required_key is None:
        return ValidationResult(True, document=document)

    if not isinstance(document, dict):
        return ValidationResult(False, f"expected an object with '{required_key}', got {type(document).__name__}")

    if required_key not in document:
        return ValidationResult(False, f"missing required key '{required_key}'")

    value = document[required_key]
    if value is None:
        return ValidationResult(False, f"required key '{required_key}' is null")

    if isinstance(value, list) and len(value) == 0:
        return ValidationResult(False, f"required key '{required_key}' is an empty array")

    return ValidationResult(True, document=document)


def count_polygonal(collection: dict) -> int:
    """Count Polygon/MultiPolygon features in a feature collection"""
    count = 0
    for feature in collection.get("features") or []:
        geometry = (feature or {}).get("geometry") or {}
        if geometry.get("type") in POLYGONAL_TYPES:
            count += 1
    return count
