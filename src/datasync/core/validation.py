"""Input validation for datasync.

This module provides validation for caller input (dataset ids, record uids,
payloads) and for server responses. All validators raise ValidationError
with descriptive messages.

CRITICAL: This module must have NO UI or CLI dependencies.
"""

from __future__ import annotations

from typing import Any, Dict
from urllib.parse import urlparse

from .hashing import canonicalize

__all__ = [
    "ValidationError",
    "MAX_DATASET_ID_LENGTH",
    "validate_dataset_id",
    "validate_uid",
    "validate_payload",
    "validate_json_object",
    "validate_url",
    "validate_sync_response",
    "validate_sync_records_response",
]

MAX_DATASET_ID_LENGTH = 200
RESPONSE_UPDATE_BUCKETS = ("hashes", "applied", "failed", "collisions")
RESPONSE_DELTA_BUCKETS = ("create", "update", "delete")


class ValidationError(ValueError):
    """Validation error with field and message attributes."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"

    def __repr__(self) -> str:
        return f"ValidationError(field='{self.field}', message='{self.message}')"


def validate_dataset_id(value: Any, field_name: str = "dataset_id") -> str:
    """Validate a dataset id.

    Dataset ids become a URL path segment and a storage file name, so path
    separators are rejected.
    """
    if not isinstance(value, str):
        raise ValidationError(field_name, f"must be a string, got {type(value).__name__}")
    if not value.strip():
        raise ValidationError(field_name, "cannot be empty")
    if len(value) > MAX_DATASET_ID_LENGTH:
        raise ValidationError(
            field_name, f"must be at most {MAX_DATASET_ID_LENGTH} characters"
        )
    if "/" in value or "\\" in value or value in (".", ".."):
        raise ValidationError(field_name, "must not contain path separators")
    return value


def validate_uid(value: Any, field_name: str = "uid") -> str:
    """Validate a record uid."""
    if not isinstance(value, str):
        raise ValidationError(field_name, f"must be a string, got {type(value).__name__}")
    if not value:
        raise ValidationError(field_name, "cannot be empty")
    return value


def validate_payload(value: Any, field_name: str = "data") -> Any:
    """Validate that a record payload is a well-formed JSON value."""
    try:
        canonicalize(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(field_name, f"not a valid JSON value: {e}") from None
    return value


def validate_json_object(value: Any, field_name: str) -> Dict[str, Any]:
    """Validate that a value is a JSON object (dict), converting None to {}."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(field_name, f"must be an object, got {type(value).__name__}")
    validate_payload(value, field_name)
    return value


def validate_url(value: Any, field_name: str = "cloud_url") -> str:
    """Validate an http(s) URL."""
    if not isinstance(value, str) or not value:
        raise ValidationError(field_name, "must be a non-empty string")
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https"):
        raise ValidationError(field_name, "must use http or https")
    if not parsed.netloc:
        raise ValidationError(field_name, "must include a host")
    return value.rstrip("/")


def _check_optional_hash(data: Dict[str, Any]) -> None:
    value = data.get("hash")
    if value is not None and not isinstance(value, str):
        raise ValidationError("hash", f"must be a string, got {type(value).__name__}")


def _check_entry_map(value: Any, field_name: str) -> None:
    if value is None:
        return
    if not isinstance(value, dict):
        raise ValidationError(field_name, f"must be an object, got {type(value).__name__}")
    for key, entry in value.items():
        if not isinstance(entry, dict):
            raise ValidationError(f"{field_name}.{key}", "must be an object")


def validate_sync_response(data: Any) -> Dict[str, Any]:
    """Validate the shape of a phase-one ("sync") response.

    Checked up front so that a malformed response is rejected as a whole
    rather than being partially applied.
    """
    if not isinstance(data, dict):
        raise ValidationError("response", f"must be an object, got {type(data).__name__}")
    _check_optional_hash(data)
    updates = data.get("updates")
    if updates is None:
        return data
    if not isinstance(updates, dict):
        raise ValidationError("updates", "must be an object")
    for bucket in RESPONSE_UPDATE_BUCKETS:
        _check_entry_map(updates.get(bucket), f"updates.{bucket}")
    for bucket in ("applied", "failed", "collisions"):
        for key, entry in (updates.get(bucket) or {}).items():
            if not isinstance(entry.get("uid"), str):
                raise ValidationError(f"updates.{bucket}.{key}.uid", "must be a string")
    for key, entry in (updates.get("applied") or {}).items():
        if entry.get("action") == "create" and not isinstance(entry.get("hash"), str):
            raise ValidationError(f"updates.applied.{key}.hash", "must be a string")
    return data


def validate_sync_records_response(data: Any) -> Dict[str, Any]:
    """Validate the shape of a phase-two ("syncRecords") response."""
    if not isinstance(data, dict):
        raise ValidationError("response", f"must be an object, got {type(data).__name__}")
    _check_optional_hash(data)
    for bucket in RESPONSE_DELTA_BUCKETS:
        _check_entry_map(data.get(bucket), bucket)
    for bucket in ("create", "update"):
        for uid, entry in (data.get(bucket) or {}).items():
            if "data" not in entry:
                raise ValidationError(f"{bucket}.{uid}.data", "is required")
            validate_payload(entry["data"], f"{bucket}.{uid}.data")
    return data
