"""Canonical content hashing for datasync.

Every equality and identity decision in the sync engine is made by comparing
content hashes: record fingerprints, pending change keys and the per-record
hashes exchanged with the sync endpoint.

The canonical form turns every object into a list of {"key", "value"} pairs
sorted by key, and every array into a list of {"key", "value"} pairs keyed by
the stringified index. The result is serialized compactly and hashed with
SHA-1. Two values that differ only in object key order hash identically.

CRITICAL: This module must have NO UI or CLI dependencies.
"""

from __future__ import annotations

import hashlib
import json
import math
from typing import Any, Dict, List, Union

JSONValue = Union[None, bool, int, float, str, List[Any], Dict[str, Any]]

__all__ = ["JSONValue", "canonicalize", "compute_hash", "hash_text"]


def canonicalize(value: Any) -> Any:
    """Convert a JSON-like value into its canonical, order-independent form.

    Args:
        value: dict, list/tuple, str, int, float, bool or None

    Returns:
        Nested lists of {"key": ..., "value": ...} dicts, or the scalar itself

    Raises:
        TypeError: If a non-JSON value (or a non-string object key) is found
        ValueError: If a float is NaN or infinite
    """
    if isinstance(value, dict):
        for key in value:
            if not isinstance(key, str):
                raise TypeError(
                    f"Object keys must be strings, got {type(key).__name__}: {key!r}"
                )
        return [
            {"key": key, "value": canonicalize(value[key])}
            for key in sorted(value)
        ]
    if isinstance(value, (list, tuple)):
        return [
            {"key": str(index), "value": canonicalize(item)}
            for index, item in enumerate(value)
        ]
    if value is None or isinstance(value, (str, bool, int)):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"Non-finite number in JSON tree: {value!r}")
        return value
    raise TypeError(f"A {type(value).__name__} was snuck into a JSON tree: {value!r}")


def hash_text(text: str) -> str:
    """SHA-1 of ASCII text as lowercase hex."""
    return hashlib.sha1(text.encode("ascii")).hexdigest()


def compute_hash(value: Any) -> str:
    """Compute the stable content hash of a JSON-like value.

    Args:
        value: Any JSON-like value

    Returns:
        40 character lowercase hex SHA-1 digest
    """
    canonical = canonicalize(value)
    # ensure_ascii keeps the serialized form pure ASCII for non-latin text
    text = json.dumps(canonical, separators=(",", ":"), ensure_ascii=True, allow_nan=False)
    return hash_text(text)
