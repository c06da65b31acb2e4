"""
Schema fingerprinting.

A fingerprint is a SHA-256 digest over the structural shape of a schema
description: table names, column names, and for each column its type tag,
nullability and primary-key flag. Anything else in the description (private
keys, callables, non-string keys) is ignored.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any

from pg_sandbox.exceptions import InvalidSchemaError
from pg_sandbox.types import ColumnSpec, SchemaDefinition

_NOT_NULL_KEYS = ("not_null", "notNull")
_PRIMARY_KEY_KEYS = ("primary_key", "primaryKey", "primary")


def _digest(payload: Any) -> str:
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


EMPTY_FINGERPRINT = _digest({})


def _is_structural(key: Any, value: Any) -> bool:
    return isinstance(key, str) and not key.startswith("_") and not callable(value)


def _normalize_column(table: str, name: str, spec: Any) -> dict[str, Any]:
    if isinstance(spec, ColumnSpec):
        return {
            "type": spec.type,
            "nullable": bool(spec.nullable),
            "primary_key": bool(spec.primary_key),
        }

    if not isinstance(spec, Mapping):
        raise InvalidSchemaError(
            f"Column '{table}.{name}' must be a ColumnSpec or a mapping, "
            f"got {type(spec).__name__}"
        )

    type_tag = spec.get("type")
    if not type_tag:
        raise InvalidSchemaError(f"Column '{table}.{name}' has no type tag")

    if "nullable" in spec:
        nullable = bool(spec["nullable"])
    else:
        nullable = not any(bool(spec.get(k)) for k in _NOT_NULL_KEYS)

    return {
        "type": str(type_tag),
        "nullable": nullable,
        "primary_key": any(bool(spec.get(k)) for k in _PRIMARY_KEY_KEYS),
    }


def normalize_schema(schema: SchemaDefinition) -> dict[str, dict[str, dict[str, Any]]]:
    """
    Reduce a schema description to its structural shape.

    Returns:
        Plain nested dict: table -> column -> {type, nullable, primary_key}

    Raises:
        InvalidSchemaError: If a table or column entry is malformed
    """
    normalized: dict[str, dict[str, dict[str, Any]]] = {}

    for table, columns in schema.items():
        if not _is_structural(table, columns):
            continue
        if not isinstance(columns, Mapping):
            raise InvalidSchemaError(
                f"Table '{table}' must map column names to column specs"
            )
        normalized[table] = {
            name: _normalize_column(table, name, spec)
            for name, spec in columns.items()
            if _is_structural(name, spec)
        }

    return normalized


def compute_fingerprint(schema: SchemaDefinition | None) -> str:
    """
    Compute the fingerprint of a schema description.

    Pure and deterministic: equal logical schemas give equal digests, and
    adding, removing or retyping a table or column changes the digest.

    Example:
        >>> compute_fingerprint({}) == EMPTY_FINGERPRINT
        True
    """
    if not schema:
        return EMPTY_FINGERPRINT
    return _digest(normalize_schema(schema))
