"""Deterministic normalization of entity snapshots for hashing and diffing.

Two snapshots that differ only in key order, in ``1`` vs ``1.0``, or in an
explicit ``None`` vs a missing key normalize to the same structure and the
same bytes.
"""

from __future__ import annotations

import enum
import json
import math
from collections.abc import Mapping, Set
from decimal import Decimal
from typing import Any

from pydantic_core import PydanticSerializationError, to_jsonable_python

from audit_engine.exceptions import SerializationError

_SCALARS = (str, int, bool)


def _normalize_number(value: float | Decimal) -> int | float:
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise SerializationError(f"Non-finite decimal is not representable: {value}")
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    if not math.isfinite(value):
        raise SerializationError(f"Non-finite number is not representable: {value}")
    if value.is_integer():
        return int(value)
    return value


def _normalize_key(key: Any) -> str:
    if isinstance(key, str):
        return key
    converted = _normalize(key, set())
    if isinstance(converted, str):
        return converted
    return json.dumps(converted, sort_keys=True, separators=(",", ":"))


def _normalize(value: Any, active: set[int]) -> Any:
    if value is None or type(value) in _SCALARS:
        return value
    if isinstance(value, enum.Enum):
        return _normalize(value.value, active)
    if isinstance(value, bool):
        return bool(value)
    if isinstance(value, str):
        return str(value)
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float | Decimal):
        return _normalize_number(value)

    if isinstance(value, Mapping | list | tuple | Set):
        marker = id(value)
        if marker in active:
            raise SerializationError("Snapshot contains a cyclic reference")
        active.add(marker)
        try:
            if isinstance(value, Mapping):
                result: dict[str, Any] = {}
                for key, item in value.items():
                    normalized = _normalize(item, active)
                    if normalized is not None:
                        result[_normalize_key(key)] = normalized
                return dict(sorted(result.items()))
            if isinstance(value, Set):
                items = [_normalize(item, active) for item in value]
                return sorted(items, key=_dumps)
            return [_normalize(item, active) for item in value]
        finally:
            active.discard(marker)

    try:
        converted = to_jsonable_python(value)
    except PydanticSerializationError as exc:
        raise SerializationError(f"Value of type {type(value).__name__} is not representable") from exc
    return _normalize(converted, active)


def _dumps(normalized: Any) -> str:
    return json.dumps(normalized, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def normalize(value: Any) -> Any:
    """Return a JSON-compatible, order-independent copy of ``value``."""
    return _normalize(value, set())


def normalize_snapshot(snapshot: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Normalize an optional entity snapshot, keeping ``None`` as "absent"."""
    if snapshot is None:
        return None
    if not isinstance(snapshot, Mapping):
        raise SerializationError(f"Snapshot must be a mapping, got {type(snapshot).__name__}")
    return normalize(snapshot)


def canonical_bytes(value: Any) -> bytes:
    """Serialize ``value`` to its canonical UTF-8 JSON form."""
    try:
        return _dumps(normalize(value)).encode("utf-8")
    except ValueError as exc:
        raise SerializationError(str(exc)) from exc


def canonical_equal(left: Any, right: Any) -> bool:
    """Structural equality under canonicalization."""
    return canonical_bytes(left) == canonical_bytes(right)
