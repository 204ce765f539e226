# src/hubflow/core/canonical.py
"""Canonical JSON for record payloads (RFC 8785 / JCS via the rfc8785 package).

Dead-letter entries, retry audits and LOAD idempotency keys all store or
compare records by their canonical form, so two records that differ only
in key order are the same record.

Values outside JSON are normalized first: datetimes become UTC ISO
strings, dates ISO strings, Decimals their string form, bytes
``{"__bytes__": base64}``, tuples lists. NaN and Infinity raise instead of
being coerced: a record that cannot be written back exactly cannot be
replayed.
"""

from __future__ import annotations

import base64
import hashlib
import math
from datetime import UTC, date, datetime
from decimal import Decimal
from functools import singledispatch
from typing import Any

import rfc8785


@singledispatch
def normalize_for_canonical(value: Any) -> Any:
    """Recursively convert ``value`` to JSON primitives.

    Unknown types pass through and fail in rfc8785 with a TypeError.

    Raises:
        ValueError: If value contains a non-finite float or Decimal
    """
    return value


@normalize_for_canonical.register
def _(value: dict) -> dict[str, Any]:  # type: ignore[type-arg]
    return {str(k): normalize_for_canonical(v) for k, v in value.items()}


@normalize_for_canonical.register(list)
@normalize_for_canonical.register(tuple)
def _(value: list[Any] | tuple[Any, ...]) -> list[Any]:
    return [normalize_for_canonical(v) for v in value]


@normalize_for_canonical.register
def _(value: float) -> float:
    if not math.isfinite(value):
        raise ValueError(f"Cannot canonicalize non-finite float: {value}. Use None for missing values, not NaN.")
    return value


@normalize_for_canonical.register
def _(value: Decimal) -> str:
    if not value.is_finite():
        raise ValueError(f"Cannot canonicalize non-finite Decimal: {value}")
    return str(value)


# datetime subclasses date, so it needs its own registration
@normalize_for_canonical.register
def _(value: datetime) -> str:
    aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return aware.astimezone(UTC).isoformat()


@normalize_for_canonical.register
def _(value: date) -> str:
    return value.isoformat()


@normalize_for_canonical.register
def _(value: bytes) -> dict[str, str]:
    return {"__bytes__": base64.b64encode(value).decode("ascii")}


def canonical_json(obj: Any) -> str:
    """Canonical JSON text: sorted keys, no whitespace, JCS number formatting.

    Raises:
        ValueError: If obj contains NaN or Infinity
        TypeError: If obj contains a value with no JSON form
    """
    encoded: bytes = rfc8785.dumps(normalize_for_canonical(obj))
    return encoded.decode("utf-8")


def stable_hash(obj: Any) -> str:
    """SHA-256 hex digest of ``canonical_json(obj)``."""
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()
