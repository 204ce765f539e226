# src/hubflow/engine/functions.py
"""Closed function table available to expressions.

Expressions can call only the functions registered here. Each function
works on JSON-shaped values; dates travel as ISO-8601 strings because
records are JSON documents.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, int | float) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=UTC)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise TypeError(f"cannot interpret {type(value).__name__} as a date")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


# --- math ---


def _round(value: float, ndigits: int = 0) -> float | int:
    result = round(value, ndigits)
    return int(result) if ndigits == 0 else result


def _sum(values: list[Any]) -> float | int:
    return sum(v for v in values if v is not None)


# --- string ---


def _concat(*parts: Any) -> str:
    return "".join("" if p is None else str(p) for p in parts)


def _substr(text: str, start: int, length: int | None = None) -> str:
    if length is None:
        return str(text)[start:]
    return str(text)[start : start + length]


def _pad(text: Any, width: int, char: str = " ", side: str = "left") -> str:
    value = str(text)
    if side == "right":
        return value.ljust(width, char)
    return value.rjust(width, char)


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    if isinstance(container, str):
        return str(item) in container
    return item in container


def _join(values: list[Any], separator: str = ",") -> str:
    return separator.join("" if v is None else str(v) for v in values)


# --- date ---


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _today() -> str:
    return datetime.now(UTC).date().isoformat()


def _parse_date(value: Any) -> str:
    return _to_datetime(value).isoformat()


def _format_date(value: Any, fmt: str = "%Y-%m-%d") -> str:
    return _to_datetime(value).strftime(fmt)


def _add_days(value: Any, days: float) -> str:
    return (_to_datetime(value) + timedelta(days=days)).isoformat()


def _date_diff(end: Any, start: Any, unit: str = "days") -> float:
    delta = _to_datetime(end) - _to_datetime(start)
    seconds = delta.total_seconds()
    divisors = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}
    if unit not in divisors:
        raise ValueError(f"unknown unit {unit!r}; expected one of {sorted(divisors)}")
    return seconds / divisors[unit]


# --- logic ---


def _coalesce(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _if(condition: Any, when_true: Any, when_false: Any = None) -> Any:
    return when_true if condition else when_false


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, list | dict | tuple):
        return len(value) == 0
    return False


# --- conversion ---


def _to_number(value: Any) -> int | float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int | float):
        return value
    number = float(str(value).strip())
    return int(number) if number.is_integer() and "." not in str(value) else number


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "y", "on")
    return bool(value)


FUNCTION_TABLE: dict[str, Callable[..., Any]] = {
    # math
    "abs": abs,
    "round": _round,
    "floor": math.floor,
    "ceil": math.ceil,
    "min": min,
    "max": max,
    "sum": _sum,
    "pow": pow,
    "sqrt": math.sqrt,
    # string
    "upper": lambda s: str(s).upper(),
    "lower": lambda s: str(s).lower(),
    "trim": lambda s: str(s).strip(),
    "len": len,
    "concat": _concat,
    "substr": _substr,
    "replace": lambda s, old, new: str(s).replace(str(old), str(new)),
    "startswith": lambda s, prefix: str(s).startswith(str(prefix)),
    "endswith": lambda s, suffix: str(s).endswith(str(suffix)),
    "contains": _contains,
    "split": lambda s, sep=",": str(s).split(sep),
    "join": _join,
    "pad": _pad,
    # date
    "now": _now,
    "today": _today,
    "parse_date": _parse_date,
    "format_date": _format_date,
    "year": lambda v: _to_datetime(v).year,
    "month": lambda v: _to_datetime(v).month,
    "day": lambda v: _to_datetime(v).day,
    "add_days": _add_days,
    "date_diff": _date_diff,
    # logic
    "coalesce": _coalesce,
    "if_": _if,
    "is_null": lambda v: v is None,
    "is_empty": _is_empty,
    # conversion
    "str": lambda v: "" if v is None else str(v),
    "int": lambda v: int(float(v)) if isinstance(v, str) else int(v),
    "float": float,
    "bool": _to_bool,
    "to_number": _to_number,
}
