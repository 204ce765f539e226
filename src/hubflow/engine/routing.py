# src/hubflow/engine/routing.py
"""RouteEvaluator: first-match branch selection for ROUTE steps.

Conditions within a branch are AND-ed; branches are tried in declaration
order and the first one whose conditions all hold wins. Records matching
no branch go to ``defaultBranch`` when one is configured, otherwise they
are dropped.

Comparator semantics:
    gt/lt/gte/lte   numeric comparison; a missing or null field counts as 0
    contains        substring for strings, membership for lists
    startsWith/endsWith  string prefix/suffix of the stringified value
    in/notIn        membership of the field value in the condition's list
    matches/regex   re.search of the condition pattern in the stringified value
    exists          field path resolves (value may be null)
    isNull          field is missing or null
"""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from typing import Any

from hubflow.contracts.definition import RouteCondition, RouteConfig
from hubflow.contracts.enums import Comparator

MISSING = object()


def get_path(record: dict[str, Any], path: str) -> Any:
    """Resolve a dot-separated path, returning the MISSING sentinel when any segment is absent.

    List segments accept integer indexes (``items.0.sku``).
    """
    current: Any = record
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return MISSING
            current = current[segment]
        elif isinstance(current, list) and segment.lstrip("-").isdigit():
            index = int(segment)
            if index >= len(current) or index < -len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def has_path(record: dict[str, Any], path: str) -> bool:
    return get_path(record, path) is not MISSING


def _as_number(value: Any) -> float:
    if value is MISSING or value is None:
        return 0.0
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, int | float):
        return float(value)
    try:
        return float(str(value))
    except ValueError:
        return float("nan")


def _as_text(value: Any) -> str:
    if value is MISSING or value is None:
        return ""
    return str(value)


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list | tuple | set):
        return list(value)
    if isinstance(value, str):
        return [v.strip() for v in value.split(",")]
    return [value]


@dataclass(frozen=True, slots=True)
class RouteDecision:
    """Partition of a batch across branches."""

    branches: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    dropped: list[dict[str, Any]] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {name: len(records) for name, records in self.branches.items()}


class RouteEvaluator:
    """Evaluates RouteConfig conditions against records.

    Stateless apart from a cache of compiled regular expressions, so one
    instance may be shared by concurrent workers.
    """

    def __init__(self) -> None:
        self._patterns: dict[str, re.Pattern[str]] = {}
        self._lock = threading.Lock()

    def _pattern(self, pattern: str) -> re.Pattern[str]:
        with self._lock:
            compiled = self._patterns.get(pattern)
            if compiled is None:
                compiled = re.compile(pattern)
                self._patterns[pattern] = compiled
            return compiled

    def matches(self, record: dict[str, Any], condition: RouteCondition) -> bool:
        """Evaluate one condition against a record."""
        actual = get_path(record, condition.field)
        expected = condition.value
        cmp = condition.cmp

        if cmp == Comparator.EXISTS:
            return actual is not MISSING
        if cmp == Comparator.IS_NULL:
            return actual is MISSING or actual is None
        if cmp == Comparator.EQ:
            return actual is not MISSING and actual == expected
        if cmp == Comparator.NE:
            return actual is MISSING or actual != expected
        if cmp == Comparator.GT:
            return _as_number(actual) > _as_number(expected)
        if cmp == Comparator.LT:
            return _as_number(actual) < _as_number(expected)
        if cmp == Comparator.GTE:
            return _as_number(actual) >= _as_number(expected)
        if cmp == Comparator.LTE:
            return _as_number(actual) <= _as_number(expected)
        if cmp == Comparator.IN:
            return actual is not MISSING and actual in _as_list(expected)
        if cmp == Comparator.NOT_IN:
            return actual is MISSING or actual not in _as_list(expected)
        if cmp in (Comparator.CONTAINS, Comparator.NOT_CONTAINS):
            if isinstance(actual, list):
                found = expected in actual
            else:
                found = _as_text(expected) in _as_text(actual)
            return found if cmp == Comparator.CONTAINS else not found
        if cmp == Comparator.STARTS_WITH:
            return _as_text(actual).startswith(_as_text(expected))
        if cmp == Comparator.ENDS_WITH:
            return _as_text(actual).endswith(_as_text(expected))
        if cmp in (Comparator.MATCHES, Comparator.REGEX):
            if actual is MISSING or actual is None:
                return False
            return self._pattern(_as_text(expected)).search(_as_text(actual)) is not None
        raise ValueError(f"Unsupported comparator: {cmp}")

    def evaluate(self, record: dict[str, Any], config: RouteConfig) -> str | None:
        """Return the branch for a record: first full match, else default, else None."""
        for branch in config.branches:
            if all(self.matches(record, condition) for condition in branch.when):
                return branch.name
        return config.default_branch

    def partition(self, records: list[dict[str, Any]], config: RouteConfig) -> RouteDecision:
        """Split a batch across branches, preserving input order within each branch.

        Every declared branch appears in the result, possibly empty.
        """
        decision = RouteDecision(branches={name: [] for name in [b.name for b in config.branches]})
        if config.default_branch is not None:
            decision.branches.setdefault(config.default_branch, [])
        for record in records:
            target = self.evaluate(record, config)
            if target is None:
                decision.dropped.append(record)
            else:
                decision.branches[target].append(record)
        return decision
