# src/hubflow/engine/orchestrator/types.py
"""Run options and per-run state.

This module is a LEAF MODULE - it must NOT import from other orchestrator
submodules. core.py imports from here.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from hubflow.contracts.results import Record, StepResult


@dataclass(frozen=True)
class RunOptions:
    """How one execution of a plan behaves.

    Attributes:
        seed_records: Records delivered to root EXTRACT/TRIGGER steps
        entry_inputs: Explicit inputs for given steps; overrides seeds (replays)
        variables: Overrides merged over the definition's variables
        dry_run: Skip side effects of non-pure loaders
        capture_dead_letters: Store final record errors in the dead-letter store
        input_cap: Maximum records handed to any step (dry-run sampling)
    """

    seed_records: list[Record] | None = None
    entry_inputs: Mapping[str, list[Record]] | None = None
    variables: Mapping[str, Any] | None = None
    dry_run: bool = False
    capture_dead_letters: bool = True
    input_cap: int | None = None


@dataclass
class RunState:
    """What an execution has produced so far. Owned by one orchestrator call."""

    inputs: dict[str, list[Record]] = field(default_factory=dict)
    results: dict[str, StepResult] = field(default_factory=dict)
    capped: dict[str, int] = field(default_factory=dict)

    def done(self, key: str) -> bool:
        return key in self.results
