# src/hubflow/plugins/adapters/sink.py
"""In-memory destinations: an append-only collector and a keyed upsert loader.

Both write to a MemorySinkStore that the service places in the adapter
context's resources under ``memory_sinks``.
"""

from __future__ import annotations

import copy
import threading
from typing import Any

from hubflow.contracts.adapter import ConfigField, FieldType
from hubflow.contracts.enums import AdapterCategory, StepType
from hubflow.contracts.errors import AdapterConfigurationError
from hubflow.contracts.results import AdapterResult, Record, RecordError
from hubflow.engine.routing import MISSING, get_path
from hubflow.plugins.base import AdapterConfig, BaseAdapter
from hubflow.plugins.protocols import AdapterContext

MEMORY_SINKS_RESOURCE = "memory_sinks"


class MemorySinkStore:
    """Thread-safe named record collections."""

    def __init__(self) -> None:
        self._collections: dict[str, list[Record]] = {}
        self._keyed: dict[str, dict[str, Record]] = {}
        self._lock = threading.Lock()

    def append(self, name: str, records: list[Record]) -> None:
        with self._lock:
            self._collections.setdefault(name, []).extend(copy.deepcopy(records))

    def upsert(self, name: str, key: str, record: Record) -> bool:
        """Store ``record`` under ``key``; True when it was newly created."""
        with self._lock:
            table = self._keyed.setdefault(name, {})
            created = key not in table
            table[key] = copy.deepcopy(record)
            return created

    def records(self, name: str) -> list[Record]:
        with self._lock:
            if name in self._keyed:
                return copy.deepcopy(list(self._keyed[name].values()))
            return copy.deepcopy(self._collections.get(name, []))

    def names(self) -> list[str]:
        with self._lock:
            return sorted({*self._collections, *self._keyed})

    def clear(self) -> None:
        with self._lock:
            self._collections.clear()
            self._keyed.clear()


def _store(ctx: AdapterContext) -> MemorySinkStore:
    store = ctx.resources.get(MEMORY_SINKS_RESOURCE)
    if not isinstance(store, MemorySinkStore):
        raise AdapterConfigurationError(
            f"No MemorySinkStore available under resource '{MEMORY_SINKS_RESOURCE}'", step_key=ctx.step_key
        )
    return store


class CollectSinkConfig(AdapterConfig):
    collection: str = "default"


class CollectSink(BaseAdapter):
    """Append every record to a named in-memory collection."""

    code = "collect"
    step_type = StepType.SINK
    name = "Collect"
    category = AdapterCategory.DESTINATION
    description = "Appends records to an in-memory collection."
    config_model = CollectSinkConfig
    config_fields = (ConfigField("collection", FieldType.STRING, default="default"),)
    writes = ("memory",)

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        cfg = self.typed_config(CollectSinkConfig)
        _store(ctx).append(cfg.collection, records)
        return AdapterResult(records=records, meta={"written": len(records)})


class MemoryLoadConfig(AdapterConfig):
    collection: str
    key_field: str
    destination: str = "memory"


class MemoryLoad(BaseAdapter):
    """Upsert records into a keyed in-memory collection.

    Records without the key field fail with code MISSING_KEY.
    """

    code = "memory-load"
    step_type = StepType.LOAD
    name = "Memory upsert"
    category = AdapterCategory.DESTINATION
    description = "Creates or updates records by key in an in-memory collection."
    config_model = MemoryLoadConfig
    config_fields = (
        ConfigField("collection", FieldType.STRING, required=True),
        ConfigField("keyField", FieldType.STRING, required=True),
        ConfigField("destination", FieldType.STRING, default="memory"),
    )
    writes = ("memory",)

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        cfg = self.typed_config(MemoryLoadConfig)
        store = _store(ctx)
        loaded: list[Record] = []
        errors: list[RecordError] = []
        counts: dict[str, Any] = {"created": 0, "updated": 0, "destination": cfg.destination}
        for index, record in enumerate(records):
            key = get_path(record, cfg.key_field)
            if key is MISSING or key is None:
                errors.append(
                    RecordError(index=index, message=f"Missing key field '{cfg.key_field}'", code="MISSING_KEY", field=cfg.key_field, record=record)
                )
                continue
            if store.upsert(cfg.collection, str(key), record):
                counts["created"] += 1
            else:
                counts["updated"] += 1
            loaded.append(record)
        return AdapterResult(records=loaded, errors=errors, meta=counts)
