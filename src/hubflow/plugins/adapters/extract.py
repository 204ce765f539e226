# src/hubflow/plugins/adapters/extract.py
"""In-memory extract adapter.

Emits the records listed in its config followed by any seed records the
run was started with. Useful for fixtures, dry runs and webhook-fed
pipelines where the trigger delivers the payload.
"""

import copy
from typing import Any

from pydantic import Field

from hubflow.contracts.adapter import ConfigField, FieldType
from hubflow.contracts.enums import AdapterCategory, StepType
from hubflow.contracts.results import AdapterResult, Record
from hubflow.plugins.base import AdapterConfig, BaseAdapter
from hubflow.plugins.protocols import AdapterContext


class MemoryExtractConfig(AdapterConfig):
    records: list[dict[str, Any]] = Field(default_factory=list)


class MemoryExtract(BaseAdapter):
    """Produce records from config and seed data.

    Config options:
        records: Records to emit before any seed records (default: [])
    """

    code = "memory-extract"
    step_type = StepType.EXTRACT
    name = "In-memory records"
    category = AdapterCategory.DATA_SOURCE
    description = "Emits configured records followed by the run's seed records."
    config_model = MemoryExtractConfig
    config_fields = (ConfigField("records", FieldType.ARRAY, label="Records"),)
    pure = True

    def execute(self, records: list[Record], ctx: AdapterContext) -> AdapterResult:
        cfg = self.typed_config(MemoryExtractConfig)
        # Deep copy so downstream mutation never leaks into the definition
        produced = copy.deepcopy(cfg.records) + [dict(r) for r in records]
        return AdapterResult(records=produced, meta={"extracted": len(produced)})
