# src/hubflow/plugins/adapters/__init__.py
"""Built-in adapters, contributed through the hubflow_get_adapters hook."""

from hubflow.plugins.adapters.extract import MemoryExtract
from hubflow.plugins.adapters.route import BranchRoute
from hubflow.plugins.adapters.sink import MEMORY_SINKS_RESOURCE, CollectSink, MemoryLoad, MemorySinkStore
from hubflow.plugins.adapters.transform import Enrich, FieldMap, Filter, Formula
from hubflow.plugins.adapters.validate import RequiredFields, SchemaRules
from hubflow.plugins.hookspecs import hookimpl
from hubflow.plugins.protocols import AdapterProtocol

BUILTIN_ADAPTERS: tuple[type[AdapterProtocol], ...] = (
    MemoryExtract,
    FieldMap,
    Formula,
    Filter,
    Enrich,
    RequiredFields,
    SchemaRules,
    BranchRoute,
    MemoryLoad,
    CollectSink,
)


class BuiltinAdapters:
    """pluggy plugin exposing the built-in adapters."""

    @hookimpl
    def hubflow_get_adapters(self) -> list[type[AdapterProtocol]]:
        return list(BUILTIN_ADAPTERS)


__all__ = [
    "BUILTIN_ADAPTERS",
    "MEMORY_SINKS_RESOURCE",
    "BranchRoute",
    "BuiltinAdapters",
    "CollectSink",
    "Enrich",
    "FieldMap",
    "Filter",
    "Formula",
    "MemoryExtract",
    "MemoryLoad",
    "MemorySinkStore",
    "RequiredFields",
    "SchemaRules",
]
