# src/hubflow/plugins/__init__.py
"""Adapter plugin system: protocols, base classes, pluggy hooks and the registry."""

from hubflow.plugins.base import AdapterConfig, BaseAdapter
from hubflow.plugins.hookspecs import hookimpl
from hubflow.plugins.manager import AdapterPluginManager, AdapterRegistry
from hubflow.plugins.protocols import AdapterContext, AdapterProtocol

__all__ = [
    "AdapterConfig",
    "AdapterContext",
    "AdapterPluginManager",
    "AdapterProtocol",
    "AdapterRegistry",
    "BaseAdapter",
    "hookimpl",
]
