# src/hubflow/plugins/manager.py
"""Adapter discovery and the immutable AdapterRegistry.

Uses pluggy for hook-based adapter registration. Plugins are registered on
an AdapterPluginManager; build_registry() snapshots every contributed
adapter into an AdapterRegistry that never changes afterwards.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from types import MappingProxyType
from typing import Any

import pluggy
import structlog

from hubflow.contracts.adapter import AdapterDefinition
from hubflow.contracts.enums import StepType
from hubflow.contracts.errors import AdapterRegistrationError
from hubflow.plugins.hookspecs import PROJECT_NAME, HubflowAdapterSpec, HubflowHookListenerSpec

slog = structlog.get_logger(__name__)


class AdapterRegistry:
    """Lookup of adapter definitions by code.

    Immutable once built: lookups may be made from any thread without
    locking.

    Usage:
        registry = AdapterRegistry.with_builtins()
        definition = registry.get("map")
    """

    def __init__(self, definitions: Iterable[AdapterDefinition]) -> None:
        by_code: dict[str, AdapterDefinition] = {}
        for definition in definitions:
            if not definition.code:
                raise AdapterRegistrationError("Adapter code must be a non-empty string")
            if definition.code in by_code:
                raise AdapterRegistrationError(
                    f"Duplicate adapter code: '{definition.code}'. "
                    f"Already registered for step type {by_code[definition.code].type.value}"
                )
            by_code[definition.code] = definition
        self._by_code = MappingProxyType(by_code)

    @classmethod
    def with_builtins(cls, *plugins: Any) -> AdapterRegistry:
        """Build a registry holding the built-in adapters plus those of ``plugins``."""
        manager = AdapterPluginManager()
        manager.register_builtin_adapters()
        for plugin in plugins:
            manager.register(plugin)
        return manager.build_registry()

    def get(self, code: str) -> AdapterDefinition | None:
        return self._by_code.get(code)

    def require(self, code: str) -> AdapterDefinition:
        """Get an adapter definition, raising if the code is unknown.

        Raises:
            KeyError: If no adapter is registered under ``code``
        """
        definition = self._by_code.get(code)
        if definition is None:
            raise KeyError(f"Unknown adapter code: '{code}'. Available: {sorted(self._by_code)}")
        return definition

    def definitions(self) -> list[AdapterDefinition]:
        return list(self._by_code.values())

    def for_step_type(self, step_type: StepType) -> list[AdapterDefinition]:
        return [d for d in self._by_code.values() if d.type == step_type]

    def codes(self) -> list[str]:
        return sorted(self._by_code)

    def __contains__(self, code: object) -> bool:
        return code in self._by_code

    def __iter__(self) -> Iterator[AdapterDefinition]:
        return iter(self._by_code.values())

    def __len__(self) -> int:
        return len(self._by_code)


class AdapterPluginManager:
    """Manages plugin registration for adapters and hook listeners.

    Usage:
        manager = AdapterPluginManager()
        manager.register_builtin_adapters()
        manager.register(MyPlugin())
        registry = manager.build_registry()
    """

    def __init__(self) -> None:
        self._pm = pluggy.PluginManager(PROJECT_NAME)
        self._pm.add_hookspecs(HubflowAdapterSpec)
        self._pm.add_hookspecs(HubflowHookListenerSpec)

    @property
    def pluggy_manager(self) -> pluggy.PluginManager:
        return self._pm

    def register_builtin_adapters(self) -> None:
        """Register the adapters shipped with hubflow."""
        from hubflow.plugins.adapters import BuiltinAdapters

        self.register(BuiltinAdapters(), name="hubflow-builtin")

    def register(self, plugin: Any, name: str | None = None) -> None:
        """Register a plugin.

        Args:
            plugin: Object implementing hubflow_get_adapters and/or hubflow_on_hook
            name: Optional registration name
        """
        self._pm.register(plugin, name=name)

    def build_registry(self) -> AdapterRegistry:
        """Snapshot all contributed adapters into an immutable registry.

        Raises:
            AdapterRegistrationError: On duplicate codes or incomplete adapter classes
        """
        definitions: list[AdapterDefinition] = []
        for adapter_classes in self._pm.hook.hubflow_get_adapters():
            for adapter_cls in adapter_classes:
                try:
                    definitions.append(AdapterDefinition.from_adapter(adapter_cls))
                except AttributeError as e:
                    raise AdapterRegistrationError(f"Adapter class {adapter_cls.__name__} is missing metadata: {e}") from e
        registry = AdapterRegistry(definitions)
        slog.debug("adapter_registry_built", adapters=len(registry))
        return registry
