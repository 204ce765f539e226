# src/hubflow/plugins/hookspecs.py
"""pluggy hook specifications: how plugins contribute adapters and receive events.

A plugin is any object with @hookimpl methods, registered on an
AdapterPluginManager before the registry is built:

    class WarehouseAdapters:
        @hookimpl
        def hubflow_get_adapters(self):
            return [WarehouseLoad]

        @hookimpl
        def hubflow_on_hook(self, stage, payload, run_id):
            metrics.increment(stage)

Adapters are collected once, when the registry is built. Listener hooks
fire for every hook stage of every run.
"""

from typing import TYPE_CHECKING, Any

import pluggy

if TYPE_CHECKING:
    from hubflow.plugins.protocols import AdapterProtocol

# Project name for pluggy
PROJECT_NAME = "hubflow"

# Hook specification marker
hookspec = pluggy.HookspecMarker(PROJECT_NAME)

# Hook implementation marker (for plugins to use)
hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class HubflowAdapterSpec:
    """Hook specifications for adapter plugins."""

    @hookspec
    def hubflow_get_adapters(self) -> list[type["AdapterProtocol"]]:  # type: ignore[empty-body]
        """Return adapter classes.

        Returns:
            List of adapter classes (not instances)
        """


class HubflowHookListenerSpec:
    """Hook specifications for pipeline event listeners."""

    @hookspec
    def hubflow_on_hook(self, stage: str, payload: dict[str, Any], run_id: str | None) -> None:
        """Receive a pipeline hook event.

        Listeners are invoked one at a time; a listener that raises is
        logged and skipped, never failing the run.

        Args:
            stage: HookStage value (e.g. "AFTER_TRANSFORM")
            payload: Event payload
            run_id: Run that emitted the event, None for test fires
        """

    @hookspec
    def hubflow_on_event(self, event: str, payload: dict[str, Any], run_id: str | None) -> None:
        """Receive a domain event emitted by an EMIT hook action.

        Args:
            event: Event name from the hook action
            payload: Payload of the hook stage that emitted it
            run_id: Run that emitted the event
        """
