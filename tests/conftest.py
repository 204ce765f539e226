# tests/conftest.py
"""Shared test configuration and fixtures.

Fixtures here build the runtime pieces most tests need: an adapter registry
holding the built-in adapters plus the test adapters from
tests.fixtures.adapters, a compiler over it, an in-memory dead-letter store
and a PipelineService wired to all of them.
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest
from hypothesis import Phase, Verbosity, settings

from hubflow.core.config import RuntimeSettings
from hubflow.core.dead_letter import DeadLetterDB, DeadLetterStore
from hubflow.engine.compiler import PipelineCompiler
from hubflow.engine.executors import StepExecutor
from hubflow.engine.hooks import HookDispatcher
from hubflow.plugins.manager import AdapterPluginManager, AdapterRegistry
from hubflow.service import PipelineService
from hubflow.triggers.webhook import InMemorySecretResolver
from tests.fixtures.adapters import RecordingListener, TestAdapters


def _no_sleep(_seconds: float) -> None:
    pass


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def plugin_manager(listener: RecordingListener) -> AdapterPluginManager:
    """Plugin manager with built-in adapters, test adapters and a recording listener."""
    manager = AdapterPluginManager()
    manager.register_builtin_adapters()
    manager.register(TestAdapters(), name="test-adapters")
    manager.register(listener, name="recording-listener")
    return manager


@pytest.fixture
def registry(plugin_manager: AdapterPluginManager) -> AdapterRegistry:
    return plugin_manager.build_registry()


@pytest.fixture
def compiler(registry: AdapterRegistry) -> PipelineCompiler:
    return PipelineCompiler(registry)


@pytest.fixture
def hooks(plugin_manager: AdapterPluginManager) -> HookDispatcher:
    return HookDispatcher(plugin_manager.pluggy_manager)


@pytest.fixture
def executor() -> StepExecutor:
    """Step executor whose retry delays and backoffs return immediately."""
    return StepExecutor(RuntimeSettings(), sleep=_no_sleep)


@pytest.fixture
def dead_letters() -> Iterator[DeadLetterStore]:
    store = DeadLetterStore(DeadLetterDB.in_memory())
    yield store
    store.close()


@pytest.fixture
def secrets() -> InMemorySecretResolver:
    return InMemorySecretResolver(
        {
            "orders-hmac": "hmac-secret",
            "orders-api-key": "key-123",
            "orders-basic": "alice:s3cret",
            "orders-jwt": "jwt-secret",
        }
    )


@pytest.fixture
def service(
    plugin_manager: AdapterPluginManager,
    dead_letters: DeadLetterStore,
    secrets: InMemorySecretResolver,
) -> Iterator[PipelineService]:
    with PipelineService(
        RuntimeSettings(),
        plugin_manager=plugin_manager,
        dead_letters=dead_letters,
        secrets=secrets,
        sleep=_no_sleep,
    ) as svc:
        yield svc


# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))
