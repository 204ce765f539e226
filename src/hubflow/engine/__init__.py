# src/hubflow/engine/__init__.py
"""Execution engine: compilation, step execution, orchestration and consumers.

Import from the submodules; this package does not re-export, since the
builtin adapters import engine modules themselves.
"""
