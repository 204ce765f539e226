# src/hubflow/core/__init__.py
"""Core infrastructure: logging, configuration, canonical JSON, graphs, rate limits and the dead-letter store."""
