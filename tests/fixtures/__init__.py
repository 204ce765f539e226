"""Shared test fixtures: test adapters, hook listeners and definition builders."""
