"""Operational HTTP API for lease and task introspection."""
