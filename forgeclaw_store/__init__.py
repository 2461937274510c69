"""Persistence for messages, groups, tasks, sessions, state and an event audit log on SQLite or PostgreSQL."""

__version__ = "0.1.0"

__all__ = ["errors", "ids", "types", "schema", "ops", "schema_check", "store"]