"""The public :class:`Store` handle used by every other subsystem.

Each method delegates to a function in :mod:`forgeclaw_store.ops`. The
backend, SQLite or PostgreSQL, is picked from the connection URL alone.
"""

from __future__ import annotations

from types import TracebackType
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from forgeclaw_store import ops, schema, schema_check
from forgeclaw_store.errors import InvalidUrl, from_db_error
from forgeclaw_store.types import (
    Cursor,
    EventFilter,
    NewEvent,
    NewMessage,
    NewTask,
    RegisteredGroup,
    StoredEvent,
    StoredMessage,
    StoredTask,
    TaskRunResult,
)

__all__ = [
    "Store",
    "is_sqlite_memory",
    "is_supported_scheme",
    "scheme_hint",
]

_SQLITE_PREFIX = "sqlite://"
_SQLITE_MEMORY_PREFIX = "sqlite::memory:"
_POSTGRES_PREFIXES = ("postgres://", "postgresql://")


def is_supported_scheme(url: str) -> bool:
    """Return True if ``url`` names a backend the store can use."""
    return url.startswith((_SQLITE_PREFIX, _SQLITE_MEMORY_PREFIX) + _POSTGRES_PREFIXES)


def is_sqlite_memory(url: str) -> bool:
    """Return True if ``url`` identifies an in-memory SQLite database."""
    return (
        url.startswith(_SQLITE_MEMORY_PREFIX)
        or url.startswith("sqlite://:memory:")
        or "?mode=memory" in url
        or "&mode=memory" in url
    )


def scheme_hint(url: str) -> str:
    """Return at most 16 characters of the part of ``url`` before ``://``."""
    return url.split("://", 1)[0][:16]


def _memory_engine() -> Engine:
    # One shared connection: every new in-memory SQLite connection would
    # otherwise be a separate, empty database.
    return sa.create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


def _sqlite_engine(url: str) -> Engine:
    if is_sqlite_memory(url):
        return _memory_engine()
    path = url[len(_SQLITE_PREFIX):].split("?", 1)[0]
    if not path:
        return _memory_engine()
    return sa.create_engine(sa.engine.URL.create("sqlite", database=path))


def _postgres_engine(url: str) -> Engine:
    rest = url.split("://", 1)[1]
    try:
        parsed = sa.engine.make_url(f"postgresql://{rest}")
    except sa_exc.ArgumentError:
        raise InvalidUrl("malformed postgres connection URL") from None
    try:
        return sa.create_engine(parsed)
    except ImportError as exc:
        raise from_db_error(exc) from None


class Store:
    """Persistence handle for messages, groups, tasks, state, sessions and events.

    Build one with :meth:`connect` or :meth:`connect_sqlite_memory`, then
    call :meth:`migrate` once before any other method.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def __repr__(self) -> str:
        return f"Store(dialect={self.engine.dialect.name!r})"

    def __enter__(self) -> Store:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @classmethod
    def connect(cls, url: str) -> Store:
        """Connect to the backend named by ``url``.

        Accepts ``sqlite://...``, ``sqlite::memory:``, ``postgres://...`` and
        ``postgresql://...``; anything else raises :class:`InvalidUrl`. An
        in-memory SQLite database is held on a single shared connection.
        """
        if not is_supported_scheme(url):
            raise InvalidUrl(f"unsupported URL scheme: {scheme_hint(url)}")
        if url.startswith(_POSTGRES_PREFIXES):
            engine = _postgres_engine(url)
        else:
            engine = _sqlite_engine(url)
        try:
            with engine.connect():
                pass
        except sa_exc.SQLAlchemyError as exc:
            engine.dispose()
            raise from_db_error(exc) from None
        return cls(engine)

    @classmethod
    def connect_sqlite_memory(cls) -> Store:
        """Connect to a fresh, independent in-memory SQLite database."""
        return cls.connect(_SQLITE_MEMORY_PREFIX)

    def migrate(self) -> list[str]:
        """Apply every pending migration; returns the names just applied."""
        return schema.migrate(self.engine)

    def close(self) -> None:
        """Release every pooled connection."""
        self.engine.dispose()

    # ----- Messages -----

    def store_message(self, msg: NewMessage) -> None:
        """Insert a message into the log."""
        ops.store_message(self.engine, msg)

    def get_messages_since(
        self, group: str, cursor: Cursor, limit: int
    ) -> list[StoredMessage]:
        """Return up to ``limit`` messages of ``group`` after ``cursor``, by ``seq``."""
        return ops.get_messages_since(self.engine, group, cursor, limit)

    # ----- Groups -----

    def get_group(self, group_id: str) -> RegisteredGroup | None:
        """Fetch a group by id, or None."""
        return ops.get_group(self.engine, group_id)

    def upsert_group(self, group: RegisteredGroup) -> None:
        """Insert or update a group, preserving ``created_at``."""
        ops.upsert_group(self.engine, group)

    # ----- Tasks -----

    def create_task(self, task: NewTask) -> str:
        """Create a scheduled task and return its generated id."""
        return ops.create_task(self.engine, task)

    def get_due_tasks(self, now: datetime, limit: int) -> list[StoredTask]:
        """Return up to ``limit`` active tasks due at ``now``, by ``(next_run, id)``."""
        return ops.get_due_tasks(self.engine, now, limit)

    def update_task_after_run(self, task_id: str, result: TaskRunResult) -> None:
        """Record a run's outcome and advance the task's scheduling fields."""
        ops.update_task_after_run(self.engine, task_id, result)

    # ----- State -----

    def get_state(self, key: str) -> str | None:
        """Fetch a state value by key."""
        return ops.get_state(self.engine, key)

    def set_state(self, key: str, value: str) -> None:
        """Insert or update a state value."""
        ops.set_state(self.engine, key, value)

    # ----- Sessions -----

    def get_session(self, group: str) -> str | None:
        """Fetch the agent session id for ``group``."""
        return ops.get_session(self.engine, group)

    def set_session(self, group: str, session_id: str) -> None:
        """Set the agent session id for ``group``."""
        ops.set_session(self.engine, group, session_id)

    # ----- Events -----

    def record_event(self, event: NewEvent) -> None:
        """Append an event to the audit log."""
        ops.record_event(self.engine, event)

    def list_events(self, event_filter: EventFilter, limit: int) -> list[StoredEvent]:
        """List events matching ``event_filter``, newest first, at most ``limit``."""
        return ops.list_events(self.engine, event_filter, limit)

    # ----- Diagnostics -----

    def check_schema(self) -> tuple[str, ...]:
        """Compare the live schema with the table definitions; raises on drift."""
        return schema_check.check_schema(self.engine)