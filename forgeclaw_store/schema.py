"""Table definitions and schema migrations for the store.

One set of table definitions serves both SQLite and PostgreSQL. The
migration list is applied in order and recorded in a tracking table, so
:func:`migrate` is safe to call more than once. A migration that has been
applied to a real database must never change; new schema changes go into
a new entry of the migration list.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Connection, Engine

from forgeclaw_store.errors import from_db_error

__all__ = [
    "MIGRATIONS_TABLE",
    "TABLES",
    "UtcDateTime",
    "applied_migrations",
    "events",
    "groups",
    "messages",
    "metadata",
    "migrate",
    "rollback",
    "sessions",
    "state",
    "tasks",
]


class UtcDateTime(sa.types.TypeDecorator):
    """Timezone-aware UTC timestamp column.

    Values are normalised to UTC when written and always come back as
    UTC-aware datetimes. Naive datetimes are taken to be UTC. On SQLite the
    value is stored as naive UTC text, which keeps lexical order equal to
    time order.
    """

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, datetime):
            raise TypeError(f"expected a datetime, got {type(value).__name__}")
        if value.tzinfo is None or value.utcoffset() is None:
            value = value.replace(tzinfo=timezone.utc)
        utc = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return utc.replace(tzinfo=None)
        return utc

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None or value.utcoffset() is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


metadata = sa.MetaData()

groups = sa.Table(
    "groups",
    metadata,
    sa.Column("id", sa.Text, primary_key=True, nullable=False),
    sa.Column("display_name", sa.Text, nullable=False),
    sa.Column("config_json", sa.Text, nullable=False),
    sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
    sa.Column("created_at", UtcDateTime, nullable=False),
    sa.Column("updated_at", UtcDateTime, nullable=False),
)

# `seq` is the store-owned monotonic cursor key, assigned on insert. `id`
# is the caller's correlation key: unique, but never used for ordering.
messages = sa.Table(
    "messages",
    metadata,
    sa.Column(
        "seq",
        sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
        nullable=False,
    ),
    sa.Column("id", sa.Text, nullable=False, unique=True),
    sa.Column("group_id", sa.Text, nullable=False),
    sa.Column("channel_id", sa.Text, nullable=False),
    sa.Column("sender", sa.Text, nullable=False),
    sa.Column("content", sa.Text, nullable=False),
    sa.Column("created_at", UtcDateTime, nullable=False),
    sqlite_autoincrement=True,
)
sa.Index("messages_group_seq_idx", messages.c.group_id, messages.c.seq)

tasks = sa.Table(
    "tasks",
    metadata,
    sa.Column("id", sa.Text, primary_key=True, nullable=False),
    sa.Column("group_id", sa.Text, nullable=False),
    sa.Column("prompt", sa.Text, nullable=False),
    sa.Column("schedule_kind", sa.Text, nullable=False),
    sa.Column("schedule_value", sa.Text, nullable=False),
    sa.Column("status", sa.Text, nullable=False),
    sa.Column("next_run", UtcDateTime, nullable=True),
    sa.Column("last_result", sa.Text, nullable=True),
    sa.Column("created_at", UtcDateTime, nullable=False),
    sa.Column("updated_at", UtcDateTime, nullable=False),
)
# Partial index: only active tasks take part in the due-task query.
sa.Index(
    "tasks_due_idx",
    tasks.c.next_run,
    sqlite_where=tasks.c.status == "active",
    postgresql_where=tasks.c.status == "active",
)

state = sa.Table(
    "state",
    metadata,
    sa.Column("key", sa.Text, primary_key=True, nullable=False),
    sa.Column("value", sa.Text, nullable=False),
    sa.Column("updated_at", UtcDateTime, nullable=False),
)

sessions = sa.Table(
    "sessions",
    metadata,
    sa.Column("group_id", sa.Text, primary_key=True, nullable=False),
    sa.Column("session_id", sa.Text, nullable=False),
    sa.Column("updated_at", UtcDateTime, nullable=False),
)

events = sa.Table(
    "events",
    metadata,
    sa.Column("id", sa.Text, primary_key=True, nullable=False),
    sa.Column("kind", sa.Text, nullable=False),
    sa.Column("group_id", sa.Text, nullable=True),
    sa.Column("payload", sa.Text, nullable=False),
    sa.Column("created_at", UtcDateTime, nullable=False),
)
sa.Index("events_created_idx", events.c.created_at)
sa.Index("events_kind_idx", events.c.kind, events.c.created_at)
sa.Index("events_group_idx", events.c.group_id, events.c.created_at)

TABLES: dict[str, sa.Table] = {
    table.name: table for table in (groups, messages, tasks, state, sessions, events)
}

MIGRATIONS_TABLE = "store_migrations"

_tracking_metadata = sa.MetaData()
_tracking = sa.Table(
    MIGRATIONS_TABLE,
    _tracking_metadata,
    sa.Column("version", sa.Text, primary_key=True, nullable=False),
    sa.Column("applied_at", sa.BigInteger, nullable=False),
)


@dataclass(frozen=True)
class _Migration:
    name: str
    up: Callable[[Connection], None]
    down: Callable[[Connection], None]


_INIT_ORDER = (groups, messages, tasks, state, sessions, events)


def _init_up(conn: Connection) -> None:
    for table in _INIT_ORDER:
        table.create(conn, checkfirst=True)
        for index in sorted(table.indexes, key=lambda idx: idx.name or ""):
            index.create(conn, checkfirst=True)


def _init_down(conn: Connection) -> None:
    for table in reversed(_INIT_ORDER):
        table.drop(conn, checkfirst=True)


_MIGRATIONS: tuple[_Migration, ...] = (
    _Migration("m20260411_000001_init", _init_up, _init_down),
)


def _applied(conn: Connection) -> list[str]:
    if not sa.inspect(conn).has_table(MIGRATIONS_TABLE):
        return []
    rows = conn.execute(sa.select(_tracking.c.version).order_by(_tracking.c.version))
    return [row.version for row in rows]


def applied_migrations(engine: Engine) -> list[str]:
    """Return the names of applied migrations, oldest first."""
    try:
        with engine.connect() as conn:
            return _applied(conn)
    except sa_exc.SQLAlchemyError as exc:
        raise from_db_error(exc) from None


def migrate(engine: Engine) -> list[str]:
    """Apply every pending migration and return the names just applied."""
    newly_applied: list[str] = []
    try:
        with engine.begin() as conn:
            _tracking.create(conn, checkfirst=True)
            done = set(_applied(conn))
        for migration in _MIGRATIONS:
            if migration.name in done:
                continue
            with engine.begin() as conn:
                migration.up(conn)
                conn.execute(
                    sa.insert(_tracking).values(
                        version=migration.name, applied_at=int(time.time())
                    )
                )
            newly_applied.append(migration.name)
    except sa_exc.SQLAlchemyError as exc:
        raise from_db_error(exc) from None
    return newly_applied


def rollback(engine: Engine) -> list[str]:
    """Revert every applied migration, newest first, and return their names."""
    reverted: list[str] = []
    try:
        with engine.connect() as conn:
            done = set(_applied(conn))
        for migration in reversed(_MIGRATIONS):
            if migration.name not in done:
                continue
            with engine.begin() as conn:
                migration.down(conn)
                conn.execute(
                    sa.delete(_tracking).where(_tracking.c.version == migration.name)
                )
            reverted.append(migration.name)
    except sa_exc.SQLAlchemyError as exc:
        raise from_db_error(exc) from None
    return reverted