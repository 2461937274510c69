"""Query implementations behind the public store API.

Each function takes a SQLAlchemy :class:`~sqlalchemy.engine.Engine` and
plain domain values from :mod:`forgeclaw_store.types`. Database failures
surface as sanitized :class:`~forgeclaw_store.errors.DatabaseError`.

Message pagination uses the store-assigned ``seq`` column as the only
sort key. On SQLite the single-writer lock makes ``seq`` allocation order
equal commit order. On PostgreSQL each insert first takes a
transaction-scoped advisory lock keyed on its group, so within a group
``seq`` values become visible in order and a reader that has seen
``seq = N`` will never later find a smaller one.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from sqlalchemy.dialects import postgresql as pg_dialect
from sqlalchemy.dialects import sqlite as sqlite_dialect
from sqlalchemy.engine import Connection, Engine

from forgeclaw_store import schema
from forgeclaw_store.errors import (
    InvalidLimit,
    NotFound,
    SchemaDrift,
    from_db_error,
)
from forgeclaw_store.ids import generate_id
from forgeclaw_store.types import (
    Cursor,
    EventFilter,
    NewEvent,
    NewMessage,
    NewTask,
    RegisteredGroup,
    ScheduleKind,
    StoredEvent,
    StoredMessage,
    StoredTask,
    TaskRunResult,
    TaskStatus,
    UnknownScheduleKind,
    UnknownTaskStatus,
)

__all__ = [
    "MAX_PAGE_SIZE",
    "clamped_take",
    "create_task",
    "get_due_tasks",
    "get_group",
    "get_messages_since",
    "get_session",
    "get_state",
    "list_events",
    "record_event",
    "set_session",
    "set_state",
    "store_message",
    "update_task_after_run",
    "upsert_group",
]

_log = logging.getLogger("forgeclaw_store.ops")

MAX_PAGE_SIZE = 10_000
"""Hard upper bound on the rows any single query may return."""

_ADVISORY_LOCK_SQL = sa.text(
    "SELECT pg_advisory_xact_lock("
    "hashtextextended('forgeclaw_store_messages:' || :group_id, 0))"
)


@contextmanager
def _db_errors() -> Iterator[None]:
    """Turn SQLAlchemy failures into sanitized store errors."""
    try:
        yield
    except sa_exc.SQLAlchemyError as exc:
        raise from_db_error(exc) from None


def clamped_take(limit: int, op: str) -> int:
    """Validate ``limit`` and clamp it to :data:`MAX_PAGE_SIZE`.

    Negative limits raise :class:`InvalidLimit`; zero yields zero, meaning
    an empty result.
    """
    if limit < 0:
        raise InvalidLimit(f"{op}: limit {limit} is negative")
    if limit == 0:
        return 0
    effective = min(limit, MAX_PAGE_SIZE)
    if effective < limit:
        _log.debug(
            "clamped caller limit to MAX_PAGE_SIZE",
            extra={
                "op": op,
                "requested": limit,
                "effective": effective,
                "cap": MAX_PAGE_SIZE,
            },
        )
    return effective


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _upsert(
    conn: Connection,
    table: sa.Table,
    values: Mapping[str, Any],
    key: str,
    update_columns: Iterable[str],
) -> None:
    """Insert ``values``, or update ``update_columns`` when ``key`` collides."""
    update_columns = list(update_columns)
    dialect = conn.dialect.name
    if dialect in ("sqlite", "postgresql"):
        module = sqlite_dialect if dialect == "sqlite" else pg_dialect
        stmt = module.insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c[key]],
            set_={name: stmt.excluded[name] for name in update_columns},
        )
        conn.execute(stmt)
        return
    key_col = table.c[key]
    exists = conn.execute(
        sa.select(key_col).where(key_col == values[key])
    ).first()
    if exists is None:
        conn.execute(sa.insert(table).values(**values))
    else:
        conn.execute(
            sa.update(table)
            .where(key_col == values[key])
            .values({name: values[name] for name in update_columns})
        )


# ----- Messages -----


def store_message(engine: Engine, msg: NewMessage) -> None:
    """Insert a message; the database assigns its ``seq``."""
    with _db_errors(), engine.begin() as conn:
        if conn.dialect.name == "postgresql":
            conn.execute(_ADVISORY_LOCK_SQL, {"group_id": msg.group_id})
        conn.execute(
            sa.insert(schema.messages).values(
                id=msg.id,
                group_id=msg.group_id,
                channel_id=msg.channel_id,
                sender=msg.sender,
                content=msg.content,
                created_at=msg.created_at,
            )
        )


def get_messages_since(
    engine: Engine, group: str, cursor: Cursor, limit: int
) -> list[StoredMessage]:
    """Return up to ``limit`` messages of ``group`` with ``seq > cursor.seq``, by ``seq``."""
    take = clamped_take(limit, "get_messages_since")
    if take == 0:
        return []
    table = schema.messages
    query = (
        sa.select(table)
        .where(table.c.group_id == group)
        .where(table.c.seq > cursor.seq)
        .order_by(table.c.seq.asc())
        .limit(take)
    )
    with _db_errors(), engine.connect() as conn:
        rows = conn.execute(query).all()
    return [
        StoredMessage(
            seq=row.seq,
            id=row.id,
            group_id=row.group_id,
            channel_id=row.channel_id,
            sender=row.sender,
            content=row.content,
            created_at=row.created_at,
        )
        for row in rows
    ]


# ----- Groups -----


def get_group(engine: Engine, group_id: str) -> RegisteredGroup | None:
    """Fetch a group by id, or None if it does not exist."""
    table = schema.groups
    with _db_errors(), engine.connect() as conn:
        row = conn.execute(sa.select(table).where(table.c.id == group_id)).first()
    if row is None:
        return None
    return RegisteredGroup(
        id=row.id,
        display_name=row.display_name,
        config_json=row.config_json,
        active=bool(row.active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def upsert_group(engine: Engine, group: RegisteredGroup) -> None:
    """Insert or update a group, keeping the stored ``created_at``."""
    values = {
        "id": group.id,
        "display_name": group.display_name,
        "config_json": group.config_json,
        "active": group.active,
        "created_at": group.created_at,
        "updated_at": group.updated_at,
    }
    with _db_errors(), engine.begin() as conn:
        _upsert(
            conn,
            schema.groups,
            values,
            "id",
            ("display_name", "config_json", "active", "updated_at"),
        )


# ----- Tasks -----


def create_task(engine: Engine, task: NewTask) -> str:
    """Insert a scheduled task and return its freshly generated id."""
    task_id = generate_id()
    now = _utc_now()
    with _db_errors(), engine.begin() as conn:
        conn.execute(
            sa.insert(schema.tasks).values(
                id=task_id,
                group_id=task.group_id,
                prompt=task.prompt,
                schedule_kind=task.schedule_kind.value,
                schedule_value=task.schedule_value,
                status=task.status.value,
                next_run=task.next_run,
                last_result=None,
                created_at=now,
                updated_at=now,
            )
        )
    return task_id


def get_due_tasks(engine: Engine, now: datetime, limit: int) -> list[StoredTask]:
    """Return up to ``limit`` active tasks with ``next_run <= now``.

    Results are ordered by ``(next_run, id)`` so ties are deterministic.
    """
    take = clamped_take(limit, "get_due_tasks")
    if take == 0:
        return []
    table = schema.tasks
    query = (
        sa.select(table)
        .where(table.c.status == TaskStatus.ACTIVE.value)
        .where(table.c.next_run.is_not(None))
        .where(table.c.next_run <= now)
        .order_by(table.c.next_run.asc(), table.c.id.asc())
        .limit(take)
    )
    with _db_errors(), engine.connect() as conn:
        rows = conn.execute(query).all()
    return [_row_to_task(row) for row in rows]


def update_task_after_run(
    engine: Engine, task_id: str, result: TaskRunResult
) -> None:
    """Record a run's outcome and advance the task's scheduling fields.

    Raises :class:`NotFound` if no task has ``task_id``.
    """
    table = schema.tasks
    with _db_errors(), engine.begin() as conn:
        existing = conn.execute(
            sa.select(table.c.id).where(table.c.id == task_id)
        ).first()
        if existing is None:
            raise NotFound("task")
        encoded = result.to_json()
        conn.execute(
            sa.update(table)
            .where(table.c.id == task_id)
            .values(
                status=result.status.value,
                next_run=result.next_run,
                last_result=encoded,
                updated_at=result.ran_at,
            )
        )


def _row_to_task(row: Any) -> StoredTask:
    try:
        schedule_kind = ScheduleKind.parse(row.schedule_kind)
    except UnknownScheduleKind as exc:
        raise SchemaDrift(str(exc), table="tasks", column="schedule_kind") from None
    try:
        status = TaskStatus.parse(row.status)
    except UnknownTaskStatus as exc:
        raise SchemaDrift(str(exc), table="tasks", column="status") from None
    return StoredTask(
        id=row.id,
        group_id=row.group_id,
        prompt=row.prompt,
        schedule_kind=schedule_kind,
        schedule_value=row.schedule_value,
        status=status,
        next_run=row.next_run,
        last_result=row.last_result,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


# ----- State -----


def get_state(engine: Engine, key: str) -> str | None:
    """Fetch a state value by key."""
    table = schema.state
    with _db_errors(), engine.connect() as conn:
        return conn.execute(
            sa.select(table.c.value).where(table.c.key == key)
        ).scalar_one_or_none()


def set_state(engine: Engine, key: str, value: str) -> None:
    """Insert or update a state value."""
    values = {"key": key, "value": value, "updated_at": _utc_now()}
    with _db_errors(), engine.begin() as conn:
        _upsert(conn, schema.state, values, "key", ("value", "updated_at"))


# ----- Sessions -----


def get_session(engine: Engine, group: str) -> str | None:
    """Fetch the current agent session id for ``group``."""
    table = schema.sessions
    with _db_errors(), engine.connect() as conn:
        return conn.execute(
            sa.select(table.c.session_id).where(table.c.group_id == group)
        ).scalar_one_or_none()


def set_session(engine: Engine, group: str, session_id: str) -> None:
    """Insert or update the agent session id for ``group``."""
    values = {"group_id": group, "session_id": session_id, "updated_at": _utc_now()}
    with _db_errors(), engine.begin() as conn:
        _upsert(
            conn, schema.sessions, values, "group_id", ("session_id", "updated_at")
        )


# ----- Events -----


def record_event(engine: Engine, event: NewEvent) -> None:
    """Append an event to the audit log."""
    with _db_errors(), engine.begin() as conn:
        conn.execute(
            sa.insert(schema.events).values(
                id=generate_id(),
                kind=event.kind,
                group_id=event.group_id,
                payload=event.payload,
                created_at=event.created_at,
            )
        )


def list_events(
    engine: Engine, event_filter: EventFilter, limit: int
) -> list[StoredEvent]:
    """Return events matching ``event_filter``, newest first, at most ``limit``."""
    take = clamped_take(limit, "list_events")
    if take == 0:
        return []
    table = schema.events
    query = sa.select(table)
    if event_filter.kind is not None:
        query = query.where(table.c.kind == event_filter.kind)
    if event_filter.group_id is not None:
        query = query.where(table.c.group_id == event_filter.group_id)
    if event_filter.since is not None:
        query = query.where(table.c.created_at > event_filter.since)
    query = query.order_by(table.c.created_at.desc(), table.c.id.desc()).limit(take)
    with _db_errors(), engine.connect() as conn:
        rows = conn.execute(query).all()
    return [
        StoredEvent(
            id=row.id,
            kind=row.kind,
            group_id=row.group_id,
            payload=row.payload,
            created_at=row.created_at,
        )
        for row in rows
    ]