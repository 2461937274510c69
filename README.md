# forgeclaw-store

A small persistence layer that holds channel messages, registered groups,
scheduled tasks, agent session ids, generic key/value state and an audit log
of events. It runs on SQLite (development, tests, small deployments) or
PostgreSQL behind one synchronous API built on SQLAlchemy; the backend is
chosen by the connection URL alone.

## Installation

```
pip install .
```

PostgreSQL needs a SQLAlchemy PostgreSQL driver (the default one,
`psycopg2`), which is not installed with this package. Without it,
connecting to a `postgres://` URL raises a `DatabaseError`.

## Usage

```python
from datetime import datetime, timezone

from forgeclaw_store.ids import generate_id
from forgeclaw_store.store import Store
from forgeclaw_store.types import Cursor, NewMessage

with Store.connect("sqlite://./forgeclaw.db") as store:
    store.migrate()

    store.store_message(NewMessage(
        id=generate_id(),
        group_id="main",
        channel_id="chat",
        sender="alice",
        content="hello",
        created_at=datetime.now(timezone.utc),
    ))

    cursor = Cursor.beginning()
    batch = store.get_messages_since("main", cursor, 100)
    if batch:
        cursor = Cursor.after(batch[-1].seq)
```

`Store.connect` accepts `sqlite://<path>`, `sqlite::memory:`,
`postgres://…` and `postgresql://…`; anything else raises `InvalidUrl`.
`Store.connect_sqlite_memory()` opens a fresh in-memory database held on a
single shared connection, which is handy for tests. `Store.close()` (or
leaving the `with` block) releases pooled connections.

## Modules

- `forgeclaw_store.store` – the `Store` class, plus `is_supported_scheme`,
  `is_sqlite_memory` and `scheme_hint` for URL checks.
- `forgeclaw_store.types` – value types: `NewMessage`, `StoredMessage`,
  `Cursor`, `RegisteredGroup`, `NewEvent`, `StoredEvent`, `EventFilter`,
  `NewTask`, `StoredTask`, `TaskRunResult` (with `to_json` / `from_json`),
  `RunSuccess`, `RunFailure`, `ScheduleKind`, `TaskStatus`.
- `forgeclaw_store.errors` – `StoreError` and its subclasses
  (`DatabaseError`, `InvalidLimit`, `SchemaDrift`, `NotFound`, `InvalidUrl`,
  `SerializationError`), the `ErrorClass` results `Transient`, `Config` and
  `Fatal`, and `sanitize_message`.
- `forgeclaw_store.ids` – `generate_id()`, a time-ordered UUIDv7 string.
- `forgeclaw_store.schema` – table definitions and `migrate`, `rollback`,
  `applied_migrations`.
- `forgeclaw_store.ops` – the query functions behind `Store`, and
  `MAX_PAGE_SIZE`.
- `forgeclaw_store.schema_check` – `check_schema`, used by
  `Store.check_schema()`.

## Store methods

| Area     | Methods |
|----------|---------|
| Schema   | `migrate()` returns the names of migrations just applied; calling it again is harmless. `check_schema()` returns the tables checked or raises `SchemaDrift`. |
| Messages | `store_message(msg)`, `get_messages_since(group, cursor, limit)` |
| Groups   | `get_group(group_id)`, `upsert_group(group)` (keeps the stored `created_at`) |
| Tasks    | `create_task(task)` returns the new id; `get_due_tasks(now, limit)`; `update_task_after_run(task_id, result)` raises `NotFound` for an unknown id |
| State    | `get_state(key)`, `set_state(key, value)` |
| Sessions | `get_session(group)`, `set_session(group, session_id)` |
| Events   | `record_event(event)`, `list_events(event_filter, limit)` (newest first) |

## Design points

- **Store-owned cursor.** Every message gets a monotonic `seq` from the
  database on insert. Paging is strictly by `seq` (`seq > cursor.seq`), so a
  backdated `created_at` never makes a reader skip a row. On PostgreSQL each
  insert first takes a transaction-scoped advisory lock keyed on its group.
- **Bounded reads.** `get_messages_since`, `get_due_tasks` and `list_events`
  clamp their limit to `MAX_PAGE_SIZE` (10,000). A limit of zero returns an
  empty list; a negative limit raises `InvalidLimit`.
- **Deterministic due tasks.** Only `active` tasks with a `next_run` at or
  before `now` are returned, ordered by `(next_run, id)`.
- **Error classification.** Every `StoreError` has a `classify()` method
  returning `Transient`, `Config` or `Fatal`, so callers can decide whether
  to retry or stop without parsing messages. Locked/busy databases,
  deadlocks and serialization failures are `Transient`.
- **No secrets in errors.** Database errors are converted once into
  `DatabaseError`, with `postgres://`, `postgresql://` and `sqlite://` URLs
  replaced by `<url-redacted>`; the original exception is not kept or
  chained.
- **Schema drift check.** `check_schema` compares each live table's columns
  on name, nullability and primary-key membership and raises `SchemaDrift`
  naming the first table that differs.

## What it does not do

There is no command-line tool, server or async API: the package is a
library used from Python code. It stores tasks but does not run them or
compute schedules, and it treats group configs and event payloads as opaque
text. Only SQLite and PostgreSQL are supported.

## Running the tests

```
pip install .[test]
pytest
```