"""Schema-drift check between the table definitions and a live database.

Each column is compared on ``(name, not_null, is_primary_key)``, so the
check fires when a column is added or removed on one side, when it flips
between ``NOT NULL`` and nullable, or when it moves in or out of the
primary key. Column types are not compared: the dialects render them
differently, and a stored value of the wrong type already fails when it
is read back.
"""

from __future__ import annotations

from dataclasses import dataclass

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Connection, Engine

from forgeclaw_store import schema
from forgeclaw_store.errors import SchemaDrift, from_db_error

__all__ = ["check_schema"]

_CHECK_ORDER = ("messages", "groups", "tasks", "state", "sessions", "events")
_SUPPORTED_DIALECTS = frozenset({"sqlite", "postgresql"})


@dataclass(frozen=True, order=True)
class _ColumnShape:
    name: str
    not_null: bool
    is_primary_key: bool


def _expected_shape(table: sa.Table) -> frozenset[_ColumnShape]:
    return frozenset(
        _ColumnShape(
            name=column.name,
            not_null=not column.nullable,
            is_primary_key=column.primary_key,
        )
        for column in table.columns
    )


def _actual_shape(conn: Connection, table_name: str) -> frozenset[_ColumnShape]:
    dialect = conn.dialect.name
    if dialect not in _SUPPORTED_DIALECTS:
        raise SchemaDrift(f"{dialect} backend is not supported", table=table_name)
    inspector = sa.inspect(conn)
    if not inspector.has_table(table_name):
        return frozenset()
    primary_key = inspector.get_pk_constraint(table_name) or {}
    pk_names = set(primary_key.get("constrained_columns") or ())
    shapes = set()
    for column in inspector.get_columns(table_name):
        name = column.get("name")
        if not isinstance(name, str):
            raise SchemaDrift("name: column without a name", table=table_name)
        shapes.add(
            _ColumnShape(
                name=name,
                not_null=not column.get("nullable", True),
                is_primary_key=name in pk_names,
            )
        )
    return frozenset(shapes)


def _check_table(conn: Connection, table: sa.Table) -> None:
    expected = _expected_shape(table)
    actual = _actual_shape(conn, table.name)
    if expected == actual:
        return
    missing = sorted(expected - actual)
    extra = sorted(actual - expected)
    raise SchemaDrift(
        "entity/table shape mismatch \u2014 "
        f"missing in DB: {missing!r}, extra in DB: {extra!r}",
        table=table.name,
    )


def check_schema(engine: Engine) -> tuple[str, ...]:
    """Compare every store table with the live database.

    Returns the names of the tables checked, in checking order. Raises
    :class:`SchemaDrift` naming the first table whose shape differs.
    """
    try:
        with engine.connect() as conn:
            for name in _CHECK_ORDER:
                _check_table(conn, schema.TABLES[name])
    except sa_exc.SQLAlchemyError as exc:
        raise from_db_error(exc) from None
    return _CHECK_ORDER