"""Store error types and their recovery classification.

Every store error has a :meth:`StoreError.classify` method that maps it
onto an :class:`ErrorClass`. Upstream callers use it to decide whether to
retry, circuit-break or halt without parsing message text.

Database failures are turned into :class:`DatabaseError` by
:func:`from_db_error`. The original exception is not kept. Its whole
cause chain is read once and each layer is cleaned of connection URLs.
Only the cleaned text and a :class:`DatabaseCategory` are stored, so
``str``, ``repr`` and the exception chain cannot leak credentials.
"""

from __future__ import annotations

import enum
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import exc as sa_exc

_log = logging.getLogger("forgeclaw_store.error")

_REDACTED = "<url-redacted>"
_URL_SCHEMES = ("postgresql://", "postgres://", "sqlite://")
_URL_TERMINATORS = frozenset("\"'>)")

_CONNECTION_HINTS = (
    "unable to open database",
    "could not connect",
    "connection refused",
    "connection timed out",
    "server closed the connection",
    "connection reset",
    "could not translate host name",
)

_TRANSIENT_HINTS = (
    "40001",
    "40p01",
    "database is locked",
    "database is busy",
    "deadlock",
)


class ErrorClass:
    """How a failure should be handled by the recovery machinery."""


@dataclass(frozen=True)
class Transient(ErrorClass):
    """A failure worth retrying after ``retry_after``."""

    retry_after: timedelta


@dataclass(frozen=True)
class Config(ErrorClass):
    """A failure caused by a bad configuration value."""

    key: str
    reason: str


@dataclass(frozen=True)
class Fatal(ErrorClass):
    """A failure that retrying will not fix."""

    reason: str


class DatabaseCategory(enum.Enum):
    """Coarse kind of an underlying database failure."""

    CONNECTION = "Connection"
    RUNTIME = "Runtime"
    MIGRATION = "Migration"
    SCHEMA = "Schema"
    INTEGRITY = "Integrity"
    OTHER = "Other"

    def __str__(self) -> str:
        return self.value


class StoreError(Exception):
    """Base class of every error raised by the store."""

    def classify(self) -> ErrorClass:
        """Map this error onto an :class:`ErrorClass`."""
        raise NotImplementedError


class DatabaseError(StoreError):
    """A database failure; ``message`` has already been sanitized."""

    def __init__(self, message: str, category: DatabaseCategory) -> None:
        self.message = message
        self.category = category
        super().__init__(f"database error [{category}]: {message}")

    def __repr__(self) -> str:
        return f"DatabaseError(message={self.message!r}, category={self.category})"

    def classify(self) -> ErrorClass:
        return _classify_database(self.category, self.message)


class InvalidLimit(StoreError):
    """A row limit that cannot be used as a paging bound."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"invalid limit: {reason}")

    def classify(self) -> ErrorClass:
        return Fatal(reason=f"invalid limit: {self.reason}")


class SchemaDrift(StoreError):
    """Stored data or table shape does not match what the code expects."""

    def __init__(
        self,
        reason: str,
        table: str | None = None,
        column: str | None = None,
    ) -> None:
        self.reason = reason
        self.table = table
        self.column = column
        table_part = f"table `{table}`" if table is not None else ""
        if column is None:
            column_part = ""
        elif table is not None:
            column_part = f" column `{column}`"
        else:
            column_part = f"column `{column}`"
        super().__init__(f"schema drift in {table_part}{column_part}: {reason}")

    def classify(self) -> ErrorClass:
        if self.table is not None and self.column is not None:
            location = f"table `{self.table}` column `{self.column}`"
        elif self.table is not None:
            location = f"table `{self.table}`"
        elif self.column is not None:
            location = f"column `{self.column}`"
        else:
            location = "schema"
        return Fatal(reason=f"schema drift in {location}: {self.reason}")


class NotFound(StoreError):
    """A requested row does not exist."""

    def __init__(self, entity: str) -> None:
        self.entity = entity
        super().__init__(f"{entity} not found")

    def classify(self) -> ErrorClass:
        return Fatal(reason=f"{self.entity} not found")


class InvalidUrl(StoreError):
    """A connection URL with an unsupported scheme."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"invalid store URL: {reason}")

    def classify(self) -> ErrorClass:
        return Config(key="store.url", reason=self.reason)


class SerializationError(StoreError):
    """A JSON payload could not be encoded."""

    def __init__(self, detail: object) -> None:
        self.detail = str(detail)
        super().__init__(f"serialization error: {self.detail}")

    def classify(self) -> ErrorClass:
        return Fatal(reason=f"json serialization: {self.detail}")


def sanitize_message(raw: str) -> str:
    """Replace every postgres/postgresql/sqlite URL in ``raw`` with a marker.

    A URL runs from its scheme to the next whitespace, quote, ``>`` or ``)``.
    """
    out = raw
    for scheme in _URL_SCHEMES:
        start = out.find(scheme)
        while start != -1:
            end = start
            while end < len(out) and not (
                out[end].isspace() or out[end] in _URL_TERMINATORS
            ):
                end += 1
            out = out[:start] + _REDACTED + out[end:]
            start = out.find(scheme)
    return out


def from_db_error(exc: BaseException) -> DatabaseError:
    """Convert a database exception into a sanitized :class:`DatabaseError`.

    The returned error keeps no reference to ``exc``; raise it with
    ``from None`` so the original stays out of the exception chain.
    """
    category = _categorize(exc)
    message = _sanitize_chain(exc)
    _log.debug(
        "converting database exception into StoreError",
        extra={"category": category.value, "error": message},
    )
    return DatabaseError(message, category)


def _next_in_chain(err: BaseException) -> BaseException | None:
    if err.__cause__ is not None:
        return err.__cause__
    orig = getattr(err, "orig", None)
    if isinstance(orig, BaseException):
        return orig
    if not err.__suppress_context__:
        return err.__context__
    return None


def _sanitize_chain(exc: BaseException) -> str:
    parts: list[str] = []
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        parts.append(sanitize_message(str(current)))
        current = _next_in_chain(current)
    return " | ".join(parts)


def _mentions_connection(exc: BaseException) -> bool:
    lower = str(exc).lower()
    return any(hint in lower for hint in _CONNECTION_HINTS)


def _categorize(exc: BaseException) -> DatabaseCategory:
    if isinstance(exc, (sa_exc.DisconnectionError, sa_exc.TimeoutError)):
        return DatabaseCategory.CONNECTION
    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return DatabaseCategory.CONNECTION
    if isinstance(exc, (sa_exc.IntegrityError, sqlite3.IntegrityError)):
        return DatabaseCategory.INTEGRITY
    if isinstance(
        exc,
        (
            sa_exc.DataError,
            sa_exc.NoSuchColumnError,
            sqlite3.DataError,
            json.JSONDecodeError,
        ),
    ):
        return DatabaseCategory.SCHEMA
    if isinstance(exc, (sa_exc.OperationalError, sqlite3.OperationalError)):
        if _mentions_connection(exc):
            return DatabaseCategory.CONNECTION
        return DatabaseCategory.RUNTIME
    if isinstance(exc, (sa_exc.InterfaceError, sqlite3.InterfaceError)):
        return DatabaseCategory.OTHER
    if isinstance(exc, (sa_exc.DatabaseError, sqlite3.DatabaseError)):
        return DatabaseCategory.RUNTIME
    return DatabaseCategory.OTHER


def _classify_database(category: DatabaseCategory, message: str) -> ErrorClass:
    if category is DatabaseCategory.CONNECTION:
        return Transient(retry_after=timedelta(milliseconds=500))
    if category is DatabaseCategory.RUNTIME:
        return _classify_runtime(message)
    if category is DatabaseCategory.MIGRATION:
        return Fatal(reason=f"migration failed: {message}")
    if category is DatabaseCategory.SCHEMA:
        return Fatal(reason=f"schema mismatch: {message}")
    if category is DatabaseCategory.INTEGRITY:
        return Fatal(reason=f"db integrity: {message}")
    return Fatal(reason=message)


def _classify_runtime(sanitized: str) -> ErrorClass:
    lower = sanitized.lower()
    if any(hint in lower for hint in _TRANSIENT_HINTS):
        return Transient(retry_after=timedelta(milliseconds=100))
    return Fatal(reason=sanitized)