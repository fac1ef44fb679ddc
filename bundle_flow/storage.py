"""SQLite-backed persistence helpers for the workflow engine."""

from __future__ import annotations

import pickle
import sqlite3
import threading
from typing import Generic, Iterator, List, Optional, Sequence, TypeVar

from .domain import ArticleTemplate, Bundle, OperatorCapacity, WorkflowStep
from .repository import (
    DuplicateRecordError,
    RecordNotFoundError,
    RepositoryError,
    index_value,
)

T = TypeVar("T")


class SQLiteRepository(Generic[T]):
    """Repository implementation that persists records inside SQLite.

    Records are stored as pickled payloads; every attribute named in
    ``indexes`` is mirrored into its own indexed column so ``list_by``
    can filter in SQL.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        table: str,
        *,
        indexes: Sequence[str] = (),
        lock: Optional[threading.RLock] = None,
    ) -> None:
        self._connection = connection
        self._table = table
        self._indexes = tuple(indexes)
        self._lock = lock or threading.RLock()
        columns = "".join(f", idx_{name} TEXT" for name in self._indexes)
        with self._lock:
            self._connection.execute(
                f"CREATE TABLE IF NOT EXISTS {table} ("  # nosec - static table names
                f"id TEXT PRIMARY KEY, payload BLOB NOT NULL{columns})"
            )
            for name in self._indexes:
                self._connection.execute(
                    f"CREATE INDEX IF NOT EXISTS {table}_{name}_idx "
                    f"ON {table} (idx_{name})"
                )
            self._connection.commit()

    def _index_values(self, item: T) -> List[object]:
        values = []
        for name in self._indexes:
            value = index_value(getattr(item, name))
            values.append(None if value is None else str(value))
        return values

    def __contains__(self, item_id: object) -> bool:
        if not isinstance(item_id, str):
            return False
        with self._lock:
            cursor = self._connection.execute(
                f"SELECT 1 FROM {self._table} WHERE id = ? LIMIT 1", (item_id,)
            )
            return cursor.fetchone() is not None

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())

    def __len__(self) -> int:  # pragma: no cover - simple delegation
        with self._lock:
            cursor = self._connection.execute(f"SELECT COUNT(1) FROM {self._table}")
            value = cursor.fetchone()
        return int(value[0]) if value else 0

    # ------------------------------------------------------------------
    # CRUD operations
    # ------------------------------------------------------------------
    def add(self, item_id: str, item: T) -> None:
        with self._lock:
            if item_id in self:
                raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
            self._write("INSERT INTO", item_id, item)

    def upsert(self, item_id: str, item: T) -> None:
        with self._lock:
            self._write("INSERT OR REPLACE INTO", item_id, item)

    def _write(self, verb: str, item_id: str, item: T) -> None:
        columns = "".join(f", idx_{name}" for name in self._indexes)
        placeholders = ", ?" * len(self._indexes)
        self._connection.execute(
            f"{verb} {self._table} (id, payload{columns}) VALUES (?, ?{placeholders})",
            (item_id, pickle.dumps(item), *self._index_values(item)),
        )
        self._connection.commit()

    def get(self, item_id: str) -> T:
        with self._lock:
            cursor = self._connection.execute(
                f"SELECT payload FROM {self._table} WHERE id = ?", (item_id,)
            )
            row = cursor.fetchone()
        if row is None:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found")
        return pickle.loads(row[0])

    def remove(self, item_id: str) -> None:
        with self._lock:
            cursor = self._connection.execute(
                f"DELETE FROM {self._table} WHERE id = ?", (item_id,)
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(f"Record with id {item_id!r} not found")
            self._connection.commit()

    def list(self) -> List[T]:
        with self._lock:
            cursor = self._connection.execute(
                f"SELECT payload FROM {self._table} ORDER BY id"
            )
            rows = cursor.fetchall()
        return [pickle.loads(row[0]) for row in rows]

    def list_by(self, attribute: str, value: object) -> List[T]:
        if attribute not in self._indexes:
            raise RepositoryError(f"Attribute {attribute!r} is not indexed")
        with self._lock:
            cursor = self._connection.execute(
                f"SELECT payload FROM {self._table} WHERE idx_{attribute} = ? "
                "ORDER BY id",
                (str(index_value(value)),),
            )
            rows = cursor.fetchall()
        return [pickle.loads(row[0]) for row in rows]


class WorkflowDatabase:
    """Convenience facade bundling SQLite repositories for all aggregates."""

    def __init__(self, path: str) -> None:
        connection = sqlite3.connect(path, check_same_thread=False)
        connection.row_factory = sqlite3.Row
        self._connection = connection
        lock = threading.RLock()
        self.templates = SQLiteRepository[ArticleTemplate](
            connection, "templates", lock=lock
        )
        self.bundles = SQLiteRepository[Bundle](connection, "bundles", lock=lock)
        self.steps = SQLiteRepository[WorkflowStep](
            connection, "steps", indexes=("bundle_id", "status"), lock=lock
        )
        self.operators = SQLiteRepository[OperatorCapacity](
            connection, "operators", indexes=("machine_type",), lock=lock
        )

    @property
    def connection(self) -> sqlite3.Connection:
        return self._connection

    def close(self) -> None:
        self._connection.close()

    def __enter__(self) -> "WorkflowDatabase":
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[BaseException],
    ) -> None:
        self.close()


__all__ = ["SQLiteRepository", "WorkflowDatabase"]
