"""In-memory repositories used as the default persistence backend."""

from __future__ import annotations

import threading
from enum import Enum
from typing import (
    Dict,
    Generic,
    Hashable,
    Iterator,
    List,
    MutableMapping,
    Sequence,
    Set,
    TypeVar,
)

T = TypeVar("T")


class RepositoryError(RuntimeError):
    """Base exception for repository errors."""


class DuplicateRecordError(RepositoryError):
    """Raised when attempting to insert a record that already exists."""


class RecordNotFoundError(RepositoryError):
    """Raised when a requested record is missing."""


def index_value(value: object) -> Hashable:
    """Normalise an attribute value for use as an index key."""

    if isinstance(value, Enum):
        return value.value
    return value  # type: ignore[return-value]


class InMemoryRepository(Generic[T]):
    """Dictionary-backed repository with optional secondary indexes.

    ``indexes`` names attributes of the stored records; ``list_by`` then
    answers equality lookups on them without scanning every record.
    Indexes follow the record on every ``add``/``upsert`` so mutable
    attributes such as a step status stay consistent.
    """

    def __init__(self, indexes: Sequence[str] = ()) -> None:
        self._items: MutableMapping[str, T] = {}
        self._indexes: Dict[str, Dict[Hashable, Set[str]]] = {
            name: {} for name in indexes
        }
        self._lock = threading.RLock()

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __len__(self) -> int:  # pragma: no cover - convenience
        return len(self._items)

    def _unindex(self, item_id: str) -> None:
        previous = self._items.get(item_id)
        if previous is None:
            return
        for name, buckets in self._indexes.items():
            key = index_value(getattr(previous, name))
            bucket = buckets.get(key)
            if bucket is not None:
                bucket.discard(item_id)
                if not bucket:
                    del buckets[key]

    def _index(self, item_id: str, item: T) -> None:
        for name, buckets in self._indexes.items():
            key = index_value(getattr(item, name))
            buckets.setdefault(key, set()).add(item_id)

    def add(self, item_id: str, item: T) -> None:
        with self._lock:
            if item_id in self._items:
                raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
            self._items[item_id] = item
            self._index(item_id, item)

    def upsert(self, item_id: str, item: T) -> None:
        with self._lock:
            self._unindex(item_id)
            self._items[item_id] = item
            self._index(item_id, item)

    def get(self, item_id: str) -> T:
        try:
            return self._items[item_id]
        except KeyError as exc:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found") from exc

    def remove(self, item_id: str) -> None:
        with self._lock:
            if item_id not in self._items:
                raise RecordNotFoundError(f"Record with id {item_id!r} not found")
            self._unindex(item_id)
            del self._items[item_id]

    def list(self) -> List[T]:
        with self._lock:
            return list(self._items.values())

    def list_by(self, attribute: str, value: object) -> List[T]:
        if attribute not in self._indexes:
            raise RepositoryError(f"Attribute {attribute!r} is not indexed")
        with self._lock:
            ids = sorted(self._indexes[attribute].get(index_value(value), ()))
            return [self._items[item_id] for item_id in ids]

    def __iter__(self) -> Iterator[T]:  # pragma: no cover - convenience
        return iter(self.list())


__all__ = [
    "InMemoryRepository",
    "RepositoryError",
    "DuplicateRecordError",
    "RecordNotFoundError",
    "index_value",
]
