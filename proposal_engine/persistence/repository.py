"""
Row repository — the persistence contract used by every service.

Rows are plain JSON-compatible dicts keyed by table name.  Filters use the
MongoDB operator subset ``$in, $ne, $lt, $lte, $gt, $gte`` so the same filter
works against both implementations.

  InMemoryRepository — mock mode and tests. Atomic increments can be turned off
                       to exercise the read-then-write fallback.
  MongoRepository    — pymongo collections, $inc, unique indexes.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from copy import deepcopy
from functools import lru_cache
from typing import Any, Iterable, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from proposal_engine.config import get_settings
from proposal_engine.exceptions import AtomicIncrementUnavailable, DuplicateRowError
from proposal_engine.persistence.mongo_client import MongoClient

logger = logging.getLogger(__name__)

Row = dict[str, Any]


class Repository(ABC):
    """Row-oriented store: single fetch, filtered fetch, writes and atomic increment."""

    @abstractmethod
    def fetch_one(self, table: str, filters: Row) -> Optional[Row]: ...

    @abstractmethod
    def fetch_many(
        self,
        table: str,
        filters: Optional[Row] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]: ...

    @abstractmethod
    def insert(self, table: str, row: Row) -> Row: ...

    @abstractmethod
    def update(self, table: str, filters: Row, changes: Row) -> int: ...

    @abstractmethod
    def upsert(self, table: str, keys: Row, row: Row) -> Row: ...

    @abstractmethod
    def delete(self, table: str, filters: Row) -> int: ...

    @abstractmethod
    def increment(self, table: str, filters: Row, deltas: dict[str, float]) -> Optional[Row]:
        """Atomically add ``deltas`` to numeric fields of the first matching row.

        Raises AtomicIncrementUnavailable when the store cannot do this server-side.
        """

    @abstractmethod
    def ensure_unique(self, table: str, fields: Iterable[str]) -> None: ...


# ── In-memory ────────────────────────────────────────────


def _matches_condition(value: Any, condition: Any) -> bool:
    if not isinstance(condition, dict):
        return value == condition
    for op, operand in condition.items():
        if op == "$in":
            ok = value in operand
        elif op == "$ne":
            ok = value != operand
        elif op in ("$lt", "$lte", "$gt", "$gte"):
            if value is None:
                return False
            ok = {
                "$lt": value < operand,
                "$lte": value <= operand,
                "$gt": value > operand,
                "$gte": value >= operand,
            }[op]
        else:
            raise ValueError(f"Unsupported filter operator: {op}")
        if not ok:
            return False
    return True


def _matches(row: Row, filters: Optional[Row]) -> bool:
    return all(_matches_condition(row.get(k), cond) for k, cond in (filters or {}).items())


class InMemoryRepository(Repository):
    """
    Dict-of-lists store.  Copies rows in and out so callers never share
    references with the store.
    """

    def __init__(self, atomic_increments: bool = True):
        self.atomic_increments = atomic_increments
        self._tables: dict[str, list[Row]] = {}
        self._unique: dict[str, list[tuple[str, ...]]] = {}
        self._lock = threading.RLock()

    def _table(self, table: str) -> list[Row]:
        return self._tables.setdefault(table, [])

    def _check_unique(self, table: str, row: Row, skip: Optional[Row] = None) -> None:
        for fields in self._unique.get(table, []):
            key = tuple(row.get(f) for f in fields)
            for existing in self._table(table):
                if existing is skip:
                    continue
                if tuple(existing.get(f) for f in fields) == key:
                    raise DuplicateRowError(
                        f"Duplicate {table} row for {dict(zip(fields, key))}",
                        {"table": table, "fields": list(fields)},
                    )

    def fetch_one(self, table: str, filters: Row) -> Optional[Row]:
        with self._lock:
            for row in self._table(table):
                if _matches(row, filters):
                    return deepcopy(row)
        return None

    def fetch_many(
        self,
        table: str,
        filters: Optional[Row] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]:
        with self._lock:
            rows = [deepcopy(r) for r in self._table(table) if _matches(r, filters)]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    def insert(self, table: str, row: Row) -> Row:
        with self._lock:
            self._check_unique(table, row)
            self._table(table).append(deepcopy(row))
        return deepcopy(row)

    def update(self, table: str, filters: Row, changes: Row) -> int:
        count = 0
        with self._lock:
            for row in self._table(table):
                if _matches(row, filters):
                    self._check_unique(table, {**row, **changes}, skip=row)
                    row.update(deepcopy(changes))
                    count += 1
        return count

    def upsert(self, table: str, keys: Row, row: Row) -> Row:
        with self._lock:
            for existing in self._table(table):
                if _matches(existing, keys):
                    existing.update(deepcopy(row))
                    return deepcopy(existing)
            return self.insert(table, {**keys, **row})

    def delete(self, table: str, filters: Row) -> int:
        with self._lock:
            rows = self._table(table)
            kept = [r for r in rows if not _matches(r, filters)]
            self._tables[table] = kept
            return len(rows) - len(kept)

    def increment(self, table: str, filters: Row, deltas: dict[str, float]) -> Optional[Row]:
        if not self.atomic_increments:
            raise AtomicIncrementUnavailable(f"No atomic increment for table '{table}'")
        with self._lock:
            for row in self._table(table):
                if _matches(row, filters):
                    for field, delta in deltas.items():
                        row[field] = (row.get(field) or 0) + delta
                    return deepcopy(row)
        return None

    def ensure_unique(self, table: str, fields: Iterable[str]) -> None:
        key = tuple(fields)
        with self._lock:
            if key not in self._unique.setdefault(table, []):
                self._unique[table].append(key)


# ── MongoDB ──────────────────────────────────────────────


class MongoRepository(Repository):
    """One collection per table; Mongo's ``_id`` never leaves this class."""

    def __init__(self, database: Any):
        self._db = database

    def fetch_one(self, table: str, filters: Row) -> Optional[Row]:
        return self._db[table].find_one(filters, {"_id": 0})

    def fetch_many(
        self,
        table: str,
        filters: Optional[Row] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Row]:
        cursor = self._db[table].find(filters or {}, {"_id": 0})
        if order_by:
            cursor = cursor.sort(order_by, DESCENDING if descending else ASCENDING)
        if limit is not None:
            cursor = cursor.limit(limit)
        return list(cursor)

    def insert(self, table: str, row: Row) -> Row:
        try:
            self._db[table].insert_one(dict(row))
        except DuplicateKeyError as e:
            raise DuplicateRowError(f"Duplicate {table} row", {"table": table}) from e
        return dict(row)

    def update(self, table: str, filters: Row, changes: Row) -> int:
        try:
            result = self._db[table].update_many(filters, {"$set": changes})
        except DuplicateKeyError as e:
            raise DuplicateRowError(f"Duplicate {table} row", {"table": table}) from e
        return result.matched_count

    def upsert(self, table: str, keys: Row, row: Row) -> Row:
        return self._db[table].find_one_and_update(
            keys,
            {"$set": row},
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    def delete(self, table: str, filters: Row) -> int:
        return self._db[table].delete_many(filters).deleted_count

    def increment(self, table: str, filters: Row, deltas: dict[str, float]) -> Optional[Row]:
        return self._db[table].find_one_and_update(
            filters,
            {"$inc": deltas},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )

    def ensure_unique(self, table: str, fields: Iterable[str]) -> None:
        self._db[table].create_index([(f, ASCENDING) for f in fields], unique=True)


@lru_cache()
def get_repository() -> Repository:
    """Process-wide repository: in-memory in mock mode, MongoDB otherwise."""
    settings = get_settings()
    if settings.mock_mode:
        logger.info("[MOCK] Using in-memory repository")
        return InMemoryRepository()
    client = MongoClient(settings)
    client.connect()
    return MongoRepository(client.get_database())
