"""
In-memory store.

Implements the `Store` protocol over plain dicts for tests and `--dry-run`.
Each operation holds a lock for its own duration only, mirroring the
single-statement atomicity of the database store.
"""
from __future__ import annotations
import copy
import itertools
import threading
from decimal import Decimal
from typing import Any, Optional, Sequence
from ..models import TABLES, Tenant, get_table
from .base import StoreError, filter_columns, key_of


def _matches(row: dict, where: dict[str, Any]) -> bool:
    for column, value in where.items():
        current = row.get(column)
        if value is None:
            if current is not None:
                return False
        elif isinstance(value, (list, tuple, set)):
            if current not in value:
                return False
        elif current != value:
            return False
    return True


def _is_zero(value: Any) -> bool:
    return value is None or Decimal(str(value)) == 0


class MemoryStore:
    """Dict-backed store with the same semantics as `PostgresStore`."""

    def __init__(self):
        self._tables: dict[str, dict[tuple, dict]] = {name: {} for name in TABLES}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def create_schema(self):
        pass

    def ping(self) -> bool:
        return True

    def _rows(self, table: str) -> dict[tuple, dict]:
        get_table(table)
        return self._tables[table]

    def _prepare(self, table: str, row: dict[str, Any]) -> tuple[tuple, dict]:
        row = filter_columns(table, row)
        spec = get_table(table)
        if spec.key == ("id",) and row.get("id") is None and spec.kind == "audit":
            row["id"] = next(self._ids)
        key = tuple(key_of(table, row).values())
        full = {c: None for c in spec.all_columns}
        full.update(row)
        return key, full

    def fetch_one(self, table: str, where: dict[str, Any]) -> Optional[dict]:
        with self._lock:
            for row in self._rows(table).values():
                if _matches(row, where):
                    return dict(row)
        return None

    def fetch_all(
        self,
        table: str,
        where: dict[str, Any],
        columns: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        with self._lock:
            found = [row for row in self._rows(table).values() if _matches(row, where)]
        if limit is not None:
            found = found[:limit]
        if columns:
            return [{c: row.get(c) for c in columns} for row in found]
        return [dict(row) for row in found]

    def insert(self, table: str, row: dict[str, Any]) -> None:
        key, full = self._prepare(table, row)
        with self._lock:
            rows = self._rows(table)
            if key in rows:
                raise StoreError(f"duplicate key value violates unique constraint on {table}: {key}")
            rows[key] = copy.deepcopy(full)

    def insert_if_absent(self, table: str, row: dict[str, Any]) -> bool:
        key, full = self._prepare(table, row)
        with self._lock:
            rows = self._rows(table)
            if key in rows:
                return False
            rows[key] = copy.deepcopy(full)
            return True

    def update(self, table: str, where: dict[str, Any], values: dict[str, Any]) -> int:
        values = filter_columns(table, values)
        if not values:
            return 0
        changed = 0
        with self._lock:
            for row in self._rows(table).values():
                if _matches(row, where):
                    row.update(copy.deepcopy(values))
                    changed += 1
        return changed

    def count(self, table: str, where: dict[str, Any]) -> int:
        with self._lock:
            return sum(1 for row in self._rows(table).values() if _matches(row, where))

    def fetch_unlinked(
        self, table: str, tenant: Tenant, limit: int, after: Optional[str] = None
    ) -> list[dict]:
        with self._lock:
            found = [
                dict(row) for row in self._rows(table).values()
                if _matches(row, tenant.where())
                and row.get("voucher_number")
                and not row.get("voucher_guid")
                and row["guid"] > (after or "")
            ]
        found.sort(key=lambda r: r["guid"])
        return found[:limit]

    def fetch_vouchers_missing_amounts(self, tenant: Tenant) -> list[dict]:
        with self._lock:
            found = [
                dict(row) for row in self._rows("trn_voucher").values()
                if _matches(row, tenant.where())
                and (_is_zero(row.get("total_amount")) or _is_zero(row.get("final_amount")))
            ]
        found.sort(key=lambda r: r["guid"])
        return found
