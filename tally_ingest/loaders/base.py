"""
Base store utilities.

Provides:
- The `Store` protocol every pipeline stage writes through
- `PostgresStore`: psycopg 3 over a connection pool sized by `max_workers`
- Column whitelisting and key handling from the table registry

All writes are single statements; conditional inserts use
`ON CONFLICT DO NOTHING` so concurrent workers never need a lock.
"""
from __future__ import annotations
import threading
from typing import Any, Optional, Protocol, Sequence
import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool
from loguru import logger
from ..config import IngestConfig
from ..models import Tenant, get_schema_sql, get_table


class StoreError(Exception):
    """Raised when a store statement fails."""
    pass


class Store(Protocol):
    """Row-level operations the pipeline needs from persistence."""

    def fetch_one(self, table: str, where: dict[str, Any]) -> Optional[dict]: ...

    def fetch_all(
        self,
        table: str,
        where: dict[str, Any],
        columns: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> list[dict]: ...

    def insert(self, table: str, row: dict[str, Any]) -> None: ...

    def insert_if_absent(self, table: str, row: dict[str, Any]) -> bool: ...

    def update(self, table: str, where: dict[str, Any], values: dict[str, Any]) -> int: ...

    def count(self, table: str, where: dict[str, Any]) -> int: ...

    def fetch_unlinked(
        self, table: str, tenant: Tenant, limit: int, after: Optional[str] = None
    ) -> list[dict]: ...

    def fetch_vouchers_missing_amounts(self, tenant: Tenant) -> list[dict]: ...

    def create_schema(self) -> None: ...

    def close(self) -> None: ...


def filter_columns(table: str, row: dict[str, Any]) -> dict[str, Any]:
    """Keep only columns the table declares; unknown keys are dropped."""
    allowed = get_table(table).all_columns
    dropped = [k for k in row if k not in allowed]
    if dropped:
        logger.debug(f"Dropping unknown columns for {table}: {dropped}")
    return {k: v for k, v in row.items() if k in allowed}


def key_of(table: str, row: dict[str, Any]) -> dict[str, Any]:
    """Extract the full key (tenant columns included) from a row."""
    spec = get_table(table)
    missing = [c for c in spec.key_columns if row.get(c) in (None, "")]
    if missing:
        raise StoreError(f"{table}: row is missing key columns {missing}")
    return {c: row[c] for c in spec.key_columns}


def _adapt(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return Jsonb(value)
    return value


def _where_clause(where: dict[str, Any]) -> tuple[sql.Composable, list[Any]]:
    parts = []
    params: list[Any] = []
    for column, value in where.items():
        ident = sql.Identifier(column)
        if value is None:
            parts.append(sql.SQL("{} IS NULL").format(ident))
        elif isinstance(value, (list, tuple, set)):
            parts.append(sql.SQL("{} = ANY(%s)").format(ident))
            params.append(list(value))
        else:
            parts.append(sql.SQL("{} = %s").format(ident))
            params.append(value)
    if not parts:
        return sql.SQL(""), params
    return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(parts), params


class PostgresStore:
    """
    PostgreSQL-backed store.

    Connections come from a `psycopg_pool.ConnectionPool` whose size matches
    the worker pool, each in autocommit mode with `dict_row` rows and a
    per-statement timeout.
    """

    def __init__(self, config: Optional[IngestConfig] = None, pool: Optional[ConnectionPool] = None):
        self.config = config or IngestConfig.from_env()
        self.schema = self.config.db_schema
        self._pool = pool
        self._pool_lock = threading.Lock()

    @property
    def pool(self) -> ConnectionPool:
        """Get or create the connection pool."""
        with self._pool_lock:
            if self._pool is None:
                self._pool = ConnectionPool(
                    self.config.db_url,
                    min_size=1,
                    max_size=max(1, self.config.max_workers),
                    kwargs={
                        "autocommit": True,
                        "row_factory": dict_row,
                        "options": f"-c statement_timeout={self.config.statement_timeout_ms}",
                    },
                    name="tally-ingest",
                    open=True,
                )
                logger.debug(f"Opened connection pool (max_size={self.config.max_workers})")
            return self._pool

    def close(self):
        """Close the connection pool."""
        with self._pool_lock:
            if self._pool is not None:
                self._pool.close()
                self._pool = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _table(self, table: str) -> sql.Identifier:
        get_table(table)
        return sql.Identifier(self.schema, table)

    def _run(self, query: sql.Composable, params: Sequence[Any] = (), fetch: str = "none"):
        try:
            with self.pool.connection() as conn:
                cur = conn.execute(query, list(params))
                if fetch == "one":
                    return cur.fetchone()
                if fetch == "all":
                    return cur.fetchall()
                return cur.rowcount
        except psycopg.Error as e:
            raise StoreError(str(e).strip()) from e

    def create_schema(self):
        """Create the schema and all tables if they don't exist."""
        ddl = get_schema_sql(self.schema)
        try:
            with self.pool.connection() as conn:
                conn.execute(ddl)
        except psycopg.Error as e:
            raise StoreError(f"Schema creation failed: {e}") from e
        logger.info(f"Schema {self.schema} is ready")

    def ping(self) -> bool:
        try:
            return self._run(sql.SQL("SELECT 1 AS ok"), fetch="one") is not None
        except StoreError as e:
            logger.error(f"Database ping failed: {e}")
            return False

    def fetch_one(self, table: str, where: dict[str, Any]) -> Optional[dict]:
        clause, params = _where_clause(where)
        query = sql.SQL("SELECT * FROM {}").format(self._table(table)) + clause + sql.SQL(" LIMIT 1")
        return self._run(query, params, fetch="one")

    def fetch_all(
        self,
        table: str,
        where: dict[str, Any],
        columns: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        select = (
            sql.SQL(", ").join(sql.Identifier(c) for c in columns) if columns else sql.SQL("*")
        )
        clause, params = _where_clause(where)
        query = sql.SQL("SELECT {} FROM {}").format(select, self._table(table)) + clause
        if limit is not None:
            query += sql.SQL(" LIMIT {}").format(sql.Literal(int(limit)))
        return self._run(query, params, fetch="all")

    def insert(self, table: str, row: dict[str, Any]) -> None:
        row = filter_columns(table, row)
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
            self._table(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in row),
            sql.SQL(", ").join(sql.Placeholder() for _ in row),
        )
        self._run(query, [_adapt(v) for v in row.values()])

    def insert_if_absent(self, table: str, row: dict[str, Any]) -> bool:
        """Insert unless a row with the same key exists. Returns True if inserted."""
        row = filter_columns(table, row)
        key = key_of(table, row)
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) ON CONFLICT ({}) DO NOTHING").format(
            self._table(table),
            sql.SQL(", ").join(sql.Identifier(c) for c in row),
            sql.SQL(", ").join(sql.Placeholder() for _ in row),
            sql.SQL(", ").join(sql.Identifier(c) for c in key),
        )
        return self._run(query, [_adapt(v) for v in row.values()]) == 1

    def update(self, table: str, where: dict[str, Any], values: dict[str, Any]) -> int:
        values = filter_columns(table, values)
        if not values:
            return 0
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(c)) for c in values
        )
        clause, params = _where_clause(where)
        query = sql.SQL("UPDATE {} SET {}").format(self._table(table), assignments) + clause
        return self._run(query, [_adapt(v) for v in values.values()] + params)

    def count(self, table: str, where: dict[str, Any]) -> int:
        clause, params = _where_clause(where)
        query = sql.SQL("SELECT COUNT(*) AS cnt FROM {}").format(self._table(table)) + clause
        result = self._run(query, params, fetch="one")
        return result["cnt"] if result else 0

    def fetch_unlinked(
        self, table: str, tenant: Tenant, limit: int, after: Optional[str] = None
    ) -> list[dict]:
        """
        Child rows with no voucher_guid but a voucher_number to match on.

        Ordered by guid; `after` is the last guid of the previous page.
        """
        query = sql.SQL(
            "SELECT company_id, division_id, guid, voucher_number, voucher_type FROM {} "
            "WHERE company_id = %s AND division_id = %s "
            "AND voucher_number IS NOT NULL AND voucher_number <> '' "
            "AND (voucher_guid IS NULL OR voucher_guid = '') "
            "AND guid > %s "
            "ORDER BY guid LIMIT %s"
        ).format(self._table(table))
        params = [tenant.company_id, tenant.division_id, after or "", limit]
        return self._run(query, params, fetch="all")

    def fetch_vouchers_missing_amounts(self, tenant: Tenant) -> list[dict]:
        """Vouchers whose total or final amount is null or zero."""
        query = sql.SQL(
            "SELECT * FROM {} WHERE company_id = %s AND division_id = %s "
            "AND (total_amount IS NULL OR total_amount = 0 "
            "OR final_amount IS NULL OR final_amount = 0) "
            "ORDER BY guid"
        ).format(self._table("trn_voucher"))
        return self._run(query, [tenant.company_id, tenant.division_id], fetch="all")
