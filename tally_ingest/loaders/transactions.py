"""
Idempotent upserts.

Each record is fetched by key and then:
- inserted when absent
- updated when any significant field differs
- ignored otherwise (no write)

Only the fields listed in SIGNIFICANT_FIELDS decide whether a row changed.
Aggregate voucher amounts are left out on purpose: once the reconciler has
filled them, re-ingesting the same XML must not report an update.
"""
from __future__ import annotations
import threading
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Optional
from loguru import logger
from ..models import BatchStats, ProcessResult, TABLES, get_table
from ..workers import map_bounded
from .base import Store, StoreError, key_of

SIGNIFICANT_FIELDS: dict[str, tuple[str, ...]] = {
    "trn_voucher": (
        "voucher_number", "voucher_type", "date", "narration", "reference",
        "party_ledger_name", "alter_id", "is_cancelled",
    ),
    "trn_accounting": ("ledger", "amount", "is_deemed_positive"),
    "trn_inventory": ("item", "quantity", "amount", "rate", "godown"),
    "trn_party_details": ("party_name", "gstin", "party_address", "party_state", "place_of_supply"),
    "trn_gst_details": ("igst_amount", "cgst_amount", "sgst_amount", "cess_amount", "hsn_code"),
    "trn_address_details": ("address", "state", "pincode"),
    "trn_shipping_details": ("consignee_name", "consignee_address", "buyer_name", "buyer_address"),
}

# Masters: every descriptive column is significant
for _spec in TABLES.values():
    if _spec.kind == "master":
        SIGNIFICANT_FIELDS[_spec.name] = tuple(
            c for c in _spec.columns if c not in _spec.key and c != "origin"
        )

# Written by the reconciler; an incoming zero never overwrites them
DERIVED_AMOUNTS = ("total_amount", "basic_amount", "net_amount", "final_amount")

# Written by the linker; an incoming null never clears them
LINK_COLUMNS = ("voucher_guid",)

# Master rows with these origins may be refreshed by bulk loads
REFRESHABLE_ORIGINS = ("auto", "sync")

RECORD_TYPES = {
    "trn_voucher": "voucher",
    "trn_accounting": "accounting",
    "trn_inventory": "inventory",
    "trn_party_details": "party_details",
    "trn_gst_details": "gst_details",
    "trn_address_details": "address_details",
    "trn_shipping_details": "shipping_details",
}


def record_type_for(table: str) -> str:
    if table in RECORD_TYPES:
        return RECORD_TYPES[table]
    return table.removeprefix("mst_")


def _normalize(value: Any) -> Any:
    """Comparable form of a stored or incoming value."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float, Decimal)):
        return Decimal(str(value)).normalize()
    if isinstance(value, str):
        return value.strip()
    return value


def _same(stored: Any, incoming: Any) -> bool:
    a, b = _normalize(stored), _normalize(incoming)
    if isinstance(a, Decimal) and isinstance(b, str):
        try:
            b = Decimal(b).normalize()
        except InvalidOperation:
            return False
    elif isinstance(b, Decimal) and isinstance(a, str):
        try:
            a = Decimal(a).normalize()
        except InvalidOperation:
            return False
    return a == b


def changed_fields(table: str, existing: dict, record: dict) -> list[str]:
    """Significant fields present in `record` whose values differ from `existing`."""
    return [
        f for f in SIGNIFICANT_FIELDS.get(table, ())
        if f in record and not _same(existing.get(f), record[f])
    ]


def _update_values(table: str, existing: dict, record: dict) -> dict[str, Any]:
    spec = get_table(table)
    values = {k: v for k, v in record.items() if k not in spec.key_columns}
    for column in LINK_COLUMNS:
        if column in values and not values[column] and existing.get(column):
            del values[column]
    if table == "trn_voucher":
        for column in DERIVED_AMOUNTS:
            if column in values and _normalize(values[column]) in (None, Decimal("0")):
                del values[column]
    if spec.kind == "master":
        values["origin"] = "sync"
    return values


class UpsertEngine:
    """
    Idempotent writer for transactional and bulk-loaded rows.

    Errors are captured per record as an `error` outcome; the engine itself
    never raises for a bad record.
    """

    def __init__(self, store: Store, max_workers: int = 8, sample_size: int = 10):
        self.store = store
        self.max_workers = max_workers
        self.sample_size = sample_size

    def upsert(self, table: str, record: dict[str, Any], record_type: Optional[str] = None) -> ProcessResult:
        """Insert, update or ignore one record."""
        record_type = record_type or record_type_for(table)
        guid = str(record.get("guid") or record.get("id") or "unknown")
        try:
            spec = get_table(table)
            key = key_of(table, record)

            existing = self.store.fetch_one(table, key)
            if existing is None:
                if self.store.insert_if_absent(table, record):
                    return ProcessResult(table=table, action="inserted", guid=guid, record_type=record_type)
                # Another worker inserted the same key first
                existing = self.store.fetch_one(table, key)
                if existing is None:
                    raise StoreError(f"{table} {guid}: row disappeared after insert conflict")

            if spec.kind == "master" and existing.get("origin") not in REFRESHABLE_ORIGINS:
                return ProcessResult(table=table, action="ignored", guid=guid, record_type=record_type)

            changed = changed_fields(table, existing, record)
            if not changed:
                return ProcessResult(table=table, action="ignored", guid=guid, record_type=record_type)

            self.store.update(table, key, _update_values(table, existing, record))
            return ProcessResult(
                table=table,
                action="updated",
                guid=guid,
                record_type=record_type,
                details={"changed": changed},
            )
        except (StoreError, ValueError) as e:
            logger.warning(f"Upsert failed for {table} {guid}: {e}")
            return ProcessResult(
                table=table, action="error", guid=guid, record_type=record_type, error=str(e)
            )

    def upsert_batch(
        self,
        table: str,
        records: Iterable[Any],
        cancel: Optional[threading.Event] = None,
        prepare: Optional[Callable[[Any], dict[str, Any]]] = None,
    ) -> BatchStats:
        """
        Bulk path: upsert every record, continuing past failures.

        `prepare` shapes each raw record on the worker; a record it rejects
        with ValueError or TypeError becomes an `error` outcome.

        Returns counts plus the first `sample_size` outcomes and error
        messages for the job audit trail.
        """

        def unit(record: Any) -> ProcessResult:
            if prepare is not None:
                try:
                    record = prepare(record)
                except (ValueError, TypeError) as e:
                    guid = str(record.get("guid") or "unknown") if isinstance(record, dict) else "unknown"
                    logger.warning(f"Malformed {table} record {guid}: {e}")
                    return ProcessResult(
                        table=table,
                        action="error",
                        guid=guid,
                        record_type=record_type_for(table),
                        error=f"malformed record: {e}",
                    )
            return self.upsert(table, record)

        stats = BatchStats(table=table)
        for result in map_bounded(unit, records, self.max_workers, cancel):
            if result.action == "inserted":
                stats.inserted += 1
            elif result.action == "updated":
                stats.updated += 1
            elif result.action == "error":
                stats.errors += 1
                if len(stats.error_samples) < self.sample_size:
                    stats.error_samples.append(f"{result.guid}: {result.error}")
            else:
                stats.ignored += 1
            if len(stats.samples) < self.sample_size:
                stats.samples.append(result)

        stats.cancelled = cancel is not None and cancel.is_set()
        logger.info(
            f"{table}: {stats.inserted} inserted, {stats.updated} updated, "
            f"{stats.ignored} ignored, {stats.errors} errors"
        )
        return stats
