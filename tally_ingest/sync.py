"""
Full-sync orchestration for Tally Ingest.

Provides:
- Full sync: every source table fetched from the sync API and upserted in
  dependency order, then the Linker and Reconciler passes
- Health check: reachability of the sync API
- Metadata: company/division metadata reported by the sync API

Every run is recorded in `sync_jobs` (running -> completed | failed) with a
sample of per-record outcomes in `sync_job_details`.
"""
from __future__ import annotations
import re
import threading
import uuid
from datetime import date, datetime, timezone
from typing import Any, Iterator, Optional
from loguru import logger

from .config import IngestConfig
from .client import SyncApiClient, SyncApiConnectionError, SyncApiResponseError
from .linker import RelationshipLinker
from .loaders.base import PostgresStore, Store, StoreError
from .loaders.transactions import UpsertEngine
from .models import SyncReport, TableSyncResult, Tenant, get_table, master_guid
from .parsers.base import parse_bool, parse_tally_date
from .reconciler import AmountReconciler
from .workers import is_cancelled

# Source table name -> store table, in dependency order
SOURCE_TABLES: dict[str, str] = {
    "groups": "mst_group",
    "ledgers": "mst_ledger",
    "uoms": "mst_uom",
    "stock_groups": "mst_stock_group",
    "stock_items": "mst_stock_item",
    "godowns": "mst_godown",
    "cost_categories": "mst_cost_category",
    "cost_centers": "mst_cost_centre",
    "voucher_types": "mst_vouchertype",
    "vouchers": "trn_voucher",
    "accounting": "trn_accounting",
    "inventory": "trn_inventory",
}

SYNC_ACTIONS = ("full_sync", "health_check", "metadata")

# Master column holding a referenced name -> (guid column, referenced table prefix)
MASTER_REFERENCES: dict[str, list[tuple[str, str, str]]] = {
    "mst_group": [("parent", "parent_guid", "group")],
    "mst_ledger": [("parent", "group_guid", "group")],
    "mst_stock_group": [("parent", "parent_guid", "stockgroup")],
    "mst_stock_item": [("parent", "stock_group_guid", "stockgroup"), ("uom", "uom_guid", "uom")],
    "mst_godown": [("parent", "parent_guid", "godown")],
    "mst_cost_centre": [("cost_category", "cost_category_guid", "costcat")],
}

TRANSACTION_REFERENCES: dict[str, list[tuple[str, str, str]]] = {
    "trn_voucher": [("voucher_type", "voucher_type_guid", "vtype")],
    "trn_accounting": [("ledger", "ledger_guid", "ledger")],
    "trn_inventory": [("item", "stock_item_guid", "stock"), ("godown", "godown_guid", "godown")],
}

# Tally's implicit root; never a real parent row
ROOT_PARENTS = ("", "primary")

DATE_COLUMNS = ("date", "voucher_date")

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


class InvalidTenantError(Exception):
    """Raised when a company/division pair is malformed or unknown."""
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_date(value: Any) -> Any:
    """Accept Tally YYYYMMDD or ISO dates from the API."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text:
        return None
    if re.fullmatch(r"\d{8}", text):
        return parse_tally_date(text)
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        logger.debug(f"Unparseable date from sync API: {value!r}")
        return None


def _add_reference(row: dict, column: str, guid_column: str, prefix: str):
    name = row.get(column)
    if row.get(guid_column) or not isinstance(name, str):
        return
    if name.strip().lower() in ROOT_PARENTS:
        return
    row[guid_column] = master_guid(prefix, name)


def prepare_record(table: str, record: dict, tenant: Tenant) -> dict:
    """
    Shape one API record into a store row for `table`.

    Masters get the deterministic name-derived guid (the source guid is kept
    in `source_guid`) so they line up with masters auto-created from XML.
    Missing reference guids are derived from the referenced names.
    """
    if not isinstance(record, dict):
        raise ValueError(f"expected an object, got {type(record).__name__}")
    spec = get_table(table)
    row = dict(record)
    row.update(tenant.where())

    if spec.kind == "master":
        name = row.get("name")
        if isinstance(name, str) and name.strip():
            row["source_guid"] = row.get("guid")
            row["guid"] = master_guid(spec.master_prefix, name)
        row["origin"] = "sync"
        references = MASTER_REFERENCES.get(table, [])
    else:
        references = TRANSACTION_REFERENCES.get(table, [])
        if "voucher_guid" in row and not row["voucher_guid"]:
            row["voucher_guid"] = None

    for column, guid_column, prefix in references:
        _add_reference(row, column, guid_column, prefix)

    for column in DATE_COLUMNS:
        if column in row:
            row[column] = _as_date(row[column])
    for column, value in list(row.items()):
        if column.startswith(("is_", "affects_")) and isinstance(value, str):
            row[column] = parse_bool(value)
    return row


def validate_tenant(store: Store, company_id: str, division_id: str) -> Tenant:
    """Check tenant ids are UUIDs and that the division belongs to the company."""
    for label, value in (("company_id", company_id), ("division_id", division_id)):
        if not value or not UUID_PATTERN.match(value):
            raise InvalidTenantError(f"Invalid {label}: {value!r} is not a UUID")
    if store.fetch_one("divisions", {"id": division_id, "company_id": company_id}) is None:
        raise InvalidTenantError("Company or division not found")
    return Tenant(company_id=company_id, division_id=division_id)


class FullSync:
    """
    Bulk loader driven by the sync API.

    Usage:
        with SyncApiClient(config) as client:
            report = FullSync(store, client, config).run(tenant)
    """

    def __init__(self, store: Store, client: SyncApiClient, config: Optional[IngestConfig] = None):
        self.store = store
        self.client = client
        self.config = config or IngestConfig.from_env()
        self.engine = UpsertEngine(store, self.config.max_workers, self.config.job_detail_sample)

    # -- job audit trail ---------------------------------------------------

    def _start_job(self, tenant: Tenant, action: str, started_at: datetime) -> Optional[str]:
        job_id = str(uuid.uuid4())
        try:
            self.store.insert("sync_jobs", {
                "id": job_id,
                **tenant.where(),
                "job_type": action,
                "status": "running",
                "started_at": started_at,
            })
        except StoreError as e:
            logger.error(f"Could not record sync job: {e}")
            return None
        return job_id

    def _finish_job(self, job_id: Optional[str], report: SyncReport):
        if job_id is None:
            return
        breakdown = {
            t.table: {
                "fetched": t.fetched,
                "inserted": t.stats.inserted if t.stats else 0,
                "updated": t.stats.updated if t.stats else 0,
                "ignored": t.stats.ignored if t.stats else 0,
                "errors": t.stats.errors if t.stats else 0,
                "error": t.error,
            }
            for t in report.tables
        }
        try:
            self.store.update("sync_jobs", {"id": job_id}, {
                "status": "completed" if report.success else "failed",
                "completed_at": report.completed_at,
                "records_processed": report.records_processed,
                "records_inserted": report.records_inserted,
                "records_updated": report.records_updated,
                "error_count": report.error_count,
                "error_message": report.error,
                "table_breakdown": breakdown,
            })
        except StoreError as e:
            logger.error(f"Could not update sync job {job_id}: {e}")

    def _record_details(self, job_id: Optional[str], result: TableSyncResult):
        if job_id is None:
            return
        rows = []
        if result.failed:
            rows.append({
                "job_id": job_id,
                "table_name": result.table,
                "action": "error",
                "record_guid": "table_sync",
                "error_message": result.error,
                "created_at": _now(),
            })
        if result.stats:
            for sample in result.stats.samples[: self.config.job_detail_sample]:
                rows.append({
                    "job_id": job_id,
                    "table_name": result.table,
                    "action": "error" if sample.action == "error" else "upserted",
                    "record_guid": sample.guid,
                    "record_details": {"action": sample.action, **(sample.details or {})},
                    "error_message": sample.error,
                    "created_at": _now(),
                })
        for row in rows:
            try:
                self.store.insert("sync_job_details", row)
            except StoreError as e:
                logger.warning(f"Could not record job detail for {result.table}: {e}")

    # -- tables ------------------------------------------------------------

    def _records(self, tenant: Tenant, source: str, counter: list[int]) -> Iterator[Any]:
        for record in self.client.iter_table(tenant.company_id, tenant.division_id, source):
            counter[0] += 1
            yield record

    def sync_table(
        self,
        tenant: Tenant,
        source: str,
        cancel: Optional[threading.Event] = None,
    ) -> TableSyncResult:
        """Fetch one source table and upsert every row; never raises."""
        table = SOURCE_TABLES[source]
        result = TableSyncResult(table=table)
        fetched = [0]
        logger.info(f"Syncing {source} -> {table}")
        try:
            result.stats = self.engine.upsert_batch(
                table,
                self._records(tenant, source, fetched),
                cancel,
                prepare=lambda record: prepare_record(table, record, tenant),
            )
        except (SyncApiConnectionError, SyncApiResponseError, StoreError) as e:
            logger.error(f"Failed to sync {table}: {e}")
            result.error = str(e)
        except Exception as e:
            logger.exception(f"Unexpected error syncing {table}: {e}")
            result.error = str(e)
        result.fetched = fetched[0]
        return result

    def run(
        self,
        tenant: Tenant,
        tables: Optional[list[str]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SyncReport:
        """Run a full sync for one tenant."""
        started_at = _now()
        report = SyncReport(success=False, action="full_sync", started_at=started_at)
        sources = tables or list(SOURCE_TABLES)
        unknown = [s for s in sources if s not in SOURCE_TABLES]
        if unknown:
            report.error = f"Unknown tables: {unknown}. Valid: {list(SOURCE_TABLES)}"
            report.completed_at = _now()
            return report

        job_id = self._start_job(tenant, "full_sync", started_at)
        report.job_id = job_id

        try:
            # Dependency order regardless of how the caller listed them
            for source in [s for s in SOURCE_TABLES if s in sources]:
                if is_cancelled(cancel):
                    report.cancelled = True
                    break
                result = self.sync_table(tenant, source, cancel)
                report.tables.append(result)
                self._record_details(job_id, result)

            if not is_cancelled(cancel):
                logger.info("=== Linking Child Rows ===")
                report.links = RelationshipLinker(self.store, self.config).run(tenant, cancel=cancel)
            if not is_cancelled(cancel):
                logger.info("=== Reconciling Voucher Amounts ===")
                report.reconcile = AmountReconciler(self.store, self.config).run(tenant, cancel)

            report.cancelled = is_cancelled(cancel)
            failed = [t.table for t in report.tables if t.failed]
            if failed:
                report.error = f"Failed tables: {', '.join(failed)}"
            report.success = not failed and not report.cancelled
        except Exception as e:
            logger.exception(f"Full sync failed: {e}")
            report.success = False
            report.error = str(e)

        report.completed_at = _now()
        self._finish_job(job_id, report)
        logger.info(
            f"=== Full Sync {'Complete' if report.success else 'Failed'} === "
            f"{report.records_processed} processed, {report.records_inserted} inserted, "
            f"{report.records_updated} updated, {report.error_count} errors"
        )
        return report


def run_sync(
    company_id: str,
    division_id: str,
    tables: Optional[list[str]] = None,
    action: str = "full_sync",
    store: Optional[Store] = None,
    client: Optional[SyncApiClient] = None,
    config: Optional[IngestConfig] = None,
    cancel: Optional[threading.Event] = None,
) -> SyncReport:
    """
    Convenience function to run a sync action.

    Args:
        company_id: Tenant company UUID
        division_id: Tenant division UUID
        tables: Source tables to sync (default: all, see SOURCE_TABLES)
        action: 'full_sync', 'health_check' or 'metadata'
        store: Optional store (a PostgresStore is opened and closed otherwise)
        client: Optional sync API client
        config: Optional config override

    Returns:
        SyncReport; failures are reported, never raised
    """
    started_at = _now()
    if action not in SYNC_ACTIONS:
        return SyncReport(
            success=False,
            action=action,
            started_at=started_at,
            completed_at=_now(),
            error=f"Unknown action: {action}. Valid: {', '.join(SYNC_ACTIONS)}",
        )

    config = config or IngestConfig.from_env()
    own_store = store is None
    own_client = client is None
    store = store or PostgresStore(config)
    client = client or SyncApiClient(config)
    try:
        tenant = validate_tenant(store, company_id, division_id)

        if action == "health_check":
            data = client.health()
            return SyncReport(
                success=True, action=action, started_at=started_at, completed_at=_now(), data=data
            )
        if action == "metadata":
            data = client.metadata(tenant.company_id, tenant.division_id)
            return SyncReport(
                success=True, action=action, started_at=started_at, completed_at=_now(), data=data
            )

        return FullSync(store, client, config).run(tenant, tables, cancel)
    except InvalidTenantError as e:
        logger.error(f"Sync rejected: {e}")
        error = str(e)
    except (SyncApiConnectionError, SyncApiResponseError) as e:
        logger.error(f"Sync API error: {e}")
        error = str(e)
    except Exception as e:
        logger.exception(f"Sync failed: {e}")
        error = str(e)
    finally:
        if own_client:
            client.close()
        if own_store:
            store.close()

    return SyncReport(
        success=False, action=action, started_at=started_at, completed_at=_now(), error=error
    )
