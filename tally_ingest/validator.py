"""
Referential-integrity validation.

Walks the tenant's tables in dependency order and reports, per table:
- orphaned foreign keys (non-null references to rows that do not exist)
- duplicate natural keys
- self-referencing parents
- nulls in fields that should always be filled
- voucher amounts that disagree with their ledger entries

The validator only reads. A table whose check raises is reported with the
error message and the pass moves on; the run then ends in partial_failure.
"""
from __future__ import annotations
import threading
from collections import Counter, defaultdict
from datetime import date
from decimal import Decimal
from typing import Optional
from loguru import logger
from .config import IngestConfig
from .loaders.base import PostgresStore, Store
from .models import (
    LINKABLE_TABLES,
    Tenant,
    Unlinked,
    ValidationReport,
    ValidationResult,
    ValidatorState,
    get_table,
    link_state,
)
from .reconciler import compute_amounts
from .workers import is_cancelled

VALIDATION_ORDER = (
    "companies",
    "divisions",
    "mst_group",
    "mst_ledger",
    "mst_uom",
    "mst_stock_group",
    "mst_stock_item",
    "mst_godown",
    "mst_cost_category",
    "mst_cost_centre",
    "mst_vouchertype",
    "trn_voucher",
    "trn_accounting",
    "trn_inventory",
)

# table -> [(column, referenced table)]
FOREIGN_KEYS: dict[str, list[tuple[str, str]]] = {
    "mst_group": [("parent_guid", "mst_group")],
    "mst_ledger": [("group_guid", "mst_group")],
    "mst_stock_group": [("parent_guid", "mst_stock_group")],
    "mst_stock_item": [("stock_group_guid", "mst_stock_group"), ("uom_guid", "mst_uom")],
    "mst_godown": [("parent_guid", "mst_godown")],
    "mst_cost_centre": [("cost_category_guid", "mst_cost_category")],
    "trn_voucher": [("voucher_type_guid", "mst_vouchertype")],
    "trn_accounting": [("voucher_guid", "trn_voucher"), ("ledger_guid", "mst_ledger")],
    "trn_inventory": [
        ("voucher_guid", "trn_voucher"),
        ("stock_item_guid", "mst_stock_item"),
        ("godown_guid", "mst_godown"),
    ],
}

SELF_PARENT_TABLES = ("mst_group", "mst_stock_group", "mst_godown")

# table -> columns that must never be null
REQUIRED_VALUES: dict[str, tuple[str, ...]] = {
    "mst_ledger": ("opening_balance", "closing_balance"),
    "mst_stock_item": ("opening_balance", "closing_balance"),
    "trn_voucher": ("date",),
}


def health_score(total_issues: int, total_records: int) -> float:
    """100 for a clean store, falling linearly with issues per record."""
    if total_records <= 0:
        return 100.0
    return max(0.0, 100.0 - (total_issues / total_records) * 100.0)


def _label(table: str) -> str:
    return table.removeprefix("mst_").removeprefix("trn_")


class IntegrityValidator:
    """
    Audits one tenant's rows.

    State moves idle -> running -> success | partial_failure.
    """

    def __init__(self, store: Store, config: Optional[IngestConfig] = None, today: Optional[date] = None):
        self.store = store
        self.config = config or IngestConfig.from_env()
        self.today = today
        self.state: ValidatorState = "idle"
        self._guid_cache: dict[str, set[str]] = {}

    def _rows(self, table: str, tenant: Tenant) -> list[dict]:
        if table == "companies":
            return self.store.fetch_all("companies", {"id": tenant.company_id})
        if table == "divisions":
            return self.store.fetch_all("divisions", {"company_id": tenant.company_id})
        return self.store.fetch_all(table, tenant.where())

    def _guids(self, table: str, tenant: Tenant) -> set[str]:
        if table not in self._guid_cache:
            rows = self.store.fetch_all(table, tenant.where(), columns=["guid"])
            self._guid_cache[table] = {r["guid"] for r in rows}
        return self._guid_cache[table]

    # -- checks ------------------------------------------------------------

    def _check_companies(self, rows: list[dict], tenant: Tenant, result: ValidationResult):
        missing = [r for r in rows if not r.get("tally_company_id")]
        if missing:
            result.issues.append(f"{len(missing)} companies missing tally_company_id")

    def _check_divisions(self, rows: list[dict], tenant: Tenant, result: ValidationResult):
        companies = {r["id"] for r in self.store.fetch_all("companies", {"id": tenant.company_id}, columns=["id"])}
        orphans = [r for r in rows if r.get("company_id") not in companies]
        if orphans:
            result.missing_references += len(orphans)
            result.issues.append(f"{len(orphans)} divisions reference non-existent companies")
        # Only data scoped to an unregistered division is an issue
        if not any(r["id"] == tenant.division_id for r in rows) and self._has_tenant_data(tenant):
            result.issues.append(f"division {tenant.division_id} does not exist")

    def _has_tenant_data(self, tenant: Tenant) -> bool:
        return any(
            self.store.count(table, tenant.where()) for table in VALIDATION_ORDER[2:]
        )

    def _check_foreign_keys(self, table: str, rows: list[dict], tenant: Tenant, result: ValidationResult):
        for column, ref_table in FOREIGN_KEYS.get(table, []):
            known = self._guids(ref_table, tenant)
            orphans = [r for r in rows if r.get(column) and r[column] not in known]
            if orphans:
                result.missing_references += len(orphans)
                result.issues.append(
                    f"{len(orphans)} {_label(table)} rows reference non-existent {_label(ref_table)} via {column}"
                )

    def _check_duplicates(self, table: str, rows: list[dict], result: ValidationResult):
        natural_key = get_table(table).natural_key
        if not natural_key:
            return
        keys = Counter(
            tuple(str(r.get(c) or "").strip().lower() for c in natural_key)
            for r in rows
            if all(r.get(c) for c in natural_key[:1])
        )
        extra = sum(n - 1 for n in keys.values() if n > 1)
        if extra:
            result.duplicates += extra
            result.issues.append(f"{extra} {_label(table)} rows duplicate {'/'.join(natural_key)}")

    def _check_self_parent(self, table: str, rows: list[dict], result: ValidationResult):
        if table not in SELF_PARENT_TABLES:
            return
        selfish = [r for r in rows if r.get("parent_guid") and r["parent_guid"] == r["guid"]]
        if selfish:
            result.issues.append(f"{len(selfish)} {_label(table)} rows are self-referencing")

    def _check_required(self, table: str, rows: list[dict], result: ValidationResult):
        for column in REQUIRED_VALUES.get(table, ()):
            nulls = [r for r in rows if r.get(column) is None]
            if nulls:
                result.issues.append(f"{len(nulls)} {_label(table)} rows have null {column}")

    def _check_uom(self, rows: list[dict], result: ValidationResult):
        invalid = [
            r for r in rows
            if r.get("conversion_factor") is None or Decimal(str(r["conversion_factor"])) <= 0
        ]
        if invalid:
            result.issues.append(f"{len(invalid)} units have invalid conversion factors")

    def _check_voucher_dates(self, rows: list[dict], result: ValidationResult):
        today = self.today or date.today()
        future = [r for r in rows if isinstance(r.get("date"), date) and r["date"] > today]
        if future:
            result.issues.append(f"{len(future)} vouchers are dated in the future")

    def _check_voucher_amounts(self, rows: list[dict], tenant: Tenant, result: ValidationResult):
        entries = self.store.fetch_all(
            "trn_accounting",
            tenant.where(),
            columns=["voucher_guid", "amount", "is_deemed_positive"],
        )
        by_voucher: dict[str, list[dict]] = defaultdict(list)
        for e in entries:
            if e.get("voucher_guid"):
                by_voucher[e["voucher_guid"]].append(e)

        epsilon = self.config.amount_epsilon
        mismatched = 0
        for voucher in rows:
            children = by_voucher.get(voucher["guid"])
            stored_total = voucher.get("total_amount")
            if not children or stored_total is None or Decimal(str(stored_total)) == 0:
                continue
            expected = compute_amounts(children)
            for column in ("total_amount", "final_amount"):
                stored = voucher.get(column)
                if stored is not None and abs(Decimal(str(stored)) - expected[column]) > epsilon:
                    mismatched += 1
                    break
        if mismatched:
            result.issues.append(f"{mismatched} vouchers disagree with their ledger entries")

    def _count_unlinked(self, table: str, rows: list[dict], result: ValidationResult):
        if table in LINKABLE_TABLES:
            result.unlinked = sum(
                1 for r in rows
                if isinstance(link_state(r), Unlinked) and r.get("voucher_number")
            )

    def validate_table(self, table: str, tenant: Tenant) -> ValidationResult:
        rows = self._rows(table, tenant)
        result = ValidationResult(table=table, record_count=len(rows))

        if table == "companies":
            self._check_companies(rows, tenant, result)
        elif table == "divisions":
            self._check_divisions(rows, tenant, result)
        else:
            self._check_foreign_keys(table, rows, tenant, result)
            self._check_self_parent(table, rows, result)
            self._check_required(table, rows, result)
        self._check_duplicates(table, rows, result)

        if table == "mst_uom":
            self._check_uom(rows, result)
        elif table == "trn_voucher":
            self._check_voucher_dates(rows, result)
            self._check_voucher_amounts(rows, tenant, result)
        self._count_unlinked(table, rows, result)
        return result

    def run(
        self,
        tenant: Tenant,
        tables: tuple[str, ...] = VALIDATION_ORDER,
        cancel: Optional[threading.Event] = None,
    ) -> ValidationReport:
        self.state = "running"
        self._guid_cache = {}
        report = ValidationReport(state="running")
        failed = False
        total_records = 0

        for table in tables:
            if is_cancelled(cancel):
                report.cancelled = True
                failed = True
                break
            try:
                result = self.validate_table(table, tenant)
            except Exception as e:
                logger.error(f"Validation of {table} failed: {e}")
                result = ValidationResult(table=table, issues=[str(e)])
                failed = True
            report.results.append(result)
            report.total_issues += result.issue_count
            total_records += result.record_count
            logger.debug(f"{table}: {result.record_count} records, {result.issue_count} issues")

        report.overall_health_score = round(health_score(report.total_issues, total_records), 1)
        self.state = "partial_failure" if failed else "success"
        report.state = self.state
        logger.info(
            f"Validation {report.state}: health score {report.overall_health_score}%, "
            f"{report.total_issues} issues"
        )
        return report


def validate(
    company_id: str,
    division_id: str,
    store: Optional[Store] = None,
    config: Optional[IngestConfig] = None,
    cancel: Optional[threading.Event] = None,
) -> ValidationReport:
    """Audit one tenant. Opens (and closes) a PostgresStore unless one is supplied."""
    config = config or IngestConfig.from_env()
    tenant = Tenant(company_id=company_id, division_id=division_id)
    own_store = store is None
    store = store or PostgresStore(config)
    try:
        return IntegrityValidator(store, config).run(tenant, cancel=cancel)
    finally:
        if own_store:
            store.close()
