"""
Amount reconciliation.

Vouchers whose total or final amount is missing (null or zero) get their
aggregates recomputed from their ledger entries:

    total = sum(|amount|)
    final = sum(amount if deemed positive else -|amount|)

and written as total_amount, basic_amount = total, net_amount = |final|,
final_amount = final. Only those four columns are ever written.
"""
from __future__ import annotations
import threading
from decimal import Decimal
from typing import Iterable, Literal, Optional
from loguru import logger
from .config import IngestConfig
from .loaders.base import Store, StoreError
from .models import ReconcileReport, Tenant
from .workers import is_cancelled, map_bounded

ReconcileOutcome = Literal["updated", "unchanged", "no_entries", "error"]

ZERO = Decimal("0")


def compute_amounts(entries: Iterable[dict]) -> dict[str, Decimal]:
    """Aggregate amounts for a voucher from its ledger entry rows."""
    total = ZERO
    final = ZERO
    for entry in entries:
        amount = Decimal(str(entry.get("amount") or 0))
        total += abs(amount)
        final += amount if entry.get("is_deemed_positive") else -abs(amount)
    return {
        "total_amount": total,
        "basic_amount": total,
        "net_amount": abs(final),
        "final_amount": final,
    }


def _as_decimal(value) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


class AmountReconciler:
    """Fills in missing voucher aggregates from ledger entries."""

    def __init__(self, store: Store, config: Optional[IngestConfig] = None):
        self.store = store
        self.config = config or IngestConfig.from_env()

    def _reconcile(self, tenant: Tenant, voucher: dict) -> ReconcileOutcome:
        try:
            entries = self.store.fetch_all(
                "trn_accounting",
                {**tenant.where(), "voucher_guid": voucher["guid"]},
                columns=["amount", "is_deemed_positive"],
            )
            if not entries:
                return "no_entries"

            amounts = compute_amounts(entries)
            if all(_as_decimal(voucher.get(k)) == v for k, v in amounts.items()):
                return "unchanged"

            self.store.update("trn_voucher", {**tenant.where(), "guid": voucher["guid"]}, amounts)
            return "updated"
        except StoreError as e:
            logger.warning(f"Could not reconcile voucher {voucher.get('guid')}: {e}")
            return "error"

    def run(self, tenant: Tenant, cancel: Optional[threading.Event] = None) -> ReconcileReport:
        report = ReconcileReport()
        try:
            vouchers = self.store.fetch_vouchers_missing_amounts(tenant)
        except StoreError as e:
            logger.error(f"Could not select vouchers to reconcile: {e}")
            report.errors += 1
            return report

        report.scanned = len(vouchers)
        for outcome in map_bounded(
            lambda v: self._reconcile(tenant, v), vouchers, self.config.max_workers, cancel
        ):
            if outcome == "updated":
                report.updated += 1
            elif outcome == "unchanged":
                report.unchanged += 1
            elif outcome == "no_entries":
                report.skipped_no_entries += 1
            else:
                report.errors += 1

        report.cancelled = is_cancelled(cancel)
        logger.info(
            f"Reconciled {report.updated}/{report.scanned} vouchers "
            f"({report.unchanged} unchanged, {report.skipped_no_entries} without entries)"
        )
        return report
