"""
Relationship linking.

Ledger and inventory entries loaded in bulk may arrive without their
voucher_guid. This pass finds each such row's voucher by natural key
(voucher_number, narrowed by voucher_type when the row has one) and writes
voucher_guid. It only ever writes that one column, so it is safe to re-run.
"""
from __future__ import annotations
import threading
from typing import Literal, Optional
from loguru import logger
from .config import IngestConfig
from .loaders.base import Store, StoreError
from .models import LINKABLE_TABLES, LinkReport, Tenant, Unlinked, link_state
from .workers import is_cancelled, map_bounded

LinkOutcome = Literal["linked", "not_found", "ambiguous", "error"]


class RelationshipLinker:
    """Repairs missing voucher references on child rows."""

    def __init__(self, store: Store, config: Optional[IngestConfig] = None):
        self.store = store
        self.config = config or IngestConfig.from_env()

    def _link_row(self, table: str, tenant: Tenant, row: dict) -> LinkOutcome:
        state = link_state(row)
        if not isinstance(state, Unlinked) or not state.voucher_number:
            return "not_found"
        try:
            where = {**tenant.where(), "voucher_number": state.voucher_number}
            if state.voucher_type:
                where["voucher_type"] = state.voucher_type
            matches = self.store.fetch_all("trn_voucher", where, columns=["guid"], limit=2)
            if not matches:
                return "not_found"
            if len(matches) > 1:
                logger.debug(f"{table} {row['guid']}: voucher {state.voucher_number} is ambiguous")
                return "ambiguous"
            self.store.update(
                table,
                {**tenant.where(), "guid": row["guid"]},
                {"voucher_guid": matches[0]["guid"]},
            )
            return "linked"
        except StoreError as e:
            logger.warning(f"Could not link {table} {row.get('guid')}: {e}")
            return "error"

    def link_table(
        self,
        table: str,
        tenant: Tenant,
        limit: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
    ) -> LinkReport:
        """
        Link every unlinked row of one child table.

        Rows are read in guid order, `limit` per page, so rows that stay
        unlinked never hide later ones.
        """
        report = LinkReport(table=table)
        limit = limit or self.config.link_batch_size
        after: Optional[str] = None
        while not is_cancelled(cancel):
            try:
                rows = self.store.fetch_unlinked(table, tenant, limit, after=after)
            except StoreError as e:
                logger.error(f"Could not select unlinked rows from {table}: {e}")
                report.errors += 1
                break
            if not rows:
                break

            report.scanned += len(rows)
            for outcome in map_bounded(
                lambda r: self._link_row(table, tenant, r), rows, self.config.max_workers, cancel
            ):
                if outcome == "linked":
                    report.linked += 1
                elif outcome == "ambiguous":
                    report.ambiguous += 1
                elif outcome == "error":
                    report.errors += 1
                else:
                    report.not_found += 1

            if len(rows) < limit:
                break
            after = rows[-1]["guid"]

        report.cancelled = is_cancelled(cancel)
        logger.info(
            f"Linked {report.linked}/{report.scanned} rows in {table} "
            f"({report.not_found} not found, {report.ambiguous} ambiguous, {report.errors} errors)"
        )
        return report

    def run(
        self,
        tenant: Tenant,
        tables: tuple[str, ...] = LINKABLE_TABLES,
        cancel: Optional[threading.Event] = None,
    ) -> list[LinkReport]:
        reports = []
        for table in tables:
            if is_cancelled(cancel):
                reports.append(LinkReport(table=table, cancelled=True))
                continue
            reports.append(self.link_table(table, tenant, cancel=cancel))
        return reports
