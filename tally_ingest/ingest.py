"""
XML ingestion entry point.

For each `<VOUCHER>` block in a payload:
1. Extract the voucher, its entries and details (no writes)
2. Ensure every referenced master exists
3. Upsert the voucher, then its ledger entries, inventory entries and
   party/GST/address/shipping details

Vouchers are processed concurrently on the bounded worker pool; within a
voucher the steps run in order. Results are reported in payload order.
"""
from __future__ import annotations
import threading
from typing import Optional
from loguru import logger
from pydantic import ValidationError
from .config import IngestConfig
from .loaders.base import PostgresStore, Store
from .loaders.masters import MasterResolver, MasterResult
from .loaders.transactions import UpsertEngine
from .models import IngestResult, LiveUpdate, ProcessResult, Summary, Tenant
from .parsers.base import TagExtractor, get_extractor
from .parsers.transactions import extract_voucher_bundle, iter_voucher_blocks
from .workers import is_cancelled, map_bounded

MASTER_RECORD_TYPES = {
    "vtype": "voucher_type",
    "ledger": "ledger",
    "stock": "stock_item",
    "godown": "godown",
}


def _master_process_result(result: MasterResult) -> ProcessResult:
    action = {"created": "created_master", "already_exists": "ignored"}.get(result.outcome, "error")
    return ProcessResult(
        table=result.table,
        action=action,
        guid=result.guid,
        record_type=MASTER_RECORD_TYPES[result.kind],
        details={"name": result.name},
        error=result.error,
    )


class XmlIngestor:
    """Turns a Tally XML payload into upserted rows for one tenant."""

    def __init__(
        self,
        store: Store,
        config: Optional[IngestConfig] = None,
        extractor: Optional[TagExtractor] = None,
    ):
        self.store = store
        self.config = config or IngestConfig.from_env()
        self.extractor = extractor or get_extractor(self.config.xml_extractor)
        self.resolver = MasterResolver(store)
        self.engine = UpsertEngine(store, self.config.max_workers, self.config.job_detail_sample)

    def process_voucher(self, tenant: Tenant, voucher_xml: str) -> list[ProcessResult]:
        """Process one voucher block; never raises."""
        try:
            bundle = extract_voucher_bundle(voucher_xml, self.extractor)
        except ValidationError as e:
            logger.warning(f"Could not extract voucher: {e}")
            return [ProcessResult(
                table="trn_voucher", action="error", guid="unknown", record_type="voucher", error=str(e)
            )]

        if bundle is None:
            logger.warning("Skipping voucher without GUID")
            return [ProcessResult(
                table="trn_voucher",
                action="error",
                guid="unknown",
                record_type="voucher",
                error="voucher has no GUID",
            )]

        voucher = bundle.voucher
        results = [_master_process_result(self.resolver.ensure(tenant, ref)) for ref in bundle.masters]

        results.append(self.engine.upsert("trn_voucher", voucher.row(tenant)))
        for entry in bundle.ledger_entries:
            results.append(self.engine.upsert("trn_accounting", entry.row(tenant)))
        for entry in bundle.inventory_entries:
            results.append(self.engine.upsert("trn_inventory", entry.row(tenant)))
        for table, record in bundle.detail_rows():
            results.append(self.engine.upsert(table, record.row(tenant)))

        logger.debug(f"Voucher {voucher.voucher_number or voucher.guid}: {len(results)} records")
        return results

    def ingest(
        self,
        xml_text: str,
        tenant: Tenant,
        live_updates: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> IngestResult:
        if not xml_text or not xml_text.strip():
            return IngestResult(success=False, error="XML text is required")

        results: list[ProcessResult] = []
        updates: list[LiveUpdate] = []
        vouchers = 0

        blocks = iter_voucher_blocks(xml_text, self.extractor)
        for voucher_results in map_bounded(
            lambda block: self.process_voucher(tenant, block), blocks, self.config.max_workers, cancel
        ):
            vouchers += 1
            results.extend(voucher_results)
            if live_updates:
                failed = [r for r in voucher_results if r.action == "error"]
                label = next((r.guid for r in voucher_results if r.table == "trn_voucher"), "unknown")
                updates.append(LiveUpdate(
                    type="error" if failed else "progress",
                    message=f"Processed voucher {label}",
                    record=failed[0] if failed else None,
                    progress={"current": vouchers, "stage": "voucher"},
                ))

        summary = Summary.from_results(results)
        cancelled = is_cancelled(cancel)
        if live_updates:
            updates.append(LiveUpdate(
                type="complete",
                message=f"Processed {vouchers} vouchers",
                progress={"current": vouchers, "total": vouchers, "stage": "complete"},
            ))

        logger.info(
            f"Ingested {vouchers} vouchers: {summary.inserted} inserted, {summary.updated} updated, "
            f"{summary.ignored} ignored, {summary.created_master} masters created, {summary.errors} errors"
        )
        return IngestResult(
            success=True,
            results=results,
            summary=summary,
            live_updates=updates,
            cancelled=cancelled,
        )


def ingest_payload(
    xml_text: str,
    company_id: str,
    division_id: str,
    live_updates: bool = False,
    store: Optional[Store] = None,
    config: Optional[IngestConfig] = None,
    cancel: Optional[threading.Event] = None,
) -> IngestResult:
    """
    Ingest one XML payload for a tenant.

    Opens (and closes) a PostgresStore unless a store is supplied.
    """
    if not company_id or not division_id:
        return IngestResult(success=False, error="company_id and division_id are required")

    config = config or IngestConfig.from_env()
    tenant = Tenant(company_id=company_id, division_id=division_id)
    own_store = store is None
    store = store or PostgresStore(config)
    try:
        return XmlIngestor(store, config).ingest(xml_text, tenant, live_updates, cancel)
    except Exception as e:
        logger.exception(f"Ingestion failed: {e}")
        return IngestResult(success=False, error=str(e))
    finally:
        if own_store:
            store.close()
