"""
Tests for full-sync orchestration.

The sync API client is mocked; rows land in the in-memory store. Tests that
need a live database and sync API are marked `integration`.
"""
import pytest
from datetime import date
from decimal import Decimal
from unittest.mock import Mock
from tally_ingest.client import SyncApiClient, SyncApiConnectionError
from tally_ingest.config import IngestConfig
from tally_ingest.loaders.memory import MemoryStore
from tally_ingest.models import Tenant
from tally_ingest.sync import FullSync, SOURCE_TABLES, prepare_record, run_sync

COMPANY = "6f1c2a9e-8d4b-4f0a-9a51-1c2d3e4f5a6b"
DIVISION = "0b7e4d21-3c5a-4e8f-b6d9-7a8b9c0d1e2f"
TENANT = Tenant(company_id=COMPANY, division_id=DIVISION)

SOURCE_DATA = {
    "groups": [
        {"guid": "src-g1", "name": "Sundry Debtors", "parent": "Primary"},
    ],
    "ledgers": [
        {"guid": "src-l1", "name": "Cash", "parent": "Sundry Debtors",
         "opening_balance": "0", "closing_balance": "0"},
    ],
    "vouchers": [
        {"guid": "v-1", "voucher_number": "1", "voucher_type": "Sales", "date": "20240401"},
    ],
    "accounting": [
        {"guid": "a-1", "voucher_guid": "", "voucher_number": "1", "voucher_type": "Sales",
         "ledger": "Cash", "amount": "100", "is_deemed_positive": "Yes"},
    ],
}


@pytest.fixture
def config():
    return IngestConfig(max_workers=2, job_detail_sample=10)


@pytest.fixture
def store():
    store = MemoryStore()
    store.insert("companies", {"id": COMPANY, "name": "Acme", "tally_company_id": "10001"})
    store.insert("divisions", {"id": DIVISION, "company_id": COMPANY, "name": "Main"})
    return store


@pytest.fixture
def client():
    client = Mock(spec=SyncApiClient)
    client.iter_table.side_effect = lambda c, d, table: iter(SOURCE_DATA.get(table, []))
    return client


class TestPrepareRecord:
    """Tests for shaping API rows into store rows."""

    def test_master_gets_name_guid(self):
        row = prepare_record("mst_ledger", {"guid": "src-l1", "name": "Cash", "parent": "Sundry Debtors"}, TENANT)
        assert row["guid"] == "ledger-Cash"
        assert row["source_guid"] == "src-l1"
        assert row["origin"] == "sync"
        assert row["group_guid"] == "group-Sundry-Debtors"
        assert row["company_id"] == COMPANY

    def test_primary_parent_has_no_guid(self):
        row = prepare_record("mst_group", {"guid": "x", "name": "Capital Account", "parent": "Primary"}, TENANT)
        assert "parent_guid" not in row

    def test_transaction_references_and_dates(self):
        row = prepare_record("trn_inventory", {
            "guid": "i-1", "item": "Widget", "godown": "Main Location",
            "voucher_date": "2024-04-01", "voucher_guid": "",
        }, TENANT)
        assert row["stock_item_guid"] == "stock-Widget"
        assert row["godown_guid"] == "godown-Main-Location"
        assert row["voucher_date"] == date(2024, 4, 1)
        assert row["voucher_guid"] is None

    def test_non_object_record_rejected(self):
        with pytest.raises(ValueError, match="expected an object"):
            prepare_record("mst_group", "not-a-record", TENANT)

    def test_boolean_strings(self):
        row = prepare_record("trn_accounting", {"guid": "a", "ledger": "Cash", "is_deemed_positive": "No"}, TENANT)
        assert row["is_deemed_positive"] is False


class TestFullSync:
    """Tests for the full-sync pipeline (mocked API)."""

    def test_full_sync(self, store, client, config):
        report = run_sync(COMPANY, DIVISION, store=store, client=client, config=config)

        assert report.success is True
        assert report.error is None
        assert [t.table for t in report.tables] == list(SOURCE_TABLES.values())
        assert report.records_inserted == 4
        assert report.error_count == 0

        ledger = store.fetch_one("mst_ledger", {**TENANT.where(), "guid": "ledger-Cash"})
        assert ledger["source_guid"] == "src-l1"
        assert ledger["group_guid"] == "group-Sundry-Debtors"

        voucher = store.fetch_one("trn_voucher", {**TENANT.where(), "guid": "v-1"})
        assert voucher["date"] == date(2024, 4, 1)
        assert voucher["voucher_type_guid"] == "vtype-Sales"

    def test_linker_and_reconciler_run(self, store, client, config):
        report = run_sync(COMPANY, DIVISION, store=store, client=client, config=config)

        assert report.links[0].linked == 1
        entry = store.fetch_one("trn_accounting", {"guid": "a-1"})
        assert entry["voucher_guid"] == "v-1"

        assert report.reconcile.updated == 1
        voucher = store.fetch_one("trn_voucher", {"guid": "v-1"})
        assert voucher["total_amount"] == Decimal("100")
        assert voucher["final_amount"] == Decimal("100")

    def test_job_rows(self, store, client, config):
        report = run_sync(COMPANY, DIVISION, store=store, client=client, config=config)

        jobs = store.fetch_all("sync_jobs", {"id": report.job_id})
        assert len(jobs) == 1
        assert jobs[0]["status"] == "completed"
        assert jobs[0]["records_inserted"] == 4
        assert jobs[0]["completed_at"] is not None
        assert jobs[0]["table_breakdown"]["mst_ledger"]["inserted"] == 1

        details = store.fetch_all("sync_job_details", {"job_id": report.job_id})
        assert len(details) == 4
        assert {d["action"] for d in details} == {"upserted"}

    def test_second_sync_ignores_unchanged(self, store, client, config):
        run_sync(COMPANY, DIVISION, store=store, client=client, config=config)
        report = run_sync(COMPANY, DIVISION, store=store, client=client, config=config)
        assert report.success is True
        assert report.records_inserted == 0
        assert report.records_updated == 0

    def test_selected_tables_in_dependency_order(self, store, client, config):
        report = run_sync(COMPANY, DIVISION, tables=["vouchers", "groups"], store=store, client=client, config=config)
        assert [t.table for t in report.tables] == ["mst_group", "trn_voucher"]

    def test_unknown_table(self, store, client, config):
        report = run_sync(COMPANY, DIVISION, tables=["journals"], store=store, client=client, config=config)
        assert report.success is False
        assert "Unknown tables" in report.error

    def test_failed_table_continues(self, store, client, config):
        """Test that one failing table is recorded and the others still load."""

        def iter_table(c, d, table):
            if table == "ledgers":
                raise SyncApiConnectionError("Sync API error: 503 Service Unavailable")
            return iter(SOURCE_DATA.get(table, []))

        client.iter_table.side_effect = iter_table
        report = run_sync(COMPANY, DIVISION, store=store, client=client, config=config)

        assert report.success is False
        assert report.error == "Failed tables: mst_ledger"
        ledger = next(t for t in report.tables if t.table == "mst_ledger")
        assert ledger.failed
        assert store.count("trn_voucher", TENANT.where()) == 1

        job = store.fetch_one("sync_jobs", {"id": report.job_id})
        assert job["status"] == "failed"
        assert job["error_message"] == "Failed tables: mst_ledger"
        errors = store.fetch_all("sync_job_details", {"job_id": report.job_id, "record_guid": "table_sync"})
        assert len(errors) == 1
        assert errors[0]["table_name"] == "mst_ledger"


    def test_malformed_record_is_record_error(self, store, client, config):
        """Test that a non-object row is one error outcome and the run continues."""
        data = {**SOURCE_DATA, "groups": ["not-a-record", *SOURCE_DATA["groups"]]}
        client.iter_table.side_effect = lambda c, d, table: iter(data.get(table, []))
        report = run_sync(COMPANY, DIVISION, store=store, client=client, config=config)

        groups = next(t for t in report.tables if t.table == "mst_group")
        assert not groups.failed
        assert groups.fetched == 2
        assert groups.stats.errors == 1
        assert groups.stats.inserted == 1
        assert "malformed record" in groups.stats.error_samples[0]

        assert [t.table for t in report.tables] == list(SOURCE_TABLES.values())
        assert store.count("mst_ledger", TENANT.where()) == 1
        assert report.reconcile.updated == 1
        assert report.error_count == 1

        details = store.fetch_all("sync_job_details", {"job_id": report.job_id, "action": "error"})
        assert details[0]["table_name"] == "mst_group"

    def test_unexpected_table_error_continues(self, store, client, config):
        def iter_table(c, d, table):
            if table == "groups":
                raise RuntimeError("cursor closed")
            return iter(SOURCE_DATA.get(table, []))

        client.iter_table.side_effect = iter_table
        report = run_sync(COMPANY, DIVISION, store=store, client=client, config=config)

        assert report.error == "Failed tables: mst_group"
        assert len(report.tables) == len(SOURCE_TABLES)
        assert store.count("mst_ledger", TENANT.where()) == 1
        assert report.links[0].linked == 1


class TestTenantAndActions:
    """Tests for tenant validation and the non-sync actions."""

    def test_invalid_uuid(self, store, client, config):
        report = run_sync("acme", DIVISION, store=store, client=client, config=config)
        assert report.success is False
        assert "company_id" in report.error
        client.iter_table.assert_not_called()

    def test_unknown_division(self, store, client, config):
        other = "11111111-2222-4333-8444-555555555555"
        report = run_sync(COMPANY, other, store=store, client=client, config=config)
        assert report.success is False
        assert report.error == "Company or division not found"

    def test_health_check(self, store, client, config):
        client.health.return_value = {"status": "ok"}
        report = run_sync(COMPANY, DIVISION, action="health_check", store=store, client=client, config=config)
        assert report.success is True
        assert report.data == {"status": "ok"}
        client.iter_table.assert_not_called()

    def test_metadata(self, store, client, config):
        client.metadata.return_value = {"company": "Acme", "tables": 12}
        report = run_sync(COMPANY, DIVISION, action="metadata", store=store, client=client, config=config)
        assert report.success is True
        assert report.data["company"] == "Acme"
        client.metadata.assert_called_once_with(COMPANY, DIVISION)

    def test_api_failure_on_action(self, store, client, config):
        client.health.side_effect = SyncApiConnectionError("Cannot connect to sync API")
        report = run_sync(COMPANY, DIVISION, action="health_check", store=store, client=client, config=config)
        assert report.success is False
        assert "Cannot connect" in report.error

    def test_unknown_action(self, store, client, config):
        report = run_sync(COMPANY, DIVISION, action="drop_all", store=store, client=client, config=config)
        assert report.success is False
        assert "Unknown action" in report.error

    def test_full_sync_class_directly(self, store, client, config):
        report = FullSync(store, client, config).run(TENANT, tables=["groups"])
        assert report.success is True
        assert report.tables[0].stats.inserted == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
