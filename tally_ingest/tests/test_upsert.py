"""
Tests for the idempotent upsert engine.
"""
import pytest
import threading
from datetime import date
from decimal import Decimal
from tally_ingest.loaders.memory import MemoryStore
from tally_ingest.loaders.transactions import UpsertEngine, changed_fields
from tally_ingest.models import Tenant

TENANT = Tenant(company_id="c1", division_id="d1")


def _voucher(**overrides) -> dict:
    row = {
        **TENANT.where(),
        "guid": "v1",
        "voucher_number": "S-1",
        "voucher_type": "Sales",
        "date": date(2024, 4, 1),
        "narration": "first",
        "total_amount": Decimal("0"),
        "final_amount": Decimal("0"),
        "alter_id": 1,
    }
    row.update(overrides)
    return row


class TestChangedFields:
    """Tests for significant-field comparison."""

    def test_numeric_representations_are_equal(self):
        existing = {"amount": Decimal("100.00"), "ledger": "Cash", "is_deemed_positive": True}
        assert changed_fields("trn_accounting", existing, {"amount": "100", "ledger": "Cash "}) == []

    def test_date_against_iso_string(self):
        existing = {"date": date(2024, 4, 1)}
        assert changed_fields("trn_voucher", existing, {"date": "2024-04-01"}) == []

    def test_reports_changed_fields(self):
        existing = {"amount": Decimal("100"), "ledger": "Cash"}
        assert changed_fields("trn_accounting", existing, {"amount": Decimal("90"), "ledger": "Cash"}) == ["amount"]


class TestUpsertEngine:
    """Tests for insert / update / ignore outcomes."""

    @pytest.fixture
    def store(self):
        return MemoryStore()

    @pytest.fixture
    def engine(self, store):
        return UpsertEngine(store, max_workers=4, sample_size=3)

    def test_insert_then_ignore(self, engine):
        """Test that writing the same record twice is a no-op the second time."""
        assert engine.upsert("trn_voucher", _voucher()).action == "inserted"
        result = engine.upsert("trn_voucher", _voucher())
        assert result.action == "ignored"
        assert result.record_type == "voucher"

    def test_update_on_significant_change(self, engine, store):
        engine.upsert("trn_voucher", _voucher())
        result = engine.upsert("trn_voucher", _voucher(narration="second"))
        assert result.action == "updated"
        assert result.details == {"changed": ["narration"]}
        assert store.fetch_one("trn_voucher", {"guid": "v1"})["narration"] == "second"

    def test_insignificant_change_is_ignored(self, engine):
        """Test that amount-only differences on a voucher do not count as a change."""
        engine.upsert("trn_voucher", _voucher())
        assert engine.upsert("trn_voucher", _voucher(total_amount=Decimal("500"))).action == "ignored"

    def test_reconciled_amounts_survive_reingest(self, engine, store):
        """Test that an incoming zero never overwrites a computed amount."""
        engine.upsert("trn_voucher", _voucher())
        store.update("trn_voucher", {"guid": "v1"}, {"total_amount": Decimal("250"), "final_amount": Decimal("250")})

        result = engine.upsert("trn_voucher", _voucher(narration="edited"))
        assert result.action == "updated"
        row = store.fetch_one("trn_voucher", {"guid": "v1"})
        assert row["total_amount"] == Decimal("250")
        assert row["final_amount"] == Decimal("250")

    def test_link_is_not_cleared(self, engine, store):
        """Test that an incoming null voucher_guid keeps the linked value."""
        entry = {
            **TENANT.where(), "guid": "a1", "voucher_guid": None, "voucher_number": "S-1",
            "ledger": "Cash", "amount": Decimal("10"), "is_deemed_positive": True,
        }
        engine.upsert("trn_accounting", entry)
        store.update("trn_accounting", {"guid": "a1"}, {"voucher_guid": "v1"})

        result = engine.upsert("trn_accounting", {**entry, "amount": Decimal("12")})
        assert result.action == "updated"
        row = store.fetch_one("trn_accounting", {"guid": "a1"})
        assert row["voucher_guid"] == "v1"
        assert row["amount"] == Decimal("12")

    def test_manual_master_never_overwritten(self, engine, store):
        store.insert("mst_ledger", {**TENANT.where(), "guid": "ledger-Cash", "name": "Cash", "parent": "Cash-in-Hand", "origin": "manual"})
        result = engine.upsert("mst_ledger", {**TENANT.where(), "guid": "ledger-Cash", "name": "Cash", "parent": "Bank Accounts", "origin": "sync"})
        assert result.action == "ignored"
        assert store.fetch_one("mst_ledger", {"guid": "ledger-Cash"})["parent"] == "Cash-in-Hand"

    def test_auto_master_refreshed_by_sync(self, engine, store):
        store.insert("mst_ledger", {**TENANT.where(), "guid": "ledger-Cash", "name": "Cash", "parent": "Sundry Debtors", "origin": "auto"})
        result = engine.upsert("mst_ledger", {**TENANT.where(), "guid": "ledger-Cash", "name": "Cash", "parent": "Cash-in-Hand", "origin": "sync"})
        assert result.action == "updated"
        row = store.fetch_one("mst_ledger", {"guid": "ledger-Cash"})
        assert row["parent"] == "Cash-in-Hand"
        assert row["origin"] == "sync"

    def test_missing_key_is_error(self, engine):
        result = engine.upsert("trn_voucher", {**TENANT.where(), "voucher_number": "S-9"})
        assert result.action == "error"
        assert result.guid == "unknown"
        assert "missing key columns" in result.error

    def test_unknown_table_is_error(self, engine):
        assert engine.upsert("trn_nothing", _voucher()).action == "error"


class TestUpsertBatch:
    """Tests for the bulk path."""

    def test_counts_and_samples(self):
        store = MemoryStore()
        engine = UpsertEngine(store, max_workers=4, sample_size=3)
        engine.upsert("trn_voucher", _voucher(guid="v0"))

        records = [_voucher(guid=f"v{i}") for i in range(6)] + [{"voucher_number": "broken"}]
        stats = engine.upsert_batch("trn_voucher", records)

        assert stats.inserted == 5
        assert stats.ignored == 1
        assert stats.errors == 1
        assert stats.processed == 7
        assert len(stats.samples) == 3
        assert len(stats.error_samples) == 1
        assert stats.cancelled is False

    def test_same_key_from_many_workers(self):
        """Test that concurrent writers of one key yield a single insert."""
        store = MemoryStore()
        engine = UpsertEngine(store, max_workers=8)
        stats = engine.upsert_batch("trn_voucher", [_voucher() for _ in range(40)])
        assert stats.inserted == 1
        assert stats.ignored == 39
        assert store.count("trn_voucher", TENANT.where()) == 1

    def test_prepare_rejection_is_error_outcome(self):
        def prepare(record):
            if not isinstance(record, dict):
                raise ValueError("expected an object")
            return record

        stats = UpsertEngine(MemoryStore()).upsert_batch(
            "trn_voucher", [42, _voucher()], prepare=prepare
        )
        assert stats.errors == 1
        assert stats.inserted == 1
        assert stats.samples[0].guid == "unknown"
        assert stats.samples[0].error == "malformed record: expected an object"

    def test_cancelled_before_start(self):
        store = MemoryStore()
        cancel = threading.Event()
        cancel.set()
        stats = UpsertEngine(store).upsert_batch("trn_voucher", [_voucher()], cancel=cancel)
        assert stats.processed == 0
        assert stats.cancelled is True


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
