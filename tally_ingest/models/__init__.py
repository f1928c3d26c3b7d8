"""
Data models for Tally Ingest.

This module contains the PostgreSQL schema definition, the table registry
and the pydantic records and reports passed between pipeline stages.
"""
from pathlib import Path

from .records import (
    AddressDetailsRecord,
    ExtractedVoucher,
    GstDetailsRecord,
    InventoryEntryRecord,
    LedgerEntryRecord,
    Linked,
    LinkState,
    MasterRef,
    PartyDetailsRecord,
    ShippingDetailsRecord,
    Tenant,
    Unlinked,
    VoucherRecord,
    link_state,
)
from .results import (
    ACTIONS,
    Action,
    BatchStats,
    IngestResult,
    LinkReport,
    LiveUpdate,
    ProcessResult,
    ReconcileReport,
    Summary,
    SyncReport,
    TableSyncResult,
    ValidationReport,
    ValidationResult,
    ValidatorState,
)
from .tables import LINKABLE_TABLES, TABLES, TENANT_COLUMNS, TableSpec, get_table, master_guid

# Path to schema file
SCHEMA_FILE = Path(__file__).parent / "schema.sql"


def get_schema_sql(schema: str = "tally_ingest") -> str:
    """Get the full schema SQL with the target schema name substituted."""
    return SCHEMA_FILE.read_text(encoding="utf-8").replace("{schema}", schema)


__all__ = [
    "ACTIONS",
    "Action",
    "AddressDetailsRecord",
    "BatchStats",
    "ExtractedVoucher",
    "GstDetailsRecord",
    "IngestResult",
    "InventoryEntryRecord",
    "LedgerEntryRecord",
    "LINKABLE_TABLES",
    "LinkReport",
    "LinkState",
    "Linked",
    "LiveUpdate",
    "MasterRef",
    "PartyDetailsRecord",
    "ProcessResult",
    "ReconcileReport",
    "SCHEMA_FILE",
    "ShippingDetailsRecord",
    "Summary",
    "SyncReport",
    "TABLES",
    "TENANT_COLUMNS",
    "TableSpec",
    "TableSyncResult",
    "Tenant",
    "Unlinked",
    "ValidationReport",
    "ValidationResult",
    "ValidatorState",
    "VoucherRecord",
    "get_schema_sql",
    "get_table",
    "link_state",
    "master_guid",
]
