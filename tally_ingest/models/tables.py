"""
Table registry for the normalized store.

Each table lists its key, its columns and, for masters, the slug prefix used
to derive identifiers. Stores use this to whitelist columns and build keys;
the Validator uses it to walk tables in dependency order.
"""
from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Literal, Optional

TENANT_COLUMNS = ("company_id", "division_id")

MASTER_AUDIT = ("origin", "source_guid")

_SLUG = re.compile(r"[^A-Za-z0-9]")


def master_guid(prefix: str, name: str) -> str:
    """
    Deterministic identifier for a master, e.g. `ledger-Cash`.

    Every non-alphanumeric character becomes `-`, so the id depends only on
    the kind and the name.
    """
    return f"{prefix}-{_SLUG.sub('-', name.strip())}"


@dataclass(frozen=True)
class TableSpec:
    name: str
    kind: Literal["root", "master", "transaction", "audit"]
    columns: tuple[str, ...]
    key: tuple[str, ...] = ("guid",)
    tenant_scoped: bool = True
    master_prefix: Optional[str] = None
    natural_key: tuple[str, ...] = ()

    @property
    def key_columns(self) -> tuple[str, ...]:
        """Full key including tenant columns for tenant-scoped tables."""
        if self.tenant_scoped:
            return TENANT_COLUMNS + self.key
        return self.key

    @property
    def all_columns(self) -> tuple[str, ...]:
        if self.tenant_scoped:
            return TENANT_COLUMNS + self.columns
        return self.columns


_TABLES = [
    TableSpec(
        "companies", "root",
        ("id", "name", "tally_company_id"),
        key=("id",), tenant_scoped=False, natural_key=("name",),
    ),
    TableSpec(
        "divisions", "root",
        ("id", "company_id", "name"),
        key=("id",), tenant_scoped=False, natural_key=("company_id", "name"),
    ),
    TableSpec(
        "mst_group", "master",
        ("guid", "name", "parent", "parent_guid", "is_revenue", "is_deemedpositive") + MASTER_AUDIT,
        master_prefix="group", natural_key=("name",),
    ),
    TableSpec(
        "mst_ledger", "master",
        (
            "guid", "name", "parent", "group_guid", "alias", "mailing_name",
            "mailing_address", "mailing_state", "mailing_country", "mailing_pincode",
            "email", "it_pan", "gstn", "gst_registration_type",
            "opening_balance", "closing_balance", "is_revenue", "is_deemedpositive",
            "bill_credit_period",
        ) + MASTER_AUDIT,
        master_prefix="ledger", natural_key=("name",),
    ),
    TableSpec(
        "mst_uom", "master",
        ("guid", "name", "formal_name", "conversion_factor") + MASTER_AUDIT,
        master_prefix="uom", natural_key=("name",),
    ),
    TableSpec(
        "mst_stock_group", "master",
        ("guid", "name", "parent", "parent_guid") + MASTER_AUDIT,
        master_prefix="stockgroup", natural_key=("name",),
    ),
    TableSpec(
        "mst_stock_item", "master",
        (
            "guid", "name", "parent", "stock_group_guid", "uom", "uom_guid",
            "opening_balance", "opening_rate", "opening_value",
            "closing_balance", "closing_rate", "closing_value", "costing_method",
            "gst_hsn_code", "gst_taxability", "gst_type_of_supply",
        ) + MASTER_AUDIT,
        master_prefix="stock", natural_key=("name",),
    ),
    TableSpec(
        "mst_godown", "master",
        ("guid", "name", "parent", "parent_guid", "address") + MASTER_AUDIT,
        master_prefix="godown", natural_key=("name",),
    ),
    TableSpec(
        "mst_cost_category", "master",
        ("guid", "name") + MASTER_AUDIT,
        master_prefix="costcat", natural_key=("name",),
    ),
    TableSpec(
        "mst_cost_centre", "master",
        ("guid", "name", "parent", "cost_category", "cost_category_guid") + MASTER_AUDIT,
        master_prefix="costcentre", natural_key=("name",),
    ),
    TableSpec(
        "mst_vouchertype", "master",
        ("guid", "name", "parent", "numbering_method", "is_deemedpositive", "affects_stock") + MASTER_AUDIT,
        master_prefix="vtype", natural_key=("name",),
    ),
    TableSpec(
        "trn_voucher", "transaction",
        (
            "guid", "voucher_number", "voucher_type", "voucher_type_guid", "date",
            "narration", "reference", "party_ledger_name", "currency", "exchange_rate",
            "basic_amount", "discount_amount", "tax_amount", "total_amount",
            "net_amount", "final_amount", "is_cancelled", "is_optional",
            "alter_id", "altered_by", "altered_on",
        ),
        natural_key=("voucher_number", "voucher_type"),
    ),
    TableSpec(
        "trn_accounting", "transaction",
        (
            "guid", "voucher_guid", "voucher_number", "voucher_type", "voucher_date",
            "ledger", "ledger_guid", "amount", "is_deemed_positive", "is_party_ledger",
            "currency",
        ),
    ),
    TableSpec(
        "trn_inventory", "transaction",
        (
            "guid", "voucher_guid", "voucher_number", "voucher_type", "voucher_date",
            "item", "stock_item_guid", "godown", "godown_guid", "quantity",
            "billed_quantity", "uom", "rate", "amount",
        ),
    ),
    TableSpec(
        "trn_party_details", "transaction",
        (
            "guid", "voucher_guid", "party_name", "gstin", "party_address",
            "party_state", "party_pincode", "party_country", "place_of_supply",
        ),
    ),
    TableSpec(
        "trn_gst_details", "transaction",
        (
            "guid", "voucher_guid", "ledger", "gst_class", "hsn_code",
            "igst_amount", "cgst_amount", "sgst_amount", "cess_amount",
        ),
    ),
    TableSpec(
        "trn_address_details", "transaction",
        ("guid", "voucher_guid", "address_type", "address", "state", "pincode", "country"),
    ),
    TableSpec(
        "trn_shipping_details", "transaction",
        (
            "guid", "voucher_guid", "consignee_name", "consignee_address",
            "consignee_state", "consignee_pincode", "buyer_name", "buyer_address",
            "buyer_state", "dispatch_state", "ship_to_state",
        ),
    ),
    TableSpec(
        "sync_jobs", "audit",
        (
            "id", "company_id", "division_id", "job_type", "status", "started_at",
            "completed_at", "records_processed", "records_inserted", "records_updated",
            "error_count", "error_message", "table_breakdown",
        ),
        key=("id",), tenant_scoped=False,
    ),
    TableSpec(
        "sync_job_details", "audit",
        (
            "id", "job_id", "table_name", "action", "record_guid", "record_details",
            "voucher_number", "error_message", "created_at",
        ),
        key=("id",), tenant_scoped=False,
    ),
]

TABLES: dict[str, TableSpec] = {t.name: t for t in _TABLES}

# Child tables that carry the voucher natural key and may be unlinked
LINKABLE_TABLES = ("trn_accounting", "trn_inventory")


def get_table(name: str) -> TableSpec:
    if name not in TABLES:
        raise ValueError(f"Unknown table: {name}. Valid: {list(TABLES.keys())}")
    return TABLES[name]


def master_table_for_prefix(prefix: str) -> TableSpec:
    for spec in _TABLES:
        if spec.master_prefix == prefix:
            return spec
    raise ValueError(f"No master table for prefix: {prefix}")
