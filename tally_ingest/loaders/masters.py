"""
Master data resolution.

Vouchers reference ledgers, stock items, godowns and voucher types by name.
The resolver makes sure each referenced master exists, creating a
default-shaped row on first reference. Creation is one conditional insert,
so concurrent workers resolving the same name produce exactly one row.
"""
from __future__ import annotations
from decimal import Decimal
from typing import Any, Literal, Optional
from loguru import logger
from pydantic import BaseModel
from ..models import MasterRef, Tenant, master_guid
from .base import Store, StoreError

MasterOutcome = Literal["created", "already_exists", "error"]

# Master kind -> table
MASTER_TABLES = {
    "vtype": "mst_vouchertype",
    "ledger": "mst_ledger",
    "stock": "mst_stock_item",
    "godown": "mst_godown",
}

_ZERO = Decimal("0")

LEDGER_DEFAULTS: dict[str, Any] = {
    "parent": "Sundry Debtors",
    "mailing_country": "India",
    "opening_balance": _ZERO,
    "closing_balance": _ZERO,
    "is_revenue": False,
    "is_deemedpositive": True,
    "bill_credit_period": 0,
}

STOCK_ITEM_DEFAULTS: dict[str, Any] = {
    "parent": "Primary",
    "uom": "Nos",
    "opening_balance": _ZERO,
    "opening_rate": _ZERO,
    "opening_value": _ZERO,
    "closing_balance": _ZERO,
    "closing_rate": _ZERO,
    "closing_value": _ZERO,
    "costing_method": "Average",
    "gst_taxability": "Taxable",
    "gst_type_of_supply": "Goods",
}

GODOWN_DEFAULTS: dict[str, Any] = {
    "parent": "Main Location",
}

VOUCHER_TYPE_DEFAULTS: dict[str, Any] = {
    "numbering_method": "Auto",
    "is_deemedpositive": True,
    "affects_stock": False,
}

_DEFAULTS = {
    "vtype": VOUCHER_TYPE_DEFAULTS,
    "ledger": LEDGER_DEFAULTS,
    "stock": STOCK_ITEM_DEFAULTS,
    "godown": GODOWN_DEFAULTS,
}


class MasterResult(BaseModel):
    kind: str
    table: str
    guid: str
    name: str
    outcome: MasterOutcome
    error: Optional[str] = None


class MasterResolver:
    """
    Ensures referenced masters exist.

    Hints (address, GSTIN, unit, HSN code) only shape a newly created row;
    an existing row is never modified here.
    """

    def __init__(self, store: Store):
        self.store = store

    def ensure_voucher_type(self, tenant: Tenant, name: str, hints: Optional[dict] = None) -> MasterResult:
        return self._ensure(tenant, "vtype", name, hints)

    def ensure_ledger(self, tenant: Tenant, name: str, hints: Optional[dict] = None) -> MasterResult:
        return self._ensure(tenant, "ledger", name, hints)

    def ensure_stock_item(self, tenant: Tenant, name: str, hints: Optional[dict] = None) -> MasterResult:
        return self._ensure(tenant, "stock", name, hints)

    def ensure_godown(self, tenant: Tenant, name: str, hints: Optional[dict] = None) -> MasterResult:
        return self._ensure(tenant, "godown", name, hints)

    def ensure(self, tenant: Tenant, ref: MasterRef) -> MasterResult:
        """Resolve a reference collected by the transaction extractor."""
        return self._ensure(tenant, ref.kind, ref.name, ref.hints)

    def _ensure(self, tenant: Tenant, kind: str, name: str, hints: Optional[dict]) -> MasterResult:
        table = MASTER_TABLES[kind]
        guid = master_guid(kind, name)
        row = dict(_DEFAULTS[kind])
        row.update({k: v for k, v in (hints or {}).items() if v not in (None, "")})
        row.update(tenant.where())
        row.update({"guid": guid, "name": name, "origin": "auto"})

        try:
            created = self.store.insert_if_absent(table, row)
        except StoreError as e:
            logger.warning(f"Could not ensure {kind} '{name}': {e}")
            return MasterResult(kind=kind, table=table, guid=guid, name=name, outcome="error", error=str(e))

        if created:
            logger.debug(f"Created {table} {guid}")
        return MasterResult(
            kind=kind,
            table=table,
            guid=guid,
            name=name,
            outcome="created" if created else "already_exists",
        )
