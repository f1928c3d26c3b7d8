"""
Extracted records and tenant scoping.

Records are pydantic models so values are coerced on construction; `row()`
turns one into the flat dict a store writes.
"""
from __future__ import annotations
import datetime as dt
from decimal import Decimal
from typing import Any, Literal, Optional, Union
from pydantic import BaseModel, Field


class Tenant(BaseModel):
    """The (company, division) pair that scopes every row."""

    company_id: str
    division_id: str

    def where(self) -> dict[str, str]:
        return {"company_id": self.company_id, "division_id": self.division_id}


class _Record(BaseModel):
    guid: str

    def row(self, tenant: Tenant) -> dict[str, Any]:
        data = self.model_dump()
        data.update(tenant.where())
        return data


class VoucherRecord(_Record):
    voucher_number: Optional[str] = None
    voucher_type: Optional[str] = None
    voucher_type_guid: Optional[str] = None
    date: Optional[dt.date] = None
    narration: Optional[str] = None
    reference: Optional[str] = None
    party_ledger_name: Optional[str] = None
    currency: str = "INR"
    exchange_rate: Decimal = Decimal("1")
    basic_amount: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    net_amount: Decimal = Decimal("0")
    final_amount: Decimal = Decimal("0")
    is_cancelled: bool = False
    is_optional: bool = False
    alter_id: int = 0
    altered_by: Optional[str] = None
    altered_on: Optional[dt.date] = None


class LedgerEntryRecord(_Record):
    voucher_guid: Optional[str] = None
    voucher_number: Optional[str] = None
    voucher_type: Optional[str] = None
    voucher_date: Optional[dt.date] = None
    ledger: str
    ledger_guid: Optional[str] = None
    amount: Decimal = Decimal("0")
    is_deemed_positive: bool = False
    is_party_ledger: bool = False
    currency: str = "INR"


class InventoryEntryRecord(_Record):
    voucher_guid: Optional[str] = None
    voucher_number: Optional[str] = None
    voucher_type: Optional[str] = None
    voucher_date: Optional[dt.date] = None
    item: str
    stock_item_guid: Optional[str] = None
    godown: Optional[str] = None
    godown_guid: Optional[str] = None
    quantity: Decimal = Decimal("0")
    billed_quantity: Decimal = Decimal("0")
    uom: Optional[str] = None
    rate: Decimal = Decimal("0")
    amount: Decimal = Decimal("0")


class PartyDetailsRecord(_Record):
    voucher_guid: str
    party_name: Optional[str] = None
    gstin: Optional[str] = None
    party_address: Optional[str] = None
    party_state: Optional[str] = None
    party_pincode: Optional[str] = None
    party_country: Optional[str] = None
    place_of_supply: Optional[str] = None


class GstDetailsRecord(_Record):
    voucher_guid: str
    ledger: str
    gst_class: Optional[str] = None
    hsn_code: Optional[str] = None
    igst_amount: Decimal = Decimal("0")
    cgst_amount: Decimal = Decimal("0")
    sgst_amount: Decimal = Decimal("0")
    cess_amount: Decimal = Decimal("0")


class AddressDetailsRecord(_Record):
    voucher_guid: str
    address_type: Literal["billing", "shipping"]
    address: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    country: Optional[str] = None


class ShippingDetailsRecord(_Record):
    voucher_guid: str
    consignee_name: Optional[str] = None
    consignee_address: Optional[str] = None
    consignee_state: Optional[str] = None
    consignee_pincode: Optional[str] = None
    buyer_name: Optional[str] = None
    buyer_address: Optional[str] = None
    buyer_state: Optional[str] = None
    dispatch_state: Optional[str] = None
    ship_to_state: Optional[str] = None


class MasterRef(BaseModel):
    """A master referenced by name from inside a voucher."""

    kind: Literal["vtype", "ledger", "stock", "godown"]
    name: str
    hints: dict[str, Any] = Field(default_factory=dict)


class ExtractedVoucher(BaseModel):
    """Everything pulled out of one `<VOUCHER>` block, before any writes."""

    voucher: VoucherRecord
    ledger_entries: list[LedgerEntryRecord] = Field(default_factory=list)
    inventory_entries: list[InventoryEntryRecord] = Field(default_factory=list)
    party: Optional[PartyDetailsRecord] = None
    gst: list[GstDetailsRecord] = Field(default_factory=list)
    addresses: list[AddressDetailsRecord] = Field(default_factory=list)
    shipping: Optional[ShippingDetailsRecord] = None
    masters: list[MasterRef] = Field(default_factory=list)

    def detail_rows(self) -> list[tuple[str, _Record]]:
        """(table, record) pairs for the voucher's detail tables."""
        rows: list[tuple[str, _Record]] = []
        if self.party is not None:
            rows.append(("trn_party_details", self.party))
        rows.extend(("trn_gst_details", g) for g in self.gst)
        rows.extend(("trn_address_details", a) for a in self.addresses)
        if self.shipping is not None:
            rows.append(("trn_shipping_details", self.shipping))
        return rows


# ---------------------------------------------------------------------------
# Link state of child rows
# ---------------------------------------------------------------------------

class Linked(BaseModel):
    state: Literal["linked"] = "linked"
    voucher_guid: str


class Unlinked(BaseModel):
    state: Literal["unlinked"] = "unlinked"
    voucher_number: Optional[str] = None
    voucher_type: Optional[str] = None


LinkState = Union[Linked, Unlinked]


def link_state(row: dict) -> LinkState:
    """Classify a child row as linked to its voucher or still dangling."""
    voucher_guid = row.get("voucher_guid")
    if voucher_guid:
        return Linked(voucher_guid=voucher_guid)
    return Unlinked(
        voucher_number=row.get("voucher_number") or None,
        voucher_type=row.get("voucher_type") or None,
    )
