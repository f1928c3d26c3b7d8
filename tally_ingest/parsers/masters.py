"""
Master hints carried inside voucher XML.

Vouchers name their masters (ledgers, stock items, godowns, voucher types)
but rarely describe them. The few descriptive fields that do appear are
collected here so an auto-created master row starts with them.
"""
from __future__ import annotations
from typing import Any, Optional
from .base import TagExtractor, split_quantity


def _compact(values: dict[str, Optional[Any]]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v not in (None, "")}


def ledger_hints(extractor: TagExtractor, entry_xml: str) -> dict[str, Any]:
    """Hints from a single ledger entry block."""
    return _compact({
        "mailing_address": extractor.value(entry_xml, "ADDRESS"),
        "gstn": extractor.value(entry_xml, "PARTYGSTIN"),
    })


def party_ledger_hints(extractor: TagExtractor, voucher_xml: str) -> dict[str, Any]:
    """
    Hints for the party ledger, read from the whole voucher.

    Tally writes the party's address block and GSTIN on the voucher rather
    than on the party's ledger entry.
    """
    return _compact({
        "mailing_name": extractor.value(voucher_xml, "PARTYMAILINGNAME"),
        "mailing_address": extractor.value(voucher_xml, "ADDRESS"),
        "mailing_state": extractor.value(voucher_xml, "STATENAME"),
        "mailing_pincode": extractor.value(voucher_xml, "PARTYPINCODE"),
        "mailing_country": extractor.value(voucher_xml, "COUNTRYOFRESIDENCE"),
        "gstn": extractor.value(voucher_xml, "PARTYGSTIN"),
    })


def stock_item_hints(extractor: TagExtractor, entry_xml: str) -> dict[str, Any]:
    """Unit of measure and HSN code from an inventory entry block."""
    uom = extractor.value(entry_xml, "UOM")
    if uom is None:
        for tag in ("BILLEDQTY", "ACTUALQTY"):
            _, uom = split_quantity(extractor.value(entry_xml, tag))
            if uom:
                break
    return _compact({
        "uom": uom,
        "gst_hsn_code": extractor.value(entry_xml, "HSNCODE"),
    })


def voucher_type_hints(has_inventory: bool) -> dict[str, Any]:
    return {"affects_stock": has_inventory}
