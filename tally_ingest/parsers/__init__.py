"""
XML extraction for Tally voucher payloads.

This module contains:
- Tag extractors (regex scanner by default, lxml for strict parsing)
- Date and number normalizers
- Voucher, entry and detail extraction
- Master hints carried inside vouchers
"""

from .base import (
    LxmlTagExtractor,
    RegexTagExtractor,
    TagExtractor,
    get_extractor,
    parse_bool,
    parse_decimal,
    parse_int,
    parse_quantity,
    parse_rate,
    parse_tally_date,
    sanitize_xml,
    split_quantity,
)
from .transactions import (
    extract_address_details,
    extract_gst_details,
    extract_inventory_entries,
    extract_ledger_entries,
    extract_party_details,
    extract_shipping_details,
    extract_voucher,
    extract_voucher_bundle,
    iter_voucher_blocks,
)

__all__ = [
    # Base
    "TagExtractor",
    "RegexTagExtractor",
    "LxmlTagExtractor",
    "get_extractor",
    "sanitize_xml",
    "parse_tally_date",
    "parse_decimal",
    "parse_int",
    "parse_quantity",
    "parse_rate",
    "parse_bool",
    "split_quantity",
    # Transactions
    "iter_voucher_blocks",
    "extract_voucher",
    "extract_voucher_bundle",
    "extract_ledger_entries",
    "extract_inventory_entries",
    "extract_party_details",
    "extract_gst_details",
    "extract_address_details",
    "extract_shipping_details",
]
