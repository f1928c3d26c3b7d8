"""
Transaction extraction from Tally voucher XML.

Extracts, without touching any store:
- Voucher headers (trn_voucher)
- Ledger entries (trn_accounting)
- Inventory entries (trn_inventory)
- Party, GST, address and shipping details
- The masters each voucher references by name

Header fields are read from the voucher with its nested `*.LIST` blocks
stripped, so a child entry's AMOUNT or DATE is never mistaken for the
voucher's own.
"""
from __future__ import annotations
from collections import Counter
from decimal import Decimal
from typing import Iterator, Optional
from loguru import logger
from ..models import (
    AddressDetailsRecord,
    ExtractedVoucher,
    GstDetailsRecord,
    InventoryEntryRecord,
    LedgerEntryRecord,
    MasterRef,
    PartyDetailsRecord,
    ShippingDetailsRecord,
    VoucherRecord,
    master_guid,
)
from .base import (
    RegexTagExtractor,
    TagExtractor,
    parse_bool,
    parse_decimal,
    parse_int,
    parse_quantity,
    parse_rate,
    parse_tally_date,
    split_quantity,
)
from .masters import ledger_hints, party_ledger_hints, stock_item_hints, voucher_type_hints

LEDGER_LIST_TAGS = ("ALLLEDGERENTRIES.LIST", "LEDGERENTRIES.LIST")
INVENTORY_LIST_TAGS = ("ALLINVENTORYENTRIES.LIST", "INVENTORYENTRIES.LIST")
GST_CLASSES = ("IGST", "CGST", "SGST", "CESS")


def _default_extractor(extractor: Optional[TagExtractor]) -> TagExtractor:
    return extractor if extractor is not None else RegexTagExtractor()


def _ordinal_keys(prefix: str, names: list[str]) -> list[str]:
    """
    Build `{prefix}{name}` keys, suffixing repeats with `#2`, `#3`, ...

    The first occurrence keeps the bare key so single-use names stay stable.
    """
    seen: Counter = Counter()
    keys = []
    for name in names:
        seen[name] += 1
        n = seen[name]
        keys.append(f"{prefix}{name}" if n == 1 else f"{prefix}{name}#{n}")
    return keys


def _entry_blocks(extractor: TagExtractor, voucher_xml: str, tags: tuple[str, ...]) -> list[str]:
    blocks: list[str] = []
    for tag in tags:
        blocks.extend(extractor.blocks(voucher_xml, tag))
    return blocks


def iter_voucher_blocks(xml_text: str, extractor: Optional[TagExtractor] = None) -> Iterator[str]:
    """Lazily yield each raw `<VOUCHER>` block in the payload."""
    return _default_extractor(extractor).blocks(xml_text, "VOUCHER")


def extract_voucher(voucher_xml: str, extractor: Optional[TagExtractor] = None) -> Optional[VoucherRecord]:
    """
    Extract the voucher header.

    Returns None when the voucher has no GUID; such vouchers cannot be keyed.
    """
    ex = _default_extractor(extractor)
    header = ex.strip_lists(voucher_xml)

    guid = ex.value(header, "GUID") or ex.attribute(voucher_xml, "VOUCHER", "REMOTEID")
    if not guid:
        return None

    voucher_type = ex.value(header, "VOUCHERTYPENAME") or ex.attribute(voucher_xml, "VOUCHER", "VCHTYPE")
    voucher_number = ex.value(header, "VOUCHERNUMBER") or ex.attribute(voucher_xml, "VOUCHER", "VCHNUMBER")

    return VoucherRecord(
        guid=guid,
        voucher_number=voucher_number,
        voucher_type=voucher_type,
        voucher_type_guid=master_guid("vtype", voucher_type) if voucher_type else None,
        date=parse_tally_date(ex.value(header, "DATE")),
        narration=ex.value(header, "NARRATION"),
        reference=ex.value(header, "REFERENCE"),
        party_ledger_name=ex.value(header, "PARTYLEDGERNAME"),
        currency=ex.value(header, "CURRENCY") or "INR",
        exchange_rate=parse_decimal(ex.value(header, "EXCHANGERATE"), default=Decimal("1")),
        basic_amount=parse_decimal(ex.value(header, "BASICAMOUNT")),
        discount_amount=parse_decimal(ex.value(header, "DISCOUNTAMOUNT")),
        tax_amount=parse_decimal(ex.value(header, "TAXAMOUNT")),
        total_amount=parse_decimal(ex.value(header, "TOTALAMOUNT")),
        net_amount=parse_decimal(ex.value(header, "NETAMOUNT")),
        final_amount=parse_decimal(ex.value(header, "FINALAMOUNT")),
        is_cancelled=parse_bool(ex.value(header, "ISCANCELLED")),
        is_optional=parse_bool(ex.value(header, "ISOPTIONAL")),
        alter_id=parse_int(ex.value(header, "ALTERID")),
        altered_by=ex.value(header, "ALTEREDBY"),
        altered_on=parse_tally_date(ex.value(header, "ALTEREDON")),
    )


def extract_ledger_entries(
    voucher_xml: str,
    voucher: VoucherRecord,
    extractor: Optional[TagExtractor] = None,
) -> list[LedgerEntryRecord]:
    """Extract ledger entries, keyed `{voucher_guid}-ledger-{ledger}`."""
    ex = _default_extractor(extractor)
    parsed = []
    for block in _entry_blocks(ex, voucher_xml, LEDGER_LIST_TAGS):
        header = ex.strip_lists(block)
        name = ex.value(header, "LEDGERNAME")
        if not name:
            logger.debug(f"Voucher {voucher.guid}: skipping ledger entry without LEDGERNAME")
            continue
        parsed.append((name, header))

    keys = _ordinal_keys(f"{voucher.guid}-ledger-", [name for name, _ in parsed])
    return [
        LedgerEntryRecord(
            guid=key,
            voucher_guid=voucher.guid,
            voucher_number=voucher.voucher_number,
            voucher_type=voucher.voucher_type,
            voucher_date=voucher.date,
            ledger=name,
            ledger_guid=master_guid("ledger", name),
            amount=parse_decimal(ex.value(header, "AMOUNT")),
            is_deemed_positive=parse_bool(ex.value(header, "ISDEEMEDPOSITIVE")),
            is_party_ledger=(
                parse_bool(ex.value(header, "ISPARTYLEDGER"))
                or name == voucher.party_ledger_name
            ),
            currency=voucher.currency,
        )
        for key, (name, header) in zip(keys, parsed)
    ]


def extract_inventory_entries(
    voucher_xml: str,
    voucher: VoucherRecord,
    extractor: Optional[TagExtractor] = None,
) -> list[InventoryEntryRecord]:
    """
    Extract inventory entries, keyed `{voucher_guid}-inventory-{item}`.

    Quantities and amounts come from the entry itself; the godown comes from
    its first batch allocation.
    """
    ex = _default_extractor(extractor)
    parsed = []
    for block in _entry_blocks(ex, voucher_xml, INVENTORY_LIST_TAGS):
        header = ex.strip_lists(block)
        name = ex.value(header, "STOCKITEMNAME")
        if not name:
            logger.debug(f"Voucher {voucher.guid}: skipping inventory entry without STOCKITEMNAME")
            continue
        parsed.append((name, header, block))

    keys = _ordinal_keys(f"{voucher.guid}-inventory-", [name for name, _, _ in parsed])
    records = []
    for key, (name, header, block) in zip(keys, parsed):
        actual_text = ex.value(header, "ACTUALQTY") or ex.value(block, "ACTUALQTY")
        billed_text = ex.value(header, "BILLEDQTY") or ex.value(block, "BILLEDQTY")
        quantity, unit = split_quantity(actual_text or billed_text)
        godown = ex.value(block, "GODOWNNAME")
        records.append(InventoryEntryRecord(
            guid=key,
            voucher_guid=voucher.guid,
            voucher_number=voucher.voucher_number,
            voucher_type=voucher.voucher_type,
            voucher_date=voucher.date,
            item=name,
            stock_item_guid=master_guid("stock", name),
            godown=godown,
            godown_guid=master_guid("godown", godown) if godown else None,
            quantity=quantity,
            billed_quantity=parse_quantity(billed_text) if billed_text else quantity,
            uom=unit,
            rate=parse_rate(ex.value(header, "RATE")),
            amount=parse_decimal(ex.value(header, "AMOUNT")),
        ))
    return records


def extract_party_details(
    voucher_xml: str,
    voucher: VoucherRecord,
    extractor: Optional[TagExtractor] = None,
) -> Optional[PartyDetailsRecord]:
    if not voucher.party_ledger_name:
        return None
    ex = _default_extractor(extractor)
    return PartyDetailsRecord(
        guid=f"{voucher.guid}-party",
        voucher_guid=voucher.guid,
        party_name=voucher.party_ledger_name,
        gstin=ex.value(voucher_xml, "PARTYGSTIN"),
        party_address=ex.value(voucher_xml, "PARTYADDRESS"),
        party_state=ex.value(voucher_xml, "PARTYSTATE"),
        party_pincode=ex.value(voucher_xml, "PARTYPINCODE"),
        party_country=ex.value(voucher_xml, "PARTYCOUNTRY") or "India",
        place_of_supply=ex.value(voucher_xml, "PLACEOFSUPPLY"),
    )


def _gst_class(ledger: str) -> Optional[str]:
    upper = ledger.upper()
    for cls in GST_CLASSES:
        if cls in upper:
            return cls
    return None


def extract_gst_details(
    voucher_xml: str,
    entries: list[LedgerEntryRecord],
    extractor: Optional[TagExtractor] = None,
) -> list[GstDetailsRecord]:
    """One row per tax ledger line (IGST, CGST, SGST or CESS in its name)."""
    ex = _default_extractor(extractor)
    hsn_code = None
    rows = []
    for entry in entries:
        gst_class = _gst_class(entry.ledger)
        if gst_class is None:
            continue
        if hsn_code is None:
            hsn_code = ex.value(voucher_xml, "HSNCODE") or ""
        amount = entry.amount
        rows.append(GstDetailsRecord(
            guid=f"{entry.voucher_guid}-gst-{entry.guid[len(f'{entry.voucher_guid}-ledger-'):]}",
            voucher_guid=entry.voucher_guid,
            ledger=entry.ledger,
            gst_class=gst_class,
            hsn_code=hsn_code or None,
            igst_amount=amount if gst_class == "IGST" else 0,
            cgst_amount=amount if gst_class == "CGST" else 0,
            sgst_amount=amount if gst_class == "SGST" else 0,
            cess_amount=amount if gst_class == "CESS" else 0,
        ))
    return rows


def extract_address_details(
    voucher_xml: str,
    voucher: VoucherRecord,
    extractor: Optional[TagExtractor] = None,
) -> list[AddressDetailsRecord]:
    ex = _default_extractor(extractor)
    rows = []
    for kind, prefix in (("billing", "BILLING"), ("shipping", "SHIPPING")):
        address = ex.value(voucher_xml, f"{prefix}ADDRESS")
        if not address:
            continue
        rows.append(AddressDetailsRecord(
            guid=f"{voucher.guid}-addr-{kind}",
            voucher_guid=voucher.guid,
            address_type=kind,
            address=address,
            state=ex.value(voucher_xml, f"{prefix}STATE"),
            pincode=ex.value(voucher_xml, f"{prefix}PINCODE"),
            country="India",
        ))
    return rows


def extract_shipping_details(
    voucher_xml: str,
    voucher: VoucherRecord,
    extractor: Optional[TagExtractor] = None,
) -> Optional[ShippingDetailsRecord]:
    ex = _default_extractor(extractor)
    consignee = ex.value(voucher_xml, "CONSIGNEENAME")
    buyer = ex.value(voucher_xml, "BUYERNAME")
    if not consignee and not buyer:
        return None
    return ShippingDetailsRecord(
        guid=f"{voucher.guid}-shipping",
        voucher_guid=voucher.guid,
        consignee_name=consignee,
        consignee_address=ex.value(voucher_xml, "CONSIGNEEADDRESS"),
        consignee_state=ex.value(voucher_xml, "CONSIGNEESTATE"),
        consignee_pincode=ex.value(voucher_xml, "CONSIGNEEPINCODE"),
        buyer_name=buyer,
        buyer_address=ex.value(voucher_xml, "BUYERADDRESS"),
        buyer_state=ex.value(voucher_xml, "BUYERSTATE"),
        dispatch_state=ex.value(voucher_xml, "DISPATCHSTATE"),
        ship_to_state=ex.value(voucher_xml, "SHIPTOSTATE"),
    )


def _master_refs(
    ex: TagExtractor,
    voucher_xml: str,
    voucher: VoucherRecord,
    ledger_entries: list[LedgerEntryRecord],
    inventory_entries: list[InventoryEntryRecord],
) -> list[MasterRef]:
    """Distinct masters the voucher names, in resolution order."""
    refs: dict[tuple[str, str], MasterRef] = {}

    def add(kind: str, name: Optional[str], hints: Optional[dict] = None):
        if not name:
            return
        ref = refs.get((kind, name))
        if ref is None:
            refs[(kind, name)] = MasterRef(kind=kind, name=name, hints=hints or {})
        elif hints:
            for k, v in hints.items():
                ref.hints.setdefault(k, v)

    add("vtype", voucher.voucher_type, voucher_type_hints(bool(inventory_entries)))
    if voucher.party_ledger_name:
        add("ledger", voucher.party_ledger_name, party_ledger_hints(ex, voucher_xml))

    ledger_blocks = {}
    for block in _entry_blocks(ex, voucher_xml, LEDGER_LIST_TAGS):
        name = ex.value(ex.strip_lists(block), "LEDGERNAME")
        if name and name not in ledger_blocks:
            ledger_blocks[name] = block
    for entry in ledger_entries:
        block = ledger_blocks.get(entry.ledger)
        add("ledger", entry.ledger, ledger_hints(ex, block) if block else None)

    stock_blocks = {}
    for block in _entry_blocks(ex, voucher_xml, INVENTORY_LIST_TAGS):
        name = ex.value(ex.strip_lists(block), "STOCKITEMNAME")
        if name and name not in stock_blocks:
            stock_blocks[name] = block
    for entry in inventory_entries:
        block = stock_blocks.get(entry.item)
        add("stock", entry.item, stock_item_hints(ex, block) if block else None)
    for entry in inventory_entries:
        add("godown", entry.godown)

    return list(refs.values())


def extract_voucher_bundle(
    voucher_xml: str,
    extractor: Optional[TagExtractor] = None,
) -> Optional[ExtractedVoucher]:
    """
    Extract everything one voucher block carries.

    Returns None when the voucher has no GUID.
    """
    ex = _default_extractor(extractor)
    voucher = extract_voucher(voucher_xml, ex)
    if voucher is None:
        return None

    ledger_entries = extract_ledger_entries(voucher_xml, voucher, ex)
    inventory_entries = extract_inventory_entries(voucher_xml, voucher, ex)

    return ExtractedVoucher(
        voucher=voucher,
        ledger_entries=ledger_entries,
        inventory_entries=inventory_entries,
        party=extract_party_details(voucher_xml, voucher, ex),
        gst=extract_gst_details(voucher_xml, ledger_entries, ex),
        addresses=extract_address_details(voucher_xml, voucher, ex),
        shipping=extract_shipping_details(voucher_xml, voucher, ex),
        masters=_master_refs(ex, voucher_xml, voucher, ledger_entries, inventory_entries),
    )
