"""
Base utilities for Tally XML extraction.

Provides:
- Tag extraction by delimiter scanning (no document tree), tolerant of
  malformed fragments
- An lxml-backed extractor with the same interface for stricter parsing
- XML sanitization
- Date, decimal, quantity and boolean parsing
"""
from __future__ import annotations
import html
import re
from datetime import date
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Iterator, Optional, Protocol
from lxml import etree
from loguru import logger

ZERO = Decimal("0")


def sanitize_xml(xml_text: str) -> str:
    """
    Remove invalid XML characters and fix common issues.

    Tally sometimes produces XML with control characters or invalid sequences.
    This function cleans those up for safe parsing.
    """
    if not xml_text:
        return xml_text

    xml_text = xml_text.replace("\x00", "")

    # Tally outputs &#4; and similar references to control characters
    xml_text = re.sub(r"&#([0-8]|1[0-2]|1[4-9]|2[0-9]|3[01]);", "", xml_text)
    xml_text = re.sub(r"&#x([0-8bBcCeEfF]|1[0-9a-fA-F]);", "", xml_text)

    # XML 1.0 only allows #x9 | #xA | #xD | [#x20-#xD7FF] | [#xE000-#xFFFD]
    xml_text = "".join(
        c if (
            c in "\t\n\r" or
            0x20 <= ord(c) <= 0xD7FF or
            0xE000 <= ord(c) <= 0xFFFD
        ) else ""
        for c in xml_text
    )

    # Unescaped ampersands (but not valid entities)
    xml_text = re.sub(r"&(?!(amp|lt|gt|apos|quot|#\d+|#x[\da-fA-F]+);)", "&amp;", xml_text)

    return xml_text


# ---------------------------------------------------------------------------
# Tag extraction
# ---------------------------------------------------------------------------

class TagExtractor(Protocol):
    """Pulls scalar values and repeated sub-blocks out of a markup payload."""

    def value(self, xml: str, tag: str) -> Optional[str]: ...

    def blocks(self, xml: str, tag: str) -> Iterator[str]: ...

    def attribute(self, xml: str, tag: str, name: str) -> Optional[str]: ...

    def strip_lists(self, xml: str) -> str: ...


@lru_cache(maxsize=256)
def _block_pattern(tag: str) -> re.Pattern:
    t = re.escape(tag)
    # The body may not contain another opening tag of the same name, so an
    # unclosed tag never swallows the next well-formed sibling.
    return re.compile(
        rf"<{t}(?:\s[^<>]*)?(?<!/)>((?:(?!<{t}[\s>]).)*?)</{t}\s*>",
        re.DOTALL,
    )


@lru_cache(maxsize=256)
def _open_tag_pattern(tag: str) -> re.Pattern:
    return re.compile(rf"<{re.escape(tag)}(\s[^<>]*)?/?>")


@lru_cache(maxsize=256)
def _attr_pattern(name: str) -> re.Pattern:
    return re.compile(rf"""\b{re.escape(name)}\s*=\s*(?:"([^"]*)"|'([^']*)')""")


_LIST_BLOCK = re.compile(r"<([A-Za-z0-9_]+\.LIST)(?:\s[^<>]*)?(?<!/)>.*?</\1\s*>", re.DOTALL)
_EMPTY_LIST = re.compile(r"<[A-Za-z0-9_]+\.LIST(?:\s[^<>]*)?/>")
_OUTER_TAG = re.compile(r"\s*<([A-Za-z0-9_.]+)(?:\s[^<>]*)?(?<!/)>")


def _clean(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    val = html.unescape(raw).strip()
    return val or None


class RegexTagExtractor:
    """
    Delimiter-scanning extractor.

    Matches `<TAG ...>inner</TAG>` with multi-line bodies. Absent or
    unclosed tags simply produce no match.
    """

    def value(self, xml: str, tag: str) -> Optional[str]:
        """Return the first inner text for `tag`, or None."""
        if not xml:
            return None
        match = _block_pattern(tag).search(xml)
        if match is None:
            return None
        return _clean(match.group(1))

    def blocks(self, xml: str, tag: str) -> Iterator[str]:
        """Lazily yield each raw `<tag>...</tag>` block in document order."""
        if not xml:
            return
        for match in _block_pattern(tag).finditer(xml):
            yield match.group(0)

    def attribute(self, xml: str, tag: str, name: str) -> Optional[str]:
        """Read attribute `name` from the first opening `tag`."""
        if not xml:
            return None
        match = _open_tag_pattern(tag).search(xml)
        if match is None or not match.group(1):
            return None
        attr = _attr_pattern(name).search(match.group(1))
        if attr is None:
            return None
        return _clean(attr.group(1) if attr.group(1) is not None else attr.group(2))

    def strip_lists(self, xml: str) -> str:
        """
        Drop every nested `*.LIST` block so only header fields remain.

        The outermost element is kept even when it is itself a list, so an
        entry block like `<ALLLEDGERENTRIES.LIST>` keeps its own fields.
        """
        if not xml:
            return xml
        outer = _OUTER_TAG.match(xml)
        if outer is not None:
            close = xml.rfind(f"</{outer.group(1)}")
            if close > outer.end():
                body = xml[outer.end():close]
                return xml[:outer.end()] + self._strip(body) + xml[close:]
        return self._strip(xml)

    @staticmethod
    def _strip(xml: str) -> str:
        return _EMPTY_LIST.sub("", _LIST_BLOCK.sub("", xml))


class LxmlTagExtractor:
    """
    Stricter extractor backed by lxml.

    Each call parses its input as a well-formed fragment. A fragment that
    fails to parse yields "not found" rather than raising.
    """

    def _root(self, xml: str) -> Optional[etree._Element]:
        if not xml:
            return None
        try:
            return etree.fromstring(sanitize_xml(xml).encode("utf-8"))
        except etree.XMLSyntaxError as e:
            logger.debug(f"lxml could not parse fragment: {e}")
            return None

    def value(self, xml: str, tag: str) -> Optional[str]:
        root = self._root(xml)
        if root is None:
            return None
        for el in root.iter(tag):
            return _clean("".join(el.itertext()))
        return None

    def blocks(self, xml: str, tag: str) -> Iterator[str]:
        root = self._root(xml)
        if root is None:
            return
        for el in root.iter(tag):
            yield etree.tostring(el, encoding="unicode", with_tail=False)

    def attribute(self, xml: str, tag: str, name: str) -> Optional[str]:
        root = self._root(xml)
        if root is None:
            return None
        for el in root.iter(tag):
            return _clean(el.get(name))
        return None

    def strip_lists(self, xml: str) -> str:
        root = self._root(xml)
        if root is None:
            return ""
        for el in list(root.iterdescendants()):
            if isinstance(el.tag, str) and el.tag.endswith(".LIST"):
                parent = el.getparent()
                if parent is not None:
                    parent.remove(el)
        return etree.tostring(root, encoding="unicode")


EXTRACTORS = {
    "regex": RegexTagExtractor,
    "lxml": LxmlTagExtractor,
}


def get_extractor(name: str = "regex") -> TagExtractor:
    """Build the extractor registered under `name`."""
    if name not in EXTRACTORS:
        raise ValueError(f"Unknown extractor: {name}. Valid: {list(EXTRACTORS.keys())}")
    return EXTRACTORS[name]()


# ---------------------------------------------------------------------------
# Normalizers
# ---------------------------------------------------------------------------

_COMPACT_DATE = re.compile(r"^\d{8}$")
_LEADING_NUMBER = re.compile(r"^\s*\(?\s*([-+]?[\d,]*\.?\d+)")


def parse_tally_date(s: str | None) -> Optional[date]:
    """
    Parse Tally's compact YYYYMMDD date.

    Any other length or format is treated as invalid and returns None;
    impossible calendar dates (20240230) are invalid too.
    """
    if not s:
        return None
    s = str(s).strip()
    if not _COMPACT_DATE.match(s):
        return None
    try:
        return date(int(s[:4]), int(s[4:6]), int(s[6:8]))
    except ValueError:
        logger.debug(f"Invalid calendar date: {s}")
        return None


def parse_decimal(s: str | None, default: Decimal = ZERO) -> Decimal:
    """
    Parse Tally numeric string to Decimal.

    Handles:
    - Comma separators (1,234.56)
    - Parentheses for negatives ((1234.56))
    - Currency symbols
    - Dr/Cr suffixes
    - Empty strings, NaN and infinities (returns default)
    """
    if s is None:
        return default

    s = str(s).strip()
    if not s or s.lower() in ("null", "none"):
        return default

    is_negative = s.startswith("(") and s.endswith(")")
    if is_negative:
        s = s[1:-1]

    s = re.sub(r"[,₹$€£¥\s]", "", s)

    if s.endswith("Dr"):
        s = s[:-2]
    elif s.endswith("Cr"):
        s = s[:-2]
        is_negative = not is_negative  # Credit is negative in Tally's convention

    try:
        val = Decimal(s)
    except InvalidOperation:
        logger.warning(f"Could not parse decimal: {s}")
        return default

    if not val.is_finite():
        return default
    return -val if is_negative else val


def split_quantity(s: str | None) -> tuple[Decimal, Optional[str]]:
    """
    Split a Tally quantity like "10 Nos" or "2.5 kg" into (number, unit).

    Unparseable input yields (0, None).
    """
    if not s:
        return ZERO, None
    s = str(s).strip()
    match = _LEADING_NUMBER.match(s)
    if match is None:
        return ZERO, None
    number = parse_decimal(match.group(1))
    unit = s[match.end():].strip().lstrip(")").strip() or None
    return number, unit


def parse_quantity(s: str | None) -> Decimal:
    """Parse the numeric part of a Tally quantity."""
    return split_quantity(s)[0]


def parse_rate(s: str | None) -> Decimal:
    """Parse a Tally rate such as "50.00/Nos"."""
    if not s:
        return ZERO
    return parse_quantity(str(s).split("/", 1)[0])


def parse_int(s: str | None, default: int = 0) -> int:
    """Parse Tally integer string (spaces and commas allowed)."""
    if not s:
        return default

    s = str(s).strip().replace(",", "").replace(" ", "")
    if not s or s.lower() in ("null", "none"):
        return default

    try:
        return int(Decimal(s))
    except (InvalidOperation, ValueError):
        logger.warning(f"Could not parse int: {s}")
        return default


def parse_bool(s: str | None, default: bool = False) -> bool:
    """
    Parse Tally boolean string.

    Tally uses Yes/No, True/False and 1/0.
    """
    if s is None:
        return default

    s = str(s).strip().lower()
    if s in ("yes", "true", "1", "y"):
        return True
    elif s in ("no", "false", "0", "n", ""):
        return False

    return default
