"""
Tests for tag extraction and value normalization.

Covers both extractors and the Tally date/number/boolean parsers.
"""
import pytest
from datetime import date
from decimal import Decimal
from tally_ingest.parsers.base import (
    LxmlTagExtractor,
    RegexTagExtractor,
    get_extractor,
    sanitize_xml,
    parse_tally_date,
    parse_decimal,
    parse_bool,
    parse_int,
    parse_quantity,
    parse_rate,
    split_quantity,
)


class TestSanitize:
    """Tests for XML sanitization."""

    def test_sanitize_xml_removes_control_chars(self):
        """Test that control characters are removed."""
        xml = "test\x00\x01\x02value"
        result = sanitize_xml(xml)
        assert "\x00" not in result
        assert "test" in result
        assert "value" in result

    def test_sanitize_xml_fixes_ampersands(self):
        """Test that unescaped ampersands are fixed."""
        result = sanitize_xml("<NAME>A & B</NAME>")
        assert "&amp;" in result

    def test_sanitize_xml_keeps_valid_entities(self):
        """Test that valid entities are left alone."""
        result = sanitize_xml("<NAME>A &amp; B &lt; C</NAME>")
        assert result == "<NAME>A &amp; B &lt; C</NAME>"

    def test_sanitize_xml_drops_control_char_references(self):
        """Test that Tally's &#4; style references are removed."""
        assert sanitize_xml("<NAME>X&#4;Y</NAME>") == "<NAME>XY</NAME>"


class TestRegexTagExtractor:
    """Tests for the delimiter-scanning extractor."""

    ex = RegexTagExtractor()

    def test_value_multiline(self):
        """Test that bodies spanning lines are matched."""
        xml = "<V><NARRATION>line one\nline two</NARRATION></V>"
        assert self.ex.value(xml, "NARRATION") == "line one\nline two"

    def test_value_absent(self):
        """Test that a missing tag yields None."""
        assert self.ex.value("<V><DATE>20240401</DATE></V>", "GUID") is None
        assert self.ex.value("", "GUID") is None

    def test_value_unclosed_tag(self):
        """Test that an unclosed tag produces no match."""
        assert self.ex.value("<V><NARRATION>oops</V>", "NARRATION") is None

    def test_unclosed_tag_does_not_swallow_sibling(self):
        """Test that an unclosed tag is skipped, not merged with the next one."""
        xml = "<V><GUID>first</V><V><GUID>second</GUID></V>"
        assert self.ex.value(xml, "GUID") == "second"

    def test_value_unescapes_entities(self):
        """Test that entities in values are decoded."""
        assert self.ex.value("<NAME>A &amp; B</NAME>", "NAME") == "A & B"

    def test_value_does_not_match_prefixed_tag(self):
        """Test that <VOUCHERTYPENAME> is not read as <VOUCHER>."""
        xml = "<VOUCHERTYPENAME>Sales</VOUCHERTYPENAME>"
        assert self.ex.value(xml, "VOUCHER") is None

    def test_blocks_in_document_order(self):
        """Test that repeated blocks are yielded in order."""
        xml = "<A><B.LIST><N>1</N></B.LIST><B.LIST><N>2</N></B.LIST></A>"
        blocks = list(self.ex.blocks(xml, "B.LIST"))
        assert len(blocks) == 2
        assert self.ex.value(blocks[0], "N") == "1"
        assert self.ex.value(blocks[1], "N") == "2"

    def test_attribute(self):
        """Test reading attributes with either quote style."""
        xml = """<VOUCHER REMOTEID="abc-1" VCHTYPE='Sales'><GUID>x</GUID></VOUCHER>"""
        assert self.ex.attribute(xml, "VOUCHER", "REMOTEID") == "abc-1"
        assert self.ex.attribute(xml, "VOUCHER", "VCHTYPE") == "Sales"
        assert self.ex.attribute(xml, "VOUCHER", "MISSING") is None

    def test_strip_lists_hides_child_fields(self):
        """Test that fields inside *.LIST blocks disappear from the header."""
        xml = (
            "<VOUCHER><GUID>g</GUID>"
            "<ALLLEDGERENTRIES.LIST><AMOUNT>5.00</AMOUNT></ALLLEDGERENTRIES.LIST>"
            "<EMPTY.LIST/>"
            "</VOUCHER>"
        )
        header = self.ex.strip_lists(xml)
        assert self.ex.value(header, "GUID") == "g"
        assert self.ex.value(header, "AMOUNT") is None

    def test_strip_lists_keeps_outer_list_element(self):
        """Test that an entry block keeps its own fields."""
        block = (
            "<ALLLEDGERENTRIES.LIST><LEDGERNAME>Cash</LEDGERNAME>"
            "<BILLALLOCATIONS.LIST><AMOUNT>1.00</AMOUNT></BILLALLOCATIONS.LIST>"
            "<AMOUNT>2.00</AMOUNT></ALLLEDGERENTRIES.LIST>"
        )
        header = self.ex.strip_lists(block)
        assert self.ex.value(header, "LEDGERNAME") == "Cash"
        assert self.ex.value(header, "AMOUNT") == "2.00"


class TestLxmlTagExtractor:
    """Tests for the lxml-backed extractor."""

    ex = LxmlTagExtractor()

    def test_value_and_attribute(self):
        """Test scalar and attribute reads on a well-formed fragment."""
        xml = '<VOUCHER REMOTEID="r1"><GUID>g1</GUID><NAME>A &amp; B</NAME></VOUCHER>'
        assert self.ex.value(xml, "GUID") == "g1"
        assert self.ex.value(xml, "NAME") == "A & B"
        assert self.ex.attribute(xml, "VOUCHER", "REMOTEID") == "r1"

    def test_malformed_fragment_is_not_found(self):
        """Test that unparseable input yields nothing instead of raising."""
        xml = "<VOUCHER><GUID>g1</GUID><NARRATION>open</VOUCHER>"
        assert self.ex.value(xml, "GUID") is None
        assert list(self.ex.blocks(xml, "VOUCHER")) == []

    def test_strip_lists(self):
        """Test that nested lists are removed and header fields stay."""
        xml = "<VOUCHER><GUID>g</GUID><A.LIST><AMOUNT>1</AMOUNT></A.LIST></VOUCHER>"
        header = self.ex.strip_lists(xml)
        assert self.ex.value(header, "GUID") == "g"
        assert self.ex.value(header, "AMOUNT") is None

    def test_matches_regex_extractor_on_well_formed_input(self):
        """Test that both extractors agree on clean XML."""
        regex = RegexTagExtractor()
        xml = "<V><DATE>20240401</DATE><B.LIST><N>1</N></B.LIST><B.LIST><N>2</N></B.LIST></V>"
        assert self.ex.value(xml, "DATE") == regex.value(xml, "DATE")
        assert [self.ex.value(b, "N") for b in self.ex.blocks(xml, "B.LIST")] == [
            regex.value(b, "N") for b in regex.blocks(xml, "B.LIST")
        ]


class TestGetExtractor:
    """Tests for extractor selection."""

    def test_known_names(self):
        assert isinstance(get_extractor("regex"), RegexTagExtractor)
        assert isinstance(get_extractor("lxml"), LxmlTagExtractor)

    def test_unknown_name(self):
        with pytest.raises(ValueError):
            get_extractor("sax")


class TestNormalizers:
    """Tests for date, number and boolean parsing."""

    def test_parse_tally_date_yyyymmdd(self):
        """Test parsing YYYYMMDD format."""
        assert parse_tally_date("20240401") == date(2024, 4, 1)

    def test_parse_tally_date_rejects_other_formats(self):
        """Test that anything but 8 digits is invalid."""
        assert parse_tally_date("2024-04-01") is None
        assert parse_tally_date("01-Apr-2024") is None
        assert parse_tally_date("2024041") is None

    def test_parse_tally_date_impossible_date(self):
        """Test that impossible calendar dates are invalid."""
        assert parse_tally_date("20240230") is None

    def test_parse_tally_date_empty(self):
        """Test parsing empty date."""
        assert parse_tally_date("") is None
        assert parse_tally_date(None) is None

    def test_parse_decimal_simple(self):
        assert parse_decimal("123.45") == Decimal("123.45")

    def test_parse_decimal_with_commas(self):
        """Test parsing with comma separators."""
        assert parse_decimal("1,234.56") == Decimal("1234.56")

    def test_parse_decimal_parentheses_negative(self):
        """Test parsing negative in parentheses."""
        assert parse_decimal("(123.45)") == Decimal("-123.45")

    def test_parse_decimal_credit_suffix(self):
        """Test that Cr flips the sign and Dr does not."""
        assert parse_decimal("100.00 Cr") == Decimal("-100.00")
        assert parse_decimal("100.00 Dr") == Decimal("100.00")

    def test_parse_decimal_invalid_returns_default(self):
        """Test that junk, NaN and empty strings fall back to the default."""
        assert parse_decimal("") == Decimal("0")
        assert parse_decimal("abc") == Decimal("0")
        assert parse_decimal("NaN") == Decimal("0")
        assert parse_decimal(None, default=Decimal("1")) == Decimal("1")

    def test_split_quantity(self):
        """Test splitting a quantity into number and unit."""
        assert split_quantity(" 10 Nos") == (Decimal("10"), "Nos")
        assert split_quantity("2.5 kg") == (Decimal("2.5"), "kg")
        assert split_quantity("12") == (Decimal("12"), None)
        assert split_quantity("") == (Decimal("0"), None)

    def test_parse_quantity_and_rate(self):
        assert parse_quantity("1,000 Pcs") == Decimal("1000")
        assert parse_rate("50.00/Nos") == Decimal("50.00")
        assert parse_rate(None) == Decimal("0")

    def test_parse_bool(self):
        """Test parsing Tally booleans."""
        assert parse_bool("Yes") is True
        assert parse_bool("yes") is True
        assert parse_bool("No") is False
        assert parse_bool("maybe", default=True) is True
        assert parse_bool(None) is False

    def test_parse_int(self):
        """Test parsing integers with separators."""
        assert parse_int("1,234") == 1234
        assert parse_int("") == 0
        assert parse_int("x", default=7) == 7


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
