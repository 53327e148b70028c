"""Tests for device_lens.id_database: parsing, lookups and snapshot swapping."""

from __future__ import annotations

import pytest

from device_lens.errors import DefinitionParseError
from device_lens.id_database import (
    IdDatabase,
    IdDatabaseHandle,
    decode_definitions,
    load_database,
    parse_definitions,
)
from device_lens.models import BusKind

SAMPLE = """\
# Sample list
# Version: 2024.05.01
#
046d  Logitech, Inc.
\tc52b  Unifying Receiver
\t\t00  Interface name, ignored
\tc077  M105 Optical Mouse
05e3  Genesys Logic, Inc.
\t0608  Hub

C 00  (Defined at Interface level)
\t01  Sub class ignored
"""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseDefinitions:
    def test_vendors_and_products(self):
        parsed = parse_definitions(SAMPLE)
        assert parsed.vendors == {"046d": "Logitech, Inc.", "05e3": "Genesys Logic, Inc."}
        assert parsed.products[("046d", "c52b")] == "Unifying Receiver"
        assert parsed.products[("05e3", "0608")] == "Hub"

    def test_version_header(self):
        assert parse_definitions(SAMPLE).version == "2024.05.01"

    def test_stops_at_class_section(self):
        parsed = parse_definitions(SAMPLE)
        assert "c 00" not in parsed.vendors
        assert parsed.entry_count == 5
        assert parsed.skipped_lines == 0

    def test_malformed_product_line_is_skipped(self):
        lines = [
            "1111  Vendor One",
            "\t0001  Product A",
            "\tzz01  Not hex",
            "\t0002  Product B",
            "2222  Vendor Two",
        ]
        parsed = parse_definitions("\n".join(lines))
        # One malformed line among N well-formed lines yields N-1 entries
        assert parsed.entry_count == len(lines) - 1
        assert parsed.skipped_lines == 1
        assert parsed.products[("1111", "0002")] == "Product B"

    def test_missing_name_is_skipped(self):
        parsed = parse_definitions("1111  Vendor One\n\t0001\n\t0002  Product B\n")
        assert parsed.skipped_lines == 1
        assert ("1111", "0001") not in parsed.products

    def test_product_without_vendor_is_skipped(self):
        parsed = parse_definitions("\t0001  Orphan\n1111  Vendor One\n")
        assert parsed.skipped_lines == 1
        assert parsed.vendors == {"1111": "Vendor One"}

    def test_malformed_vendor_does_not_adopt_following_products(self):
        parsed = parse_definitions("1111  Vendor One\nXYZ1  Broken\n\t0001  Product\n")
        assert parsed.vendors == {"1111": "Vendor One"}
        assert ("1111", "0001") not in parsed.products

    def test_ids_are_lower_cased(self):
        parsed = parse_definitions("ABCD  Upper Vendor\n\tEF01  Upper Product\n")
        assert parsed.vendors == {"abcd": "Upper Vendor"}
        assert parsed.products == {("abcd", "ef01"): "Upper Product"}


class TestDecodeDefinitions:
    def test_empty_payload_rejected(self):
        with pytest.raises(DefinitionParseError):
            decode_definitions(b"")

    def test_payload_without_vendors_rejected(self):
        with pytest.raises(DefinitionParseError):
            decode_definitions(b"<html><body>Service unavailable</body></html>")

    def test_invalid_utf8_is_replaced(self):
        parsed = decode_definitions(b"1111  Caf\xe9 Devices\n")
        assert parsed.vendors["1111"].startswith("Caf")


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


class TestIdDatabase:
    @pytest.fixture
    def database(self) -> IdDatabase:
        return IdDatabase.build(BusKind.USB, [parse_definitions(SAMPLE)], "test")

    @pytest.mark.parametrize("code", ["046d", "046D", "0x046d", "0X046D", 0x046D, "46d"])
    def test_vendor_code_forms(self, database, code):
        assert database.lookup_vendor(code) == "Logitech, Inc."

    def test_product_lookup(self, database):
        assert database.lookup_product("046D", "C52B") == "Unifying Receiver"

    def test_misses_return_none(self, database):
        assert database.lookup_vendor("ffff") is None
        assert database.lookup_product("046d", "ffff") is None

    @pytest.mark.parametrize("code", ["", "xyz", "12345", None, -1, 0x10000])
    def test_invalid_codes_return_none(self, database, code):
        assert database.lookup_vendor(code) is None

    def test_lookup_pair(self, database):
        assert database.lookup("05e3", "0608") == ("Genesys Logic, Inc.", "Hub")
        assert database.lookup("05e3", "9999") == ("Genesys Logic, Inc.", None)

    def test_products_for_vendor(self, database):
        products = database.products_for("046D")

        assert [(p.code, p.name) for p in products] == [("c077", "M105 Optical Mouse"), ("c52b", "Unifying Receiver")]
        assert database.products_for("ffff") == []
        assert database.products_for("not-hex") == []

    def test_snapshot_is_read_only(self, database):
        with pytest.raises(TypeError):
            database.vendors["1234"] = "Injected"  # type: ignore[index]

    def test_later_layers_win(self):
        base = parse_definitions("1111  Old Name\n")
        newer = parse_definitions("1111  New Name\n2222  Added\n")
        database = IdDatabase.build(BusKind.USB, [base, newer], "layered")
        assert database.lookup_vendor("1111") == "New Name"
        assert database.lookup_vendor("2222") == "Added"

    def test_stats(self, database):
        stats = database.stats()
        assert stats.vendors == 2
        assert stats.products == 3
        assert stats.source_version == "test"


class TestLoadDatabase:
    def test_baseline_resolves_logitech(self):
        database = load_database(BusKind.USB)
        assert database.lookup_vendor("046D") == "Logitech"
        assert database.lookup_product("046D", "C52B") == "Unifying Receiver"
        assert database.source_version.startswith("baseline:")

    def test_usb_and_pci_are_independent(self):
        usb = load_database(BusKind.USB)
        pci = load_database(BusKind.PCI)
        assert pci.lookup_vendor("10de") == "NVIDIA Corporation"
        assert usb.lookup_vendor("10de") is None
        assert usb.lookup_vendor("8086") != pci.lookup_vendor("8086")

    def test_override_layers_over_baseline(self, tmp_path):
        override = tmp_path / "usb.ids"
        override.write_text("# Version: 2025.01.01\n1234  Acme\n\t0001  Widget\n")
        database = load_database(BusKind.USB, override)
        assert database.lookup_product("1234", "0001") == "Widget"
        assert database.lookup_vendor("046d") == "Logitech"
        assert database.source_version == "2025.01.01"

    def test_unusable_override_is_ignored(self, tmp_path):
        override = tmp_path / "usb.ids"
        override.write_text("not a definitions file\n")
        database = load_database(BusKind.USB, override)
        assert database.lookup_vendor("046d") == "Logitech"
        assert database.source_version.startswith("baseline:")

    def test_missing_override_is_ignored(self, tmp_path):
        database = load_database(BusKind.PCI, tmp_path / "pci.ids")
        assert database.lookup_vendor("10de") == "NVIDIA Corporation"


class TestIdDatabaseHandle:
    def test_swap_publishes_new_snapshot(self):
        handle = IdDatabaseHandle(load_database(BusKind.USB))
        replacement = IdDatabase.build(BusKind.USB, [parse_definitions("1234  Acme\n")], "new")

        previous = handle.swap(replacement)

        assert previous.lookup_vendor("046d") == "Logitech"
        assert handle.current is replacement
        assert handle.lookup_vendor("1234") == "Acme"
        # The old snapshot is untouched
        assert previous.lookup_vendor("1234") is None

    def test_swap_rejects_other_kind(self):
        handle = IdDatabaseHandle(load_database(BusKind.USB))
        with pytest.raises(ValueError):
            handle.swap(load_database(BusKind.PCI))
