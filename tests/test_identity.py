"""Tests for address normalization, canonical keys and deduplication."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from ejendom_agent.errors import ValidationError
from ejendom_agent.identity import (
    canonical_key, clean_bfe, deduplicate, format_address_line, format_location,
    normalize, same_property,
)


class TestNormalize:
    def test_whitespace_and_case(self):
        assert normalize("  Algade   1 ") == "algade 1"

    def test_country_suffix_removed(self):
        assert normalize("Vesterbrogade 10, Danmark") == "vesterbrogade 10"
        assert normalize("Vesterbrogade 10, Denmark, Danmark") == "vesterbrogade 10"

    def test_trailing_punctuation(self):
        assert normalize("Algade 1,, ") == "algade 1"

    def test_abbreviations(self):
        assert normalize("Gl. Kongevej 5") == "gammel kongevej 5"
        assert normalize("Skt. Annæ Plads 2") == "sankt annæ plads 2"
        assert normalize("Frederiksberg Alle 3") == "frederiksberg allé 3"
        assert normalize("Algade 1, Kbh") == "algade 1, københavn"

    def test_idempotent(self):
        for raw in ["Gl. Kongevej 5, Kbh., Danmark", "  Algade   1 ", "Skt. Peders Str. 4"]:
            once = normalize(raw)
            assert normalize(once) == once

    def test_empty(self):
        assert normalize(None) == ""
        assert normalize("   ") == ""


class TestCanonicalKey:
    def test_bfe_wins(self):
        assert canonical_key("Algade 1", "999") == "bfe:999"
        assert canonical_key("Anden vej 2", 999) == "bfe:999"

    def test_address_key(self):
        assert canonical_key("Algade   1") == "addr:algade 1"

    def test_blank_bfe_ignored(self):
        assert canonical_key("Algade 1", "  ") == "addr:algade 1"
        assert clean_bfe("") is None

    def test_empty_address_without_bfe_rejected(self):
        with pytest.raises(ValidationError):
            canonical_key("   ")

    def test_empty_address_with_bfe_allowed(self):
        assert canonical_key("", "42") == "bfe:42"


class TestSameProperty:
    def test_same_bfe(self):
        assert same_property({"address": "A 1", "bfe": "7"}, {"address": "B 2", "bfe": "7"})

    def test_different_bfe_never_same(self):
        assert not same_property({"address": "Algade 1", "bfe": "7"}, {"address": "Algade 1", "bfe": "8"})

    def test_one_bfe_falls_back_to_address(self):
        assert same_property({"address": "Algade 1", "bfe": "7"}, {"address": "algade  1"})


class TestDeduplicate:
    def test_keeps_first_per_key(self):
        records = [
            {"address": "Algade 1", "n": 1},
            {"address": "algade   1", "n": 2},
            {"address": "Algade 1", "bfe": "999", "n": 3},
        ]
        unique = deduplicate(records)
        assert [r["n"] for r in unique] == [1, 3]

    def test_preserves_order(self):
        records = [{"address": "B 2"}, {"address": "A 1"}, {"address": "b 2"}]
        assert [r["address"] for r in deduplicate(records)] == ["B 2", "A 1"]


class TestFormatting:
    def test_location(self):
        assert format_location("1050", "København") == "1050 København"
        assert format_location(None, "  ") == "—"

    def test_address_line(self):
        assert format_address_line("Algade 1", "4000", "Roskilde") == "Algade 1, 4000 Roskilde"
        assert format_address_line("Algade 1") == "Algade 1"
        assert format_address_line(None, "4000", None) == "4000"
