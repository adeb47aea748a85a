"""Tests for the scan exclusion list."""
from __future__ import annotations

from disk_monitor.exclusion import ExclusionSet


class TestExclusionSet:
    def test_from_string_trims_names(self):
        exclusions = ExclusionSet.from_string(" a.example.com, b.example.com ,,c")
        assert exclusions.names == frozenset({"a.example.com", "b.example.com", "c"})

    def test_exact_match_only(self):
        exclusions = ExclusionSet.from_names(["web01.example.com"])
        assert exclusions.is_excluded("web01.example.com")
        assert "web01" not in exclusions
        assert not exclusions.is_excluded("web01.example.com.")

    def test_empty(self):
        exclusions = ExclusionSet.from_string(None)
        assert not exclusions
        assert not exclusions.is_excluded("anything")
        assert str(exclusions) == ""

    def test_str_is_sorted(self):
        assert str(ExclusionSet.from_names(["b", "a"])) == "a,b"
