"""Tests for verifier field comparison."""
import pytest

from extraction.config import gate_config
from verifier.compare import as_number, get_tolerance_for_field, normalize_text, relative_deviation


class TestNormalizeText:
    def test_basic_normalization(self):
        assert normalize_text("  r7a  district ") == "R7A DISTRICT"

    def test_trailing_punctuation(self):
        assert normalize_text("R6A.") == "R6A"

    def test_empty_string(self):
        assert normalize_text("") == ""


class TestRelativeDeviation:
    def test_exact(self):
        assert relative_deviation(10.0, 10.0) == 0.0

    def test_percentage(self):
        assert relative_deviation(11.0, 10.0) == pytest.approx(0.1)

    def test_zero_expected_is_floored(self):
        assert relative_deviation(0.05, 0.0) == pytest.approx(0.5)


class TestToleranceSelection:
    def test_far_band(self):
        cfg = gate_config()
        tol = get_tolerance_for_field("far", cfg["tolerances"], cfg["tolerance_categories"])
        assert tol["warn_pct"] == 0.20

    def test_unit_count_band_has_absolute_slack(self):
        cfg = gate_config()
        tol = get_tolerance_for_field("total_units", cfg["tolerances"], cfg["tolerance_categories"])
        assert tol["absolute"] == 2

    def test_default_band(self):
        cfg = gate_config()
        tol = get_tolerance_for_field("lot_area", cfg["tolerances"], cfg["tolerance_categories"])
        assert tol == cfg["tolerances"]["default"]


class TestAsNumber:
    def test_numbers(self):
        assert as_number(3) == 3.0
        assert as_number(2.5) == 2.5

    def test_thousands_separator(self):
        assert as_number("12,500") == 12500.0

    def test_non_numeric(self):
        assert as_number("R7A") is None
        assert as_number(None) is None
        assert as_number(True) is None
