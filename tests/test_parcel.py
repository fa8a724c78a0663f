"""Tests for the parcel data cross-check."""
from schemas.snapshot import ParcelData, SnapshotConfidence
from verifier.parcel import cross_check_with_parcel, implied_units_estimate

PARCEL = ParcelData(lot_area=5000, resid_far=3.0, bldg_area=9000)


class TestImpliedUnits:
    def test_estimate(self):
        assert implied_units_estimate(5000, 3.0) == 15


class TestCrossCheck:
    def test_no_parcel(self, make_snapshot):
        result = cross_check_with_parcel(make_snapshot(units=15), None)
        assert result.warnings == []
        assert result.parcel_values.implied_max_units is None

    def test_consistent_plans(self, make_snapshot):
        result = cross_check_with_parcel(make_snapshot(units=15, far=3.0, lot_area=5000), PARCEL)
        assert result.warnings == []
        assert result.parcel_values.implied_max_units == 15
        assert result.parcel_values.bldg_area == 9000

    def test_unit_total_far_from_estimate(self, make_snapshot):
        result = cross_check_with_parcel(make_snapshot(units=30), PARCEL)
        assert len(result.warnings) == 1
        assert "PLUTO screening estimate (15 units)" in result.warnings[0]

    def test_confident_extraction_skips_unit_warning(self, make_snapshot):
        snapshot = make_snapshot(units=30, confidence=SnapshotConfidence(overall=0.85))
        assert cross_check_with_parcel(snapshot, PARCEL).warnings == []

    def test_lot_area_mismatch(self, make_snapshot):
        result = cross_check_with_parcel(make_snapshot(units=15, lot_area=6000), PARCEL)
        assert result.warnings == ["PDF lot area (6,000 SF) differs from PLUTO (5,000 SF) by 20%."]

    def test_far_above_parcel(self, make_snapshot):
        result = cross_check_with_parcel(make_snapshot(units=15, far=4.0), PARCEL)
        assert len(result.warnings) == 1
        assert "exceeds PLUTO residential FAR (3)" in result.warnings[0]
