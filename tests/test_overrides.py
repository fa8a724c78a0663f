"""Tests for the manual override workflow."""
import pytest

from extraction.errors import UnresolvedConflictError
from schemas.ai import AiPlanExtraction, AiTotals
from schemas.enums import BedroomType, GateStatus
from schemas.snapshot import AppliedOverrides, ParcelData
from verifier.overrides import (
    apply_overrides,
    confirm_all,
    distribute,
    scale_to_total_units,
    with_records,
)

PARCEL = ParcelData(lot_area=5000, resid_far=3.0)


class TestDistribute:
    def test_proportional(self):
        assert distribute({"1BR": 10, "2BR": 10}, 10) == {"1BR": 5, "2BR": 5}

    def test_remainder_goes_to_largest(self):
        scaled = distribute({"1BR": 2, "2BR": 1}, 4)
        assert sum(scaled.values()) == 4
        assert scaled["1BR"] == 3

    def test_empty_counts(self):
        assert distribute({}, 3) == {"UNKNOWN": 3}
        assert distribute({}, 0) == {}


class TestScaleToTotalUnits:
    def test_grow(self, make_snapshot):
        result = scale_to_total_units(make_snapshot(units=4), 7)
        assert len(result.unit_records) == 7
        assert result.totals.total_units == 7
        assert result.unit_totals.by_bedroom_type == {"1BR": 7}
        clones = [r for r in result.unit_records if r.unit_id is None]
        assert len(clones) == 3
        assert all(r.record_key.startswith("scaled:1BR:") for r in clones)

    def test_shrink_keeps_original_order(self, make_snapshot):
        snapshot = make_snapshot(units=8)
        result = scale_to_total_units(snapshot, 3)
        assert [r.unit_id for r in result.unit_records] == [r.unit_id for r in snapshot.unit_records[:3]]

    def test_zero(self, make_snapshot):
        result = scale_to_total_units(make_snapshot(units=5), 0)
        assert result.unit_records == []
        assert result.totals.total_units == 0

    def test_negative_rejected(self, make_snapshot):
        with pytest.raises(ValueError):
            scale_to_total_units(make_snapshot(units=5), -1)

    def test_input_unchanged(self, make_snapshot):
        snapshot = make_snapshot(units=5)
        scale_to_total_units(snapshot, 9)
        assert len(snapshot.unit_records) == 5


class TestApplyOverrides:
    def test_lot_and_far_derive_zoning_floor_area(self, make_snapshot):
        result = apply_overrides(make_snapshot(units=14), AppliedOverrides(lot_area=5000, resid_far=3.0))
        assert result.zoning.value_of("zoning_floor_area") == pytest.approx(15000)
        assert result.zoning.zoning_floor_area.source == "derived"
        assert result.zoning.lot_area.source == "manual"
        assert result.zoning.value_of("resid_far") == 3.0
        assert result.manual_overrides.lot_area == 5000

    def test_pinned_zfa_is_not_rederived(self, make_snapshot):
        snapshot = apply_overrides(make_snapshot(units=14), AppliedOverrides(zoning_floor_area=12000))
        result = apply_overrides(snapshot, AppliedOverrides(lot_area=5000, resid_far=3.0))
        assert result.zoning.value_of("zoning_floor_area") == 12000

    def test_far_override_uses_parcel_lot_area(self, make_snapshot):
        result = apply_overrides(make_snapshot(units=14), AppliedOverrides(resid_far=4.0), PARCEL)
        assert result.zoning.value_of("zoning_floor_area") == pytest.approx(20000)

    def test_total_units_scales_records(self, make_snapshot):
        result = apply_overrides(make_snapshot(units=30), AppliedOverrides(total_units=14), PARCEL)
        assert len(result.unit_records) == 14
        assert result.totals.total_units == 14
        assert result.gate("total_units").status == GateStatus.PASS

    def test_overrides_accumulate(self, make_snapshot):
        first = apply_overrides(make_snapshot(units=14), AppliedOverrides(lot_area=5000))
        second = apply_overrides(first, AppliedOverrides(resid_far=3.0))
        assert second.manual_overrides.pinned() == {"lot_area": 5000, "resid_far": 3.0}

    def test_gates_recomputed(self, make_snapshot):
        snapshot = make_snapshot(units=14)
        result = apply_overrides(snapshot, AppliedOverrides(lot_area=5000, resid_far=3.0), PARCEL)
        assert {g.field for g in result.validation_gates if g.is_open} == set()
        assert result.parcel_check is not None
        assert result.parcel == PARCEL


class TestConfirmAll:
    def test_confirms_open_gates(self, make_snapshot):
        result = confirm_all(make_snapshot(units=20, far=4.0, lot_area=5000), PARCEL)
        assert result.confirmed_all is True
        assert all(g.status == GateStatus.PASS for g in result.validation_gates)
        assert result.needs_manual_confirmation is False

    def test_refuses_with_conflicts(self, make_snapshot):
        snapshot = make_snapshot(units=14, far=3.0, lot_area=5000,
                                 ai_extraction=AiPlanExtraction(totals=AiTotals(total_units=40)))
        with pytest.raises(UnresolvedConflictError) as exc:
            confirm_all(snapshot, PARCEL)
        assert exc.value.fields == ["total_units"]

    def test_conflict_resolved_by_override(self, make_snapshot):
        snapshot = make_snapshot(units=14, far=3.0, lot_area=5000,
                                 ai_extraction=AiPlanExtraction(totals=AiTotals(total_units=40)))
        snapshot = apply_overrides(snapshot, AppliedOverrides(total_units=14), PARCEL)
        result = confirm_all(snapshot, PARCEL)
        assert result.gate("total_units").status == GateStatus.PASS


class TestWithRecords:
    def test_totals_follow_records(self, make_snapshot):
        snapshot = make_snapshot(units=6)
        result = with_records(snapshot, snapshot.unit_records[:2])
        assert result.totals.total_units == 2
        assert result.unit_mix.br1 == 2
        assert result.unit_totals.by_bedroom_type == {BedroomType.BR1.value: 2}
