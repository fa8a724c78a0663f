"""Tests for the validation gate engine."""
import pytest

from schemas.ai import AiPlanExtraction, AiTotals, AiZoning
from schemas.enums import EvidenceSource, GateStatus
from schemas.plan_data import UnitCountMention
from schemas.snapshot import AppliedOverrides, ParcelData
from verifier.gates import (
    affordable_far_ceiling,
    apply_gates,
    evaluate_gates,
    implied_unit_range,
)
from extraction.config import gate_config

PARCEL = ParcelData(lot_area=5000, resid_far=3.0, bldg_area=0)


def statuses(gate_set):
    return {g.field: g.status for g in gate_set.gates}


class TestImpliedUnitRange:
    def test_range(self):
        # 5000 x 3.0 x 0.8 = 12,000 SF usable
        assert implied_unit_range(5000, 3.0, gate_config()["unit_yield"]) == (11, 15)


class TestAffordableFarCeiling:
    def test_known_district(self):
        assert affordable_far_ceiling("R7A") == 5.01

    def test_commercial_overlay(self):
        assert affordable_far_ceiling("C4-4/R7A") == 5.01

    def test_unknown(self):
        assert affordable_far_ceiling("M1-1") is None
        assert affordable_far_ceiling(None) is None


class TestUnitsGate:
    def test_within_range_passes(self, make_snapshot):
        gates = evaluate_gates(make_snapshot(units=14, far=3.0, lot_area=5000), PARCEL)
        assert gates.get("total_units").status == GateStatus.PASS

    def test_borderline_warns(self, make_snapshot):
        gates = evaluate_gates(make_snapshot(units=20, far=3.0, lot_area=5000), PARCEL)
        assert gates.get("total_units").status == GateStatus.WARN

    def test_far_above_implied_needs_override(self, make_snapshot):
        gates = evaluate_gates(make_snapshot(units=30, far=3.0, lot_area=5000), PARCEL)
        gate = gates.get("total_units")
        assert gate.status == GateStatus.NEEDS_OVERRIDE
        assert "exceeds" in gate.message
        assert gate.expected_range.max == 23
        assert "total_units" in gates.needs_manual_fields
        assert gates.passed_all is False


class TestFarGate:
    def test_match_passes(self, make_snapshot):
        gates = evaluate_gates(make_snapshot(units=14, far=3.0, lot_area=5000), PARCEL)
        assert gates.get("far").status == GateStatus.PASS

    def test_within_bonus_warns(self, make_snapshot):
        gates = evaluate_gates(make_snapshot(units=14, far=4.0, lot_area=5000), PARCEL)
        assert gates.get("far").status == GateStatus.WARN
        assert "bonus" in gates.get("far").message

    def test_zone_ceiling_applies(self, make_snapshot):
        gates = evaluate_gates(make_snapshot(units=14, far=4.0, lot_area=5000), PARCEL, zone="R6A")
        assert gates.get("far").status == GateStatus.NEEDS_OVERRIDE


class TestRequiredFields:
    def test_missing_values_need_override(self, make_snapshot):
        gates = evaluate_gates(make_snapshot())
        assert statuses(gates) == {
            "total_units": GateStatus.NEEDS_OVERRIDE,
            "far": GateStatus.NEEDS_OVERRIDE,
            "lot_area": GateStatus.NEEDS_OVERRIDE,
        }

    def test_ai_value_satisfies_required(self, make_snapshot):
        ai = AiPlanExtraction(zoning=AiZoning(far=3.0, lot_area_sf=5000))
        gates = evaluate_gates(make_snapshot(units=10, ai_extraction=ai))
        assert gates.get("far") is None
        assert gates.get("lot_area") is None


class TestAiConflicts:
    def test_large_disagreement_conflicts(self, make_snapshot):
        ai = AiPlanExtraction(totals=AiTotals(total_units=30))
        gates = evaluate_gates(make_snapshot(units=14, far=3.0, lot_area=5000, ai_extraction=ai), PARCEL)
        gate = gates.get("total_units")
        assert gate.status == GateStatus.CONFLICTING
        assert gate.ai_value == 30
        assert gate.extracted_value == 14

    def test_absolute_slack_for_units(self, make_snapshot):
        ai = AiPlanExtraction(totals=AiTotals(total_units=16))
        gates = evaluate_gates(make_snapshot(units=14, far=3.0, lot_area=5000, ai_extraction=ai), PARCEL)
        assert gates.get("total_units").status == GateStatus.PASS

    @pytest.mark.parametrize("rule, ai", [(2, 3), (4, 6), (6, 9)])
    def test_half_again_conflicts_for_small_counts(self, make_snapshot, rule, ai):
        snapshot = make_snapshot(units=rule, ai_extraction=AiPlanExtraction(totals=AiTotals(total_units=ai)))
        gate = evaluate_gates(snapshot).get("total_units")
        assert gate.status == GateStatus.CONFLICTING
        assert (gate.extracted_value, gate.ai_value) == (rule, ai)

    def test_gap_within_absolute_slack_not_flagged(self, make_snapshot):
        snapshot = make_snapshot(units=20, ai_extraction=AiPlanExtraction(totals=AiTotals(total_units=22)))
        assert evaluate_gates(snapshot).get("total_units") is None

    def test_moderate_disagreement_without_parcel_warns(self, make_snapshot):
        ai = AiPlanExtraction(zoning=AiZoning(far=3.3, lot_area_sf=5000))
        gates = evaluate_gates(make_snapshot(units=14, far=3.0, lot_area=5000, ai_extraction=ai))
        assert gates.get("far").status == GateStatus.WARN
        assert gates.get("lot_area") is None


class TestRedundancyGate:
    def test_disagreeing_mention_warns(self, make_snapshot):
        mentions = [
            UnitCountMention(value=14, page=1, source_type=EvidenceSource.COVER_SHEET),
            UnitCountMention(value=20, page=3, source_type=EvidenceSource.ZONING_TEXT),
        ]
        gates = evaluate_gates(make_snapshot(units=14, far=3.0, lot_area=5000, unit_count_mentions=mentions))
        gate = gates.get("unit_count_redundancy")
        assert gate.status == GateStatus.WARN
        assert gate.evidence[0].page == 3

    def test_ai_outlier_conflicts(self, make_snapshot):
        mentions = [
            UnitCountMention(value=14, page=1, source_type=EvidenceSource.COVER_SHEET),
            UnitCountMention(value=40, page=-1, source_type=EvidenceSource.AI),
        ]
        gates = evaluate_gates(make_snapshot(units=14, far=3.0, lot_area=5000, unit_count_mentions=mentions))
        assert gates.get("unit_count_redundancy").status == GateStatus.CONFLICTING
        assert "total_units" in gates.needs_manual_fields


class TestOverridesAndConfirmation:
    def test_pinned_value_passes(self, make_snapshot):
        snapshot = make_snapshot(units=30, far=3.0, lot_area=5000,
                                 manual_overrides=AppliedOverrides(total_units=14))
        gate = evaluate_gates(snapshot, PARCEL).get("total_units")
        assert gate.status == GateStatus.PASS
        assert gate.extracted_value == 14
        assert gate.message == "manually overridden"

    def test_confirmed_closes_warnings(self, make_snapshot):
        snapshot = make_snapshot(units=20, far=4.0, lot_area=5000, confirmed_all=True)
        gates = evaluate_gates(snapshot, PARCEL)
        assert all(g.status == GateStatus.PASS for g in gates.gates)
        assert gates.passed_all

    def test_apply_gates_sets_manual_flag(self, make_snapshot):
        snapshot = make_snapshot()
        result = apply_gates(snapshot, evaluate_gates(snapshot))
        assert result.needs_manual_confirmation is True
        assert len(result.validation_gates) == 3
        assert snapshot.validation_gates == []

    def test_evaluation_is_repeatable(self, make_snapshot):
        snapshot = make_snapshot(units=20, far=4.0, lot_area=5000)
        first = evaluate_gates(snapshot, PARCEL)
        second = evaluate_gates(apply_gates(snapshot, first), PARCEL)
        assert first.gates == second.gates
