"""Tests for schema models and enums."""
import pytest
from pydantic import ValidationError

from schemas.enums import (
    BedroomType,
    ExtractionMethod,
    ExtractionStatusKind,
    GateStatus,
    METHOD_TRUST_RANK,
    PipelineStage,
)
from schemas.plan_data import ExtractedField, UnitMixCounts, UnitRecord, UnitSource, ZoningFields
from schemas.snapshot import AppliedOverrides, ExtractionSnapshot, ParcelData, ValidationGate


class TestEnums:
    def test_bedroom_type_values(self):
        assert BedroomType.STUDIO.value == "STUDIO"
        assert BedroomType.BR1.value == "1BR"
        assert BedroomType.BR4_PLUS.value == "4BR_PLUS"

    def test_method_trust_order(self):
        ranks = [METHOD_TRUST_RANK[m] for m in ExtractionMethod]
        assert ranks == sorted(ranks)
        assert METHOD_TRUST_RANK[ExtractionMethod.TEXT_TABLE] < METHOD_TRUST_RANK[ExtractionMethod.OCR]

    def test_stage_order(self):
        stages = [s.value for s in PipelineStage]
        assert stages[0] == "CACHE_CHECK"
        assert stages[-1] == "DONE"
        assert stages.index("OCR_FALLBACK") < stages.index("DEDUPE") < stages.index("GATES")

    def test_status_values(self):
        assert ExtractionStatusKind.CACHED.value == "cached"
        assert GateStatus.NEEDS_OVERRIDE.value == "NEEDS_OVERRIDE"


class TestUnitRecord:
    def test_frozen(self):
        record = UnitRecord(source=UnitSource(page=1, method=ExtractionMethod.TEXT_TABLE))
        with pytest.raises(ValidationError):
            record.area_sf = 100.0

    def test_defaults(self):
        record = UnitRecord(source=UnitSource(page=1, method=ExtractionMethod.OCR))
        assert record.bedroom_type == BedroomType.UNKNOWN
        assert record.is_affordable is False
        assert record.evidence_trail == []


class TestZoningFields:
    def test_value_of(self):
        zoning = ZoningFields(far=ExtractedField(value=3.6, confidence=0.7, source="zoning_text"))
        assert zoning.value_of("far") == 3.6
        assert zoning.value_of("lot_area") is None

    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            ExtractedField(value=1, confidence=1.5, source="regex")


class TestSnapshot:
    def test_unit_mix_total(self):
        assert UnitMixCounts(studio=2, br1=3, br4plus=1).total == 6

    def test_overrides_pinned(self):
        overrides = AppliedOverrides(lot_area=5000.0, total_units=None, zone_district="R7A")
        assert overrides.pinned() == {"lot_area": 5000.0, "zone_district": "R7A"}

    def test_parcel_rejects_negative(self):
        with pytest.raises(ValidationError):
            ParcelData(lot_area=-1)

    def test_gate_lookup_and_open_state(self):
        snapshot = ExtractionSnapshot(validation_gates=[
            ValidationGate(field="far", status=GateStatus.WARN),
            ValidationGate(field="lot_area", status=GateStatus.NEEDS_OVERRIDE),
        ])
        assert snapshot.gate("far").is_open is False
        assert snapshot.gate("lot_area").is_open is True
        assert snapshot.gate("total_units") is None

    def test_json_round_trip(self):
        snapshot = ExtractionSnapshot(
            file_names=["plans.pdf"],
            unit_records=[UnitRecord(area_sf=650.0, source=UnitSource(page=2, method=ExtractionMethod.TEXT_TABLE))],
        )
        restored = ExtractionSnapshot.model_validate_json(snapshot.model_dump_json())
        assert restored == snapshot
