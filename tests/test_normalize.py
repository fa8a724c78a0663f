"""Tests for recipe normalization and extract validation."""
from conftest import unit_records
from extraction.normalize import LOCAL_CONFIDENCE_CAP, normalize_recipe_results, validate_extract
from schemas.enums import Allocation, BedroomType, RecipeType
from schemas.plan_data import NormalizedPlanExtract, NormalizedZoning
from schemas.sheets import RecipeResult
from schemas.snapshot import ParcelData


def result(recipe=RecipeType.GENERIC, confidence=0.5, **fields):
    return RecipeResult(recipe=recipe, pages=[1], fields=fields, confidence=confidence)


class TestNormalize:
    def test_higher_confidence_recipe_wins(self):
        results = [
            result(RecipeType.GENERIC, 0.3, total_units=12),
            result(RecipeType.COVER_SHEET, 0.8, total_units=14, far=3.0),
        ]
        normalized = normalize_recipe_results(results)
        assert normalized.total_units == 14
        assert normalized.zoning.far == 3.0
        assert normalized.confidence == LOCAL_CONFIDENCE_CAP

    def test_records_fill_mix_and_sizes(self):
        records = unit_records(2) + unit_records(2, bedroom=BedroomType.BR2, area=900.0, allocation=Allocation.MIH_RESTRICTED)
        normalized = normalize_recipe_results([result(confidence=0.4)], records)
        assert normalized.total_units == 4
        assert normalized.unit_mix == {"1BR": 2, "2BR": 2}
        assert normalized.avg_size_by_type == {"1BR": 650.0, "2BR": 900.0}
        assert (normalized.affordable_units, normalized.market_units) == (2, 2)
        assert normalized.confidence == 0.4

    def test_recipe_mix_preferred(self):
        normalized = normalize_recipe_results([result(unit_mix={"1BR": 5, "2BR": 0})], unit_records(2))
        assert normalized.unit_mix == {"1BR": 5}

    def test_no_input(self):
        normalized = normalize_recipe_results([])
        assert normalized.total_units is None
        assert normalized.confidence == 0.0


class TestValidate:
    def test_consistent_extract(self):
        extract = NormalizedPlanExtract(
            total_units=4,
            unit_mix={"1BR": 4},
            avg_size_by_type={"1BR": 650.0},
            zoning=NormalizedZoning(lot_area_sf=5000, zoning_floor_area_sf=15000, far=3.0),
            confidence=0.6,
        )
        validation = validate_extract(extract, ParcelData(lot_area=5000, resid_far=3.0))
        assert validation.warnings == []
        assert validation.adjusted_confidence == 0.6

    def test_far_inconsistency(self):
        extract = NormalizedPlanExtract(zoning=NormalizedZoning(lot_area_sf=5000, zoning_floor_area_sf=15000, far=4.0),
                                        confidence=0.6)
        validation = validate_extract(extract)
        assert validation.warnings[0].startswith("FAR inconsistency: extracted 4.00 vs computed 3.00")
        assert validation.adjusted_confidence == 0.5

    def test_mix_mismatch(self):
        extract = NormalizedPlanExtract(total_units=20, unit_mix={"1BR": 10, "2BR": 5}, confidence=0.6)
        validation = validate_extract(extract)
        assert validation.warnings == ["Unit count mismatch: total 20 vs bedroom mix sum 15 (25.0% diff)"]
        assert validation.adjusted_confidence == 0.52

    def test_size_out_of_range(self):
        extract = NormalizedPlanExtract(avg_size_by_type={"STUDIO": 150.0, "UNKNOWN": 40.0}, confidence=0.6)
        validation = validate_extract(extract)
        assert validation.warnings == ["STUDIO average size 150 SF is outside the typical range (300-600 SF)"]
        assert validation.adjusted_confidence == 0.6

    def test_parcel_checks(self):
        extract = NormalizedPlanExtract(zoning=NormalizedZoning(lot_area_sf=6000, far=4.0), confidence=0.6)
        validation = validate_extract(extract, ParcelData(lot_area=5000, resid_far=3.0))
        assert len(validation.warnings) == 2
        assert validation.warnings[0].startswith("Lot area mismatch: extracted 6,000 SF vs parcel 5,000 SF")
        assert "exceeds parcel residential FAR 3.00" in validation.warnings[1]
        assert validation.adjusted_confidence == 0.5

    def test_confidence_floor(self):
        extract = NormalizedPlanExtract(zoning=NormalizedZoning(lot_area_sf=5000, zoning_floor_area_sf=15000, far=4.0))
        assert validate_extract(extract).adjusted_confidence == 0.1
