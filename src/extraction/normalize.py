"""Local normalization of recipe output and extract-level consistency checks."""
import logging
from typing import Dict, List, Optional, Sequence

from schemas.enums import Allocation, BedroomType
from schemas.plan_data import NormalizedPlanExtract, NormalizedZoning, UnitRecord, ValidationResult
from schemas.sheets import RecipeResult
from schemas.snapshot import ParcelData

logger = logging.getLogger(__name__)

# Local merges never claim more than this; the AI path or gates must corroborate
LOCAL_CONFIDENCE_CAP = 0.6

# Typical NYC net unit sizes (SF)
UNIT_SIZE_RANGES = {
    BedroomType.STUDIO.value: (300, 600),
    BedroomType.BR1.value: (500, 850),
    BedroomType.BR2.value: (700, 1200),
    BedroomType.BR3.value: (900, 1500),
}
SIZE_LOW_SLACK = 0.8
SIZE_HIGH_SLACK = 1.3


def _first_value(results: Sequence[RecipeResult], key: str):
    for result in results:
        value = result.fields.get(key)
        if value:
            return value
    return None


def normalize_recipe_results(
    results: Sequence[RecipeResult],
    records: Optional[Sequence[UnitRecord]] = None,
) -> NormalizedPlanExtract:
    """Merge recipe results into one flat view.

    Higher-confidence recipes win per field. Deduplicated records fill the
    unit mix and sizes when no recipe reported them.

    Args:
        results: Recipe results from this run
        records: Deduplicated unit records, if any

    Returns:
        NormalizedPlanExtract with confidence capped for local-only evidence
    """
    ordered = sorted(results, key=lambda r: -r.confidence)
    records = list(records or [])

    total_units = _first_value(ordered, "total_units")
    unit_mix: Dict[str, int] = {}
    for result in ordered:
        mix = result.fields.get("unit_mix") or result.fields.get("unit_counts_by_type")
        if mix:
            unit_mix = {k: int(v) for k, v in mix.items() if v}
            break

    sizes: Dict[str, List[float]] = {}
    for result in ordered:
        for btype, values in (result.fields.get("unit_sizes_by_type") or {}).items():
            sizes.setdefault(btype, []).extend(float(v) for v in values)
    for r in records:
        if r.bedroom_type != BedroomType.UNKNOWN and r.area_sf:
            sizes.setdefault(r.bedroom_type.value, []).append(r.area_sf)

    if records:
        if not unit_mix:
            for r in records:
                if r.bedroom_type != BedroomType.UNKNOWN:
                    unit_mix[r.bedroom_type.value] = unit_mix.get(r.bedroom_type.value, 0) + 1
        if total_units is None:
            total_units = len(records)

    affordable = market = None
    if records and any(r.allocation != Allocation.UNKNOWN for r in records):
        affordable = sum(1 for r in records if r.is_affordable)
        market = sum(1 for r in records if r.allocation == Allocation.MARKET)

    max_confidence = max((r.confidence for r in results), default=0.0)
    return NormalizedPlanExtract(
        total_units=int(total_units) if total_units is not None else None,
        affordable_units=affordable,
        market_units=market,
        unit_mix=unit_mix,
        unit_sizes_by_type=sizes,
        avg_size_by_type={k: round(sum(v) / len(v), 1) if v else None for k, v in sizes.items()},
        zoning=NormalizedZoning(
            lot_area_sf=_first_value(ordered, "lot_area_sf"),
            zoning_floor_area_sf=_first_value(ordered, "zoning_floor_area_sf"),
            far=_first_value(ordered, "far"),
        ),
        confidence=min(LOCAL_CONFIDENCE_CAP, max_confidence),
    )


def validate_extract(normalized: NormalizedPlanExtract, parcel: Optional[ParcelData] = None) -> ValidationResult:
    """Check the normalized extract for internal and parcel consistency.

    Each failed check adds a warning and, for most checks, a confidence
    penalty.
    """
    warnings = []
    penalty = 0.0
    zoning = normalized.zoning
    lot, zfa, far = zoning.lot_area_sf, zoning.zoning_floor_area_sf, zoning.far

    if lot and zfa and far is not None:
        computed = zfa / lot
        diff = abs(far - computed) / computed
        if diff > 0.02:
            warnings.append(
                f"FAR inconsistency: extracted {far:.2f} vs computed {computed:.2f} "
                f"(ZFA/lot area), {diff * 100:.1f}% apart"
            )
            penalty += 0.1

    mix_total = sum(normalized.unit_mix.values())
    if normalized.total_units and mix_total:
        diff = abs(normalized.total_units - mix_total) / normalized.total_units
        if diff > 0.05:
            warnings.append(
                f"Unit count mismatch: total {normalized.total_units} vs bedroom mix sum {mix_total} "
                f"({diff * 100:.1f}% diff)"
            )
            penalty += 0.08

    for btype, avg in normalized.avg_size_by_type.items():
        if avg is None or btype not in UNIT_SIZE_RANGES:
            continue
        low, high = UNIT_SIZE_RANGES[btype]
        if avg < low * SIZE_LOW_SLACK or avg > high * SIZE_HIGH_SLACK:
            warnings.append(f"{btype} average size {round(avg)} SF is outside the typical range ({low}-{high} SF)")

    if parcel is not None:
        if lot and parcel.lot_area > 0:
            diff = abs(lot - parcel.lot_area) / parcel.lot_area
            if diff > 0.10:
                warnings.append(
                    f"Lot area mismatch: extracted {lot:,.0f} SF vs parcel {parcel.lot_area:,.0f} SF "
                    f"({diff * 100:.1f}% diff)"
                )
                penalty += 0.05
        if far is not None and parcel.resid_far > 0 and far > parcel.resid_far * 1.05:
            warnings.append(
                f"Extracted FAR {far:.2f} exceeds parcel residential FAR {parcel.resid_far:.2f} "
                f"by {(far / parcel.resid_far - 1) * 100:.1f}%"
            )
            penalty += 0.05

    adjusted = max(0.1, min(0.99, normalized.confidence - penalty))
    if warnings:
        logger.info(f"Extract validation: {len(warnings)} warning(s), confidence {adjusted:.2f}")
    return ValidationResult(warnings=warnings, adjusted_confidence=round(adjusted, 2))
