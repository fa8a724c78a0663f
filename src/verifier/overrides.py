"""Snapshot transforms for the manual override workflow.

Every function takes a frozen snapshot and returns a new one; the input is
never modified. Gates are re-evaluated after each transform so a pinned
value cascades to the fields derived from it.
"""
import logging
from typing import Any, Dict, List, Optional

from extraction.errors import UnresolvedConflictError
from extraction.rows import compute_totals, unit_mix_counts, unit_totals
from schemas.enums import BedroomType, ExtractionMethod, GateStatus
from schemas.plan_data import ExtractedField, UnitRecord, UnitSource
from schemas.snapshot import AppliedOverrides, ExtractionSnapshot, ParcelData

from .compare import as_number
from .gates import apply_gates, evaluate_gates
from .parcel import cross_check_with_parcel

logger = logging.getLogger(__name__)

MANUAL_SOURCE = "manual"

# Override field -> zoning fields it pins
ZONING_TARGETS = {
    "lot_area": ["lot_area"],
    "resid_far": ["far", "resid_far"],
    "zoning_floor_area": ["zoning_floor_area"],
    "proposed_floor_area": ["proposed_floor_area"],
    "total_units": ["total_units"],
    "floors": ["floors"],
    "building_area": ["building_area"],
    "zone_district": ["zone_district"],
}


def _manual_field(value: Any) -> ExtractedField:
    return ExtractedField(value=value, confidence=1.0, page_number=None, source=MANUAL_SOURCE)


def recompute_gates(snapshot: ExtractionSnapshot, parcel: Optional[ParcelData] = None) -> ExtractionSnapshot:
    """Re-run the gate engine against the snapshot's current values."""
    parcel = parcel or snapshot.parcel
    return apply_gates(snapshot, evaluate_gates(snapshot, parcel))


def with_records(snapshot: ExtractionSnapshot, records: List[UnitRecord]) -> ExtractionSnapshot:
    """Replace unit records and recompute every count derived from them."""
    mix_totals = compute_totals(records)
    return snapshot.model_copy(update={
        "unit_records": records,
        "unit_totals": mix_totals,
        "totals": unit_totals(records),
        "unit_mix": unit_mix_counts(mix_totals.by_bedroom_type),
    })


# ============================================================================
# Scaling
# ============================================================================

def distribute(counts: Dict[str, int], target: int) -> Dict[str, int]:
    """Scale bucket counts proportionally to sum to `target`.

    Each bucket is rounded; the rounding remainder goes to the largest bucket.
    """
    total = sum(counts.values())
    if total == 0:
        return {BedroomType.UNKNOWN.value: target} if target else {}

    scaled = {k: round(v * target / total) for k, v in counts.items()}
    largest = max(counts, key=lambda k: (counts[k], k))
    scaled[largest] = max(0, scaled[largest] + target - sum(scaled.values()))
    return scaled


def scale_to_total_units(snapshot: ExtractionSnapshot, target: int) -> ExtractionSnapshot:
    """
    Resize the unit record list to exactly `target` units.

    Existing records are kept per bedroom bucket in their original order;
    buckets that grow get clones of their last record, buckets that shrink
    lose records from the end.

    Args:
        snapshot: Snapshot to scale
        target: Desired total unit count (>= 0)

    Returns:
        New snapshot with totals.total_units == len(unit_records) == target
    """
    if target < 0:
        raise ValueError(f"target must be >= 0, got {target}")

    buckets: Dict[str, List[UnitRecord]] = {}
    for r in snapshot.unit_records:
        buckets.setdefault(r.bedroom_type.value, []).append(r)

    wanted = distribute({k: len(v) for k, v in buckets.items()}, target)
    evidence = f"scaled to {target} units"

    records: List[UnitRecord] = []
    for bucket, count in wanted.items():
        existing = buckets.get(bucket, [])
        records.extend(existing[:count])
        for n in range(len(existing), count):
            if existing:
                template = existing[-1]
                clone = template.model_copy(update={
                    "unit_id": None,
                    "record_key": f"scaled:{bucket}:{n}",
                    "source": template.source.model_copy(update={"evidence": evidence}),
                    "evidence_trail": [],
                })
            else:
                clone = UnitRecord(
                    bedroom_type=BedroomType(bucket),
                    record_key=f"scaled:{bucket}:{n}",
                    source=UnitSource(page=-1, method=ExtractionMethod.TEXT_REGEX, evidence=evidence),
                )
            records.append(clone)

    logger.info(f"Scaled {len(snapshot.unit_records)} unit records to {target}: {wanted}")
    return recompute_gates(with_records(snapshot, records))


# ============================================================================
# Overrides
# ============================================================================

def _derived_zfa(pinned: Dict[str, Any], snapshot: ExtractionSnapshot, parcel: Optional[ParcelData]) -> Optional[float]:
    lot = pinned.get("lot_area") or as_number(snapshot.zoning.value_of("lot_area"))
    if lot is None and parcel and parcel.lot_area > 0:
        lot = parcel.lot_area
    far = pinned.get("resid_far") or as_number(snapshot.zoning.value_of("far"))
    if far is None and parcel and parcel.resid_far > 0:
        far = parcel.resid_far
    if lot is None or far is None:
        return None
    return lot * far


def apply_overrides(
    snapshot: ExtractionSnapshot,
    overrides: AppliedOverrides,
    parcel: Optional[ParcelData] = None,
) -> ExtractionSnapshot:
    """
    Pin user-entered values and recompute everything derived from them.

    Overriding lot area or FAR re-derives zoning floor area as lot x FAR
    (unless zoning floor area is itself pinned). Overriding total units
    scales the unit records to that count.

    Args:
        snapshot: Current snapshot
        overrides: Newly entered values; merged over earlier overrides
        parcel: City parcel data (defaults to the snapshot's)

    Returns:
        New snapshot with overrides pinned and gates recomputed
    """
    parcel = parcel or snapshot.parcel
    new = overrides.pinned()
    pinned = {**snapshot.manual_overrides.pinned(), **new}

    zoning_update = {}
    for key, value in pinned.items():
        for target in ZONING_TARGETS.get(key, []):
            zoning_update[target] = _manual_field(value)

    if ("lot_area" in new or "resid_far" in new) and "zoning_floor_area" not in pinned:
        zfa = _derived_zfa(pinned, snapshot, parcel)
        if zfa is not None:
            zoning_update["zoning_floor_area"] = ExtractedField(
                value=zfa, confidence=1.0, page_number=None, source="derived"
            )
            logger.info(f"Re-derived zoning floor area {zfa:,.2f} SF from lot area x FAR")

    result = snapshot.model_copy(update={
        "manual_overrides": AppliedOverrides(**pinned),
        "zoning": snapshot.zoning.model_copy(update=zoning_update),
        "parcel": parcel,
    })

    if "total_units" in new:
        result = scale_to_total_units(result, int(new["total_units"]))

    if parcel is not None:
        result = result.model_copy(update={"parcel_check": cross_check_with_parcel(result, parcel)})

    logger.info(f"Applied overrides: {sorted(new)}")
    return recompute_gates(result, parcel)


def confirm_all(snapshot: ExtractionSnapshot, parcel: Optional[ParcelData] = None) -> ExtractionSnapshot:
    """
    Accept every extracted value as correct, closing WARN and NEEDS_OVERRIDE gates.

    Raises:
        UnresolvedConflictError: If any gate is CONFLICTING
    """
    parcel = parcel or snapshot.parcel
    gate_set = evaluate_gates(snapshot, parcel)
    conflicting = [g.field for g in gate_set.gates if g.status == GateStatus.CONFLICTING]
    if conflicting:
        raise UnresolvedConflictError(conflicting)

    confirmed = snapshot.model_copy(update={"confirmed_all": True})
    return recompute_gates(confirmed, parcel)
