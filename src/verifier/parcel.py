"""Cross-check of extracted plan values against city parcel data (PLUTO)."""
import logging
from typing import Optional

from schemas.snapshot import ExtractionSnapshot, ParcelCheckResult, ParcelData, ParcelValues

from .compare import as_number

logger = logging.getLogger(__name__)

EFFICIENCY = 0.80
AVG_UNIT_SF = 800
UNIT_DIFF_THRESHOLD = 0.4
CONFIDENT = 0.8
LOT_AREA_THRESHOLD = 0.1
FAR_SLACK = 1.05


def implied_units_estimate(lot_area: float, resid_far: float) -> int:
    """Screening estimate of dwelling units: lot x FAR x 80% / 800 SF."""
    return round(lot_area * resid_far * EFFICIENCY / AVG_UNIT_SF)


def cross_check_with_parcel(snapshot: ExtractionSnapshot, parcel: Optional[ParcelData]) -> ParcelCheckResult:
    """
    Compare plan totals, lot area and proposed FAR with parcel data.

    Args:
        snapshot: Snapshot with totals, zoning and confidence populated
        parcel: Authoritative parcel values, or None

    Returns:
        ParcelCheckResult; empty when no parcel is given
    """
    if parcel is None:
        return ParcelCheckResult()

    warnings = []
    implied = None
    if parcel.lot_area > 0 and parcel.resid_far > 0:
        implied = implied_units_estimate(parcel.lot_area, parcel.resid_far)
        total = snapshot.totals.total_units
        if total > 0 and implied > 0:
            diff = abs(total - implied) / implied
            if diff > UNIT_DIFF_THRESHOLD and snapshot.confidence.overall < CONFIDENT:
                warnings.append(
                    f"Plan total ({total} units) differs from PLUTO screening estimate "
                    f"({implied} units) by {round(diff * 100)}%; verify plan data."
                )

    far = snapshot.far
    lot_area = (far.lot_area_sf if far else None) or as_number(snapshot.zoning.value_of("lot_area"))
    if lot_area and parcel.lot_area > 0:
        diff = abs(lot_area - parcel.lot_area) / parcel.lot_area
        if diff > LOT_AREA_THRESHOLD:
            warnings.append(
                f"PDF lot area ({lot_area:,.0f} SF) differs from PLUTO ({parcel.lot_area:,.0f} SF) "
                f"by {round(diff * 100)}%."
            )

    proposed_far = (far.proposed_far if far else None) or as_number(snapshot.zoning.value_of("far"))
    if proposed_far and parcel.resid_far > 0 and proposed_far > parcel.resid_far * FAR_SLACK:
        warnings.append(
            f"PDF proposed FAR ({proposed_far:g}) exceeds PLUTO residential FAR ({parcel.resid_far:g}); "
            f"may require zoning override or bonus."
        )

    for w in warnings:
        logger.warning(w)
    return ParcelCheckResult(
        warnings=warnings,
        parcel_values=ParcelValues(
            lot_area=parcel.lot_area,
            resid_far=parcel.resid_far,
            bldg_area=parcel.bldg_area,
            implied_max_units=implied,
        ),
    )
