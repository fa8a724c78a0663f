"""Bedroom type inference from unit area, and floor inference from unit ids."""
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from schemas.enums import BedroomType
from schemas.plan_data import UnitRecord

logger = logging.getLogger(__name__)

INFERRED_NOTE = "bedroom inferred from area"


@dataclass(frozen=True)
class AreaThresholds:
    studio_max: float
    one_br_max: float
    two_br_max: float
    three_br_max: float


DEFAULT_THRESHOLDS = AreaThresholds(450, 650, 950, 1300)

ZONE_THRESHOLDS = {
    "R6": AreaThresholds(400, 600, 850, 1150),
    "R7": AreaThresholds(425, 625, 900, 1200),
    "R8": AreaThresholds(450, 650, 950, 1300),
    "R9": AreaThresholds(475, 700, 1000, 1400),
    "R10": AreaThresholds(500, 750, 1100, 1500),
    "C4": AreaThresholds(450, 650, 950, 1300),
    "C6": AreaThresholds(475, 700, 1000, 1400),
}


def get_thresholds(zone_district: Optional[str] = None) -> AreaThresholds:
    """Area cutoffs for a zoning district, e.g. 'R7A' uses the R7 row."""
    if not zone_district:
        return DEFAULT_THRESHOLDS
    m = re.match(r"^([A-Z]+\d+)", zone_district.upper())
    return ZONE_THRESHOLDS.get(m.group(1) if m else "", DEFAULT_THRESHOLDS)


def infer_bedroom_from_area(area_sf: float, thresholds: AreaThresholds) -> Tuple[BedroomType, int, float]:
    """Return (bedroom type, bedroom count, confidence) for an area."""
    if area_sf <= thresholds.studio_max:
        return BedroomType.STUDIO, 0, 0.65
    if area_sf <= thresholds.one_br_max:
        return BedroomType.BR1, 1, 0.6
    if area_sf <= thresholds.two_br_max:
        return BedroomType.BR2, 2, 0.55
    if area_sf <= thresholds.three_br_max:
        return BedroomType.BR3, 3, 0.5
    return BedroomType.BR4_PLUS, 4, 0.45


def infer_floor_from_unit_id(unit_id: str) -> Optional[str]:
    """'PH2' -> 'PH'; '3A' -> '3'; '1204' -> '12'; '301' -> '3'."""
    if re.match(r"^PH", unit_id, re.IGNORECASE):
        return "PH"
    m = re.match(r"^(\d+)", unit_id)
    if not m:
        return None
    digits = m.group(1)
    if len(digits) == 3:
        return digits[0]
    if len(digits) == 4:
        return digits[:2]
    return digits[:2]


def apply_bedroom_inference(
    records: Sequence[UnitRecord],
    zone_district: Optional[str] = None,
) -> Tuple[List[UnitRecord], int]:
    """Fill floors from unit ids and UNKNOWN bedroom types from area.

    Returns:
        (updated records, number of bedroom types inferred)
    """
    thresholds = get_thresholds(zone_district)
    inferred = 0
    updated = []
    for r in records:
        update = {}
        if r.floor is None and r.unit_id:
            floor = infer_floor_from_unit_id(r.unit_id)
            if floor is not None:
                update["floor"] = floor
        if r.bedroom_type == BedroomType.UNKNOWN and r.area_sf and r.area_sf > 0:
            btype, count, _ = infer_bedroom_from_area(r.area_sf, thresholds)
            update["bedroom_type"] = btype
            update["bedroom_count"] = count
            update["notes"] = f"{r.notes}; {INFERRED_NOTE}" if r.notes else INFERRED_NOTE
            inferred += 1
        updated.append(r.model_copy(update=update) if update else r)

    if inferred:
        logger.info(f"Inferred bedroom type from area for {inferred} unit(s)")
    return updated, inferred
