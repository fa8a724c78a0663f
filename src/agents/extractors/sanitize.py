"""Sanitization of AI extraction output.

Model output is treated as untrusted: duplicate and noise unit ids are
dropped, areas outside a plausible range are rejected, and an over-long
record list is capped to the unit count the cover sheet declares.
"""
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from schemas.ai import AiPlanExtraction, AiUnitMix, AiUnitRecord
from schemas.enums import Allocation, BedroomType, ExtractionMethod
from schemas.plan_data import UnitRecord, UnitSource

logger = logging.getLogger(__name__)

MIN_AREA_SF = 150
MAX_AREA_SF = 5000
CAP_RATIO = 1.5
CAPPED_CONFIDENCE = 0.6

NOISE_IDS = {
    "BLOCK", "LOT", "BIN", "DATE", "TOTAL", "BUILDING", "FLOOR", "PROJECT",
    "ZONE", "ZONING", "FAR", "OCCUPANCY", "EGRESS", "CORRIDOR", "STAIRS",
    "STAIR", "HALLWAY", "LOBBY", "MECHANICAL", "STORAGE", "LAUNDRY",
    "CELLAR", "ROOF", "SUSTAINABLE", "COMMON", "COMMUNITY",
}

VALID_BEDROOM_TYPES = {b.value for b in BedroomType}

DECLARED_UNIT_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"#?\s*(?:OF\s+)?UNITS[:\s]+(\d{1,4})",
    r"PROPOSED\s+(\d{1,4})\s*-?\s*UNIT",
    r"(\d{1,4})\s*-?\s*UNIT\s+(?:APARTMENT|RESIDENTIAL|DWELLING)\s+(?:BUILDING|PROJECT)",
    r"TOTAL\s+(?:DWELLING\s+)?UNITS[:\s]*(\d{1,4})",
    r"(\d{1,4})\s+DWELLING\s+UNITS",
)]


def extract_declared_units(pages: Sequence[Any]) -> Optional[int]:
    """Find a declared unit count, searching cover sheets first.

    Args:
        pages: PageInput-like objects with `type` and `text`
    """
    cover = [p for p in pages if p.type == "COVER_SHEET"]
    search = cover or list(pages)
    for pattern in DECLARED_UNIT_PATTERNS:
        for page in search:
            m = pattern.search(page.text)
            if m:
                n = int(m.group(1))
                if 1 <= n <= 500:
                    return n
    return None


def clean_raw_records(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop unit records the schema cannot hold (no id or non-numeric area)."""
    records = data.get("unit_records")
    if not isinstance(records, list):
        return {**data, "unit_records": []}
    kept = []
    for r in records:
        if not isinstance(r, dict) or not str(r.get("unit_id") or "").strip():
            continue
        try:
            area = float(r.get("area_sf"))
        except (TypeError, ValueError):
            continue
        kept.append({**r, "area_sf": area, "bedroom_type": str(r.get("bedroom_type") or "UNKNOWN")})
    return {**data, "unit_records": kept}


def _floor_rank(unit_id: str) -> int:
    upper = unit_id.strip().upper()
    if upper.startswith("PH"):
        return 9999
    m = re.match(r"^(\d+)", upper)
    return int(m.group(1)) if m else 5000


def _mix_from_records(records: Sequence[AiUnitRecord]) -> AiUnitMix:
    counts = {"STUDIO": 0, "1BR": 0, "2BR": 0, "3BR": 0, "4BR_PLUS": 0}
    for r in records:
        if r.bedroom_type in counts:
            counts[r.bedroom_type] += 1
    return AiUnitMix(
        studio=counts["STUDIO"] or None,
        br1=counts["1BR"] or None,
        br2=counts["2BR"] or None,
        br3=counts["3BR"] or None,
        br4plus=counts["4BR_PLUS"] or None,
    )


def sanitize_extraction(extraction: AiPlanExtraction, declared_units: Optional[int] = None) -> AiPlanExtraction:
    """Filter and cap AI unit records.

    Args:
        extraction: Validated model output
        declared_units: Unit count declared on the cover sheet, if found

    Returns:
        New AiPlanExtraction; the input is not modified
    """
    seen = set()
    records: List[AiUnitRecord] = []
    for r in extraction.unit_records:
        key = r.unit_id.strip().upper()
        if key in seen:
            continue
        seen.add(key)
        if r.area_sf < MIN_AREA_SF or r.area_sf > MAX_AREA_SF or key in NOISE_IDS:
            continue
        bedroom = r.bedroom_type.strip().upper()
        records.append(r.model_copy(update={"bedroom_type": bedroom if bedroom in VALID_BEDROOM_TYPES else "UNKNOWN"}))

    update: Dict[str, Any] = {"unit_records": records}
    before = len(records)
    if declared_units is not None and before > declared_units * CAP_RATIO:
        records.sort(key=lambda r: (_floor_rank(r.unit_id), r.unit_id.strip().upper()))
        records = records[:declared_units]
        warning = (
            f"AI unit records ({before}) exceeded cover-sheet units ({declared_units}); "
            f"capped to {declared_units}. Verify schedule."
        )
        logger.warning(warning)
        update = {
            "unit_records": records,
            "totals": extraction.totals.model_copy(update={"total_units": declared_units}),
            "unit_mix": _mix_from_records(records),
            "confidence": extraction.confidence.model_copy(update={
                "overall": min(extraction.confidence.overall, CAPPED_CONFIDENCE),
                "warnings": extraction.confidence.warnings + [warning],
            }),
        }

    dropped = len(extraction.unit_records) - len(update["unit_records"])
    if dropped:
        logger.info(f"Sanitization dropped {dropped} AI unit record(s)")
    return extraction.model_copy(update=update)


# ============================================================================
# Conversion to unit records
# ============================================================================

def map_bedroom_type(raw: str) -> BedroomType:
    u = re.sub(r"[- ]", "", (raw or "").upper())
    if "STUDIO" in u or u == "S":
        return BedroomType.STUDIO
    if u == "1BR" or "ONEBEDROOM" in u:
        return BedroomType.BR1
    if u == "2BR" or "TWOBEDROOM" in u:
        return BedroomType.BR2
    if u == "3BR" or "THREEBEDROOM" in u:
        return BedroomType.BR3
    if u in ("4BR", "4BRPLUS", "4BR_PLUS") or "FOURBEDROOM" in u:
        return BedroomType.BR4_PLUS
    return BedroomType.UNKNOWN


def ai_unit_records(extraction: AiPlanExtraction) -> List[UnitRecord]:
    """Convert AI unit records into pipeline unit records.

    AI records are not page-bound (page -1) and carry the TEXT_REGEX method.
    """
    return [
        UnitRecord(
            unit_id=r.unit_id.strip(),
            floor=r.floor,
            bedroom_type=map_bedroom_type(r.bedroom_type),
            allocation=Allocation.UNKNOWN,
            area_sf=r.area_sf,
            source=UnitSource(
                page=-1,
                method=ExtractionMethod.TEXT_REGEX,
                evidence=f"AI: {r.unit_id} {r.area_sf:g}SF {r.bedroom_type}",
            ),
        )
        for r in extraction.unit_records
    ]
