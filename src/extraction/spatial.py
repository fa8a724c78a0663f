"""Pair unit labels with nearby area labels on floor plan pages."""
import logging
import math
import re
from typing import List, Sequence

from preprocessor.text_layer import TextItem
from schemas.enums import ExtractionMethod
from schemas.plan_data import UnitRecord, UnitSource

logger = logging.getLogger(__name__)

AREA_LABEL_REGEX = re.compile(r"(\d{2,5})\s*(?:SF|SQ\.?\s*FT)", re.IGNORECASE)
UNIT_LABEL_REGEX = re.compile(r"(?:UNIT|APT)\.?\s*([A-Z0-9][-A-Z0-9]*)", re.IGNORECASE)

MIN_LABEL_AREA = 100
MAX_LABEL_AREA = 5000


def _center(item: TextItem):
    return item.x + item.width / 2, item.y + item.height / 2


def _distance(a: TextItem, b: TextItem) -> float:
    ax, ay = _center(a)
    bx, by = _center(b)
    return math.hypot(ax - bx, ay - by)


def _join_adjacent(items: Sequence[TextItem], max_gap: float = 6.0) -> List[TextItem]:
    """Merge word items on the same baseline into short phrases.

    Word extraction splits '850 SF' and 'UNIT 3A' into separate items.
    """
    merged: List[TextItem] = []
    for item in sorted(items, key=lambda i: (round(i.y), i.x)):
        last = merged[-1] if merged else None
        if (
            last is not None
            and abs(last.y - item.y) <= max(2.0, item.height * 0.3)
            and 0 <= item.x - (last.x + last.width) <= max_gap
        ):
            merged[-1] = TextItem(
                text=f"{last.text} {item.text}",
                x=last.x,
                y=min(last.y, item.y),
                width=item.x + item.width - last.x,
                height=max(last.height, item.height),
                page=last.page,
            )
        else:
            merged.append(item)
    return merged


def find_unit_labels_near_areas(
    items: Sequence[TextItem],
    page: int,
    max_distance: float = 80.0,
) -> List[UnitRecord]:
    """Match each unit label to the nearest unused area label.

    Args:
        items: Positioned words on a floor plan page
        page: 1-indexed page number
        max_distance: Largest center-to-center distance in points

    Returns:
        TEXT_REGEX unit records with area and unit id, bedroom UNKNOWN
    """
    phrases = _join_adjacent(items)
    areas = []
    units = []
    for item in phrases:
        area_match = AREA_LABEL_REGEX.search(item.text)
        if area_match:
            value = int(area_match.group(1))
            if MIN_LABEL_AREA <= value <= MAX_LABEL_AREA:
                areas.append((item, float(value), area_match.group(0)))
        unit_match = UNIT_LABEL_REGEX.search(item.text)
        if unit_match:
            units.append((item, unit_match.group(1).upper()))

    records = []
    used_units = set()
    used_areas = set()
    for unit_item, unit_id in units:
        if unit_id in used_units:
            continue
        best_idx, best_dist = -1, math.inf
        for idx, (area_item, _, _) in enumerate(areas):
            if idx in used_areas:
                continue
            d = _distance(unit_item, area_item)
            if d <= max_distance and d < best_dist:
                best_idx, best_dist = idx, d
        if best_idx < 0:
            continue
        used_units.add(unit_id)
        used_areas.add(best_idx)
        _, area_sf, label = areas[best_idx]
        records.append(UnitRecord(
            unit_id=unit_id,
            area_sf=area_sf,
            source=UnitSource(
                page=page,
                method=ExtractionMethod.TEXT_REGEX,
                evidence=f"{unit_item.text} ~ {label}",
            ),
        ))

    if records:
        logger.debug(f"Page {page}: matched {len(records)} unit/area label pair(s)")
    return records
