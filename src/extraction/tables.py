"""Table reconstruction from positioned text and table-type classification."""
import logging
import re
from typing import List, Sequence, Tuple

from preprocessor.text_layer import TextItem
from schemas.enums import TableType
from schemas.plan_data import ClassifiedTable

from .layout import (
    BBox,
    TableRegion,
    TableRow,
    cluster_by_y,
    compute_x_gap_tolerance,
    compute_y_tolerance,
    lines_to_table_rows,
)

logger = logging.getLogger(__name__)


_DIGIT = re.compile(r"\d")

HEADER_TOKENS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\bUNIT\b", r"\bAPT\b", r"\bAPARTMENT\b", r"\bBR\b", r"\bBED\b",
        r"\bBEDROOMS?\b", r"\bSF\b", r"\bSQ\s*FT\b", r"\bAREA\b", r"\bAFFORDABLE\b",
        r"\bMIH\b", r"\bAMI\b", r"\bALLOCATION\b", r"\bTYPE\b",
    )
]


def is_header_row(row: TableRow) -> bool:
    """A header row has at least two cells carrying a header token.

    Rows where half or more of the cells hold digits are data rows
    ("2B | 2 BR | 950 | MIH" mentions BR and MIH but is not a header).
    """
    if len(row.cells) < 2:
        return False
    digit_cells = sum(1 for cell in row.cells if _DIGIT.search(cell.text))
    if digit_cells * 2 >= len(row.cells):
        return False
    hits = sum(1 for cell in row.cells if any(p.search(cell.text) for p in HEADER_TOKENS))
    return hits >= 2


def _bbox(rows: Sequence[TableRow]) -> BBox:
    xs0 = [c.x0 for r in rows for c in r.cells]
    xs1 = [c.x1 for r in rows for c in r.cells]
    ys = [r.y for r in rows]
    return BBox(x0=min(xs0), y0=min(ys), x1=max(xs1), y1=max(ys))


def reconstruct_tables(items: Sequence[TextItem], page: int) -> List[TableRegion]:
    """Find header-led tables on a page.

    Data rows follow a header until the next header row or until the
    vertical gap grows well beyond the table's row spacing.

    Args:
        items: Positioned words for the page
        page: 1-indexed page number

    Returns:
        Table regions in top-to-bottom order (empty if none found)
    """
    if not items:
        return []

    y_tol = compute_y_tolerance(items)
    rows = lines_to_table_rows(cluster_by_y(items, page, y_tol), compute_x_gap_tolerance(items))

    tables = []
    i = 0
    while i < len(rows):
        if not is_header_row(rows[i]):
            i += 1
            continue

        header = rows[i]
        data_rows: List[TableRow] = []
        j = i + 1
        first_gap = abs(rows[j].y - header.y) if j < len(rows) else 0
        base_spacing = first_gap if first_gap > 0 else y_tol * 2
        gap_threshold = max(base_spacing * 2.5, y_tol * 4)

        while j < len(rows):
            if is_header_row(rows[j]):
                break
            if abs(rows[j].y - rows[j - 1].y) > gap_threshold and data_rows:
                break
            if rows[j].cells and len(rows[j].row_text.strip()) >= 2:
                data_rows.append(rows[j])
            j += 1

        if data_rows:
            tables.append(TableRegion(
                header_row=header,
                data_rows=data_rows,
                page=page,
                bbox=_bbox([header] + data_rows),
            ))
        i = j

    logger.debug(f"Page {page}: reconstructed {len(tables)} table(s)")
    return tables


# ============================================================================
# Classification
# ============================================================================

LIGHT_VENT_KEYWORDS = [
    "NATURAL LIGHT", "VENTILATION", "ROOM ID", "REQ'D", "PROVIDED",
    "WINDOW", "AIR SHAFT", "LIGHT & VENT", "LIGHT AND VENT",
    "REQUIRED AREA", "PROVIDED AREA", "OPENING",
]

UNIT_SCHEDULE_KEYWORDS = [
    "UNIT", "APT", "BEDROOM", "TYPE", "STUDIO", "1BR", "2BR",
    "NO. OF UNITS", "UNIT NO", "UNIT TYPE", "NO OF UNITS", "APARTMENT",
    "APT. NO", "DWELLING UNIT", "DU TYPE", "UNIT SIZE",
    "INCOME BAND", "AMI", "AFFORDABLE", "MARKET RATE", "MIH",
    "RENT STABILIZED", "NET SF", "GROSS SF",
]

AFFORDABILITY_KEYWORDS = ["AFFORDABLE", "AMI", "MIH", "MARKET RATE", "INCOME BAND", "RENT STABILIZED"]

ZONING_KEYWORDS = [
    "FAR", "LOT AREA", "ZONING", "USE GROUP", "FLOOR AREA RATIO",
    "ZFA", "ZONING FLOOR AREA", "PERMITTED", "PROPOSED FAR",
]

OCCUPANCY_KEYWORDS = [
    "OCCUPANT LOAD", "OCCUPANCY", "CAPACITY", "PERSONS",
    "OCCUPANCY GROUP", "EGRESS",
]

ROOM_TYPE_VALUES = {
    "BEDROOM", "LIVING ROOM", "KITCHEN", "BATHROOM", "DINING",
    "CLOSET", "FOYER", "HALL", "ALCOVE", "LIVING/DINING",
    "BATH", "W.I.C", "WIC", "LIVING", "DINING ROOM",
}


def _keyword_score(text: str, keywords: Sequence[str]) -> int:
    upper = text.upper()
    return sum(1 for kw in keywords if kw in upper)


def _has_room_type_values(rows: Sequence[Sequence[str]]) -> bool:
    hits = 0
    for row in rows[:5]:
        if any(cell.strip().upper() in ROOM_TYPE_VALUES for cell in row):
            hits += 1
    return hits >= 2


def classify_table(headers: Sequence[str], sample_rows: Sequence[Sequence[str]]) -> Tuple[TableType, float]:
    """Infer what a table holds from its headers and first rows.

    Light and ventilation schedules list rooms per unit and are never
    treated as unit schedules.
    """
    header_text = " ".join(headers)

    if _has_room_type_values(sample_rows):
        return TableType.LIGHT_VENTILATION_SCHEDULE, 0.95

    light_vent = _keyword_score(header_text, LIGHT_VENT_KEYWORDS)
    if light_vent >= 2:
        return TableType.LIGHT_VENTILATION_SCHEDULE, min(0.9, 0.5 + light_vent * 0.15)

    unit_score = _keyword_score(header_text, UNIT_SCHEDULE_KEYWORDS)
    unit_score += _keyword_score(header_text, AFFORDABILITY_KEYWORDS)
    scores = [
        (TableType.UNIT_SCHEDULE, unit_score),
        (TableType.ZONING_TABLE, _keyword_score(header_text, ZONING_KEYWORDS)),
        (TableType.OCCUPANCY_LOAD, _keyword_score(header_text, OCCUPANCY_KEYWORDS)),
    ]
    # Stable sort keeps unit_schedule first on ties
    best_type, best_score = sorted(scores, key=lambda s: -s[1])[0]

    if best_score >= 2:
        return best_type, min(0.9, 0.5 + best_score * 0.15)
    if best_score == 1:
        return best_type, 0.4
    return TableType.UNKNOWN, 0.2


def classify_region(region: TableRegion, table_index: int = 0) -> ClassifiedTable:
    headers = [c.text for c in region.header_row.cells]
    rows = [[c.text for c in r.cells] for r in region.data_rows]
    table_type, confidence = classify_table(headers, rows[:5])
    return ClassifiedTable(
        page_index=region.page,
        table_index=table_index,
        table_type=table_type,
        headers=headers,
        rows=rows,
        confidence=confidence,
    )
