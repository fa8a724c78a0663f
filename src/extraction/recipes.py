"""Recipe registry: page-type-specific extraction strategies.

A recipe is selected per page from the sheet index (or a caller override)
and runs over all pages assigned to it. Each recipe returns a
RecipeResult with the fields and unit records it found.
"""
import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from preprocessor.text_layer import TextItem
from schemas.enums import BedroomType, ExtractionMethod, RecipeType, SheetType, TableType
from schemas.plan_data import CoverSheetExtraction, UnitRecord, UnitSource
from schemas.sheets import RecipeEvidence, RecipeResult, SheetIndex, SheetInfo

from .layout import PageLine
from .rows import detect_bedroom, parse_table
from .spatial import find_unit_labels_near_areas
from .tables import classify_region, reconstruct_tables
from .zoning import FAR_MAX, FAR_MIN, extract_far_from_lines, parse_number

logger = logging.getLogger(__name__)

SKIP = "skip"

LinesByPage = Mapping[int, List[PageLine]]
ItemsByPage = Mapping[int, List[TextItem]]


@dataclass
class Recipe:
    """A named extraction strategy.

    Attributes:
        recipe_type: Registry key
        matcher: Decides whether a sheet belongs to this recipe
        extractor: Runs the recipe over its assigned pages
    """
    recipe_type: RecipeType
    matcher: Callable[[SheetInfo], bool]
    extractor: Callable[[List[int], LinesByPage, ItemsByPage], RecipeResult]

    def matches(self, sheet: SheetInfo) -> bool:
        return self.matcher(sheet)

    def run(self, pages: List[int], lines_by_page: LinesByPage, items_by_page: ItemsByPage) -> RecipeResult:
        return self.extractor(pages, lines_by_page, items_by_page)


def _page_text(lines_by_page: LinesByPage, page: int) -> str:
    return "\n".join(line.text for line in lines_by_page.get(page, []))


def _first_match(lines: Sequence[PageLine], pattern: re.Pattern) -> Optional[Tuple[str, str]]:
    """Return (captured value, line text) for the first matching line."""
    for line in lines:
        m = pattern.search(line.text)
        if m and m.group(1):
            return m.group(1).strip(), line.text
    return None


# ============================================================================
# Cover sheet
# ============================================================================

COVER_TITLE_REGEX = re.compile(r"COVER\s+SHEET|TITLE\s+SHEET", re.IGNORECASE)
COVER_DRAWING_REGEX = re.compile(r"^T[-.]?\d{1,3}", re.IGNORECASE)

COVER_NUMERIC_FIELDS: List[Tuple[str, re.Pattern]] = [
    ("lot_area_sf", re.compile(r"LOT\s*AREA[:\s]*([0-9,]+(?:\.\d+)?)\s*(?:SF|SQ)", re.I)),
    ("far", re.compile(r"\bFAR[:\s]*([0-9]+(?:\.\d+)?)", re.I)),
    ("total_units", re.compile(r"#?\s*(?:OF\s+)?(?:DWELLING\s+)?UNITS[:\s]*(\d{1,4})\b", re.I)),
    ("floors", re.compile(r"#?\s*(?:OF\s+)?(?:FLOORS|STORIES)[:\s]*(\d{1,3})\b", re.I)),
    ("building_area_sf", re.compile(r"(?:BLDG|BUILDING)\s*AREA[:\s]*([0-9,]+(?:\.\d+)?)\s*(?:SF|SQ)", re.I)),
]

COVER_TEXT_FIELDS: List[Tuple[str, re.Pattern]] = [
    ("zone", re.compile(r"\bZONE[:\s]*([A-Z0-9][-A-Z0-9/]*)", re.I)),
    ("zoning_map", re.compile(r"ZONING\s*MAP[:\s]*([A-Z0-9]+)", re.I)),
    ("occupancy_group", re.compile(r"OCCUPANCY\s*GROUP[:\s]*([A-Z][-A-Z0-9.]*)", re.I)),
    ("construction_class", re.compile(r"CONSTRUCTION\s*CLASS[:\s]*([A-Z0-9][-A-Z0-9]*)", re.I)),
    ("scope_of_work", re.compile(r"SCOPE\s+OF\s+WORK[:\s]*(.+)", re.I)),
    ("block", re.compile(r"\bBLOCK[:\s]*#?(\d{1,5})\b", re.I)),
    ("lot", re.compile(r"\bLOT[:\s]*#?(\d{1,5})\b", re.I)),
    ("bin", re.compile(r"\bBIN[:\s]*#?(\d{5,8})\b", re.I)),
]

COVER_SCORED_FIELDS = ["lot_area_sf", "far", "total_units", "floors", "building_area_sf", "zone", "block"]


def _cover_matches(sheet: SheetInfo) -> bool:
    if sheet.sheet_type == SheetType.COVER_SHEET:
        return True
    if sheet.drawing_title and COVER_TITLE_REGEX.search(sheet.drawing_title):
        return True
    if sheet.drawing_no and COVER_DRAWING_REGEX.match(sheet.drawing_no):
        return True
    return False


def run_cover_sheet(pages: List[int], lines_by_page: LinesByPage, items_by_page: ItemsByPage) -> RecipeResult:
    values: Dict[str, Union[int, float, str]] = {}
    evidence = []

    for page in pages:
        lines = lines_by_page.get(page, [])
        for name, pattern in COVER_NUMERIC_FIELDS:
            if name in values:
                continue
            hit = _first_match(lines, pattern)
            if not hit:
                continue
            value = parse_number(hit[0])
            if value is None or value <= 0:
                continue
            if name == "far" and not (FAR_MIN <= value <= FAR_MAX):
                continue
            if name == "total_units" and value >= 2000:
                continue
            values[name] = int(value) if name in ("total_units", "floors") else value
            evidence.append(RecipeEvidence(field=name, page=page, method="TEXT_REGEX", snippet=hit[1][:120]))

        for name, pattern in COVER_TEXT_FIELDS:
            if name in values:
                continue
            hit = _first_match(lines, pattern)
            if hit:
                values[name] = hit[0][:200].upper() if name != "scope_of_work" else hit[0][:200]
                evidence.append(RecipeEvidence(field=name, page=page, method="TEXT_REGEX", snippet=hit[1][:120]))

    cover = CoverSheetExtraction(**values)
    found = sum(1 for name in COVER_SCORED_FIELDS if name in values)
    fields = {"cover_sheet": cover.model_dump()}
    for name in ("lot_area_sf", "far", "total_units"):
        if name in values:
            fields[name] = values[name]

    return RecipeResult(
        recipe=RecipeType.COVER_SHEET,
        pages=pages,
        fields=fields,
        evidence=evidence,
        confidence=min(0.95, 0.3 + found * 0.09),
    )


# ============================================================================
# Zoning schedule
# ============================================================================

ZONING_TITLE_REGEX = re.compile(r"ZONING\s*(COMPLIANCE|ANALYSIS|SCHEDULE|DATA|INFORMATION)", re.IGNORECASE)
ZONING_DRAWING_REGEX = re.compile(r"^(Z-|A[-.]?004)", re.IGNORECASE)
DWELLING_UNITS_REGEX = re.compile(r"(?:PROPOSED|TOTAL)\s+(\d{1,4})\s+(?:DWELLING\s+)?UNITS", re.IGNORECASE)
DU_COUNT_REGEX = re.compile(
    r"(?:DWELLING|DU)\s+(?:UNIT\s+)?(?:FACTOR|COUNT).*?\b(\d{1,4})\s+(?:DWELLING\s+)?UNITS", re.IGNORECASE
)
TOTAL_LINE_REGEX = re.compile(r"\bTOTAL\b.*?\b(\d{1,4})\b", re.IGNORECASE)


def _zoning_matches(sheet: SheetInfo) -> bool:
    if sheet.sheet_type == SheetType.ZONING_SCHEDULE:
        return True
    if sheet.drawing_title and ZONING_TITLE_REGEX.search(sheet.drawing_title):
        return True
    return bool(sheet.drawing_no and ZONING_DRAWING_REGEX.match(sheet.drawing_no))


def run_zoning_schedule(pages: List[int], lines_by_page: LinesByPage, items_by_page: ItemsByPage) -> RecipeResult:
    lot_area = zfa = far = None
    total_units = None
    unit_mix: Dict[str, int] = {}
    evidence = []

    for page in pages:
        lines = lines_by_page.get(page, [])
        far_result = extract_far_from_lines(lines, page)
        if far_result is not None:
            snippet = far_result.source.evidence
            if far_result.lot_area_sf and lot_area is None:
                lot_area = far_result.lot_area_sf
                evidence.append(RecipeEvidence(field="lot_area_sf", page=page, method="TEXT_TABLE", snippet=snippet))
            if far_result.zoning_floor_area_sf and zfa is None:
                zfa = far_result.zoning_floor_area_sf
                evidence.append(RecipeEvidence(field="zoning_floor_area_sf", page=page, method="TEXT_TABLE", snippet=snippet))
            if far_result.proposed_far and far is None:
                far = far_result.proposed_far
                evidence.append(RecipeEvidence(field="far", page=page, method="TEXT_TABLE", snippet=snippet))

        for region in reconstruct_tables(items_by_page.get(page, []), page):
            if classify_region(region).table_type == TableType.LIGHT_VENTILATION_SCHEDULE:
                continue
            for record in parse_table(region).records:
                if record.bedroom_type != BedroomType.UNKNOWN:
                    key = record.bedroom_type.value
                    unit_mix[key] = unit_mix.get(key, 0) + 1

        if total_units is None:
            for line in lines:
                m = DWELLING_UNITS_REGEX.search(line.text) or DU_COUNT_REGEX.search(line.text)
                if not m:
                    m = TOTAL_LINE_REGEX.search(line.text) if not re.search(r"\bSF\b|FLOOR\s+AREA", line.text, re.I) else None
                if m and 0 < int(m.group(1)) < 2000:
                    total_units = int(m.group(1))
                    evidence.append(RecipeEvidence(field="total_units", page=page, method="TEXT_TABLE", snippet=line.text[:120]))
                    break

    if far is None and lot_area and zfa:
        far = round(zfa / lot_area, 2)

    confidence = 0.4
    if lot_area:
        confidence += 0.15
    if far:
        confidence += 0.15
    if zfa:
        confidence += 0.1
    if total_units:
        confidence += 0.1

    return RecipeResult(
        recipe=RecipeType.ZONING_SCHEDULE,
        pages=pages,
        fields={
            "lot_area_sf": lot_area,
            "zoning_floor_area_sf": zfa,
            "far": far,
            "total_units": total_units,
            "unit_mix": unit_mix,
        },
        evidence=evidence,
        confidence=min(0.95, confidence),
    )


# ============================================================================
# Floor plan labels
# ============================================================================

FLOOR_PLAN_TITLE_REGEX = re.compile(r"(FLOOR\s+PLAN|TYPICAL\s+FLOOR|UNIT\s+PLAN)", re.IGNORECASE)
FLOOR_PLAN_EXCLUDE_REGEX = re.compile(r"(SITE\s+PLAN|FOUNDATION\s+PLAN|ROOF\s+PLAN)", re.IGNORECASE)

UNIT_SIZE_LABEL_REGEX = re.compile(
    r"(STUDIO|ONE[- ]?BEDROOM|TWO[- ]?BEDROOM|THREE[- ]?BEDROOM|[123][- ]?BR)\s+(?:APT\.?\s+)?(\d{2,4})\s*(?:SF|SQ\.?\s*FT)",
    re.IGNORECASE,
)
AREA_THEN_UNIT_REGEX = re.compile(r"(\d{2,4})\s*(?:SF|SQ\.?\s*FT)\s+(?:UNIT|APT)\.?\s*([A-Z0-9][-A-Z0-9]*)", re.IGNORECASE)
UNIT_THEN_AREA_REGEX = re.compile(r"(?:UNIT|APT)\.?\s*([A-Z0-9][-A-Z0-9]*)\s+(\d{2,4})\s*(?:SF|SQ\.?\s*FT)", re.IGNORECASE)


def _floor_plan_matches(sheet: SheetInfo) -> bool:
    if not sheet.drawing_title or FLOOR_PLAN_EXCLUDE_REGEX.search(sheet.drawing_title):
        return False
    return bool(FLOOR_PLAN_TITLE_REGEX.search(sheet.drawing_title))


def _label_bedroom(raw: str) -> BedroomType:
    compact = re.sub(r"[- ]", "", raw.upper())
    compact = {"ONEBEDROOM": "1BR", "TWOBEDROOM": "2BR", "THREEBEDROOM": "3BR"}.get(compact, compact)
    bedroom_type, _ = detect_bedroom(compact)
    return bedroom_type


def run_floor_plan_labels(pages: List[int], lines_by_page: LinesByPage, items_by_page: ItemsByPage) -> RecipeResult:
    sizes_by_type: Dict[str, List[float]] = {}
    records: List[UnitRecord] = []
    evidence = []
    seen = set()

    def add_record(unit_id: str, area: float, page: int, snippet: str) -> None:
        unit_id = unit_id.upper()
        if unit_id in seen or not (100 <= area <= 5000):
            return
        seen.add(unit_id)
        records.append(UnitRecord(
            unit_id=unit_id,
            area_sf=area,
            source=UnitSource(page=page, method=ExtractionMethod.TEXT_REGEX, evidence=snippet[:120]),
        ))
        evidence.append(RecipeEvidence(field=f"unit_label_{unit_id}", page=page, method="TEXT_REGEX", snippet=snippet[:120]))

    for page in pages:
        text = _page_text(lines_by_page, page)

        for m in UNIT_SIZE_LABEL_REGEX.finditer(text):
            bedroom_type = _label_bedroom(m.group(1))
            sizes_by_type.setdefault(bedroom_type.value, []).append(float(m.group(2)))
            evidence.append(RecipeEvidence(
                field=f"unit_size_{bedroom_type.value}", page=page, method="TEXT_REGEX", snippet=m.group(0)))

        for m in AREA_THEN_UNIT_REGEX.finditer(text):
            add_record(m.group(2), float(m.group(1)), page, m.group(0))
        for m in UNIT_THEN_AREA_REGEX.finditer(text):
            add_record(m.group(1), float(m.group(2)), page, m.group(0))

        for record in find_unit_labels_near_areas(items_by_page.get(page, []), page):
            add_record(record.unit_id, record.area_sf, page, record.source.evidence)

    label_count = sum(len(v) for v in sizes_by_type.values()) + len(records)
    confidence = min(0.9, 0.5 + label_count * 0.05) if label_count else 0.2

    return RecipeResult(
        recipe=RecipeType.FLOOR_PLAN_LABEL,
        pages=pages,
        fields={
            "unit_sizes_by_type": sizes_by_type,
            "unit_counts_by_type": {k: len(v) for k, v in sizes_by_type.items()},
        },
        unit_records=records,
        evidence=evidence,
        confidence=confidence,
    )


# ============================================================================
# Occupant load
# ============================================================================

CODE_NOTES_TITLE_REGEX = re.compile(r"(CODE\s+NOTES|GENERAL\s+CODE|OCCUPANT\s+LOAD)", re.IGNORECASE)
CODE_NOTES_DRAWING_REGEX = re.compile(r"^G-", re.IGNORECASE)
OCCUPANT_TABLE_REGEX = re.compile(r"\bOCCUPANT\s+LOAD\b|200\s*SF", re.IGNORECASE)
UNIT_NAME_REGEX = re.compile(r"\bUNIT\s+([A-Z0-9][-A-Z0-9]*)", re.IGNORECASE)
UNIT_AREA_ROW_REGEX = re.compile(r"\bUNIT\s+([A-Z0-9][-A-Z0-9]*)\b.*?\b(\d{3,5})\s*(?:SF)?\b", re.IGNORECASE)
TOTAL_OCCUPANCY_REGEX = re.compile(r"TOTAL\s+OCCUPANCY[:\s]*(\d{1,4})", re.IGNORECASE)


def _occupant_matches(sheet: SheetInfo) -> bool:
    if sheet.sheet_type == SheetType.OCCUPANT_LOAD:
        return True
    if sheet.drawing_title and CODE_NOTES_TITLE_REGEX.search(sheet.drawing_title):
        return True
    return bool(sheet.drawing_no and CODE_NOTES_DRAWING_REGEX.match(sheet.drawing_no))


def _area_column(headers: Sequence[str]) -> Optional[int]:
    for idx, header in enumerate(headers):
        upper = header.upper()
        if re.search(r"AREA\s*PER", upper):
            continue
        if re.search(r"\bAREA\b|\bSF\b", upper):
            return idx
    return None


def run_occupant_load(pages: List[int], lines_by_page: LinesByPage, items_by_page: ItemsByPage) -> RecipeResult:
    records: List[UnitRecord] = []
    evidence = []
    seen = set()
    total_occupancy = None

    def add_record(unit_id: str, area: float, page: int, row_text: str) -> None:
        unit_id = unit_id.upper()
        if unit_id in seen or not (100 <= area <= 5000):
            return
        seen.add(unit_id)
        records.append(UnitRecord(
            unit_id=unit_id,
            area_sf=area,
            source=UnitSource(page=page, method=ExtractionMethod.TEXT_TABLE, evidence=row_text[:200]),
        ))
        evidence.append(RecipeEvidence(field=f"occupant_unit_{unit_id}", page=page, method="TEXT_TABLE", snippet=row_text[:120]))

    for page in pages:
        lines = lines_by_page.get(page, [])
        if not OCCUPANT_TABLE_REGEX.search(_page_text(lines_by_page, page)):
            continue

        before = len(records)
        for region in reconstruct_tables(items_by_page.get(page, []), page):
            headers = [c.text for c in region.header_row.cells]
            area_col = _area_column(headers)
            for row in region.data_rows:
                unit_match = UNIT_NAME_REGEX.search(row.row_text)
                if not unit_match:
                    continue
                area = None
                if area_col is not None and area_col < len(row.cells):
                    m = re.search(r"(\d[\d,]*)", row.cells[area_col].text)
                    area = parse_number(m.group(1)) if m else None
                if area is None:
                    fallback = re.search(r"\b(\d{3,5})\s*(?:SF)?\b", row.row_text)
                    area = float(fallback.group(1)) if fallback else None
                if area is not None:
                    add_record(unit_match.group(1), area, page, row.row_text)

        if len(records) == before:
            for line in lines:
                m = UNIT_AREA_ROW_REGEX.search(line.text)
                if m:
                    add_record(m.group(1), float(m.group(2)), page, line.text)

        if total_occupancy is None:
            hit = _first_match(lines, TOTAL_OCCUPANCY_REGEX)
            if hit:
                total_occupancy = int(hit[0])

    confidence = min(0.9, 0.5 + len(records) * 0.025) if records else 0.1
    return RecipeResult(
        recipe=RecipeType.OCCUPANT_LOAD,
        pages=pages,
        fields={"total_occupancy": total_occupancy, "total_units": len(records) or None},
        unit_records=records,
        evidence=evidence,
        confidence=confidence,
    )


# ============================================================================
# Generic table path
# ============================================================================

def run_generic(pages: List[int], lines_by_page: LinesByPage, items_by_page: ItemsByPage) -> RecipeResult:
    """Count unit-schedule rows on pages no other recipe claimed.

    Records themselves come from the pipeline's table stage; this recipe
    only contributes counts to normalization.
    """
    total = 0
    unit_mix: Dict[str, int] = {}
    evidence = []
    for page in pages:
        for region in reconstruct_tables(items_by_page.get(page, []), page):
            if classify_region(region).table_type != TableType.UNIT_SCHEDULE:
                continue
            for record in parse_table(region).records:
                if record.bedroom_type == BedroomType.UNKNOWN:
                    continue
                total += 1
                key = record.bedroom_type.value
                unit_mix[key] = unit_mix.get(key, 0) + 1
                evidence.append(RecipeEvidence(
                    field="unit_record", page=page, method="TEXT_TABLE", snippet=record.source.evidence[:120]))

    return RecipeResult(
        recipe=RecipeType.GENERIC,
        pages=pages,
        fields={"total_units": total or None, "unit_mix": unit_mix},
        evidence=evidence,
        confidence=min(0.85, 0.3 + total * 0.02) if total else 0.1,
    )


# ============================================================================
# Registry
# ============================================================================

RECIPES: Dict[RecipeType, Recipe] = {
    RecipeType.COVER_SHEET: Recipe(RecipeType.COVER_SHEET, _cover_matches, run_cover_sheet),
    RecipeType.ZONING_SCHEDULE: Recipe(RecipeType.ZONING_SCHEDULE, _zoning_matches, run_zoning_schedule),
    RecipeType.FLOOR_PLAN_LABEL: Recipe(RecipeType.FLOOR_PLAN_LABEL, _floor_plan_matches, run_floor_plan_labels),
    RecipeType.OCCUPANT_LOAD: Recipe(RecipeType.OCCUPANT_LOAD, _occupant_matches, run_occupant_load),
    RecipeType.GENERIC: Recipe(RecipeType.GENERIC, lambda sheet: True, run_generic),
}

# Recipes whose unit records feed deduplication directly
RECORD_RECIPES = {RecipeType.FLOOR_PLAN_LABEL, RecipeType.OCCUPANT_LOAD}


def _parse_override(value: Union[RecipeType, str]) -> Union[RecipeType, str]:
    if isinstance(value, RecipeType):
        return value
    if str(value).lower() == SKIP:
        return SKIP
    return RecipeType(str(value).upper())


def select_recipes(
    sheet_index: SheetIndex,
    overrides: Optional[Mapping[int, Union[RecipeType, str]]] = None,
) -> List[Tuple[Recipe, List[int]]]:
    """Assign pages to recipes.

    A per-page override wins; 'skip' removes the page. Sheets below the
    recognizability threshold are left out. Otherwise the first matching
    non-generic recipe takes the page, and recognizable pages that no
    recipe claimed go to GENERIC.

    Returns:
        (recipe, sorted pages) pairs in registry order
    """
    overrides = {page: _parse_override(v) for page, v in (overrides or {}).items()}
    assigned: Dict[RecipeType, List[int]] = {}

    for sheet in sheet_index.pages:
        page = sheet.page_number
        if page in overrides:
            choice = overrides[page]
            if choice != SKIP:
                assigned.setdefault(choice, []).append(page)
            continue
        if not sheet.recognizable:
            continue
        chosen = next(
            (r.recipe_type for r in RECIPES.values() if r.recipe_type != RecipeType.GENERIC and r.matches(sheet)),
            RecipeType.GENERIC,
        )
        assigned.setdefault(chosen, []).append(page)

    return [(RECIPES[t], sorted(assigned[t])) for t in RECIPES if assigned.get(t)]


def run_recipes(
    selection: Sequence[Tuple[Recipe, List[int]]],
    lines_by_page: LinesByPage,
    items_by_page: ItemsByPage,
    cancel_check: Optional[Callable[[], None]] = None,
) -> Tuple[List[RecipeResult], List[str]]:
    """Run each selected recipe; a failing recipe becomes a warning.

    Returns:
        (results, warnings)
    """
    results = []
    warnings = []
    for recipe, pages in selection:
        if cancel_check is not None:
            cancel_check()
        try:
            result = recipe.run(pages, lines_by_page, items_by_page)
            results.append(result)
            logger.info(
                f"Recipe {recipe.recipe_type.value} on pages {pages}: "
                f"{len(result.unit_records)} records, confidence {result.confidence:.2f}"
            )
        except Exception as e:
            logger.warning(f"Recipe {recipe.recipe_type.value} failed: {e}")
            warnings.append(f"Recipe {recipe.recipe_type.value} failed: {e}")
    return results, warnings
