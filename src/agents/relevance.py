"""Page selection and typing for AI extraction."""
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

from schemas.enums import RecipeType
from schemas.sheets import RecipeResult, SheetIndex

logger = logging.getLogger(__name__)

MAX_PAGES = 12
MAX_CHARS_PER_PAGE = 4000
MIN_CHARS_PER_PAGE = 20

COVER_SHEET = "COVER_SHEET"
ZONING = "ZONING"
OCCUPANT_LOAD = "OCCUPANT_LOAD"
FLOOR_PLAN = "FLOOR_PLAN"
GENERAL = "GENERAL"

# Lower index is sent first when the page cap applies
PAGE_TYPE_PRIORITY = [COVER_SHEET, ZONING, OCCUPANT_LOAD, FLOOR_PLAN, GENERAL]

RECIPE_PAGE_TYPES = {
    RecipeType.COVER_SHEET: COVER_SHEET,
    RecipeType.ZONING_SCHEDULE: ZONING,
    RecipeType.OCCUPANT_LOAD: OCCUPANT_LOAD,
    RecipeType.FLOOR_PLAN_LABEL: FLOOR_PLAN,
}


@dataclass
class PageInput:
    """One page of text sent to the extraction model."""
    page: int
    type: str
    text: str


def _sheet_page_type(drawing_no: str, title: str) -> str:
    if re.match(r"^T[-.]?\d", drawing_no) or re.search(r"COVER|TITLE", title):
        return COVER_SHEET
    if re.match(r"^Z[-.]?\d", drawing_no) or "ZONING" in title:
        return ZONING
    if re.match(r"^G[-.]?\d", drawing_no) or re.search(r"OCCUPANT|CODE", title):
        return OCCUPANT_LOAD
    if re.search(r"FLOOR\s+PLAN|TYPICAL\s+FLOOR|UNIT\s+PLAN", title):
        return FLOOR_PLAN
    return GENERAL


def page_type_hints(
    sheet_index: Optional[SheetIndex],
    recipe_results: Sequence[RecipeResult] = (),
) -> Dict[int, str]:
    """Type each indexed page, preferring the recipe that handled it.

    Returns:
        Page -> COVER_SHEET, ZONING, OCCUPANT_LOAD, FLOOR_PLAN or GENERAL
    """
    hints: Dict[int, str] = {}
    if sheet_index is not None:
        for sheet in sheet_index.pages:
            hints[sheet.page_number] = _sheet_page_type(
                (sheet.drawing_no or "").upper(), (sheet.drawing_title or "").upper()
            )
    for result in recipe_results:
        page_type = RECIPE_PAGE_TYPES.get(result.recipe, GENERAL)
        for page in result.pages:
            hints[page] = page_type
    return hints


def build_page_inputs(
    page_texts: Mapping[int, str],
    hints: Optional[Mapping[int, str]] = None,
    max_pages: int = MAX_PAGES,
    max_chars: int = MAX_CHARS_PER_PAGE,
    min_chars: int = MIN_CHARS_PER_PAGE,
) -> List[PageInput]:
    """Select, type and truncate pages for the extraction prompt.

    Pages with fewer than `min_chars` characters are skipped. The rest are
    ordered by page-type priority, then page number, and capped.
    """
    hints = hints or {}
    inputs = []
    for page in sorted(page_texts):
        text = (page_texts[page] or "").strip()
        if len(text) < min_chars:
            continue
        inputs.append(PageInput(page=page, type=hints.get(page, GENERAL), text=text[:max_chars]))

    inputs.sort(key=lambda p: (PAGE_TYPE_PRIORITY.index(p.type) if p.type in PAGE_TYPE_PRIORITY else len(PAGE_TYPE_PRIORITY), p.page))
    if len(inputs) > max_pages:
        logger.info(f"{len(inputs)} pages eligible for AI extraction; sending {max_pages}")
    return inputs[:max_pages]
