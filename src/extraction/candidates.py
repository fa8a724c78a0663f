"""Candidate page detection and page relevance for AI extraction."""
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Set, Tuple

from schemas.enums import PageCategory

from .layout import PageLine

logger = logging.getLogger(__name__)

SCHEDULE_TAG = "schedule"
FAR_TAG = "far"

MAX_CANDIDATES = 6
MIN_RELEVANCE_SCORE = 3
MAX_AI_PAGES = 8


@dataclass
class CandidatePage:
    page: int
    score: int
    tags: List[str] = field(default_factory=list)


@dataclass
class PageRelevance:
    page: int
    score: int
    category: PageCategory
    selected: bool = False


# ============================================================================
# Candidate pages for the generic table path
# ============================================================================

SCORING_RULES: List[Tuple[re.Pattern, int, str]] = [
    (re.compile(r"(APARTMENT|DWELLING|RESIDENTIAL)\s+(UNIT|APT)\s+(SCHEDULE|MIX)", re.I), 5, SCHEDULE_TAG),
    (re.compile(r"(UNIT\s+MIX|UNIT\s+COUNT|UNIT\s+SCHEDULE|SCHEDULE\s+OF\s+UNITS)", re.I), 4, SCHEDULE_TAG),
    (re.compile(r"OCCUPANT\s+LOAD", re.I), 4, SCHEDULE_TAG),
    (re.compile(r"BC\s*1004", re.I), 3, SCHEDULE_TAG),
    (re.compile(r"AREA\s+PER\s+OCCUPANT", re.I), 3, SCHEDULE_TAG),
    (re.compile(r"\b(FAR|ZFA|ZONING\s+FLOOR\s+AREA|LOT\s+AREA)\b", re.I), 3, FAR_TAG),
    (re.compile(r"\b(AFFORDABLE|MIH|INCLUSIONARY|UAP|AMI|RESTRICTED)\b", re.I), 3, SCHEDULE_TAG),
    (re.compile(r"TOTAL\s+OCCUPANCY", re.I), 2, SCHEDULE_TAG),
    (re.compile(r"\b(NET|GROSS)\s*(SF|SQ\.?\s*FT|AREA)", re.I), 2, SCHEDULE_TAG),
]


def score_page(lines: Sequence[PageLine]) -> Tuple[int, Set[str]]:
    """Sum rule weights over every line that matches a rule."""
    score = 0
    tags: Set[str] = set()
    for line in lines:
        for regex, weight, tag in SCORING_RULES:
            if regex.search(line.text):
                score += weight
                tags.add(tag)
    return score, tags


def detect_candidate_pages(
    lines_by_page: Dict[int, List[PageLine]],
    max_candidates: int = MAX_CANDIDATES,
) -> List[CandidatePage]:
    """Pick the highest-scoring pages, keeping one schedule and one FAR page.

    Returns:
        Candidates sorted by page number
    """
    scored = []
    for page, lines in lines_by_page.items():
        score, tags = score_page(lines)
        if score > 0:
            scored.append(CandidatePage(page=page, score=score, tags=sorted(tags)))
    scored.sort(key=lambda c: (-c.score, c.page))

    selected = scored[:max_candidates]
    for tag in (SCHEDULE_TAG, FAR_TAG):
        if any(tag in c.tags for c in selected):
            continue
        extra = next((c for c in scored if tag in c.tags and c not in selected), None)
        if extra is not None:
            if len(selected) >= max_candidates:
                selected = selected[:-1]
            selected.append(extra)

    logger.debug(f"Candidate pages: {[(c.page, c.score) for c in selected]}")
    return sorted(selected, key=lambda c: c.page)


# ============================================================================
# Page relevance for AI extraction
# ============================================================================

RELEVANCE_RULES: List[Tuple[re.Pattern, int, PageCategory]] = [
    (re.compile(r"(APARTMENT|DWELLING|RESIDENTIAL)\s+(UNIT|APT)\s+(SCHEDULE|MIX)", re.I), 5, PageCategory.UNIT_SCHEDULE),
    (re.compile(r"(UNIT\s+MIX|UNIT\s+COUNT|UNIT\s+SCHEDULE|SCHEDULE\s+OF\s+UNITS)", re.I), 4, PageCategory.UNIT_SCHEDULE),
    (re.compile(r"OCCUPANT\s+LOAD", re.I), 4, PageCategory.UNIT_SCHEDULE),
    (re.compile(r"BC\s*1004", re.I), 3, PageCategory.UNIT_SCHEDULE),
    (re.compile(r"AREA\s+PER\s+OCCUPANT", re.I), 3, PageCategory.UNIT_SCHEDULE),
    (re.compile(r"(NO\.?\s+OF\s+UNITS|NUMBER\s+OF\s+UNITS|TOTAL\s+UNITS)", re.I), 3, PageCategory.UNIT_SCHEDULE),
    (re.compile(r"\b(NET|GROSS)\s*(SF|SQ\.?\s*FT|AREA)", re.I), 2, PageCategory.UNIT_SCHEDULE),

    (re.compile(r"\b(FAR|ZFA|ZONING\s+FLOOR\s+AREA|LOT\s+AREA)\b", re.I), 3, PageCategory.ZONING_ANALYSIS),
    (re.compile(r"FLOOR\s+AREA\s+RATIO", re.I), 3, PageCategory.ZONING_ANALYSIS),
    (re.compile(r"ZONING\s+(ANALYSIS|COMPLIANCE|SUMMARY|DIAGRAM)", re.I), 4, PageCategory.ZONING_ANALYSIS),
    (re.compile(r"USE\s+GROUP", re.I), 2, PageCategory.ZONING_ANALYSIS),
    (re.compile(r"(PERMITTED|PROPOSED)\s+(FAR|FLOOR\s+AREA)", re.I), 3, PageCategory.ZONING_ANALYSIS),

    (re.compile(r"(COVER\s+SHEET|PROJECT\s+INFORMATION|TITLE\s+SHEET)", re.I), 5, PageCategory.COVER_SHEET),
    (re.compile(r"(PROJECT\s+SUMMARY|PROJECT\s+DATA)", re.I), 4, PageCategory.COVER_SHEET),
    (re.compile(r"SCOPE\s+OF\s+WORK", re.I), 3, PageCategory.COVER_SHEET),
    (re.compile(r"PROPOSED\s+\d+\s*-?\s*(?:UNIT|DWELLING|STORY)", re.I), 3, PageCategory.COVER_SHEET),

    (re.compile(r"\b(AFFORDABLE|MIH|INCLUSIONARY|UAP|RESTRICTED)\b", re.I), 3, PageCategory.AFFORDABLE_HOUSING),
    (re.compile(r"AMI\s*(?:BAND|LEVEL|%)", re.I), 3, PageCategory.AFFORDABLE_HOUSING),
    (re.compile(r"INCOME\s+(?:BAND|LEVEL|RESTRICT)", re.I), 3, PageCategory.AFFORDABLE_HOUSING),
    (re.compile(r"RENT\s+STABIL", re.I), 2, PageCategory.AFFORDABLE_HOUSING),

    (re.compile(r"FLOOR\s+PLAN", re.I), 2, PageCategory.FLOOR_PLAN),
    (re.compile(r"TYPICAL\s+FLOOR", re.I), 2, PageCategory.FLOOR_PLAN),
]

KEY_CATEGORIES = [PageCategory.COVER_SHEET, PageCategory.ZONING_ANALYSIS, PageCategory.UNIT_SCHEDULE]


def score_page_relevance(text: str) -> Tuple[int, Dict[PageCategory, int]]:
    score = 0
    categories: Dict[PageCategory, int] = {}
    for regex, weight, category in RELEVANCE_RULES:
        if regex.search(text):
            score += weight
            categories[category] = categories.get(category, 0) + weight
    return score, categories


def _primary_category(categories: Dict[PageCategory, int]) -> PageCategory:
    if not categories:
        return PageCategory.IRRELEVANT
    # Rule order breaks ties
    return max(categories.items(), key=lambda kv: kv[1])[0]


def classify_pages_for_ai(page_texts: Dict[int, str], max_pages: int = MAX_AI_PAGES) -> List[PageRelevance]:
    """Categorize every page and mark the ones worth sending to the AI extractor.

    The top `max_pages` relevant pages are selected, then the best page
    of any key category (cover, zoning, unit schedule) not yet covered
    is added.

    Args:
        page_texts: Page number -> page text
        max_pages: Cap on pages selected by score

    Returns:
        One PageRelevance per page, in page order
    """
    results = []
    for page, text in sorted(page_texts.items()):
        score, categories = score_page_relevance(text)
        category = _primary_category(categories) if score >= MIN_RELEVANCE_SCORE else PageCategory.IRRELEVANT
        results.append(PageRelevance(page=page, score=score, category=category))

    relevant = sorted(
        (r for r in results if r.score >= MIN_RELEVANCE_SCORE),
        key=lambda r: (-r.score, r.page),
    )
    selected = {r.page for r in relevant[:max_pages]}

    for category in KEY_CATEGORIES:
        if any(r.category == category and r.page in selected for r in results):
            continue
        extra = next((r for r in relevant if r.category == category and r.page not in selected), None)
        if extra is not None:
            selected.add(extra.page)

    for r in results:
        r.selected = r.page in selected
    logger.debug(f"Pages selected for AI: {sorted(selected)}")
    return results


def selected_pages(relevance: Sequence[PageRelevance]) -> List[int]:
    return sorted(r.page for r in relevance if r.selected)
