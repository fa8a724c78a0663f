"""Sheet indexer: classify each page from its title block.

Architectural sheets carry a title block along the bottom edge with the
drawing number (A-101, Z-001, T-000) and the drawing title. The indexer
reads that region, assigns an apparent sheet type and confidence, and
builds lookup tables by drawing number and title word.
"""
import logging
import re
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from preprocessor.text_layer import PageText, PdfText, TextItem
from schemas.enums import SheetMethod, SheetType
from schemas.sheets import SheetIndex, SheetInfo

from .layout import cluster_by_y

logger = logging.getLogger(__name__)

TITLE_BLOCK_FRACTION = 0.2
MIN_TITLE_BLOCK_CHARS = 5

DRAWING_NO_REGEX = re.compile(r"^([A-Z]{1,3}[-.]?\d{1,3}(?:[.-]\d{1,3})?)\b")
ADDRESS_REGEX = re.compile(r"\d+\s+\w+\s+(ST|AVE|BLVD|RD|PL|DR|CT|LN|WAY)\b", re.IGNORECASE)
PROJECT_REGEX = re.compile(r"PROJECT[:\s]", re.IGNORECASE)

SHEET_TYPE_RULES: List[Tuple[re.Pattern, SheetType, float]] = [
    (re.compile(r"ZONING\s*(COMPLIANCE|ANALYSIS|SCHEDULE|DATA)", re.I), SheetType.ZONING_SCHEDULE, 0.5),
    (re.compile(r"(UNIT|APARTMENT|DWELLING\s+UNIT)\s+(SCHEDULE|MIX)", re.I), SheetType.UNIT_SCHEDULE, 0.5),
    (re.compile(r"(COVER|TITLE)\s+SHEET", re.I), SheetType.COVER_SHEET, 0.5),
    (re.compile(r"(FLOOR\s+PLAN|TYPICAL\s+FLOOR|UNIT\s+PLAN)", re.I), SheetType.FLOOR_PLAN, 0.4),
    (re.compile(r"(OCCUPANT\s+LOAD|CODE\s+NOTES|GENERAL\s+CODE)", re.I), SheetType.OCCUPANT_LOAD, 0.4),
]

DRAWING_PREFIX_TYPES = {
    "T": (SheetType.COVER_SHEET, 0.2),
    "Z": (SheetType.ZONING_SCHEDULE, 0.2),
    "G": (SheetType.OCCUPANT_LOAD, 0.1),
    "A": (SheetType.FLOOR_PLAN, 0.1),
}

FALLBACK_CONFIDENCE = {SheetMethod.OCR: 0.3, SheetMethod.PDF_TEXT: 0.2}


def title_block_items(page: PageText, fraction: float = TITLE_BLOCK_FRACTION) -> List[TextItem]:
    """Items in the bottom `fraction` of the page (y grows downward)."""
    if not page.items:
        return []
    height = page.height or max(i.y + i.height for i in page.items)
    threshold = height * (1 - fraction)
    return [i for i in page.items if i.y >= threshold]


def _meaningful_chars(items: Sequence[TextItem]) -> int:
    return sum(len(re.sub(r"\s", "", i.text)) for i in items)


def parse_drawing_no(lines: Sequence[str]) -> Optional[str]:
    for line in lines:
        m = DRAWING_NO_REGEX.match(line.strip())
        if m:
            return m.group(1)
    return None


def parse_drawing_title(lines: Sequence[str], drawing_no_line: Optional[str] = None) -> Optional[str]:
    """The longest line that is not the drawing number line or a bare number."""
    longest = ""
    for line in lines:
        trimmed = line.strip()
        if trimmed == drawing_no_line or re.fullmatch(r"\d+", trimmed):
            continue
        if len(trimmed) > len(longest):
            longest = trimmed
    return longest if len(longest) >= 3 else None


def parse_project_title(lines: Sequence[str]) -> Optional[str]:
    for line in lines:
        if ADDRESS_REGEX.search(line) or PROJECT_REGEX.search(line):
            return line.strip()
    return None


def classify_sheet_type(text: str, drawing_no: Optional[str]) -> Tuple[SheetType, float]:
    """Weighted keyword and drawing-number hits, capped at 1.0."""
    weights: Dict[SheetType, float] = {}
    for regex, sheet_type, weight in SHEET_TYPE_RULES:
        if regex.search(text):
            weights[sheet_type] = weights.get(sheet_type, 0.0) + weight
    if drawing_no:
        prefix = drawing_no[0].upper()
        if prefix in DRAWING_PREFIX_TYPES:
            sheet_type, weight = DRAWING_PREFIX_TYPES[prefix]
            weights[sheet_type] = weights.get(sheet_type, 0.0) + weight

    if not weights:
        return SheetType.UNKNOWN, 0.0
    best = max(weights.items(), key=lambda kv: kv[1])
    return best[0], min(1.0, best[1])


def has_title_block(page: PageText) -> bool:
    """True when the bottom strip carries enough text to read a title block from."""
    return _meaningful_chars(title_block_items(page)) >= MIN_TITLE_BLOCK_CHARS


def _sheet_from_lines(page_number: int, line_texts: List[str], method: SheetMethod, fallback: bool) -> SheetInfo:
    drawing_no = parse_drawing_no(line_texts)
    drawing_no_line = next((l for l in line_texts if drawing_no and drawing_no in l), None)
    drawing_title = parse_drawing_title(line_texts, drawing_no_line.strip() if drawing_no_line else None)
    project_title = parse_project_title(line_texts)

    if fallback:
        base = FALLBACK_CONFIDENCE[method]
    elif drawing_no:
        base = 0.9
    elif drawing_title:
        base = 0.5
    else:
        base = 0.3

    sheet_type, weight = classify_sheet_type("\n".join(line_texts), drawing_no)
    if sheet_type == SheetType.UNKNOWN:
        confidence = min(base, 0.3) if not (drawing_no or drawing_title) else base
    else:
        confidence = min(1.0, base + weight)

    return SheetInfo(
        page_number=page_number,
        drawing_no=drawing_no,
        drawing_title=drawing_title,
        project_title=project_title,
        sheet_type=sheet_type,
        confidence=round(confidence, 2),
        method=method,
    )


def _index_page(page: PageText) -> SheetInfo:
    if has_title_block(page):
        lines = [line.text for line in cluster_by_y(title_block_items(page), page.page_number)]
        return _sheet_from_lines(page.page_number, lines, SheetMethod.PDF_TEXT, fallback=False)
    lines = [l for l in page.text.splitlines() if l.strip()]
    return _sheet_from_lines(page.page_number, lines, SheetMethod.PDF_TEXT, fallback=True)


def index_page_text(page_number: int, text: str) -> SheetInfo:
    """Index a page from OCR text (a full page or a title-block crop)."""
    lines = [l for l in text.splitlines() if l.strip()]
    return _sheet_from_lines(page_number, lines, SheetMethod.OCR, fallback=True)


def _title_key(title: str) -> str:
    return re.sub(r"[^A-Z0-9\s]", "", title.upper()).strip()


def build_sheet_index(pages: Sequence[SheetInfo]) -> SheetIndex:
    """Wrap per-page sheets with drawing-number and title-word lookups."""
    pages = sorted(pages, key=lambda s: s.page_number)
    by_drawing_no: Dict[str, int] = {}
    by_title_key: Dict[str, List[int]] = {}
    for sheet in pages:
        if sheet.drawing_no:
            by_drawing_no.setdefault(sheet.drawing_no, sheet.page_number)
        if sheet.drawing_title:
            for word in _title_key(sheet.drawing_title).split():
                if len(word) < 3:
                    continue
                bucket = by_title_key.setdefault(word, [])
                if sheet.page_number not in bucket:
                    bucket.append(sheet.page_number)
    return SheetIndex(pages=pages, by_drawing_no=by_drawing_no, by_title_key=by_title_key)


def index_sheets(pdf: PdfText, cancel_check: Optional[Callable[[], None]] = None) -> SheetIndex:
    """Build the sheet index for a document from its text layer.

    No OCR runs here; pages OCRed later are re-indexed with `replace_sheets`.

    Args:
        pdf: Extracted text layer
        cancel_check: Called before each page; raises to stop

    Returns:
        SheetIndex with one entry per page and drawing-number/title lookups
    """
    pages = []
    for page in pdf.pages:
        if cancel_check is not None:
            cancel_check()
        pages.append(_index_page(page))

    index = build_sheet_index(pages)
    logger.info(f"Indexed {len(pages)} sheets ({len(index.recognizable_pages)} recognizable)")
    return index


def replace_sheets(index: SheetIndex, sheets: Sequence[SheetInfo]) -> SheetIndex:
    """New index with the given pages swapped in and lookups rebuilt."""
    if not sheets:
        return index
    replaced = {s.page_number: s for s in sheets}
    return build_sheet_index([replaced.pop(s.page_number, s) for s in index.pages] + list(replaced.values()))
