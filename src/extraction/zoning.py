"""Zoning analysis and declared unit-count signals read from page text."""
import logging
import re
from typing import Dict, List, Optional, Sequence, Tuple

from schemas.enums import EvidenceSource, ExtractionMethod
from schemas.plan_data import ExtractedField, FarExtraction, RawSnippet, UnitCountMention, UnitSource, ZoningFields

from .layout import PageLine

logger = logging.getLogger(__name__)

FAR_MIN = 0.1
FAR_MAX = 15.0
UNIT_MENTION_MIN = 1
UNIT_MENTION_MAX = 500

_NUM = r"([0-9][0-9,]*(?:\.\d+)?)"
_SF = r"\s*(?:SF|SQ\.?\s*FT|SQUARE\s*FEET)?"


def parse_number(raw: str) -> Optional[float]:
    cleaned = re.sub(r"[^\d.]", "", raw.replace(",", ""))
    try:
        return float(cleaned)
    except ValueError:
        return None


def _snippet(text: str, m: re.Match, radius: int = 30) -> str:
    start = max(0, m.start() - radius)
    end = min(len(text), m.end() + radius)
    return " ".join(text[start:end].split())


# ============================================================================
# FAR figures from zoning lines
# ============================================================================

FAR_LINE_PATTERNS = {
    "lot_area": re.compile(rf"LOT\s*AREA[:\s]*{_NUM}{_SF}", re.IGNORECASE),
    "zfa": re.compile(
        rf"(?:ZONING\s*FLOOR\s*AREA|TOTAL\s*ZFA|RES(?:IDENTIAL)?\s*ZFA|\bZFA)[:\s]*{_NUM}{_SF}", re.IGNORECASE
    ),
    "proposed": re.compile(
        rf"PROPOSED\s*(?:FLOOR\s*AREA|GFA|TOTAL\s*AREA|ZFA)[:\s]*{_NUM}{_SF}", re.IGNORECASE
    ),
    "far": re.compile(r"\b(?:FAR|F\.A\.R)\b\.?[:\s=]*([0-9]+(?:\.\d+)?)", re.IGNORECASE),
}


def extract_far_from_lines(lines: Sequence[PageLine], page: int) -> Optional[FarExtraction]:
    """Read lot area, ZFA, proposed floor area and FAR from a page's lines.

    FAR is derived from proposed floor area (or ZFA) over lot area when not
    printed. Returns None when nothing was found.
    """
    values: Dict[str, Optional[float]] = {"lot_area": None, "zfa": None, "proposed": None, "far": None}
    evidence = []

    for line in lines:
        for key, pattern in FAR_LINE_PATTERNS.items():
            if values[key] is not None:
                continue
            m = pattern.search(line.text)
            if not m:
                continue
            value = parse_number(m.group(1))
            if value is None or value <= 0:
                continue
            if key == "far" and not (FAR_MIN <= value <= FAR_MAX):
                continue
            values[key] = value
            evidence.append(m.group(0).strip())

    if all(v is None for v in values.values()):
        return None

    lot, zfa, proposed, far = values["lot_area"], values["zfa"], values["proposed"], values["far"]
    if far is None and lot:
        numerator = proposed or zfa
        if numerator:
            far = round(numerator / lot, 2)

    confidence = 0.5
    if lot:
        confidence += 0.15
    if far:
        confidence += 0.15
    if zfa or proposed:
        confidence += 0.1

    return FarExtraction(
        lot_area_sf=lot,
        zoning_floor_area_sf=zfa,
        proposed_floor_area_sf=proposed,
        proposed_far=far,
        source=UnitSource(page=page, method=ExtractionMethod.TEXT_TABLE, evidence=" / ".join(evidence)[:200]),
        confidence=min(0.95, confidence),
    )


# ============================================================================
# Zoning analysis fields
# ============================================================================

ZONING_FIELD_PATTERNS: List[Tuple[str, re.Pattern, str]] = [
    ("lot_area", re.compile(rf"LOT\s*AREA[:\s]*(?:APPROX\.?\s*)?{_NUM}{_SF}", re.IGNORECASE), "number"),
    ("resid_far", re.compile(
        r"RESID(?:ENTIAL)?\.?\s*(?:F\.?A\.?R\.?(?![A-Z])|FLOOR\s*AREA\s*RATIO)[:\s]*([0-9]+(?:\.\d+)?)",
        re.IGNORECASE), "far"),
    ("far", re.compile(
        r"(?:MAX(?:IMUM)?\s+)?\b(?:F\.?A\.?R\.?(?![A-Z])|FLOOR\s*AREA\s*RATIO)[:\s=]*([0-9]+(?:\.\d+)?)",
        re.IGNORECASE), "far"),
    ("zoning_floor_area", re.compile(
        rf"(?:ZONING|MAX(?:IMUM)?|ALLOWABLE)\s*(?:FLOOR\s*AREA|ZFA|GFA)[:\s]*{_NUM}{_SF}", re.IGNORECASE), "number"),
    ("proposed_floor_area", re.compile(
        rf"PROPOSED\s*(?:FLOOR\s*AREA|GFA|GSF|TOTAL\s*AREA)[:\s]*{_NUM}{_SF}", re.IGNORECASE), "number"),
    ("total_units", re.compile(
        r"(?:#\s*(?:OF\s+)?UNITS|NUMBER\s*OF\s*(?:DWELLING\s*)?UNITS|(?:DWELLING\s*)?UNITS)[:\s]*(\d{1,4})\b",
        re.IGNORECASE), "number"),
    ("building_area", re.compile(rf"(?:BLDG|BUILDING)\s*AREA[:\s]*{_NUM}{_SF}", re.IGNORECASE), "number"),
    ("floors", re.compile(
        r"(?:#\s*(?:OF\s+)?FLOORS|NUMBER\s*OF\s*(?:FLOORS|STORIES)|STORIES)[:\s]*(\d{1,3})\b", re.IGNORECASE),
        "number"),
    ("zone_district", re.compile(r"\b(?:ZONE|ZONING\s*DISTRICT)[:\s]*((?:R|C|M)\d{1,2}(?:-\d[A-Z]?|[A-Z])?)\b",
                                 re.IGNORECASE), "string"),
    ("bin", re.compile(r"\bBIN[:#\s]*(\d{7})\b", re.IGNORECASE), "string"),
]

FIELD_CONFIDENCE = 0.7
STRING_FIELD_CONFIDENCE = 0.75


def extract_zoning_fields(page_texts: Dict[int, str]) -> Tuple[ZoningFields, List[RawSnippet]]:
    """Regex pass over all pages for zoning analysis values.

    Each value keeps the first page it was found on. FAR and ZFA are
    cross-validated against lot area.
    """
    found: Dict[str, ExtractedField] = {}
    snippets: List[RawSnippet] = []

    for name, pattern, kind in ZONING_FIELD_PATTERNS:
        for page, text in sorted(page_texts.items()):
            match_value = None
            for m in pattern.finditer(text):
                if kind == "string":
                    match_value = m.group(1).strip().upper()
                else:
                    value = parse_number(m.group(1))
                    if value is None or value <= 0:
                        continue
                    if kind == "far" and not (FAR_MIN <= value <= FAR_MAX):
                        continue
                    match_value = int(value) if name in ("total_units", "floors") else value
                if match_value is not None:
                    snippets.append(RawSnippet(page=page, text=_snippet(text, m), target="zoning_analysis"))
                    break
            if match_value is not None:
                found[name] = ExtractedField(
                    value=match_value,
                    confidence=STRING_FIELD_CONFIDENCE if kind == "string" else FIELD_CONFIDENCE,
                    page_number=page,
                    source=EvidenceSource.ZONING_TEXT.value,
                )
                break

    _cross_validate(found)
    return ZoningFields(**found), snippets


def _cross_validate(found: Dict[str, ExtractedField]) -> None:
    lot, zfa = found.get("lot_area"), found.get("zoning_floor_area")
    far = found.get("far")
    if not (lot and zfa and far):
        return
    implied = float(zfa.value) / float(lot.value) if float(lot.value) > 0 else 0
    agrees = abs(implied - float(far.value)) <= float(far.value) * 0.05
    for key in ("lot_area", "zoning_floor_area", "far"):
        f = found[key]
        confidence = f.confidence + 0.1 if agrees else f.confidence - 0.15
        found[key] = f.model_copy(update={"confidence": max(0.0, min(1.0, round(confidence, 2)))})
    if not agrees:
        logger.info(f"Zoning values do not reconcile: ZFA/lot = {implied:.2f}, FAR = {far.value}")


# ============================================================================
# Declared unit counts
# ============================================================================

COVER_KEYWORDS = ["COVER SHEET", "PROJECT INFORMATION", "TITLE SHEET", "PROJECT SUMMARY", "PROJECT DATA"]

ZONING_GATE_KEYWORDS = [
    "FAR", "LOT AREA", "ZONING", "FLOOR AREA RATIO", "ZFA", "USE GROUP",
    "ZONING FLOOR AREA", "PERMITTED", "PROPOSED",
]

DECLARED_UNIT_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"PROPOSED\s+(\d{1,4})\s+(?:NEW\s+)?(?:RESIDENTIAL\s+)?(?:DWELLING\s+)?UNITS?\b",
    r"(\d{1,4})\s+PROPOSED\s+(?:DWELLING\s+)?UNITS?\b",
    r"(\d{1,4})\s*-?\s*UNIT\s+(?:APARTMENT|RESIDENTIAL|DWELLING)\s+(?:BUILDING|PROJECT)",
    r"TOTAL\s+(?:NUMBER\s+OF\s+)?(?:RESIDENTIAL\s+)?(?:DWELLING\s+)?UNITS[:\s]*(\d{1,4})\b",
    r"(\d{1,4})\s+(?:NEW\s+)?(?:RESIDENTIAL\s+)?DWELLING\s+UNITS",
    r"NUMBER\s+OF\s+UNITS[:\s]*(\d{1,4})\b",
    r"(?:CONTAINS|CONSISTING\s+OF|COMPRISING)\s+(\d{1,4})\s+(?:DWELLING\s+)?UNITS",
    r"\bDU[:\s]+(\d{1,4})\b",
    r"\b(\d{1,4})\s+DUs?\b",
)]

ZONING_UNIT_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"TOTAL\s+DWELLING\s+UNITS[:\s]*(\d{1,4})\b",
    r"DWELLING\s+UNITS[:\s]*(\d{1,4})\b",
    r"RESIDENTIAL\s+UNITS[:\s]*(\d{1,4})\b",
    r"(?:TOTAL|MAX(?:IMUM)?)\s+(?:ALLOWABLE\s+)?UNITS[:\s]*(\d{1,4})\b",
    r"PROPOSED\s+(\d{1,4})\s+(?:DWELLING\s+)?UNITS",
    r"\bDU[:\s]+(\d{1,4})\b",
)]


def is_cover_page(text: str) -> bool:
    upper = text.upper()
    return any(kw in upper for kw in COVER_KEYWORDS)


def is_zoning_page(text: str) -> bool:
    upper = text.upper()
    return sum(1 for kw in ZONING_GATE_KEYWORDS if kw in upper) >= 2


def _mentions(
    pages: Dict[int, str],
    patterns: Sequence[re.Pattern],
    source_type: EvidenceSource,
    confidence: float,
) -> List[UnitCountMention]:
    mentions = []
    for pattern in patterns:
        for page, text in sorted(pages.items()):
            for m in pattern.finditer(text):
                value = int(m.group(1))
                if UNIT_MENTION_MIN <= value <= UNIT_MENTION_MAX:
                    mentions.append(UnitCountMention(
                        value=value, page=page, source_type=source_type,
                        snippet=_snippet(text, m), confidence=confidence,
                    ))
    return mentions


def collect_unit_count_mentions(page_texts: Dict[int, str]) -> List[UnitCountMention]:
    """Declared total unit counts from cover and zoning pages.

    Deduplicated per (source, page, value).
    """
    cover = {p: t for p, t in page_texts.items() if is_cover_page(t)}
    zoning = {p: t for p, t in page_texts.items() if is_zoning_page(t)}

    mentions = _mentions(cover, DECLARED_UNIT_PATTERNS, EvidenceSource.COVER_SHEET, 0.9)
    mentions += _mentions(zoning, ZONING_UNIT_PATTERNS, EvidenceSource.ZONING_TEXT, 0.85)

    seen = set()
    unique = []
    for m in mentions:
        key = (m.source_type, m.page, m.value)
        if key not in seen:
            seen.add(key)
            unique.append(m)
    return unique


def redundancy_score(mentions: Sequence[UnitCountMention], tolerance: int = 2) -> float:
    """Score agreement among independent unit-count sources.

    3+ agreeing sources 0.95, 2 agreeing 0.85, a single source 0.6, else 0.3.
    """
    if not mentions:
        return 0.3
    best = 0
    for anchor in mentions:
        sources = {m.source_type for m in mentions if abs(m.value - anchor.value) <= tolerance}
        best = max(best, len(sources))
    if best >= 3:
        return 0.95
    if best == 2:
        return 0.85
    if best == 1:
        return 0.6
    return 0.3
