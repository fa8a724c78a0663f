"""Unit row parsing, totals rows and record deduplication.

Table rows are parsed through a header-derived column mapping (TEXT_TABLE).
Free text lines, native or OCR, go through a token-based parser
(TEXT_REGEX / OCR). Deduplication collapses the passes into one record
per unit, keeping the most trusted method.
"""
import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from schemas.enums import Allocation, BedroomType, ExtractionMethod, METHOD_TRUST_RANK
from schemas.plan_data import UnitMixCounts, UnitMixTotals, UnitRecord, UnitSource, UnitTotals

from .layout import TableRegion, TableRow

logger = logging.getLogger(__name__)


# ============================================================================
# Column mapping
# ============================================================================

HEADER_SYNONYMS: Dict[str, List[str]] = {
    "unit_id": ["UNIT", "APT", "APARTMENT", "ROOM", "ELEMENT", "NO", "NUMBER"],
    "bedroom": ["BR", "BED", "BEDROOMS", "BEDROOM", "TYPE"],
    "area": ["NSF", "NET", "GROSS", "GSF", "SQFT", "SF", "AREA", "NSA", "SQ FT", "SQUARE FEET"],
    "allocation": ["AFFORDABLE", "MIH", "INCLUSIONARY", "RESTRICTED", "ALLOCATION", "TENURE", "STATUS"],
    "ami_band": ["AMI", "%AMI", "INCOME", "BAND"],
}

# A header cell describing both (e.g. "UNIT AREA") belongs to the more specific field
FIELD_PRIORITY = ["ami_band", "allocation", "area", "bedroom", "unit_id"]

# Field name -> header column index
ColumnMapping = Dict[str, int]


def _header_matches(text: str, synonyms: Sequence[str]) -> bool:
    normalized = re.sub(r"[^\w\s%]", " ", text.upper())
    tokens = normalized.split()
    for syn in synonyms:
        if " " in syn:
            if syn in " ".join(tokens):
                return True
        elif syn in tokens:
            return True
    return False


def infer_column_mapping(headers: Sequence[str]) -> ColumnMapping:
    """Map canonical fields to header columns by synonym vocabulary.

    Each header cell maps to at most one field and each field to the first
    header cell that matches it.
    """
    mapping: ColumnMapping = {}
    used = set()
    for field_name in FIELD_PRIORITY:
        for ci, header in enumerate(headers):
            if ci in used:
                continue
            if _header_matches(header, HEADER_SYNONYMS[field_name]):
                mapping[field_name] = ci
                used.add(ci)
                break
    return mapping


def align_cells(row: TableRow, header: TableRow) -> List[str]:
    """Assign a data row's cells to header columns.

    A cell goes to the header column it overlaps most horizontally, or the
    one with the nearest center when it overlaps none.
    """
    aligned = [""] * len(header.cells)
    if not header.cells:
        return aligned
    for cell in row.cells:
        best_idx, best_overlap = None, 0.0
        for hi, h in enumerate(header.cells):
            overlap = min(cell.x1, h.x1) - max(cell.x0, h.x0)
            if overlap > best_overlap:
                best_idx, best_overlap = hi, overlap
        if best_idx is None:
            best_idx = min(range(len(header.cells)), key=lambda hi: abs(header.cells[hi].center - cell.center))
        aligned[best_idx] = f"{aligned[best_idx]} {cell.text}".strip()
    return aligned


# ============================================================================
# Field detectors
# ============================================================================

BEDROOM_PATTERNS: List[Tuple[BedroomType, int, re.Pattern]] = [
    (BedroomType.STUDIO, 0, re.compile(r"\b(STUDIO|EFF|EFFICIENCY|0\s*BR|0\s*BED)\b", re.IGNORECASE)),
    (BedroomType.BR1, 1, re.compile(r"\b1(\.0)?\s*(BR|BED(ROOM)?S?)\b", re.IGNORECASE)),
    (BedroomType.BR2, 2, re.compile(r"\b2(\.0)?\s*(BR|BED(ROOM)?S?)\b", re.IGNORECASE)),
    (BedroomType.BR3, 3, re.compile(r"\b3(\.0)?\s*(BR|BED(ROOM)?S?)\b", re.IGNORECASE)),
    (BedroomType.BR4_PLUS, 4, re.compile(r"\b[4-6](\.\d+)?\s*(BR|BED(ROOM)?S?)\b", re.IGNORECASE)),
]

BEDROOM_BY_COUNT = {count: btype for btype, count, _ in BEDROOM_PATTERNS}

UNIT_ID_REGEX = re.compile(
    r"\b(?:UNIT|APT|APARTMENT)?\s*([A-Z]?\d{1,4}[A-Z]?(?:-\d{1,4})?|PH\d+|PENTHOUSE\s*\d+)\b",
    re.IGNORECASE,
)
UNIT_ID_TOKEN = re.compile(r"^([A-Z]?\d{1,4}[A-Z]?(?:-\d{1,4})?|PH\d+)$", re.IGNORECASE)
UNIT_TYPE_CODE = re.compile(r"^[A-Z]{1,2}\d{0,2}$")
MIH_ALLOCATION_REGEX = re.compile(r"\b(MIH|INCLUSIONARY|RESTRICTED|AFFORDABLE|UAP)\b", re.IGNORECASE)
MARKET_ALLOCATION_REGEX = re.compile(r"\b(MARKET|FREE\s*MARKET|MR)\b", re.IGNORECASE)
AMI_BAND_REGEX = re.compile(r"\b(40|50|60|70|80|90|100|110|120|130)\s*%?\s*AMI\b", re.IGNORECASE)
AMI_BARE_REGEX = re.compile(r"^\s*(\d{2,3})\s*%?\s*$")
AREA_WITH_UNIT_REGEX = re.compile(r"\b(\d{3,5}(?:\.\d+)?)\s*(?:SF|SQ\.?\s*FT|SQUARE\s*FEET)\b", re.IGNORECASE)
AREA_STANDALONE_REGEX = re.compile(r"\b(\d{3,5})\b")
TOTAL_REGEX = re.compile(r"\bTOTALS?\b", re.IGNORECASE)

MIN_AREA_SF = 200
MAX_AREA_SF = 5000


def _strip_thousands(text: str) -> str:
    return re.sub(r"(?<=\d),(?=\d{3}\b)", "", text)


def detect_bedroom(text: str, bare_count: bool = False) -> Tuple[BedroomType, Optional[int]]:
    """Return (bedroom type, bedroom count) from free text.

    Args:
        text: Cell or line text
        bare_count: Accept a bare 0-6 as a bedroom count (mapped bedroom column)
    """
    for btype, count, pattern in BEDROOM_PATTERNS:
        if pattern.search(text):
            return btype, count
    if bare_count:
        m = re.fullmatch(r"\s*([0-6])(?:\.0)?\s*", text)
        if m:
            count = int(m.group(1))
            return BEDROOM_BY_COUNT.get(min(count, 4), BedroomType.UNKNOWN), count
    return BedroomType.UNKNOWN, None


def detect_allocation(text: str) -> Allocation:
    if MIH_ALLOCATION_REGEX.search(text):
        return Allocation.MIH_RESTRICTED
    if MARKET_ALLOCATION_REGEX.search(text):
        return Allocation.MARKET
    return Allocation.UNKNOWN


def detect_ami_band(text: str, bare_percent: bool = False) -> Optional[int]:
    m = AMI_BAND_REGEX.search(text)
    if m:
        return int(m.group(1))
    if bare_percent:
        m = AMI_BARE_REGEX.match(text)
        if m and 30 <= int(m.group(1)) <= 165:
            return int(m.group(1))
    return None


def detect_unit_id(text: str) -> Optional[str]:
    m = UNIT_ID_REGEX.search(text)
    if not m:
        return None
    return re.sub(r"\s+", "", m.group(1)).upper()


def detect_area(text: str) -> Optional[float]:
    text = _strip_thousands(text)
    m = AREA_WITH_UNIT_REGEX.search(text)
    if m:
        return float(m.group(1))
    for m in AREA_STANDALONE_REGEX.finditer(text):
        value = int(m.group(1))
        if MIN_AREA_SF <= value <= MAX_AREA_SF:
            return float(value)
    return None


# ============================================================================
# Row parsing
# ============================================================================

def parse_unit_row(
    cells: Sequence[str],
    mapping: ColumnMapping,
    page: int,
    method: ExtractionMethod = ExtractionMethod.TEXT_TABLE,
) -> Optional[UnitRecord]:
    """Parse one table data row into a UnitRecord.

    Args:
        cells: Cell texts aligned to header columns (see align_cells)
        mapping: Field -> column index
        page: 1-indexed page number
        method: Extraction method label for the record

    Returns:
        UnitRecord, or None for TOTAL rows and rows with neither a
        bedroom nor an area signal
    """
    full_text = " ".join(c for c in cells if c).strip()
    if len(full_text) < 2 or TOTAL_REGEX.search(full_text):
        return None

    def cell(field_name: str) -> Optional[str]:
        idx = mapping.get(field_name)
        if idx is None or idx >= len(cells):
            return None
        return cells[idx]

    bed_cell = cell("bedroom")
    bedroom_type, bedroom_count = detect_bedroom(bed_cell if bed_cell is not None else full_text,
                                                 bare_count=bed_cell is not None)
    unit_type_code = None
    if bedroom_type == BedroomType.UNKNOWN and bed_cell and UNIT_TYPE_CODE.match(bed_cell.strip().upper()):
        unit_type_code = bed_cell.strip().upper()

    area_cell = cell("area")
    area_sf = detect_area(area_cell) if area_cell is not None else None

    if bedroom_type == BedroomType.UNKNOWN and area_sf is None:
        return None

    alloc_cell = cell("allocation")
    allocation = detect_allocation(alloc_cell if alloc_cell is not None else full_text)

    ami_cell = cell("ami_band")
    ami_band = detect_ami_band(ami_cell if ami_cell is not None else full_text,
                               bare_percent=ami_cell is not None)

    unit_cell = cell("unit_id")
    unit_id = detect_unit_id(unit_cell) if unit_cell else None

    return UnitRecord(
        unit_id=unit_id,
        bedroom_type=bedroom_type,
        bedroom_count=bedroom_count,
        unit_type_code=unit_type_code,
        allocation=allocation,
        ami_band=ami_band,
        area_sf=area_sf,
        source=UnitSource(page=page, method=method, evidence=full_text[:200]),
    )


def parse_unit_line(text: str, page: int, method: ExtractionMethod = ExtractionMethod.TEXT_REGEX) -> Optional[UnitRecord]:
    """Parse a free text line (native or OCR) into a UnitRecord.

    Needs a unit id or a bedroom type.
    """
    text = text.strip()
    if len(text) < 3 or TOTAL_REGEX.search(text):
        return None

    remaining = _strip_thousands(text)
    bedroom_type, bedroom_count = BedroomType.UNKNOWN, None
    for btype, count, pattern in BEDROOM_PATTERNS:
        m = pattern.search(remaining)
        if m:
            bedroom_type, bedroom_count = btype, count
            remaining = remaining[:m.start()] + " " + remaining[m.end():]
            break

    tokens = remaining.split()
    if tokens and tokens[0].upper() in ("UNIT", "APT", "APARTMENT"):
        tokens = tokens[1:]

    unit_id = None
    if tokens and UNIT_ID_TOKEN.match(tokens[0]) and (len(tokens) > 1 or bedroom_type != BedroomType.UNKNOWN):
        unit_id = tokens[0].upper()
        tokens = tokens[1:]

    rest = " ".join(tokens)
    area_sf = None
    m = AREA_WITH_UNIT_REGEX.search(rest)
    if m:
        area_sf = float(m.group(1))
    else:
        in_range = [int(t) for t in tokens if t.isdigit() and MIN_AREA_SF <= int(t) <= MAX_AREA_SF]
        if in_range:
            area_sf = float(in_range[-1])

    if bedroom_type == BedroomType.UNKNOWN and unit_id is None:
        return None

    return UnitRecord(
        unit_id=unit_id,
        bedroom_type=bedroom_type,
        bedroom_count=bedroom_count,
        allocation=detect_allocation(text),
        ami_band=detect_ami_band(text),
        area_sf=area_sf,
        source=UnitSource(page=page, method=method, evidence=text[:200]),
    )


@dataclass
class TableParseResult:
    records: List[UnitRecord]
    mapping: ColumnMapping
    dropped_rows: int
    totals_value: Optional[int]


def parse_table(region: TableRegion) -> TableParseResult:
    """Parse every data row of a reconstructed table."""
    headers = [c.text for c in region.header_row.cells]
    mapping = infer_column_mapping(headers)
    records = []
    dropped = 0
    for row in region.data_rows:
        if TOTAL_REGEX.search(row.row_text):
            continue
        record = parse_unit_row(align_cells(row, region.header_row), mapping, region.page)
        if record is None:
            dropped += 1
            logger.debug(f"Page {region.page}: dropped row '{row.row_text[:60]}'")
            continue
        records.append(record)

    totals = extract_totals_row(region.data_rows)
    return TableParseResult(
        records=records,
        mapping=mapping,
        dropped_rows=dropped,
        totals_value=totals[0] if totals else None,
    )


# A 1-4 digit count that is neither part of a larger/decimal/thousands number nor an area
TOTAL_COUNT_REGEX = re.compile(r"(?<![\d,.])(\d{1,4})(?![\d,.])(?!\s*(?:SF|SQ\.?\s*FT)\b)", re.IGNORECASE)


def extract_totals_row(rows: Sequence[TableRow]) -> Optional[Tuple[int, str]]:
    """Find a TOTAL row and return (unit count, row text)."""
    for row in rows:
        if not TOTAL_REGEX.search(row.row_text):
            continue
        for m in TOTAL_COUNT_REGEX.finditer(row.row_text):
            value = int(m.group(1))
            if 0 < value < 2000:
                return value, row.row_text[:200]
    return None


def totals_consistent(totals_value: Optional[int], parsed_count: int, tolerance: int = 2) -> bool:
    return totals_value is not None and abs(totals_value - parsed_count) <= tolerance


# ============================================================================
# Deduplication and totals
# ============================================================================

def normalize_unit_id(unit_id: str) -> str:
    normalized = re.sub(r"\s+", "", unit_id.upper())
    return re.sub(r"^(UNIT|APT|APARTMENT)", "", normalized) or normalized


def _populated_fields(r: UnitRecord) -> int:
    return sum([
        r.unit_id is not None,
        r.bedroom_type != BedroomType.UNKNOWN,
        r.bedroom_count is not None,
        r.allocation != Allocation.UNKNOWN,
        r.ami_band is not None,
        r.area_sf is not None,
    ])


def _base_key(r: UnitRecord) -> str:
    area = int(r.area_sf) if r.area_sf is not None else "-"
    ami = r.ami_band if r.ami_band is not None else "-"
    return f"p{r.source.page}|{r.bedroom_type.value}|{area}|{r.allocation.value}|{ami}"


def record_identity(records: Sequence[UnitRecord]) -> List[str]:
    """Identity per record: normalized unit id, stamped key, or a synthesized key.

    Synthesized keys count identical id-less records per method, so the
    n-th such row from one pass matches the n-th from another.
    """
    ordinals: Counter = Counter()
    keys = []
    for r in records:
        if r.unit_id:
            keys.append(f"id:{normalize_unit_id(r.unit_id)}")
        elif r.record_key:
            keys.append(r.record_key)
        else:
            base = _base_key(r)
            ordinal = ordinals[(r.source.method, base)]
            ordinals[(r.source.method, base)] += 1
            keys.append(f"{base}#{ordinal}")
    return keys


def deduplicate_records(records: Sequence[UnitRecord]) -> List[UnitRecord]:
    """Collapse records that describe the same unit.

    The kept record is the most trusted method (TEXT_TABLE > TEXT_REGEX > OCR),
    then the one with more populated fields, then the first seen. Discarded
    duplicates are appended to its evidence trail. Idempotent.
    """
    keys = record_identity(records)
    groups: Dict[str, List[int]] = {}
    for idx, key in enumerate(keys):
        groups.setdefault(key, []).append(idx)

    result = []
    for key, indices in groups.items():
        winner_idx = min(
            indices,
            key=lambda i: (METHOD_TRUST_RANK[records[i].source.method], -_populated_fields(records[i]), i),
        )
        winner = records[winner_idx]
        trail = list(winner.evidence_trail)
        for i in indices:
            if i == winner_idx:
                continue
            loser = records[i]
            trail.append(f"{loser.source.method.value} p{loser.source.page}: {loser.source.evidence}")
            trail.extend(loser.evidence_trail)

        update = {}
        if trail != winner.evidence_trail:
            update["evidence_trail"] = trail
        if not winner.unit_id and winner.record_key != key:
            update["record_key"] = key
        result.append(winner.model_copy(update=update) if update else winner)

    if len(result) < len(records):
        logger.info(f"Deduplicated {len(records)} records to {len(result)}")
    return result


def compute_totals(records: Sequence[UnitRecord]) -> UnitMixTotals:
    by_bedroom: Dict[str, int] = {}
    by_allocation: Dict[str, int] = {}
    by_alloc_bed: Dict[str, Dict[str, int]] = {}
    by_ami: Dict[str, int] = {}

    for r in records:
        bed = r.bedroom_type.value
        alloc = r.allocation.value
        by_bedroom[bed] = by_bedroom.get(bed, 0) + 1
        by_allocation[alloc] = by_allocation.get(alloc, 0) + 1
        by_alloc_bed.setdefault(alloc, {})
        by_alloc_bed[alloc][bed] = by_alloc_bed[alloc].get(bed, 0) + 1
        if r.ami_band is not None:
            key = f"{r.ami_band}%"
            by_ami[key] = by_ami.get(key, 0) + 1

    return UnitMixTotals(
        total_units=len(records),
        by_bedroom_type=by_bedroom,
        by_allocation=by_allocation,
        by_allocation_and_bedroom=by_alloc_bed,
        by_ami_band=by_ami or None,
    )


def unit_totals(records: Sequence[UnitRecord]) -> UnitTotals:
    return UnitTotals(
        total_units=len(records),
        affordable_units=sum(1 for r in records if r.is_affordable),
        market_units=sum(1 for r in records if r.allocation == Allocation.MARKET),
    )


def unit_mix_counts(by_bedroom_type: Dict[str, int]) -> UnitMixCounts:
    """Flatten bedroom counts for the unit-mix optimizer. UNKNOWN is not counted."""
    return UnitMixCounts(
        studio=by_bedroom_type.get(BedroomType.STUDIO.value, 0),
        br1=by_bedroom_type.get(BedroomType.BR1.value, 0),
        br2=by_bedroom_type.get(BedroomType.BR2.value, 0),
        br3=by_bedroom_type.get(BedroomType.BR3.value, 0),
        br4plus=by_bedroom_type.get(BedroomType.BR4_PLUS.value, 0),
    )
