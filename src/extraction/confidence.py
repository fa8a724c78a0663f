"""Page and document confidence scoring, and the fixed warning rule set."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from schemas.enums import Allocation, BedroomType, ExtractionMethod, TextYield
from schemas.plan_data import UnitRecord
from schemas.snapshot import PageScore

from .config import confidence_weights

logger = logging.getLogger(__name__)


@dataclass
class PageSignals:
    """Extraction signals observed on one page."""
    page: int
    table_detected: bool = False
    mapped_columns: int = 0
    totals_found: bool = False
    totals_consistent: bool = False
    rows: int = 0
    ocr_used: bool = False
    ocr_confidence: float = 0.0


def score_page_confidence(signals: PageSignals, weights: Optional[Dict[str, Any]] = None) -> float:
    """Weighted page confidence in [0, max].

    OCR-derived pages are capped below text-derived pages.
    """
    w = weights or confidence_weights()
    score = 0.0

    if signals.table_detected:
        score += w["table_detected"]

    if signals.mapped_columns >= 3:
        score += w["columns"]["three_plus"]
    elif signals.mapped_columns == 2:
        score += w["columns"]["two"]
    elif signals.mapped_columns == 1:
        score += w["columns"]["one"]

    if signals.totals_found:
        score += w["totals_consistent"] if signals.totals_consistent else w["totals_mismatch"]

    if signals.rows >= 10:
        score += w["rows"]["ten_plus"]
    elif signals.rows >= 5:
        score += w["rows"]["five_plus"]
    elif signals.rows >= 1:
        score += w["rows"]["one_plus"]

    if signals.ocr_used:
        score += w["ocr_weight"] * max(0.0, min(1.0, signals.ocr_confidence))
        score = min(score, w["ocr_cap"])

    return round(max(0.0, min(w["max"], score)), 2)


def overall_confidence(page_scores: Sequence[PageScore]) -> float:
    """Mean page confidence weighted by contributed rows (minimum weight 1)."""
    if not page_scores:
        return 0.0
    total_weight = sum(max(p.rows, 1) for p in page_scores)
    weighted = sum(p.confidence * max(p.rows, 1) for p in page_scores)
    return round(min(0.99, weighted / total_weight), 2)


# ============================================================================
# Warnings
# ============================================================================

@dataclass
class WarningContext:
    records: List[UnitRecord] = field(default_factory=list)
    totals_conflict: bool = False
    ocr_used: bool = False
    text_yield: TextYield = TextYield.HIGH
    dropped_rows: int = 0
    far_pages_detected: bool = False
    far_extracted: bool = False
    inferred_bedrooms: int = 0
    unit_mix_found: bool = True
    declared_total: Optional[int] = None


def generate_warnings(ctx: WarningContext) -> List[str]:
    """Apply the fixed warning rules, in a stable order."""
    warnings = []
    records = ctx.records
    total = len(records)

    if ctx.totals_conflict:
        warnings.append("Totals row count does not match parsed unit rows")

    if ctx.ocr_used:
        warnings.append("OCR used for some pages; verify schedule data")

    if ctx.text_yield != TextYield.HIGH:
        warnings.append(f"Low text yield ({ctx.text_yield.value}); document may be scanned")

    if total and not any(r.source.method == ExtractionMethod.TEXT_TABLE for r in records):
        warnings.append("No structured table detected; records parsed from text patterns")

    if not ctx.unit_mix_found:
        warnings.append("Unit mix schedule not found; not inferred from floor plans")

    if not total and ctx.declared_total:
        warnings.append("No unit schedule table found; total unit count is from cover sheet or zoning text only")

    if total and ctx.declared_total is not None and abs(total - ctx.declared_total) > 2:
        warnings.append(
            f"Unit records ({total}) differ from declared total ({ctx.declared_total}); records may be incomplete"
        )

    if ctx.dropped_rows:
        warnings.append(f"{ctx.dropped_rows} malformed table row(s) dropped")

    unknown_bed = sum(1 for r in records if r.bedroom_type == BedroomType.UNKNOWN)
    if total and unknown_bed > total * 0.3:
        warnings.append(f"{unknown_bed} of {total} units have undetected bedroom types")

    unknown_alloc = sum(1 for r in records if r.allocation == Allocation.UNKNOWN)
    if total and unknown_alloc == total:
        warnings.append("Affordable/Market allocation not found in plans")
    elif total and unknown_alloc > total * 0.5:
        warnings.append(f"{unknown_alloc} of {total} units have undetected allocations")

    if ctx.far_pages_detected and not ctx.far_extracted:
        warnings.append("FAR pages detected but no FAR value extracted; check zoning analysis sheets")

    if ctx.inferred_bedrooms:
        warnings.append(f"Bedroom type inferred from area for {ctx.inferred_bedrooms} unit(s)")

    return warnings
