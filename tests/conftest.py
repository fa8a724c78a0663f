"""Shared test fixtures and configuration."""
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pymupdf
import pytest

from extraction.cache import MemoryContentCache
from extraction.ocr import OcrPageResult
from extraction.rows import compute_totals, unit_mix_counts
from extraction.rows import unit_totals as totals_for
from schemas.ai import AiExtractionStatus, AiPlanExtraction
from schemas.enums import Allocation, BedroomType, ExtractionMethod, OcrProviderName
from schemas.plan_data import ExtractedField, UnitRecord, UnitSource, ZoningFields
from schemas.snapshot import ExtractionSnapshot

# (x, y, text) placed on a page
Placement = Tuple[float, float, str]

SCHEDULE_COLUMNS = [50, 150, 250, 350]


def make_pdf(pages: Sequence[Sequence[Placement]], fontsize: float = 9) -> bytes:
    """Build a PDF with text placed at fixed positions, one list per page.

    An empty list makes a page with no text layer (a scanned page stand-in).
    """
    doc = pymupdf.open()
    try:
        for placements in pages:
            page = doc.new_page(width=612, height=792)
            if not placements:
                page.draw_rect(pymupdf.Rect(50, 50, 550, 700), color=(0, 0, 0))
            for x, y, text in placements:
                page.insert_text((x, y), text, fontsize=fontsize)
        return doc.tobytes()
    finally:
        doc.close()


def schedule_rows(count: int = 20) -> List[Tuple[str, str, str, str]]:
    """Unit rows: half 1 BR market at 650 SF, half 2 BR MIH at 950 SF."""
    rows = []
    for n in range(count):
        unit_id = f"{2 + n // 4}{'ABCD'[n % 4]}"
        if n % 2 == 0:
            rows.append((unit_id, "1 BR", "650", "MARKET"))
        else:
            rows.append((unit_id, "2 BR", "950", "MIH"))
    return rows


def schedule_page(count: int = 20, totals: Optional[int] = None, top: float = 60) -> List[Placement]:
    """A unit schedule table in the top half of a page, with a TOTAL row."""
    placements: List[Placement] = [(50, top, "UNIT SCHEDULE")]
    y = top + 30
    for x, header in zip(SCHEDULE_COLUMNS, ["UNIT", "BEDROOMS", "AREA SF", "ALLOCATION"]):
        placements.append((x, y, header))
    for row in schedule_rows(count):
        y += 14
        for x, value in zip(SCHEDULE_COLUMNS, row):
            placements.append((x, y, value))
    y += 14
    placements.append((50, y, "TOTAL"))
    placements.append((150, y, str(count if totals is None else totals)))
    return placements


class FakeOcrEngine:
    """OCR engine returning canned lines per page and recording every call."""

    def __init__(
        self,
        lines_by_page: Optional[Dict[int, List[str]]] = None,
        name: OcrProviderName = OcrProviderName.TESSERACT,
        confidence: float = 0.8,
        fail: Optional[Exception] = None,
        crop_text: Optional[Dict[int, str]] = None,
    ):
        self.name = name
        self.supports_tables = False
        self.lines_by_page = lines_by_page or {}
        self.crop_text = crop_text or {}
        self.confidence = confidence
        self.fail = fail
        self.page_calls: List[List[int]] = []
        self.crop_calls: List[int] = []

    def is_available(self) -> bool:
        return True

    def ocr_pages(self, pdf_bytes, pages, cancel_token=None) -> List[OcrPageResult]:
        self.page_calls.append(list(pages))
        if self.fail is not None:
            raise self.fail
        results = []
        for page in pages:
            lines = self.lines_by_page.get(page, [])
            results.append(OcrPageResult(
                page=page,
                text="\n".join(lines),
                lines=list(lines),
                confidence=self.confidence if lines else 0.0,
            ))
        return results

    def ocr_crop(self, pdf_bytes, page, region) -> OcrPageResult:
        self.crop_calls.append(page)
        text = self.crop_text.get(page, "")
        return OcrPageResult(page=page, text=text, lines=text.splitlines(), confidence=self.confidence if text else 0.0)


class FakePlanExtractor:
    """AI extractor returning a fixed result and recording every call."""

    def __init__(
        self,
        extraction: Optional[AiPlanExtraction] = None,
        status: Optional[AiExtractionStatus] = None,
        available: bool = True,
        fail: Optional[Exception] = None,
    ):
        self.extraction = extraction
        self.status = status or AiExtractionStatus(
            status="success" if extraction is not None else "failed",
            reason=None if extraction is not None else "no result",
        )
        self.available = available
        self.fail = fail
        self.calls: List[dict] = []

    def is_available(self) -> bool:
        return self.available

    def extract_from_pages(self, pages, page_type_hints, parcel_context=None, cancel_token=None):
        self.calls.append({"pages": dict(pages), "hints": dict(page_type_hints), "parcel_context": parcel_context})
        if self.fail is not None:
            raise self.fail
        return self.extraction, self.status


class RecordingCache(MemoryContentCache):
    """Memory cache that counts reads and writes."""

    def __init__(self):
        super().__init__()
        self.gets = 0
        self.puts = 0

    def get(self, file_hash):
        self.gets += 1
        return super().get(file_hash)

    def put(self, file_hash, snapshot):
        self.puts += 1
        super().put(file_hash, snapshot)


@pytest.fixture
def project_root():
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def clean_schedule_pdf() -> bytes:
    """One page, one 20-row unit schedule with a matching TOTAL row."""
    return make_pdf([schedule_page(20)])


@pytest.fixture
def scanned_pdf() -> bytes:
    """Ten pages with no text layer."""
    return make_pdf([[] for _ in range(10)])


@pytest.fixture
def ocr_schedule_lines() -> Dict[int, List[str]]:
    """OCR output for the scanned fixture: two units on each of pages 1-8."""
    lines = {}
    for page in range(1, 9):
        lines[page] = [
            f"UNIT {page}A 1 BR 650 SF MARKET",
            f"UNIT {page}B 2 BR 950 SF MIH",
        ]
    return lines


@pytest.fixture
def memory_cache() -> RecordingCache:
    return RecordingCache()


def unit_records(count: int, bedroom: BedroomType = BedroomType.BR1, area: float = 650.0,
                 allocation: Allocation = Allocation.MARKET, page: int = 1) -> List[UnitRecord]:
    return [
        UnitRecord(
            unit_id=f"{2 + n // 4}{'ABCD'[n % 4]}",
            bedroom_type=bedroom,
            allocation=allocation,
            area_sf=area,
            source=UnitSource(page=page, method=ExtractionMethod.TEXT_TABLE, evidence=f"row {n}"),
        )
        for n in range(count)
    ]


@pytest.fixture
def make_snapshot():
    """Factory for snapshots with `units` records and optional zoning values."""

    def factory(units: int = 0, far: Optional[float] = None, lot_area: Optional[float] = None,
                zfa: Optional[float] = None, zone: Optional[str] = None, **update) -> ExtractionSnapshot:
        records = unit_records(units)
        zoning = {}
        if far is not None:
            zoning["far"] = ExtractedField(value=far, confidence=0.7, page_number=3, source="zoning_text")
        if lot_area is not None:
            zoning["lot_area"] = ExtractedField(value=lot_area, confidence=0.7, page_number=3, source="zoning_text")
        if zfa is not None:
            zoning["zoning_floor_area"] = ExtractedField(value=zfa, confidence=0.7, page_number=3, source="zoning_text")
        if zone is not None:
            zoning["zone_district"] = ExtractedField(value=zone, confidence=0.75, page_number=1, source="zoning_text")
        mix = compute_totals(records)
        snapshot = ExtractionSnapshot(
            file_names=["plans.pdf"],
            totals=totals_for(records),
            unit_mix=unit_mix_counts(mix.by_bedroom_type),
            unit_records=records,
            unit_totals=mix,
            zoning=ZoningFields(**zoning),
        )
        return snapshot.model_copy(update=update) if update else snapshot

    return factory
