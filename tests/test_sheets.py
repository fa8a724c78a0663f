"""Tests for title-block sheet indexing."""
import pytest

from conftest import make_pdf
from extraction.errors import PipelineCancelled
from extraction.sheets import (
    classify_sheet_type,
    has_title_block,
    index_page_text,
    index_sheets,
    parse_drawing_no,
    parse_drawing_title,
    parse_project_title,
    replace_sheets,
)
from preprocessor.text_layer import extract_pdf_text
from schemas.enums import SheetMethod, SheetType

TITLE_BLOCK_PAGE = [
    (50, 100, "SECOND FLOOR"),
    (400, 700, "A-101"),
    (400, 720, "TYPICAL FLOOR PLAN"),
    (400, 740, "12 MAIN ST"),
]


class TestParsers:
    def test_drawing_no(self):
        assert parse_drawing_no(["SHEET", "A-101 FIRST FLOOR PLAN"]) == "A-101"
        assert parse_drawing_no(["Z.002"]) == "Z.002"
        assert parse_drawing_no(["GENERAL NOTES"]) is None

    def test_drawing_title_skips_number_lines(self):
        assert parse_drawing_title(["A-101", "7", "ZONING ANALYSIS"], "A-101") == "ZONING ANALYSIS"
        assert parse_drawing_title(["A-101", "12"], "A-101") is None

    def test_project_title(self):
        assert parse_project_title(["A-101", "350 Grand Ave, Brooklyn"]) == "350 Grand Ave, Brooklyn"
        assert parse_project_title(["PROJECT: MIXED USE"]) == "PROJECT: MIXED USE"
        assert parse_project_title(["A-101"]) is None


class TestClassifySheetType:
    def test_keyword_and_prefix(self):
        assert classify_sheet_type("ZONING ANALYSIS", "Z-001") == (SheetType.ZONING_SCHEDULE, 0.7)

    def test_prefix_only(self):
        assert classify_sheet_type("DETAILS", "T-000") == (SheetType.COVER_SHEET, 0.2)

    def test_unknown(self):
        assert classify_sheet_type("GENERAL NOTES", None) == (SheetType.UNKNOWN, 0.0)


class TestIndexSheets:
    def test_title_block(self):
        index = index_sheets(extract_pdf_text(make_pdf([TITLE_BLOCK_PAGE])))
        sheet = index.get(1)
        assert sheet.drawing_no == "A-101"
        assert sheet.drawing_title == "TYPICAL FLOOR PLAN"
        assert sheet.project_title == "12 MAIN ST"
        assert sheet.sheet_type == SheetType.FLOOR_PLAN
        assert sheet.confidence == 1.0
        assert sheet.method == SheetMethod.PDF_TEXT
        assert index.by_drawing_no == {"A-101": 1}
        assert index.by_title_key == {"TYPICAL": [1], "FLOOR": [1], "PLAN": [1]}

    def test_page_text_fallback(self, clean_schedule_pdf):
        sheet = index_sheets(extract_pdf_text(clean_schedule_pdf)).get(1)
        assert sheet.sheet_type == SheetType.UNIT_SCHEDULE
        assert sheet.method == SheetMethod.PDF_TEXT
        assert sheet.confidence == 0.7
        assert sheet.recognizable

    def test_scanned_pages_fall_back_without_ocr(self, scanned_pdf):
        index = index_sheets(extract_pdf_text(scanned_pdf))
        assert len(index.pages) == 10

        blank = index.get(1)
        assert blank.method == SheetMethod.PDF_TEXT
        assert blank.sheet_type == SheetType.UNKNOWN
        assert blank.confidence == 0.2
        assert not blank.recognizable
        assert index.recognizable_pages == []

    def test_cancel_check_runs_per_page(self, scanned_pdf):
        calls = []

        def cancel():
            calls.append(1)
            if len(calls) == 3:
                raise PipelineCancelled("SHEET_INDEX")

        with pytest.raises(PipelineCancelled):
            index_sheets(extract_pdf_text(scanned_pdf), cancel_check=cancel)
        assert len(calls) == 3

    def test_has_title_block(self, clean_schedule_pdf):
        assert has_title_block(extract_pdf_text(make_pdf([TITLE_BLOCK_PAGE])).pages[0])
        assert not has_title_block(extract_pdf_text(clean_schedule_pdf).pages[0])


class TestOcrSheets:
    def test_index_page_text(self):
        sheet = index_page_text(2, "Z-001\n\nZONING ANALYSIS\n")
        assert sheet.page_number == 2
        assert sheet.method == SheetMethod.OCR
        assert sheet.drawing_no == "Z-001"
        assert sheet.drawing_title == "ZONING ANALYSIS"
        assert sheet.sheet_type == SheetType.ZONING_SCHEDULE
        assert sheet.confidence == 1.0

    def test_blank_ocr_text_stays_unknown(self):
        sheet = index_page_text(4, "")
        assert sheet.sheet_type == SheetType.UNKNOWN
        assert sheet.confidence == 0.3

    def test_replace_rebuilds_lookups(self, scanned_pdf):
        index = index_sheets(extract_pdf_text(scanned_pdf))
        updated = replace_sheets(index, [index_page_text(2, "Z-001\nZONING ANALYSIS")])

        assert updated.get(2).method == SheetMethod.OCR
        assert updated.by_drawing_no == {"Z-001": 2}
        assert updated.by_title_key == {"ZONING": [2], "ANALYSIS": [2]}
        assert updated.recognizable_pages == [2]
        assert updated.pages_of_type(SheetType.ZONING_SCHEDULE) == [2]
        assert [s.page_number for s in updated.pages] == list(range(1, 11))
        assert index.get(2).method == SheetMethod.PDF_TEXT

    def test_replace_nothing_keeps_index(self, scanned_pdf):
        index = index_sheets(extract_pdf_text(scanned_pdf))
        assert replace_sheets(index, []) is index
