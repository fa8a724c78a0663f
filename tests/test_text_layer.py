"""Tests for text layer extraction and page rasterization."""
import numpy as np
import pytest

from conftest import make_pdf, schedule_page
from extraction.errors import PdfParseError
from preprocessor.rasterize import estimate_tokens, preprocess_for_ocr, rasterize_pdf, render_page_png, render_page_to_numpy
from preprocessor.text_layer import PageText, PdfText, assess_text_yield, extract_pdf_text, is_likely_scanned
from schemas.enums import TextYield


def text_pdf(*chars_per_page):
    return PdfText(
        page_count=len(chars_per_page),
        pages=[PageText(page_number=i + 1, text="x" * n) for i, n in enumerate(chars_per_page)],
    )


class TestExtractPdfText:
    def test_schedule_page(self, clean_schedule_pdf):
        pdf = extract_pdf_text(clean_schedule_pdf)
        assert pdf.page_count == 1
        assert "UNIT SCHEDULE" in pdf.page(1).text
        assert pdf.warnings == []
        words = {item.text for item in pdf.pages[0].items}
        assert {"UNIT", "BEDROOMS", "ALLOCATION", "MIH"} <= words
        assert all(item.page == 1 and item.width > 0 for item in pdf.pages[0].items)
        assert pdf.pages[0].width == 612

    def test_top_left_origin(self, clean_schedule_pdf):
        items = extract_pdf_text(clean_schedule_pdf).pages[0].items
        title = next(i for i in items if i.text == "SCHEDULE")
        total = next(i for i in items if i.text == "TOTAL")
        assert title.y < total.y

    def test_scanned_document_warning(self, scanned_pdf):
        pdf = extract_pdf_text(scanned_pdf)
        assert pdf.page_count == 10
        assert all(p.items == [] for p in pdf.pages)
        assert pdf.warnings == [
            "No text could be extracted. This PDF may be image-based (scanned). OCR fallback available."
        ]

    def test_not_a_pdf(self):
        with pytest.raises(PdfParseError, match="PDF processing failed"):
            extract_pdf_text(b"not a pdf")


class TestTextYield:
    def test_buckets(self):
        assert assess_text_yield(text_pdf(10, 20)) == TextYield.NONE
        assert assess_text_yield(text_pdf(100, 150)) == TextYield.LOW
        assert assess_text_yield(text_pdf(2400, 0)) == TextYield.HIGH

    def test_real_documents(self, clean_schedule_pdf, scanned_pdf):
        assert assess_text_yield(extract_pdf_text(clean_schedule_pdf)) == TextYield.HIGH
        assert assess_text_yield(extract_pdf_text(scanned_pdf)) == TextYield.NONE

    def test_likely_scanned_samples_first_pages(self):
        assert is_likely_scanned(text_pdf(0, 0, 0, 5000))
        assert not is_likely_scanned(text_pdf(900, 0, 0))
        assert is_likely_scanned(PdfText(page_count=0))


class TestRasterize:
    def test_numpy_render(self):
        img = render_page_to_numpy(make_pdf([schedule_page(4)]), 1, zoom=1.0)
        assert img.shape == (792, 612, 3)
        assert img.dtype == np.uint8
        # Text pixels are dark on a white page
        assert img.min() < 128 < img.max()

    def test_region_render(self):
        img = render_page_to_numpy(make_pdf([[]]), 1, zoom=1.0, region=(0.0, 0.0, 0.5, 0.5))
        assert img.shape == (396, 306, 3)

    def test_png_render(self):
        assert render_page_png(make_pdf([[]]), 1, zoom=0.5).startswith(b"\x89PNG")

    def test_page_out_of_range(self):
        with pytest.raises(IndexError):
            render_page_to_numpy(make_pdf([[]]), 5)

    def test_preprocess_binary(self):
        binary = preprocess_for_ocr(render_page_to_numpy(make_pdf([schedule_page(4)]), 1, zoom=1.0))
        assert binary.ndim == 2
        assert set(np.unique(binary)) <= {0, 255}

    def test_rasterize_to_files(self, tmp_path):
        results = rasterize_pdf(make_pdf([[], [], []]), tmp_path / "out", zoom=0.5, pages=[1, 3])
        assert [path.name for path, _, _ in results] == ["page-001.png", "page-003.png"]
        assert all(path.exists() for path, _, _ in results)

    def test_token_estimate(self):
        assert estimate_tokens(750, 1000) == 1000
