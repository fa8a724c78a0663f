"""Native text layer extraction with PyMuPDF.

Pulls per-page plain text and word-level positioned items from PDF
bytes. Pages without a text layer (scanned images) come back with empty
text rather than failing the document.

Coordinates are PDF points with the origin at the top-left corner of the
page and y growing downward.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List

import pymupdf

from extraction.errors import PdfParseError
from schemas.enums import TextYield

logger = logging.getLogger(__name__)

# Average characters per page below which a document looks scanned
TEXT_RICH_THRESHOLD = 200
SCAN_SAMPLE_PAGES = 3
NO_TEXT_THRESHOLD = 50


@dataclass
class TextItem:
    """A positioned word on a page."""
    text: str
    x: float
    y: float
    width: float
    height: float
    page: int


@dataclass
class PageText:
    page_number: int
    text: str
    items: List[TextItem] = field(default_factory=list)
    width: float = 0.0
    height: float = 0.0

    @property
    def char_count(self) -> int:
        return len(self.text.strip())


@dataclass
class PdfText:
    page_count: int
    pages: List[PageText] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n\n".join(p.text for p in self.pages)

    @property
    def page_texts(self) -> Dict[int, str]:
        return {p.page_number: p.text for p in self.pages}

    @property
    def avg_chars_per_page(self) -> float:
        if self.page_count == 0:
            return 0.0
        return sum(p.char_count for p in self.pages) / self.page_count

    def page(self, page_number: int) -> PageText:
        return self.pages[page_number - 1]


def open_pdf(data: bytes) -> pymupdf.Document:
    """Open PDF bytes, raising PdfParseError for anything unreadable.

    Args:
        data: Raw document bytes

    Returns:
        Open PyMuPDF document (caller closes it)

    Raises:
        PdfParseError: If the bytes are not a PDF, are corrupt, or need a password
    """
    try:
        doc = pymupdf.open(stream=data, filetype="pdf")
    except Exception as e:
        raise PdfParseError(f"PDF processing failed: {e}") from e

    if doc.needs_pass:
        doc.close()
        raise PdfParseError(
            "This PDF appears to be password-protected. Remove password protection and try again."
        )
    if doc.page_count == 0:
        doc.close()
        raise PdfParseError("PDF has no pages")
    return doc


def _page_items(page: pymupdf.Page, page_number: int) -> List[TextItem]:
    items = []
    # (x0, y0, x1, y1, word, block_no, line_no, word_no)
    for x0, y0, x1, y1, word, *_ in page.get_text("words"):
        if not word.strip():
            continue
        items.append(TextItem(
            text=word,
            x=x0,
            y=y0,
            width=x1 - x0,
            height=y1 - y0,
            page=page_number,
        ))
    return items


def extract_pdf_text(data: bytes) -> PdfText:
    """Extract per-page text and positioned words from PDF bytes.

    Args:
        data: Raw document bytes

    Returns:
        PdfText with one PageText per page, in page order

    Raises:
        PdfParseError: If the document cannot be parsed at all
    """
    doc = open_pdf(data)
    result = PdfText(page_count=doc.page_count)

    try:
        for page_number, page in enumerate(doc, 1):
            rect = page.rect
            try:
                text = page.get_text("text")
                items = _page_items(page, page_number)
            except Exception as e:
                logger.warning(f"Could not extract text from page {page_number}: {e}")
                result.warnings.append(f"Could not extract text from page {page_number}: {e}")
                text, items = "", []
            result.pages.append(PageText(
                page_number=page_number,
                text=text,
                items=items,
                width=rect.width,
                height=rect.height,
            ))
    finally:
        doc.close()

    if not result.text.strip():
        result.warnings.append(
            "No text could be extracted. This PDF may be image-based (scanned). OCR fallback available."
        )

    logger.info(f"Extracted text from {result.page_count} pages ({result.avg_chars_per_page:.0f} chars/page)")
    return result


def is_likely_scanned(pdf: PdfText) -> bool:
    """True when the first pages carry almost no native text."""
    sample = pdf.pages[:SCAN_SAMPLE_PAGES]
    if not sample:
        return True
    avg = sum(p.char_count for p in sample) / len(sample)
    return avg < TEXT_RICH_THRESHOLD


def assess_text_yield(pdf: PdfText) -> TextYield:
    """Bucket the document's average native text per page."""
    avg = pdf.avg_chars_per_page
    if avg < NO_TEXT_THRESHOLD:
        return TextYield.NONE
    if avg < TEXT_RICH_THRESHOLD:
        return TextYield.LOW
    return TextYield.HIGH
