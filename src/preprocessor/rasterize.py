"""PDF page rasterization for OCR and multimodal input.

Renders pages from in-memory PDF bytes with PyMuPDF, either as NumPy
RGB arrays for OpenCV/Tesseract or as PNG bytes for the vision API.
"""
from pathlib import Path
from typing import List, Optional, Tuple

import cv2
import numpy as np
import pymupdf

from .text_layer import open_pdf

# Region of a page as fractions of its width/height: (x, y, w, h)
CropRegion = Tuple[float, float, float, float]


def estimate_tokens(width: int, height: int) -> int:
    """
    Estimate Claude token usage for an image.

    Formula from Anthropic docs: tokens = (width * height) / 750

    Args:
        width: Image width in pixels
        height: Image height in pixels

    Returns:
        Estimated token count
    """
    return (width * height) // 750


def _clip_rect(page: pymupdf.Page, region: Optional[CropRegion]) -> Optional[pymupdf.Rect]:
    if region is None:
        return None
    rect = page.rect
    x, y, w, h = region
    return pymupdf.Rect(
        rect.x0 + x * rect.width,
        rect.y0 + y * rect.height,
        rect.x0 + (x + w) * rect.width,
        rect.y0 + (y + h) * rect.height,
    )


def _render(data: bytes, page_number: int, zoom: float, region: Optional[CropRegion]) -> pymupdf.Pixmap:
    doc = open_pdf(data)
    try:
        page_idx = page_number - 1
        if page_idx < 0 or page_idx >= len(doc):
            raise IndexError(
                f"Page {page_number} out of range (PDF has {len(doc)} pages)"
            )
        page = doc[page_idx]
        matrix = pymupdf.Matrix(zoom, zoom)
        # alpha=False forces a white background
        return page.get_pixmap(matrix=matrix, alpha=False, clip=_clip_rect(page, region))
    finally:
        doc.close()


def render_page_to_numpy(
    data: bytes,
    page_number: int,
    zoom: float = 2.0,
    region: Optional[CropRegion] = None,
) -> np.ndarray:
    """Render a PDF page (or a region of it) to a NumPy RGB array.

    Args:
        data: PDF bytes
        page_number: Page number (1-indexed)
        zoom: Zoom factor for rendering resolution (default: 2.0 = ~150 DPI)
        region: Optional (x, y, w, h) crop as fractions of the page

    Returns:
        NumPy array of shape (height, width, 3) with dtype uint8 (RGB)

    Raises:
        PdfParseError: If the bytes are not a readable PDF
        IndexError: If page number is out of range
    """
    pix = _render(data, page_number, zoom, region)
    img = np.frombuffer(pix.samples, dtype=np.uint8)
    # Pixmap samples are owned by the pixmap; copy before it is released
    return img.reshape(pix.height, pix.width, 3).copy()


def render_page_png(
    data: bytes,
    page_number: int,
    zoom: float = 2.0,
    region: Optional[CropRegion] = None,
) -> bytes:
    """Render a PDF page (or a region of it) to PNG bytes."""
    return _render(data, page_number, zoom, region).tobytes("png")


def preprocess_for_ocr(img: np.ndarray) -> np.ndarray:
    """Clean a rendered page for Tesseract.

    Pipeline:
        RGB -> Grayscale -> Adaptive Threshold -> Morphological Close -> Median Blur

    Args:
        img: Input RGB image (H, W, 3)

    Returns:
        Binary image (H, W) with dtype uint8, dark text on white
    """
    gray = cv2.cvtColor(img, cv2.COLOR_RGB2GRAY)

    # Adaptive threshold copes with uneven scan exposure
    binary = cv2.adaptiveThreshold(
        gray, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C, cv2.THRESH_BINARY, 11, 2
    )

    # Close small gaps in strokes
    kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (1, 1))
    closed = cv2.morphologyEx(binary, cv2.MORPH_CLOSE, kernel)

    return cv2.medianBlur(closed, 3)


def rasterize_pdf(
    data: bytes,
    output_dir: Path,
    zoom: float = 2.0,
    pages: Optional[List[int]] = None,
) -> List[Tuple[Path, int, int]]:
    """
    Rasterize PDF pages to PNG files.

    Args:
        data: PDF bytes
        output_dir: Directory for output images
        zoom: Zoom factor for rendering
        pages: Optional 1-indexed page numbers (default: all pages)

    Returns:
        List of (path, width, height) tuples for each generated image.
        Useful for token estimation: estimate_tokens(width, height)
    """
    doc = open_pdf(data)
    output_dir.mkdir(parents=True, exist_ok=True)
    results: List[Tuple[Path, int, int]] = []

    try:
        for page_num, page in enumerate(doc, 1):
            if pages is not None and page_num not in pages:
                continue
            pix = page.get_pixmap(matrix=pymupdf.Matrix(zoom, zoom), alpha=False)
            output_path = output_dir / f"page-{page_num:03d}.png"
            pix.save(output_path)
            results.append((output_path, pix.width, pix.height))
    finally:
        doc.close()

    return results
