"""Plan preprocessor - PDF text layer and rasterization."""

__version__ = "0.1.0"

from .rasterize import estimate_tokens, rasterize_pdf, render_page_png, render_page_to_numpy
from .text_layer import PdfText, assess_text_yield, extract_pdf_text, is_likely_scanned

__all__ = [
    "estimate_tokens",
    "rasterize_pdf",
    "render_page_png",
    "render_page_to_numpy",
    "PdfText",
    "assess_text_yield",
    "extract_pdf_text",
    "is_likely_scanned",
    "__version__",
]
