"""OCR fallback: per-page decision policy, engines and provider resolution.

OCR is reserved for pages where native extraction genuinely failed: very
little text, no table header and a low page confidence. Engines share one
interface so the provider can be swapped or faked in tests.
"""
import base64
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Sequence

import numpy as np
import pytesseract
from anthropic import Anthropic
from pytesseract import Output

from preprocessor.rasterize import CropRegion, preprocess_for_ocr, render_page_png, render_page_to_numpy
from schemas.enums import OcrProviderName

from .cancellation import CancellationToken, check_cancelled

logger = logging.getLogger(__name__)

DEFAULT_TEXT_CHARS_FLOOR = 150
DEFAULT_CONFIDENCE_FLOOR = 0.55
DEFAULT_MAX_OCR_PAGES = 8


@dataclass
class OcrPageResult:
    """Text recovered from one rasterized page.

    Attributes:
        page: 1-indexed page number
        text: Full page text
        lines: Text lines in reading order
        confidence: Mean word confidence in [0, 1]
    """
    page: int
    text: str = ""
    lines: List[str] = field(default_factory=list)
    confidence: float = 0.0


class OcrEngine(Protocol):
    name: OcrProviderName
    supports_tables: bool

    def is_available(self) -> bool: ...

    def ocr_pages(
        self,
        pdf_bytes: bytes,
        pages: Sequence[int],
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[OcrPageResult]: ...

    def ocr_crop(self, pdf_bytes: bytes, page: int, region: CropRegion) -> OcrPageResult: ...


# Returns the engine to use for a run
OcrResolver = Callable[[], OcrEngine]


# ============================================================================
# Decision policy
# ============================================================================

def should_ocr_page(
    text_chars: int,
    header_detected: bool,
    page_confidence: float,
    text_chars_floor: int = DEFAULT_TEXT_CHARS_FLOOR,
    confidence_floor: float = DEFAULT_CONFIDENCE_FLOOR,
) -> bool:
    """OCR only when text is near-empty, no header was found and confidence is low."""
    return text_chars < text_chars_floor and not header_detected and page_confidence < confidence_floor


def select_ocr_pages(
    signals: Dict[int, Dict[str, float]],
    max_pages: int = DEFAULT_MAX_OCR_PAGES,
    text_chars_floor: int = DEFAULT_TEXT_CHARS_FLOOR,
    confidence_floor: float = DEFAULT_CONFIDENCE_FLOOR,
) -> List[int]:
    """Pick pages for OCR, lowest page numbers first, capped at max_pages.

    Args:
        signals: Page -> {"text_chars", "header_detected", "confidence"}
        max_pages: Hard cap on OCR calls per document
    """
    chosen = [
        page for page, s in sorted(signals.items())
        if should_ocr_page(
            int(s.get("text_chars", 0)),
            bool(s.get("header_detected", False)),
            float(s.get("confidence", 0.0)),
            text_chars_floor,
            confidence_floor,
        )
    ]
    if len(chosen) > max_pages:
        logger.info(f"{len(chosen)} pages qualify for OCR; capping at {max_pages}")
    return chosen[:max_pages]


# ============================================================================
# Text post-processing
# ============================================================================

DIGIT_LETTER_FIXES = [
    (re.compile(r"(?<=\d)[Oo](?=\d)"), "0"),
    (re.compile(r"(?<=\d)[lI](?=\d)"), "1"),
    (re.compile(r"(?<=\d)S(?=\d)"), "5"),
    (re.compile(r"(?<=\d)B(?=\d)"), "8"),
]


def post_process_ocr_text(text: str) -> str:
    """Repair common OCR damage in schedule text."""
    text = re.sub(r"(\w)-\s*\n\s*(\w)", r"\1\2", text)
    for pattern, replacement in DIGIT_LETTER_FIXES:
        text = pattern.sub(replacement, text)
    text = re.sub(r"(\d),\s+(\d{3})\b", r"\1,\2", text)
    text = text.replace("\u00a0", " ")
    text = re.sub(r"[ \t]{3,}", "  ", text)
    text = re.sub(r"\|{2,}", "|", text)
    text = re.sub(r"_{3,}", "", text)
    text = re.sub(r"\.{4,}", "...", text)
    return text


def _result_from_text(page: int, text: str, confidence: float) -> OcrPageResult:
    text = post_process_ocr_text(text)
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return OcrPageResult(page=page, text="\n".join(lines), lines=lines, confidence=confidence)


# ============================================================================
# Engines
# ============================================================================

class NoOpOcrEngine:
    """Engine used when no provider is available; recovers nothing."""
    name = OcrProviderName.NONE
    supports_tables = False

    def is_available(self) -> bool:
        return True

    def ocr_pages(self, pdf_bytes, pages, cancel_token=None) -> List[OcrPageResult]:
        return []

    def ocr_crop(self, pdf_bytes, page, region) -> OcrPageResult:
        return OcrPageResult(page=page)


class TesseractOcrEngine:
    """Local OCR: PyMuPDF raster, OpenCV cleanup, then Tesseract.

    Pages read with a mean word confidence below `retry_confidence` are
    re-rendered at a higher zoom and read again.
    """
    name = OcrProviderName.TESSERACT
    supports_tables = False

    def __init__(
        self,
        zoom: float = 2.0,
        retry_confidence: float = 70,
        retry_zoom_factor: float = 1.5,
        max_zoom: float = 4.0,
        lang: str = "eng",
        psm: int = 6,
    ):
        self.zoom = zoom
        self.retry_confidence = retry_confidence
        self.retry_zoom_factor = retry_zoom_factor
        self.max_zoom = max_zoom
        self.lang = lang
        self.psm = psm

    def is_available(self) -> bool:
        try:
            version = pytesseract.get_tesseract_version()
            logger.debug(f"Tesseract {version} available")
            return True
        except (pytesseract.TesseractNotFoundError, OSError) as e:
            logger.info(f"Tesseract unavailable: {e}")
            return False

    def _read_image(self, img: np.ndarray, page: int) -> OcrPageResult:
        processed = preprocess_for_ocr(img)
        data = pytesseract.image_to_data(
            processed, lang=self.lang, config=f"--psm {self.psm}", output_type=Output.DICT
        )

        lines: Dict[tuple, List[str]] = {}
        confs = []
        for i, word in enumerate(data.get("text", [])):
            if not word or not str(word).strip():
                continue
            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            lines.setdefault(key, []).append(str(word))
            conf = float(data["conf"][i])
            if conf >= 0:
                confs.append(conf)

        text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
        confidence = (sum(confs) / len(confs) / 100.0) if confs else 0.0
        return _result_from_text(page, text, round(confidence, 3))

    def ocr_page(self, pdf_bytes: bytes, page: int) -> OcrPageResult:
        zoom = self.zoom
        best = self._read_image(render_page_to_numpy(pdf_bytes, page, zoom=zoom), page)
        while best.confidence * 100 < self.retry_confidence and zoom < self.max_zoom:
            zoom = min(zoom * self.retry_zoom_factor, self.max_zoom)
            logger.debug(f"Page {page}: OCR confidence {best.confidence:.2f}, retrying at zoom {zoom}")
            retry = self._read_image(render_page_to_numpy(pdf_bytes, page, zoom=zoom), page)
            if retry.confidence > best.confidence:
                best = retry
        return best

    def ocr_pages(self, pdf_bytes, pages, cancel_token=None) -> List[OcrPageResult]:
        results = []
        for page in pages:
            check_cancelled(cancel_token, "OCR")
            results.append(self.ocr_page(pdf_bytes, page))
            logger.info(f"OCR page {page}: {len(results[-1].lines)} lines, confidence {results[-1].confidence:.2f}")
        return results

    def ocr_crop(self, pdf_bytes, page, region) -> OcrPageResult:
        return self._read_image(render_page_to_numpy(pdf_bytes, page, zoom=self.zoom, region=region), page)


TRANSCRIBE_PROMPT = (
    "Transcribe all text on this architectural drawing sheet, line by line, "
    "preserving table rows on a single line with cells separated by two spaces. "
    "Return only the transcribed text."
)

# Claude does not report a confidence; transcriptions are trusted at this level
VISION_CONFIDENCE = 0.85


class ClaudeVisionOcrEngine:
    """Cloud OCR through Anthropic vision on rendered page images."""
    name = OcrProviderName.CLAUDE_VISION
    supports_tables = True

    def __init__(
        self,
        client: Optional[Anthropic] = None,
        model: str = "claude-sonnet-4-5-20250514",
        zoom: float = 2.0,
        max_tokens: int = 4096,
    ):
        self._client = client
        self.model = model
        self.zoom = zoom
        self.max_tokens = max_tokens

    @property
    def client(self) -> Anthropic:
        if self._client is None:
            self._client = Anthropic()
        return self._client

    def is_available(self) -> bool:
        return self._client is not None or bool(os.environ.get("ANTHROPIC_API_KEY"))

    def _transcribe(self, png: bytes, page: int) -> OcrPageResult:
        response = self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=[{
                "role": "user",
                "content": [
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": "image/png",
                            "data": base64.standard_b64encode(png).decode("ascii"),
                        },
                    },
                    {"type": "text", "text": TRANSCRIBE_PROMPT},
                ],
            }],
        )
        text = "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
        return _result_from_text(page, text, VISION_CONFIDENCE if text.strip() else 0.0)

    def ocr_pages(self, pdf_bytes, pages, cancel_token=None) -> List[OcrPageResult]:
        results = []
        for page in pages:
            check_cancelled(cancel_token, "OCR")
            results.append(self._transcribe(render_page_png(pdf_bytes, page, zoom=self.zoom), page))
        return results

    def ocr_crop(self, pdf_bytes, page, region) -> OcrPageResult:
        return self._transcribe(render_page_png(pdf_bytes, page, zoom=self.zoom, region=region), page)


# ============================================================================
# Provider resolution
# ============================================================================

def resolve_ocr_engine(
    preferred: OcrProviderName = OcrProviderName.CLAUDE_VISION,
    engines: Optional[Sequence[OcrEngine]] = None,
) -> OcrEngine:
    """Check providers once and return the first available one.

    Fallback order is cloud, then Tesseract, then the no-op engine. The
    preferred provider, when given, is checked first.
    """
    candidates = list(engines) if engines is not None else [ClaudeVisionOcrEngine(), TesseractOcrEngine()]
    candidates.sort(key=lambda e: e.name != preferred)
    for engine in candidates:
        try:
            if engine.is_available():
                logger.info(f"OCR provider: {engine.name.value}")
                return engine
        except Exception as e:
            logger.warning(f"OCR availability check failed for {engine.name.value}: {e}")
    logger.info("No OCR provider available")
    return NoOpOcrEngine()
