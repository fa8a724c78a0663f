"""Plan extractor agent - structured plan data from page text via Anthropic."""
import logging
import os
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol, Sequence, Tuple

from anthropic import Anthropic

from agents.extractors.base import extract_json_from_response, load_instructions, retry_with_backoff
from agents.extractors.sanitize import clean_raw_records, extract_declared_units, sanitize_extraction
from agents.relevance import MAX_CHARS_PER_PAGE, MAX_PAGES, MIN_CHARS_PER_PAGE, PageInput, build_page_inputs
from extraction.cancellation import CancellationToken, check_cancelled
from extraction.errors import AiExtractionError
from schemas.ai import AiExtractionStatus, AiPlanExtraction

logger = logging.getLogger(__name__)

INSTRUCTIONS_DIR = Path(__file__).parent.parent / "instructions"

SUCCESS = "success"
SKIPPED = "skipped"
FAILED = "failed"


class PlanExtractor(Protocol):
    """AI extraction capability consumed by the pipeline and the verify pass."""

    def is_available(self) -> bool: ...

    def extract_from_pages(
        self,
        pages: Mapping[int, str],
        page_type_hints: Mapping[int, str],
        parcel_context: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Tuple[Optional[AiPlanExtraction], AiExtractionStatus]: ...


def build_user_message(
    inputs: Sequence[PageInput],
    declared_units: Optional[int] = None,
    parcel_context: Optional[str] = None,
) -> str:
    """Assemble the page blocks with the declared-unit and city-data preamble."""
    preamble = ""
    if declared_units is not None:
        preamble = (
            f"Cover sheet indicates approximately {declared_units} dwelling units. "
            f"Do NOT return more than {declared_units} unit_records unless the pages explicitly "
            f"list more dwelling units.\n\n"
        )
    if parcel_context:
        preamble += f"CITY DATA CONTEXT:\n{parcel_context}\n\n"

    blocks = "\n\n".join(f"=== PAGE {p.page} [{p.type}] ===\n{p.text}" for p in inputs)
    return f"{preamble}Extract all project data from these architectural plan pages:\n\n{blocks}"


class AnthropicPlanExtractor:
    """Sends selected page text to Claude and returns a sanitized extraction.

    Failures never raise: the result is (None, status) with a fallback
    reason, so callers can keep their rule-based result.
    """

    def __init__(
        self,
        client: Optional[Anthropic] = None,
        model: str = "claude-sonnet-4-5-20250514",
        max_tokens: int = 8192,
        max_pages: int = MAX_PAGES,
        max_chars_per_page: int = MAX_CHARS_PER_PAGE,
        min_chars_per_page: int = MIN_CHARS_PER_PAGE,
        timeout_seconds: float = 60,
        max_retries: int = 3,
        instructions_dir: Path = INSTRUCTIONS_DIR,
    ):
        self._client = client
        self.model = model
        self.max_tokens = max_tokens
        self.max_pages = max_pages
        self.max_chars_per_page = max_chars_per_page
        self.min_chars_per_page = min_chars_per_page
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.instructions_dir = instructions_dir
        self._attempts = 0

    @classmethod
    def from_config(cls, config: Dict, client: Optional[Anthropic] = None) -> "AnthropicPlanExtractor":
        """Build from the `ai` section of the pipeline config."""
        return cls(
            client=client,
            model=config["model"],
            max_tokens=config["max_tokens"],
            max_pages=config["max_pages"],
            max_chars_per_page=config["max_chars_per_page"],
            min_chars_per_page=config["min_chars_per_page"],
            timeout_seconds=config["timeout_seconds"],
            max_retries=config["max_retries"],
        )

    @property
    def client(self) -> Anthropic:
        if self._client is None:
            self._client = Anthropic()
        return self._client

    def is_available(self) -> bool:
        return self._client is not None or bool(os.environ.get("ANTHROPIC_API_KEY"))

    def _request(self, system: str, user_message: str) -> str:
        self._attempts += 1
        response = self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=system,
            messages=[{"role": "user", "content": [{"type": "text", "text": user_message}]}],
            timeout=self.timeout_seconds,
        )
        return "".join(block.text for block in response.content if getattr(block, "type", "") == "text")

    def extract_from_pages(
        self,
        pages: Mapping[int, str],
        page_type_hints: Mapping[int, str],
        parcel_context: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Tuple[Optional[AiPlanExtraction], AiExtractionStatus]:
        """
        Extract plan data from page text.

        Args:
            pages: Page number -> page text
            page_type_hints: Page number -> COVER_SHEET, ZONING, OCCUPANT_LOAD, FLOOR_PLAN, GENERAL
            parcel_context: City data block for the verify pass
            cancel_token: Checked before the request and again before the result is used

        Returns:
            (extraction or None, status with fallback reason)

        Raises:
            PipelineCancelled: If the token is set
        """
        check_cancelled(cancel_token, "LLM_EXTRACT")
        inputs = build_page_inputs(
            pages, page_type_hints, self.max_pages, self.max_chars_per_page, self.min_chars_per_page
        )
        pages_sent = [p.page for p in inputs]
        if not inputs:
            return None, AiExtractionStatus(status=SKIPPED, reason="No pages with sufficient text")

        declared = extract_declared_units(inputs)
        instructions = load_instructions(self.instructions_dir, "plan-extractor.md")
        user_message = build_user_message(inputs, declared, parcel_context)

        logger.info(f"AI extraction on {len(inputs)} pages: {pages_sent}")
        self._attempts = 0
        call = retry_with_backoff(max_retries=self.max_retries)(self._request)
        try:
            text = call(instructions, user_message)
        except AiExtractionError as e:
            logger.warning(f"AI extraction failed: {e}")
            return None, AiExtractionStatus(
                status=FAILED, reason=str(e), retry_count=max(self._attempts - 1, 0), pages_sent=pages_sent
            )
        retry_count = max(self._attempts - 1, 0)

        check_cancelled(cancel_token, "LLM_EXTRACT")
        try:
            data = clean_raw_records(extract_json_from_response(text))
            extraction = AiPlanExtraction.model_validate(data)
        except ValueError as e:
            logger.warning(f"AI response could not be parsed: {e}")
            return None, AiExtractionStatus(
                status=FAILED, reason=f"Unparseable AI response: {e}", retry_count=retry_count, pages_sent=pages_sent
            )

        extraction = sanitize_extraction(extraction, declared)
        logger.info(
            f"AI extraction: {len(extraction.unit_records)} unit records, "
            f"total units {extraction.totals.total_units}, confidence {extraction.confidence.overall:.2f}"
        )
        return extraction, AiExtractionStatus(status=SUCCESS, retry_count=retry_count, pages_sent=pages_sent)
