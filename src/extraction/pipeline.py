"""Plan extraction pipeline.

Runs every stage for each uploaded PDF in order, reporting progress and
polling the cancellation token at each stage boundary:

    CACHE_CHECK -> TEXT_EXTRACT -> CLASSIFY -> SHEET_INDEX -> RECIPE_RUN ->
    LLM_EXTRACT -> CANDIDATE_SCORE -> TABLE_RECON -> PARSE_ROWS ->
    OCR_FALLBACK -> DEDUPE -> LLM_NORMALIZE -> VALIDATE -> PLUTO_CHECK ->
    GATES -> CACHE_WRITE -> DONE

Stage-local failures (a recipe, OCR, the AI call) become strings on the
snapshot and the run continues with what it has. An unparseable file
contributes an error and an empty extraction. Cancellation returns a
cancelled snapshot and never writes to the cache.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from agents.extractors.plan import FAILED, SKIPPED, PlanExtractor
from agents.extractors.sanitize import ai_unit_records
from agents.reconcile import ai_unit_mention, build_parcel_context
from agents.relevance import page_type_hints
from preprocessor.text_layer import PdfText, assess_text_yield, extract_pdf_text, is_likely_scanned
from schemas.ai import AiPlanExtraction
from schemas.enums import (
    BedroomType,
    EvidenceSource,
    ExtractionMethod,
    ExtractionMode,
    ExtractionStatusKind,
    OcrProviderName,
    PipelineStage,
    RecipeType,
    TableType,
    TextYield,
)
from schemas.plan_data import (
    ClassifiedTable,
    CoverSheetExtraction,
    ExtractedField,
    FarExtraction,
    RawSnippet,
    UnitCountMention,
    UnitRecord,
    ZoningFields,
)
from schemas.sheets import RecipeResult, SheetIndex, SheetInfo
from schemas.snapshot import (
    ExtractionSnapshot,
    PageScore,
    PdfExtraction,
    PipelineOptions,
    ProgressEvent,
    SnapshotConfidence,
    SnapshotEvidence,
)
from telemetry import Telemetry
from verifier.gates import apply_gates, evaluate_gates
from verifier.parcel import cross_check_with_parcel

from .bedrooms import apply_bedroom_inference
from .cache import ContentCache, compute_file_hash
from .cancellation import CancellationToken, check_cancelled
from .candidates import FAR_TAG, SCHEDULE_TAG, CandidatePage, detect_candidate_pages
from .confidence import PageSignals, WarningContext, generate_warnings, overall_confidence, score_page_confidence
from .config import confidence_weights, load_pipeline_config, ocr_config
from .errors import PdfParseError, PipelineCancelled
from .layout import PageLine, TableRegion, cluster_by_y
from .normalize import normalize_recipe_results, validate_extract
from .ocr import NoOpOcrEngine, OcrEngine, OcrResolver, TesseractOcrEngine, resolve_ocr_engine, select_ocr_pages
from .recipes import RECORD_RECIPES, SKIP, run_recipes, select_recipes
from .rows import (
    compute_totals,
    deduplicate_records,
    extract_totals_row,
    parse_table,
    parse_unit_line,
    totals_consistent,
    unit_mix_counts,
    unit_totals,
)
from .sheets import has_title_block, index_page_text, index_sheets, replace_sheets
from .tables import classify_region, reconstruct_tables
from .zoning import collect_unit_count_mentions, extract_far_from_lines, extract_zoning_fields, redundancy_score

logger = logging.getLogger(__name__)

# Progress percentage at the start of each stage (single file)
STAGE_PCT = {
    PipelineStage.CACHE_CHECK: 0,
    PipelineStage.TEXT_EXTRACT: 5,
    PipelineStage.CLASSIFY: 10,
    PipelineStage.SHEET_INDEX: 15,
    PipelineStage.RECIPE_RUN: 25,
    PipelineStage.LLM_EXTRACT: 40,
    PipelineStage.CANDIDATE_SCORE: 48,
    PipelineStage.TABLE_RECON: 52,
    PipelineStage.PARSE_ROWS: 58,
    PipelineStage.OCR_FALLBACK: 62,
    PipelineStage.DEDUPE: 70,
    PipelineStage.LLM_NORMALIZE: 75,
    PipelineStage.VALIDATE: 82,
    PipelineStage.PLUTO_CHECK: 88,
    PipelineStage.GATES: 92,
    PipelineStage.CACHE_WRITE: 96,
    PipelineStage.DONE: 100,
}

# Title block strip (x, y, width, height as page fractions) read by crop OCR
TITLE_BLOCK_REGION = (0.0, 0.8, 1.0, 0.2)

# AI records may exceed the declared total by this factor in AUTO mode
AI_DECLARED_SLACK = 1.1
TOTALS_ROW_CONFIDENCE = 0.9
MIN_OCR_LINE_CHARS = 3


@dataclass
class PdfInput:
    """One uploaded document."""
    name: str
    data: bytes

    @classmethod
    def from_path(cls, path: Path) -> "PdfInput":
        path = Path(path)
        return cls(name=path.name, data=path.read_bytes())


# ============================================================================
# Progress and stage bookkeeping
# ============================================================================

class _Progress:
    """Monotonic progress reporting across the files of a batch."""

    def __init__(self, callback: Optional[Callable[[ProgressEvent], None]], file_count: int):
        self.callback = callback
        self.file_count = max(file_count, 1)
        self.file_index = 0
        self.last_pct = 0

    def emit(
        self,
        stage: PipelineStage,
        message: str = "",
        current_page: Optional[int] = None,
        total_pages: Optional[int] = None,
        pct: Optional[int] = None,
    ) -> None:
        if pct is None:
            slot = 100 / self.file_count
            pct = int(self.file_index * slot + STAGE_PCT[stage] * slot / 100)
        pct = max(self.last_pct, min(100, pct))
        self.last_pct = pct
        if self.callback is None:
            return
        self.callback(ProgressEvent(
            stage=stage, message=message, pct=pct, current_page=current_page, total_pages=total_pages
        ))


@dataclass
class _Run:
    """Shared state for one pipeline invocation."""
    options: PipelineOptions
    config: Dict
    progress: _Progress
    cache: Optional[ContentCache] = None
    ocr_engine: Optional[OcrEngine] = None
    ai_extractor: Optional[PlanExtractor] = None
    telemetry: Telemetry = field(default_factory=Telemetry)

    @property
    def cancel_token(self) -> Optional[CancellationToken]:
        return self.options.cancel_token

    @contextmanager
    def stage(self, stage: PipelineStage, message: str = ""):
        """Check cancellation, report progress and time the stage."""
        check_cancelled(self.cancel_token, stage.value)
        logger.info(f"Stage {stage.value}{': ' + message if message else ''}")
        self.progress.emit(stage, message)
        with self.telemetry.span(stage.value):
            yield


@dataclass
class _FileState:
    """Intermediate results for one file, filled stage by stage."""
    name: str
    data: bytes
    file_hash: str
    pdf: Optional[PdfText] = None
    text_yield: TextYield = TextYield.NONE
    page_texts: Dict[int, str] = field(default_factory=dict)
    lines_by_page: Dict[int, List[PageLine]] = field(default_factory=dict)
    items_by_page: Dict[int, list] = field(default_factory=dict)
    regions_by_page: Dict[int, List[Tuple[TableRegion, ClassifiedTable]]] = field(default_factory=dict)
    tables_summary: List[ClassifiedTable] = field(default_factory=list)
    sheet_index: Optional[SheetIndex] = None
    recipe_results: List[RecipeResult] = field(default_factory=list)
    claimed_pages: Set[int] = field(default_factory=set)
    skip_pages: Set[int] = field(default_factory=set)
    cover_sheet: Optional[CoverSheetExtraction] = None
    records: List[UnitRecord] = field(default_factory=list)
    ai: Optional[AiPlanExtraction] = None
    ai_fallback_reason: Optional[str] = None
    candidates: List[CandidatePage] = field(default_factory=list)
    parse_pages: List[int] = field(default_factory=list)
    page_scores: Dict[int, PageScore] = field(default_factory=dict)
    far: Optional[FarExtraction] = None
    far_pages_detected: bool = False
    totals_conflict: bool = False
    dropped_rows: int = 0
    totals_row: Optional[Tuple[int, int, str]] = None
    ocr_used: bool = False
    ocr_provider: OcrProviderName = OcrProviderName.NONE
    zoning: ZoningFields = field(default_factory=ZoningFields)
    raw_snippets: List[RawSnippet] = field(default_factory=list)
    mentions: List[UnitCountMention] = field(default_factory=list)
    inferred_bedrooms: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


# ============================================================================
# Stages
# ============================================================================

def _text_extract(run: _Run, st: _FileState) -> None:
    with run.stage(PipelineStage.TEXT_EXTRACT, st.name):
        pdf = extract_pdf_text(st.data)
        st.pdf = pdf
        st.warnings.extend(pdf.warnings)
        st.text_yield = assess_text_yield(pdf)
        st.page_texts = dict(pdf.page_texts)
        for page in pdf.pages:
            st.items_by_page[page.page_number] = page.items
            st.lines_by_page[page.page_number] = cluster_by_y(page.items, page.page_number)


def _classify(run: _Run, st: _FileState) -> None:
    with run.stage(PipelineStage.CLASSIFY):
        running_idx = 0
        for page, items in st.items_by_page.items():
            regions = []
            for region in reconstruct_tables(items, page):
                classified = classify_region(region, running_idx)
                running_idx += 1
                regions.append((region, classified))
                st.tables_summary.append(classified)
            st.regions_by_page[page] = regions
        logger.info(f"{len(st.tables_summary)} table(s) found")


def _sheet_index(run: _Run, st: _FileState) -> None:
    with run.stage(PipelineStage.SHEET_INDEX):
        st.sheet_index = index_sheets(
            st.pdf, cancel_check=lambda: check_cancelled(run.cancel_token, PipelineStage.SHEET_INDEX.value)
        )


def _recipe_run(run: _Run, st: _FileState) -> None:
    with run.stage(PipelineStage.RECIPE_RUN):
        overrides = run.options.sheet_overrides
        st.skip_pages = {p for p, v in overrides.items() if str(getattr(v, "value", v)).lower() == SKIP}
        try:
            selection = select_recipes(st.sheet_index, overrides)
        except ValueError as e:
            st.errors.append(f"Invalid sheet override: {e}")
            selection = select_recipes(st.sheet_index)

        results, failures = run_recipes(
            selection, st.lines_by_page, st.items_by_page,
            cancel_check=lambda: check_cancelled(run.cancel_token, PipelineStage.RECIPE_RUN.value),
        )
        st.recipe_results = results
        st.warnings.extend(failures)

        for result in results:
            if result.recipe != RecipeType.GENERIC:
                st.claimed_pages.update(result.pages)
            if result.recipe in RECORD_RECIPES:
                st.records.extend(result.unit_records)
            if result.recipe == RecipeType.COVER_SHEET and result.fields.get("cover_sheet"):
                st.cover_sheet = CoverSheetExtraction.model_validate(result.fields["cover_sheet"])


def _llm_extract(run: _Run, st: _FileState) -> None:
    with run.stage(PipelineStage.LLM_EXTRACT):
        options = run.options
        extractor = run.ai_extractor
        if options.extraction_mode == ExtractionMode.LOCAL_ONLY:
            st.ai_fallback_reason = "Local-only extraction mode"
            return
        if extractor is None or not extractor.is_available():
            st.ai_fallback_reason = "AI extractor unavailable"
            return

        hints = page_type_hints(st.sheet_index, st.recipe_results)
        context = build_parcel_context(options.parcel, options.zone_district) or None
        try:
            extraction, status = extractor.extract_from_pages(st.page_texts, hints, context, run.cancel_token)
        except PipelineCancelled:
            raise
        except Exception as e:
            logger.warning(f"AI extraction failed: {e}")
            st.errors.append(f"AI extraction failed: {e}")
            st.ai_fallback_reason = str(e)
            return

        if status.status == FAILED:
            st.errors.append(f"AI extraction failed: {status.reason}")
            st.ai_fallback_reason = status.reason
        elif status.status == SKIPPED:
            st.ai_fallback_reason = status.reason
        st.ai = extraction


def _candidate_score(run: _Run, st: _FileState) -> None:
    with run.stage(PipelineStage.CANDIDATE_SCORE):
        st.candidates = detect_candidate_pages(st.lines_by_page)


def _unit_schedule_regions(st: _FileState, page: int) -> List[TableRegion]:
    return [r for r, c in st.regions_by_page.get(page, []) if c.table_type == TableType.UNIT_SCHEDULE]


def _table_recon(run: _Run, st: _FileState) -> None:
    with run.stage(PipelineStage.TABLE_RECON):
        table_pages = {p for p in st.regions_by_page if _unit_schedule_regions(st, p)}
        pages = ({c.page for c in st.candidates} | table_pages) - st.skip_pages - st.claimed_pages
        st.parse_pages = sorted(pages)


def _parse_rows(run: _Run, st: _FileState) -> None:
    weights = confidence_weights(run.config)
    candidates = {c.page: c for c in st.candidates}
    with run.stage(PipelineStage.PARSE_ROWS, f"{len(st.parse_pages)} page(s)"):
        for n, page in enumerate(st.parse_pages, 1):
            check_cancelled(run.cancel_token, PipelineStage.PARSE_ROWS.value)
            run.progress.emit(PipelineStage.PARSE_ROWS, f"Parsing page {page}", current_page=n,
                              total_pages=len(st.parse_pages))
            regions = _unit_schedule_regions(st, page)
            candidate = candidates.get(page)
            records: List[UnitRecord] = []
            mapped = dropped = 0
            totals_value = None

            for region in regions:
                check_cancelled(run.cancel_token, PipelineStage.PARSE_ROWS.value)
                parsed = parse_table(region)
                records.extend(parsed.records)
                mapped = max(mapped, len(parsed.mapping))
                dropped += parsed.dropped_rows
                if totals_value is None and parsed.totals_value is not None:
                    totals_value = parsed.totals_value
                    row = extract_totals_row(region.data_rows)
                    if st.totals_row is None and row is not None:
                        st.totals_row = (row[0], page, row[1])

            if not regions and candidate is not None and SCHEDULE_TAG in candidate.tags:
                for line in st.lines_by_page.get(page, []):
                    record = parse_unit_line(line.text, page)
                    if record is not None:
                        records.append(record)

            if candidate is not None and FAR_TAG in candidate.tags:
                st.far_pages_detected = True
                if st.far is None:
                    st.far = extract_far_from_lines(st.lines_by_page.get(page, []), page)

            consistent = totals_consistent(totals_value, len(records))
            if totals_value is not None and not consistent:
                st.totals_conflict = True
            st.dropped_rows += dropped
            st.records.extend(records)

            if regions or records:
                signals = PageSignals(
                    page=page,
                    table_detected=bool(regions),
                    mapped_columns=mapped,
                    totals_found=totals_value is not None,
                    totals_consistent=consistent,
                    rows=len(records),
                )
                st.page_scores[page] = PageScore(
                    page=page,
                    confidence=score_page_confidence(signals, weights),
                    rows=len(records),
                    mapped_columns=mapped,
                    header_detected=bool(regions),
                    totals_found=totals_value is not None,
                    totals_consistent=consistent,
                    totals_value=totals_value,
                    dropped_rows=dropped,
                    text_chars=st.pdf.page(page).char_count,
                )
            logger.debug(f"Page {page}: {len(records)} records from {len(regions)} table(s)")


def _title_block_crop_pages(
    st: _FileState, signals: Dict[int, Dict[str, float]], ocr_pages: Sequence[int], budget: int, text_chars_floor: int
) -> List[int]:
    """Text-poor pages without a readable title block that full-page OCR skipped."""
    if budget <= 0:
        return []
    pages = {p.page_number: p for p in st.pdf.pages}
    chosen = [
        page for page, s in sorted(signals.items())
        if page not in ocr_pages and s["text_chars"] < text_chars_floor and not has_title_block(pages[page])
    ]
    return chosen[:budget]


def _crop_title_blocks(run: _Run, st: _FileState, engine: OcrEngine, pages: Sequence[int]) -> List[SheetInfo]:
    sheets = []
    for page in pages:
        check_cancelled(run.cancel_token, PipelineStage.OCR_FALLBACK.value)
        try:
            text = engine.ocr_crop(st.data, page, TITLE_BLOCK_REGION).text
        except PipelineCancelled:
            raise
        except Exception as e:
            logger.warning(f"Title block OCR failed for page {page}: {e}")
            continue
        if text.strip():
            sheets.append(index_page_text(page, text))
    return sheets


def _ocr_fallback(run: _Run, st: _FileState) -> None:
    """OCR text-poor pages, then spend any budget left on title-block crops.

    Full pages and crops together never exceed the run's OCR page cap.
    """
    cfg = ocr_config(run.config)
    weights = confidence_weights(run.config)
    with run.stage(PipelineStage.OCR_FALLBACK):
        if not run.options.enable_ocr:
            return

        signals = {}
        for page in st.pdf.pages:
            number = page.page_number
            if number in st.skip_pages:
                continue
            score = st.page_scores.get(number)
            signals[number] = {
                "text_chars": page.char_count,
                "header_detected": bool(st.regions_by_page.get(number)),
                "confidence": score.confidence if score else 0.0,
            }
        cap = min(run.options.max_ocr_pages, cfg["max_pages"])
        pages = select_ocr_pages(signals, cap, cfg["text_chars_floor"], cfg["confidence_floor"])
        crop_pages = _title_block_crop_pages(st, signals, pages, cap - len(pages), cfg["text_chars_floor"])
        if not pages and not crop_pages:
            return

        engine = run.ocr_engine
        if engine is None or engine.name == OcrProviderName.NONE:
            if pages:
                st.warnings.append(f"OCR needed for {len(pages)} page(s) but no OCR provider is available")
            return

        ocr_sheets = []
        if pages:
            logger.info(f"OCR fallback on pages {pages} with {engine.name.value}")
            try:
                results = engine.ocr_pages(st.data, pages, run.cancel_token)
            except PipelineCancelled:
                raise
            except Exception as e:
                logger.warning(f"OCR failed: {e}")
                st.errors.append(f"OCR failed: {e}")
                return

            st.ocr_used = bool(results)
            st.ocr_provider = engine.name
            pdf_pages = {p.page_number: p for p in st.pdf.pages}
            for result in results:
                check_cancelled(run.cancel_token, PipelineStage.OCR_FALLBACK.value)
                records = []
                for line in result.lines:
                    if len(line.strip()) <= MIN_OCR_LINE_CHARS:
                        continue
                    record = parse_unit_line(line, result.page, method=ExtractionMethod.OCR)
                    if record is not None:
                        records.append(record)
                st.records.extend(records)
                if result.text.strip():
                    existing = st.page_texts.get(result.page, "")
                    st.page_texts[result.page] = f"{existing}\n{result.text}".strip()
                    if result.page in pdf_pages and not has_title_block(pdf_pages[result.page]):
                        ocr_sheets.append(index_page_text(result.page, result.text))

                page_signals = PageSignals(
                    page=result.page, rows=len(records), ocr_used=True, ocr_confidence=result.confidence
                )
                st.page_scores[result.page] = PageScore(
                    page=result.page,
                    confidence=score_page_confidence(page_signals, weights),
                    rows=len(records),
                    ocr_used=True,
                    text_chars=len(result.text.strip()),
                )

            if not any(r.text.strip() for r in results):
                st.errors.append(f"OCR recovered no text from {len(pages)} page(s)")

        if crop_pages:
            logger.info(f"Title block OCR on pages {crop_pages} with {engine.name.value}")
            ocr_sheets.extend(_crop_title_blocks(run, st, engine, crop_pages))
        st.sheet_index = replace_sheets(st.sheet_index, ocr_sheets)


def _declared_units(st: _FileState) -> Optional[int]:
    if st.mentions:
        return max(st.mentions, key=lambda m: m.confidence).value
    if st.ai is not None:
        return st.ai.totals.total_units
    return None


def _dedupe(run: _Run, st: _FileState) -> None:
    with run.stage(PipelineStage.DEDUPE):
        st.zoning, st.raw_snippets = extract_zoning_fields(st.page_texts)
        st.mentions = collect_unit_count_mentions(st.page_texts)
        records = deduplicate_records(st.records)

        if st.ai is not None:
            ai_records = ai_unit_records(st.ai)
            declared = _declared_units(st)
            if len(ai_records) > len(records):
                within = (
                    run.options.extraction_mode != ExtractionMode.AUTO
                    or declared is None
                    or len(ai_records) <= declared * AI_DECLARED_SLACK
                )
                if within:
                    logger.info(f"Using {len(ai_records)} AI unit records over {len(records)} rule-based")
                    records = deduplicate_records(ai_records)

        zone = run.options.zone_district or st.zoning.value_of("zone_district")
        st.records, st.inferred_bedrooms = apply_bedroom_inference(records, zone)


def _fill(update: Dict[str, ExtractedField], zoning: ZoningFields, name: str, value, confidence: float,
          page: Optional[int], source: str) -> None:
    if value is None or getattr(zoning, name) is not None or name in update:
        return
    update[name] = ExtractedField(value=value, confidence=confidence, page_number=page, source=source)


def merged_zoning(
    zoning: ZoningFields,
    far: Optional[FarExtraction],
    cover: Optional[CoverSheetExtraction],
    normalized=None,
) -> ZoningFields:
    """Fill zoning gaps from the FAR sheet, the cover sheet and the normalized recipes, in that order."""
    update: Dict[str, ExtractedField] = {}
    if far is not None:
        page = far.source.page
        source = EvidenceSource.ZONING_TEXT.value
        _fill(update, zoning, "lot_area", far.lot_area_sf, far.confidence, page, source)
        _fill(update, zoning, "zoning_floor_area", far.zoning_floor_area_sf, far.confidence, page, source)
        _fill(update, zoning, "proposed_floor_area", far.proposed_floor_area_sf, far.confidence, page, source)
        _fill(update, zoning, "far", far.proposed_far, far.confidence, page, source)
    if cover is not None:
        source = EvidenceSource.COVER_SHEET.value
        _fill(update, zoning, "lot_area", cover.lot_area_sf, 0.75, None, source)
        _fill(update, zoning, "far", cover.far, 0.75, None, source)
        _fill(update, zoning, "total_units", cover.total_units, 0.75, None, source)
        _fill(update, zoning, "floors", cover.floors, 0.75, None, source)
        _fill(update, zoning, "building_area", cover.building_area_sf, 0.75, None, source)
        _fill(update, zoning, "zone_district", cover.zone, 0.75, None, source)
        _fill(update, zoning, "bin", cover.bin, 0.75, None, source)
    if normalized is not None:
        source = "recipe"
        _fill(update, zoning, "lot_area", normalized.zoning.lot_area_sf, normalized.confidence, None, source)
        _fill(update, zoning, "zoning_floor_area", normalized.zoning.zoning_floor_area_sf, normalized.confidence, None, source)
        _fill(update, zoning, "far", normalized.zoning.far, normalized.confidence, None, source)
    return zoning.model_copy(update=update) if update else zoning


def _mentions_with_sources(st: _FileState) -> List[UnitCountMention]:
    mentions = list(st.mentions)
    if st.ai is not None:
        mention = ai_unit_mention(st.ai)
        if mention is not None:
            mentions.append(mention)
    if st.totals_row is not None:
        value, page, text = st.totals_row
        mentions.append(UnitCountMention(
            value=value, page=page, source_type=EvidenceSource.UNIT_SCHEDULE_TABLE,
            snippet=text, confidence=TOTALS_ROW_CONFIDENCE,
        ))
    return mentions


# ============================================================================
# Snapshot assembly
# ============================================================================

def _pages_used(st: _FileState) -> List[int]:
    pages = {r.source.page for r in st.records if r.source.page >= 1}
    if st.far is not None:
        pages.add(st.far.source.page)
    for result in st.recipe_results:
        if result.recipe != RecipeType.GENERIC:
            pages.update(result.pages)
    return sorted(pages)


def _status(errors: Sequence[str]) -> ExtractionStatusKind:
    return ExtractionStatusKind.PARTIAL if errors else ExtractionStatusKind.COMPLETE


def _add_unique(warnings: List[str], extra: Sequence[str]) -> None:
    for w in extra:
        if w not in warnings:
            warnings.append(w)


def _finish(run: _Run, snapshot: ExtractionSnapshot, warnings: List[str], zone: Optional[str]) -> ExtractionSnapshot:
    """VALIDATE through GATES, shared by single files and merged batches."""
    options = run.options
    with run.stage(PipelineStage.VALIDATE):
        validation = validate_extract(snapshot.normalized or normalize_recipe_results([], snapshot.unit_records),
                                      options.parcel)

    with run.stage(PipelineStage.PLUTO_CHECK):
        parcel_check = cross_check_with_parcel(snapshot, options.parcel) if options.parcel else None

    warnings = list(warnings)
    _add_unique(warnings, validation.warnings)
    if parcel_check is not None:
        _add_unique(warnings, parcel_check.warnings)

    overall = overall_confidence(snapshot.page_scores)
    if not snapshot.page_scores and snapshot.unit_records:
        overall = validation.adjusted_confidence

    by_page: Dict[int, float] = {}
    for p in snapshot.page_scores:
        by_page[p.page] = max(p.confidence, by_page.get(p.page, 0.0))

    snapshot = snapshot.model_copy(update={
        "validation": validation,
        "parcel_check": parcel_check,
        "confidence": SnapshotConfidence(overall=overall, by_page=by_page, warnings=warnings),
        "extraction": snapshot.extraction.model_copy(update={"overall_confidence": overall}),
    })

    with run.stage(PipelineStage.GATES):
        gate_set = evaluate_gates(snapshot, options.parcel, zone, run.config)
    return apply_gates(snapshot, gate_set)


def _assemble(run: _Run, st: _FileState) -> ExtractionSnapshot:
    options = run.options
    with run.stage(PipelineStage.LLM_NORMALIZE):
        normalized = normalize_recipe_results(st.recipe_results, st.records)
        zoning = merged_zoning(st.zoning, st.far, st.cover_sheet, normalized)
        mentions = _mentions_with_sources(st)
        mix_totals = compute_totals(st.records)

    ctx = WarningContext(
        records=st.records,
        totals_conflict=st.totals_conflict,
        ocr_used=st.ocr_used,
        text_yield=st.text_yield,
        dropped_rows=st.dropped_rows,
        far_pages_detected=st.far_pages_detected,
        far_extracted=st.far is not None,
        inferred_bedrooms=st.inferred_bedrooms,
        unit_mix_found=any(r.bedroom_type != BedroomType.UNKNOWN for r in st.records),
        declared_total=_declared_units(st),
    )
    warnings = generate_warnings(ctx)
    _add_unique(warnings, st.warnings)

    snapshot = ExtractionSnapshot(
        status=_status(st.errors),
        file_hash=st.file_hash,
        file_names=[st.name],
        bbl=options.bbl,
        totals=unit_totals(st.records),
        unit_mix=unit_mix_counts(mix_totals.by_bedroom_type),
        unit_records=st.records,
        unit_totals=mix_totals,
        zoning=zoning,
        far=st.far,
        cover_sheet=st.cover_sheet,
        extraction=PdfExtraction(
            zoning_analysis=zoning,
            text_yield=st.text_yield,
            needs_ocr=st.text_yield != TextYield.HIGH or is_likely_scanned(st.pdf),
            page_count=st.pdf.page_count,
            raw_snippets=st.raw_snippets,
        ),
        evidence=SnapshotEvidence(pages_used=_pages_used(st), tables_found=len(st.tables_summary)),
        page_scores=[st.page_scores[p] for p in sorted(st.page_scores)],
        tables_summary=st.tables_summary,
        unit_count_mentions=mentions,
        redundancy_score=redundancy_score(mentions),
        errors=st.errors,
        sheet_index=st.sheet_index,
        recipe_results=st.recipe_results,
        normalized=normalized,
        ocr_used=st.ocr_used,
        ocr_provider_used=st.ocr_provider,
        ai_extraction_used=st.ai is not None,
        ai_extraction=st.ai,
        ai_fallback_reason=st.ai_fallback_reason,
        parcel=options.parcel,
    )
    zone = options.zone_district or zoning.value_of("zone_district")
    return _finish(run, snapshot, warnings, zone)


def _unparseable(run: _Run, name: str, file_hash: str, error: Exception) -> ExtractionSnapshot:
    """Empty extraction substituted for a document that could not be opened."""
    return ExtractionSnapshot(
        status=ExtractionStatusKind.PARTIAL,
        file_hash=file_hash,
        file_names=[name],
        bbl=run.options.bbl,
        errors=[f"{name}: {error}"],
        parcel=run.options.parcel,
    )


def snapshot_from_cache(entry: ExtractionSnapshot, name: Optional[str] = None) -> ExtractionSnapshot:
    """Present a stored snapshot as a cache hit; the stored payload is left as is."""
    update = {"status": ExtractionStatusKind.CACHED}
    if name and name not in entry.file_names:
        update["file_names"] = entry.file_names + [name]
    return entry.model_copy(update=update)


# ============================================================================
# Per-file run
# ============================================================================

def _cache_get(run: _Run, file_hash: str) -> Optional[ExtractionSnapshot]:
    if run.cache is None:
        return None
    try:
        if run.options.force_refresh:
            run.cache.invalidate(file_hash)
            return None
        return run.cache.get(file_hash)
    except Exception as e:
        logger.warning(f"Cache lookup failed for {file_hash[:12]}: {e}")
        return None


def _cache_put(run: _Run, file_hash: str, snapshot: ExtractionSnapshot) -> None:
    if run.cache is None:
        return
    try:
        run.cache.put(file_hash, snapshot)
    except Exception as e:
        logger.warning(f"Cache write failed for {file_hash[:12]}: {e}")


def _extract_file(run: _Run, pdf_input: PdfInput) -> Tuple[ExtractionSnapshot, List[str]]:
    """Run every stage for one document.

    Returns:
        (snapshot, warnings that came from validation and the parcel check)
    """
    run.telemetry = Telemetry()
    file_hash = compute_file_hash(pdf_input.data)

    with run.stage(PipelineStage.CACHE_CHECK, pdf_input.name):
        cached = _cache_get(run, file_hash)
    if cached is not None:
        logger.info(f"Cache hit for {pdf_input.name} ({file_hash[:12]})")
        return snapshot_from_cache(cached, pdf_input.name), _recomputed_warnings(cached)

    st = _FileState(name=pdf_input.name, data=pdf_input.data, file_hash=file_hash)
    try:
        _text_extract(run, st)
    except PdfParseError as e:
        logger.warning(f"Could not parse {pdf_input.name}: {e}")
        snapshot = _unparseable(run, pdf_input.name, file_hash, e)
        snapshot = _finish(run, snapshot, [], run.options.zone_district)
        return snapshot.model_copy(update={"timing": run.telemetry.durations()}), _recomputed_warnings(snapshot)

    _classify(run, st)
    _sheet_index(run, st)
    _recipe_run(run, st)
    _llm_extract(run, st)
    _candidate_score(run, st)
    _table_recon(run, st)
    _parse_rows(run, st)
    _ocr_fallback(run, st)
    _dedupe(run, st)
    snapshot = _assemble(run, st)

    with run.stage(PipelineStage.CACHE_WRITE):
        snapshot = snapshot.model_copy(update={"timing": run.telemetry.durations()})
        _cache_put(run, file_hash, snapshot)
    return snapshot, _recomputed_warnings(snapshot)


def _recomputed_warnings(snapshot: ExtractionSnapshot) -> List[str]:
    warnings = list(snapshot.validation.warnings) if snapshot.validation else []
    if snapshot.parcel_check is not None:
        warnings.extend(snapshot.parcel_check.warnings)
    return warnings


# ============================================================================
# Batch merge
# ============================================================================

def _first(values):
    return next((v for v in values if v is not None), None)


def _merge(run: _Run, parts: List[Tuple[ExtractionSnapshot, List[str]]]) -> ExtractionSnapshot:
    """Combine per-file snapshots into one batch result."""
    snapshots = [s for s, _ in parts]
    records: List[UnitRecord] = []
    for idx, s in enumerate(snapshots):
        for r in s.unit_records:
            if not r.unit_id and r.record_key:
                r = r.model_copy(update={"record_key": f"f{idx}:{r.record_key}"})
            records.append(r)
    records = deduplicate_records(records)

    zoning_update = {}
    for name in ZoningFields.model_fields:
        value = _first(getattr(s.zoning, name) for s in snapshots)
        if value is not None:
            zoning_update[name] = value
    zoning = ZoningFields(**zoning_update)

    warnings: List[str] = []
    for s, recomputed in parts:
        _add_unique(warnings, [w for w in s.warnings if w not in recomputed])

    errors = [e for s in snapshots for e in s.errors]
    mentions = [m for s in snapshots for m in s.unit_count_mentions]
    recipe_results = [r for s in snapshots for r in s.recipe_results]
    ai = _first(s.ai_extraction for s in snapshots)
    ocr_provider = _first(s.ocr_provider_used for s in snapshots if s.ocr_used) or OcrProviderName.NONE
    mix_totals = compute_totals(records)

    timing: Dict[str, float] = {}
    for s in snapshots:
        for key, seconds in s.timing.items():
            timing[key] = round(timing.get(key, 0.0) + seconds, 3)

    snapshot = ExtractionSnapshot(
        status=_status(errors),
        file_hash=snapshots[0].file_hash,
        file_names=[n for s in snapshots for n in s.file_names],
        bbl=run.options.bbl,
        totals=unit_totals(records),
        unit_mix=unit_mix_counts(mix_totals.by_bedroom_type),
        unit_records=records,
        unit_totals=mix_totals,
        zoning=zoning,
        far=_first(s.far for s in snapshots),
        cover_sheet=_first(s.cover_sheet for s in snapshots),
        extraction=PdfExtraction(
            zoning_analysis=zoning,
            text_yield=max((s.extraction.text_yield for s in snapshots), key=_yield_rank),
            needs_ocr=any(s.extraction.needs_ocr for s in snapshots),
            page_count=sum(s.extraction.page_count for s in snapshots),
            raw_snippets=[r for s in snapshots for r in s.extraction.raw_snippets],
        ),
        evidence=SnapshotEvidence(
            pages_used=sorted({p for s in snapshots for p in s.evidence.pages_used}),
            tables_found=sum(s.evidence.tables_found for s in snapshots),
        ),
        page_scores=[p for s in snapshots for p in s.page_scores],
        tables_summary=[t for s in snapshots for t in s.tables_summary],
        unit_count_mentions=mentions,
        redundancy_score=redundancy_score(mentions),
        errors=errors,
        sheet_index=_first(s.sheet_index for s in snapshots),
        recipe_results=recipe_results,
        normalized=normalize_recipe_results(recipe_results, records),
        ocr_used=any(s.ocr_used for s in snapshots),
        ocr_provider_used=ocr_provider,
        ai_extraction_used=ai is not None,
        ai_extraction=ai,
        ai_fallback_reason=_first(s.ai_fallback_reason for s in snapshots),
        parcel=run.options.parcel,
        timing=timing,
    )
    zone = run.options.zone_district or zoning.value_of("zone_district")
    snapshot = _finish(run, snapshot, warnings, zone)
    if all(s.status == ExtractionStatusKind.CACHED for s in snapshots):
        snapshot = snapshot.model_copy(update={"status": ExtractionStatusKind.CACHED})
    return snapshot


def _yield_rank(value: TextYield) -> int:
    return [TextYield.NONE, TextYield.LOW, TextYield.HIGH].index(value)


# ============================================================================
# Entry point
# ============================================================================

def _resolve_engine(options: PipelineOptions, ocr_resolver: Optional[OcrResolver]) -> OcrEngine:
    if not options.enable_ocr:
        return NoOpOcrEngine()
    try:
        return (ocr_resolver or resolve_ocr_engine)()
    except Exception as e:
        logger.warning(f"OCR provider resolution failed: {e}")
        fallback = TesseractOcrEngine()
        return fallback if fallback.is_available() else NoOpOcrEngine()


def _cancelled(files: Sequence[PdfInput], options: PipelineOptions, error: PipelineCancelled) -> ExtractionSnapshot:
    return ExtractionSnapshot(
        status=ExtractionStatusKind.CANCELLED,
        file_names=[f.name for f in files],
        bbl=options.bbl,
        parcel=options.parcel,
        confidence=SnapshotConfidence(warnings=[str(error)]),
    )


def run_pipeline(
    files: Sequence[PdfInput],
    options: Optional[PipelineOptions] = None,
    cache: Optional[ContentCache] = None,
    ocr_resolver: Optional[OcrResolver] = None,
    ai_extractor: Optional[PlanExtractor] = None,
    config: Optional[Dict] = None,
) -> ExtractionSnapshot:
    """
    Extract a reconciled snapshot from one or more plan-set PDFs.

    Args:
        files: Documents to process, in order
        options: Per-run options (parcel data, overrides, mode, hooks)
        cache: Content cache keyed by file hash (None disables caching)
        ocr_resolver: Returns the OCR engine for this run (default picks the first available provider)
        ai_extractor: AI extraction capability (None disables AI extraction)
        config: Pipeline configuration (defaults to pipeline_config.yaml)

    Returns:
        ExtractionSnapshot with status complete, partial, cached or cancelled
    """
    if not files:
        raise ValueError("run_pipeline requires at least one file")

    options = options or PipelineOptions()
    run = _Run(
        options=options,
        config=config or load_pipeline_config(),
        progress=_Progress(options.progress, len(files)),
        cache=cache,
        ai_extractor=ai_extractor,
    )

    try:
        check_cancelled(run.cancel_token, PipelineStage.CACHE_CHECK.value)
        run.ocr_engine = _resolve_engine(options, ocr_resolver)

        parts = []
        for idx, pdf_input in enumerate(files):
            run.progress.file_index = idx
            logger.info(f"Processing {pdf_input.name} ({idx + 1}/{len(files)})")
            parts.append(_extract_file(run, pdf_input))

        snapshot = parts[0][0] if len(parts) == 1 else _merge(run, parts)
    except PipelineCancelled as e:
        logger.info(str(e))
        return _cancelled(files, options, e)

    run.progress.emit(PipelineStage.DONE, "Extraction complete", pct=100)
    logger.info(
        f"Done: {snapshot.totals.total_units} units, status {snapshot.status.value}, "
        f"confidence {snapshot.confidence.overall:.2f}"
    )
    return snapshot
