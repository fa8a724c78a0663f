"""End-to-end tests for the extraction pipeline with fake OCR and AI capabilities."""
import pytest

from conftest import FakeOcrEngine, FakePlanExtractor, make_pdf, schedule_page
from extraction.cancellation import CancellationToken
from extraction.ocr import NoOpOcrEngine
from extraction.pipeline import PdfInput, run_pipeline
from extraction.recipes import RECIPES, Recipe
from schemas.ai import AiExtractionStatus, AiPlanExtraction, AiTotals, AiUnitRecord
from schemas.enums import (
    BedroomType,
    ExtractionMethod,
    ExtractionMode,
    ExtractionStatusKind,
    OcrProviderName,
    PipelineStage,
    RecipeType,
    SheetMethod,
    SheetType,
)
from schemas.snapshot import PipelineOptions


def no_ocr():
    return NoOpOcrEngine()


def ai_result(count, declared=None):
    return AiPlanExtraction(
        totals=AiTotals(total_units=declared if declared is not None else count),
        unit_records=[AiUnitRecord(unit_id=f"{n + 1}A", area_sf=700.0, bedroom_type="1BR") for n in range(count)],
    )


class TestCleanSchedule:
    def test_snapshot(self, clean_schedule_pdf):
        snapshot = run_pipeline([PdfInput("plans.pdf", clean_schedule_pdf)], ocr_resolver=no_ocr)

        assert snapshot.status == ExtractionStatusKind.COMPLETE
        assert snapshot.errors == []
        assert snapshot.warnings == []
        assert snapshot.totals.total_units == 20
        assert snapshot.unit_totals.by_bedroom_type == {"1BR": 10, "2BR": 10}
        assert all(r.source.method == ExtractionMethod.TEXT_TABLE for r in snapshot.unit_records)
        assert [p.confidence for p in snapshot.page_scores] == [0.85]
        assert snapshot.ocr_used is False
        assert snapshot.file_names == ["plans.pdf"]
        assert len(snapshot.file_hash) == 64

    def test_sheet_index_and_generic_recipe(self, clean_schedule_pdf):
        snapshot = run_pipeline([PdfInput("plans.pdf", clean_schedule_pdf)], ocr_resolver=no_ocr)

        sheet = snapshot.sheet_index.get(1)
        assert sheet.sheet_type == SheetType.UNIT_SCHEDULE
        assert sheet.confidence == 0.7
        assert sheet.method == SheetMethod.PDF_TEXT
        assert [r.recipe for r in snapshot.recipe_results] == [RecipeType.GENERIC]
        assert snapshot.recipe_results[0].pages == [1]

    def test_totals_row_counts_as_mention(self, clean_schedule_pdf):
        snapshot = run_pipeline([PdfInput("plans.pdf", clean_schedule_pdf)], ocr_resolver=no_ocr)
        assert any(m.value == 20 and m.page == 1 for m in snapshot.unit_count_mentions)

    def test_progress(self, clean_schedule_pdf):
        events = []
        options = PipelineOptions(progress=events.append)
        run_pipeline([PdfInput("plans.pdf", clean_schedule_pdf)], options=options, ocr_resolver=no_ocr)

        pcts = [e.pct for e in events]
        assert pcts == sorted(pcts)
        assert events[0].stage == PipelineStage.CACHE_CHECK
        assert events[-1].stage == PipelineStage.DONE
        assert events[-1].pct == 100

    def test_timing_recorded(self, clean_schedule_pdf):
        snapshot = run_pipeline([PdfInput("plans.pdf", clean_schedule_pdf)], ocr_resolver=no_ocr)
        assert PipelineStage.TEXT_EXTRACT.value in snapshot.timing
        assert all(seconds >= 0 for seconds in snapshot.timing.values())

    def test_requires_files(self):
        with pytest.raises(ValueError):
            run_pipeline([])


class TestScannedDocument:
    def test_ocr_fallback(self, scanned_pdf, ocr_schedule_lines):
        engine = FakeOcrEngine(ocr_schedule_lines)
        snapshot = run_pipeline([PdfInput("scan.pdf", scanned_pdf)], ocr_resolver=lambda: engine)

        assert engine.page_calls == [[1, 2, 3, 4, 5, 6, 7, 8]]
        assert engine.crop_calls == []
        assert len(snapshot.unit_records) == 16
        assert all(r.source.method == ExtractionMethod.OCR for r in snapshot.unit_records)
        assert snapshot.ocr_used
        assert snapshot.ocr_provider_used == OcrProviderName.TESSERACT
        assert "OCR used for some pages; verify schedule data" in snapshot.warnings
        assert "Low text yield (none); document may be scanned" in snapshot.warnings
        assert snapshot.extraction.needs_ocr

    def test_ocr_disabled(self, scanned_pdf, ocr_schedule_lines):
        engine = FakeOcrEngine(ocr_schedule_lines)
        options = PipelineOptions(enable_ocr=False)
        snapshot = run_pipeline([PdfInput("scan.pdf", scanned_pdf)], options=options, ocr_resolver=lambda: engine)

        assert engine.page_calls == []
        assert snapshot.unit_records == []
        assert not snapshot.ocr_used
        assert "Unit mix schedule not found; not inferred from floor plans" in snapshot.warnings

    def test_ocr_page_cap(self, scanned_pdf, ocr_schedule_lines):
        engine = FakeOcrEngine(ocr_schedule_lines)
        options = PipelineOptions(max_ocr_pages=3)
        run_pipeline([PdfInput("scan.pdf", scanned_pdf)], options=options, ocr_resolver=lambda: engine)
        assert engine.page_calls == [[1, 2, 3]]
        assert engine.crop_calls == []

    def test_ocr_pages_reindexed_from_ocr_text(self, scanned_pdf, ocr_schedule_lines):
        engine = FakeOcrEngine(ocr_schedule_lines)
        snapshot = run_pipeline([PdfInput("scan.pdf", scanned_pdf)], ocr_resolver=lambda: engine)

        assert all(snapshot.sheet_index.get(p).method == SheetMethod.OCR for p in range(1, 9))
        assert snapshot.sheet_index.get(9).method == SheetMethod.PDF_TEXT
        assert len(snapshot.sheet_index.pages) == 10

    def test_ocr_failure_is_partial(self, scanned_pdf):
        engine = FakeOcrEngine(fail=RuntimeError("tesseract crashed"))
        snapshot = run_pipeline([PdfInput("scan.pdf", scanned_pdf)], ocr_resolver=lambda: engine)

        assert snapshot.status == ExtractionStatusKind.PARTIAL
        assert "OCR failed: tesseract crashed" in snapshot.errors

    def test_no_provider_warns(self, scanned_pdf):
        snapshot = run_pipeline([PdfInput("scan.pdf", scanned_pdf)], ocr_resolver=no_ocr)
        assert "OCR needed for 8 page(s) but no OCR provider is available" in snapshot.warnings

    def test_resolver_failure_falls_back(self, scanned_pdf, monkeypatch):
        monkeypatch.setattr("extraction.pipeline.TesseractOcrEngine.is_available", lambda self: False)

        def broken():
            raise RuntimeError("no providers configured")

        snapshot = run_pipeline([PdfInput("scan.pdf", scanned_pdf)], ocr_resolver=broken)
        assert not snapshot.ocr_used
        assert snapshot.status == ExtractionStatusKind.COMPLETE


class TestOcrBudget:
    @pytest.fixture
    def mixed_pdf(self):
        """A short schedule with no title block, then four pages with no text layer."""
        return make_pdf([schedule_page(2)] + [[] for _ in range(4)])

    def test_native_document_runs_no_ocr(self):
        engine = FakeOcrEngine()
        pdf = make_pdf([schedule_page(20) for _ in range(5)])
        snapshot = run_pipeline([PdfInput("native.pdf", pdf)], ocr_resolver=lambda: engine)

        assert engine.page_calls == []
        assert engine.crop_calls == []
        assert not snapshot.ocr_used

    def test_title_block_crops_use_leftover_budget(self, mixed_pdf):
        engine = FakeOcrEngine(crop_text={1: "A-100\nUNIT SCHEDULE"})
        snapshot = run_pipeline([PdfInput("mixed.pdf", mixed_pdf)], ocr_resolver=lambda: engine)

        assert engine.page_calls == [[2, 3, 4, 5]]
        assert engine.crop_calls == [1]
        sheet = snapshot.sheet_index.get(1)
        assert sheet.method == SheetMethod.OCR
        assert sheet.drawing_no == "A-100"
        assert sheet.sheet_type == SheetType.UNIT_SCHEDULE

    @pytest.mark.parametrize("cap", [0, 3, 4, 5])
    def test_pages_and_crops_stay_within_cap(self, mixed_pdf, cap):
        engine = FakeOcrEngine()
        options = PipelineOptions(max_ocr_pages=cap)
        run_pipeline([PdfInput("mixed.pdf", mixed_pdf)], options=options, ocr_resolver=lambda: engine)

        calls = sum(len(pages) for pages in engine.page_calls) + len(engine.crop_calls)
        assert calls == min(cap, 5)

    def test_crop_failure_is_not_an_error(self, mixed_pdf):
        engine = FakeOcrEngine()

        def broken_crop(pdf_bytes, page, region):
            raise RuntimeError("crop render failed")

        engine.ocr_crop = broken_crop
        snapshot = run_pipeline([PdfInput("mixed.pdf", mixed_pdf)], ocr_resolver=lambda: engine)
        assert not any("crop render failed" in e for e in snapshot.errors)
        assert snapshot.sheet_index.get(1).method == SheetMethod.PDF_TEXT


class TestSkipOverride:
    def test_skipped_page_not_parsed(self, clean_schedule_pdf):
        options = PipelineOptions(sheet_overrides={1: "skip"})
        snapshot = run_pipeline([PdfInput("plans.pdf", clean_schedule_pdf)], options=options, ocr_resolver=no_ocr)

        assert snapshot.unit_records == []
        assert snapshot.recipe_results == []

    def test_invalid_override_recorded(self, clean_schedule_pdf):
        options = PipelineOptions(sheet_overrides={1: "bogus"})
        snapshot = run_pipeline([PdfInput("plans.pdf", clean_schedule_pdf)], options=options, ocr_resolver=no_ocr)

        assert snapshot.status == ExtractionStatusKind.PARTIAL
        assert any(e.startswith("Invalid sheet override") for e in snapshot.errors)
        assert snapshot.totals.total_units == 20


class TestRecipeFailure:
    def test_failed_recipe_is_a_warning(self, clean_schedule_pdf, monkeypatch):
        def boom(pages, lines, items):
            raise RuntimeError("boom")

        monkeypatch.setitem(RECIPES, RecipeType.GENERIC, Recipe(RecipeType.GENERIC, lambda sheet: True, boom))
        snapshot = run_pipeline([PdfInput("plans.pdf", clean_schedule_pdf)], ocr_resolver=no_ocr)

        assert snapshot.status == ExtractionStatusKind.COMPLETE
        assert snapshot.errors == []
        assert "Recipe GENERIC failed: boom" in snapshot.warnings
        assert snapshot.recipe_results == []
        assert snapshot.totals.total_units == 20


class TestCancellation:
    def test_cancel_mid_run(self, clean_schedule_pdf, memory_cache):
        token = CancellationToken()
        extractor = FakePlanExtractor(ai_result(3))

        def on_progress(event):
            if event.stage == PipelineStage.RECIPE_RUN:
                token.cancel()

        options = PipelineOptions(progress=on_progress, cancel_token=token)
        snapshot = run_pipeline(
            [PdfInput("plans.pdf", clean_schedule_pdf)],
            options=options, cache=memory_cache, ocr_resolver=no_ocr, ai_extractor=extractor,
        )

        assert snapshot.status == ExtractionStatusKind.CANCELLED
        assert snapshot.unit_records == []
        assert extractor.calls == []
        assert memory_cache.puts == 0

    def test_cancelled_before_start(self, clean_schedule_pdf):
        token = CancellationToken()
        token.cancel()
        snapshot = run_pipeline(
            [PdfInput("plans.pdf", clean_schedule_pdf)],
            options=PipelineOptions(cancel_token=token), ocr_resolver=no_ocr,
        )
        assert snapshot.status == ExtractionStatusKind.CANCELLED
        assert snapshot.file_names == ["plans.pdf"]

    def test_cancel_while_indexing_sheets(self, scanned_pdf):
        token = CancellationToken()
        engine = FakeOcrEngine()

        def on_progress(event):
            if event.stage == PipelineStage.SHEET_INDEX:
                token.cancel()

        options = PipelineOptions(progress=on_progress, cancel_token=token)
        snapshot = run_pipeline([PdfInput("scan.pdf", scanned_pdf)], options=options, ocr_resolver=lambda: engine)

        assert snapshot.status == ExtractionStatusKind.CANCELLED
        assert engine.page_calls == []
        assert engine.crop_calls == []


class TestCaching:
    def test_second_run_is_cached(self, clean_schedule_pdf, memory_cache):
        files = [PdfInput("plans.pdf", clean_schedule_pdf)]
        first = run_pipeline(files, cache=memory_cache, ocr_resolver=no_ocr)
        second = run_pipeline(files, cache=memory_cache, ocr_resolver=no_ocr)

        assert first.status == ExtractionStatusKind.COMPLETE
        assert second == first.model_copy(update={"status": ExtractionStatusKind.CACHED})
        assert memory_cache.puts == 1

    def test_force_refresh(self, clean_schedule_pdf, memory_cache):
        files = [PdfInput("plans.pdf", clean_schedule_pdf)]
        run_pipeline(files, cache=memory_cache, ocr_resolver=no_ocr)
        refreshed = run_pipeline(
            files, options=PipelineOptions(force_refresh=True), cache=memory_cache, ocr_resolver=no_ocr
        )

        assert refreshed.status == ExtractionStatusKind.COMPLETE
        assert memory_cache.puts == 2

    def test_unparseable_not_cached(self, memory_cache):
        snapshot = run_pipeline([PdfInput("bad.pdf", b"not a pdf")], cache=memory_cache, ocr_resolver=no_ocr)
        assert snapshot.status == ExtractionStatusKind.PARTIAL
        assert memory_cache.puts == 0


class TestBatch:
    def test_corrupt_file_keeps_batch_going(self, clean_schedule_pdf):
        snapshot = run_pipeline(
            [PdfInput("plans.pdf", clean_schedule_pdf), PdfInput("bad.pdf", b"not a pdf")],
            ocr_resolver=no_ocr,
        )

        assert snapshot.status == ExtractionStatusKind.PARTIAL
        assert snapshot.file_names == ["plans.pdf", "bad.pdf"]
        assert snapshot.errors[0].startswith("bad.pdf:")
        assert snapshot.totals.total_units == 20

    def test_records_merged_across_files(self):
        first = make_pdf([schedule_page(8)])
        second = make_pdf([schedule_page(4, top=300)])
        snapshot = run_pipeline([PdfInput("a.pdf", first), PdfInput("b.pdf", second)], ocr_resolver=no_ocr)

        # Unit ids 2A-2D repeat in the second file and dedupe away
        assert snapshot.totals.total_units == 8
        assert snapshot.extraction.page_count == 2
        assert snapshot.status == ExtractionStatusKind.COMPLETE

    def test_progress_spans_files(self, clean_schedule_pdf):
        events = []
        run_pipeline(
            [PdfInput("a.pdf", clean_schedule_pdf), PdfInput("b.pdf", make_pdf([schedule_page(4)]))],
            options=PipelineOptions(progress=events.append), ocr_resolver=no_ocr,
        )
        pcts = [e.pct for e in events]
        assert pcts == sorted(pcts)
        assert any(e.stage == PipelineStage.TEXT_EXTRACT and 50 <= e.pct < 100 for e in events)


class TestAiExtraction:
    def test_local_only_skips_ai(self, clean_schedule_pdf):
        extractor = FakePlanExtractor(ai_result(3))
        options = PipelineOptions(extraction_mode=ExtractionMode.LOCAL_ONLY)
        snapshot = run_pipeline(
            [PdfInput("plans.pdf", clean_schedule_pdf)], options=options, ocr_resolver=no_ocr, ai_extractor=extractor
        )

        assert extractor.calls == []
        assert snapshot.ai_fallback_reason == "Local-only extraction mode"
        assert not snapshot.ai_extraction_used

    def test_unavailable_extractor(self, clean_schedule_pdf):
        extractor = FakePlanExtractor(ai_result(3), available=False)
        snapshot = run_pipeline([PdfInput("plans.pdf", clean_schedule_pdf)], ocr_resolver=no_ocr, ai_extractor=extractor)
        assert snapshot.ai_fallback_reason == "AI extractor unavailable"
        assert snapshot.status == ExtractionStatusKind.COMPLETE

    def test_failure_becomes_error(self, clean_schedule_pdf):
        extractor = FakePlanExtractor(fail=RuntimeError("rate limited"))
        snapshot = run_pipeline([PdfInput("plans.pdf", clean_schedule_pdf)], ocr_resolver=no_ocr, ai_extractor=extractor)

        assert snapshot.status == ExtractionStatusKind.PARTIAL
        assert "AI extraction failed: rate limited" in snapshot.errors
        assert snapshot.totals.total_units == 20

    def test_failed_status(self, clean_schedule_pdf):
        extractor = FakePlanExtractor(status=AiExtractionStatus(status="failed", reason="unparseable response"))
        snapshot = run_pipeline([PdfInput("plans.pdf", clean_schedule_pdf)], ocr_resolver=no_ocr, ai_extractor=extractor)
        assert "AI extraction failed: unparseable response" in snapshot.errors
        assert snapshot.ai_fallback_reason == "unparseable response"

    def test_ai_records_fill_empty_scan(self, scanned_pdf):
        extractor = FakePlanExtractor(ai_result(3))
        snapshot = run_pipeline(
            [PdfInput("scan.pdf", scanned_pdf)],
            options=PipelineOptions(enable_ocr=False), ai_extractor=extractor,
        )

        assert len(extractor.calls) == 1
        assert snapshot.ai_extraction_used
        assert [r.unit_id for r in snapshot.unit_records] == ["1A", "2A", "3A"]
        assert all(r.source.page == -1 for r in snapshot.unit_records)
        assert all(r.bedroom_type == BedroomType.BR1 for r in snapshot.unit_records)

    def test_ai_records_beyond_declared_total_rejected_in_auto(self, scanned_pdf):
        extractor = FakePlanExtractor(ai_result(30, declared=20))
        snapshot = run_pipeline(
            [PdfInput("scan.pdf", scanned_pdf)],
            options=PipelineOptions(enable_ocr=False), ai_extractor=extractor,
        )
        assert snapshot.unit_records == []

    def test_llm_primary_trusts_ai_records(self, scanned_pdf):
        extractor = FakePlanExtractor(ai_result(30, declared=20))
        options = PipelineOptions(enable_ocr=False, extraction_mode=ExtractionMode.LLM_PRIMARY)
        snapshot = run_pipeline([PdfInput("scan.pdf", scanned_pdf)], options=options, ai_extractor=extractor)
        assert len(snapshot.unit_records) == 30
