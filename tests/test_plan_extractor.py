"""Tests for AI page selection and the Anthropic plan extractor (with a fake client)."""
import json
from types import SimpleNamespace

import pytest

from agents.extractors.base import extract_json_from_response, load_instructions, retry_with_backoff
from agents.extractors.plan import AnthropicPlanExtractor, build_user_message
from agents.relevance import COVER_SHEET, FLOOR_PLAN, GENERAL, ZONING, PageInput, build_page_inputs, page_type_hints
from extraction.cancellation import CancellationToken
from extraction.errors import AiExtractionError, PipelineCancelled
from schemas.enums import RecipeType, SheetType
from schemas.sheets import RecipeResult, SheetIndex, SheetInfo

COVER_TEXT = "COVER SHEET\nPROPOSED 14-UNIT RESIDENTIAL BUILDING\nZONE R7A"
ZONING_TEXT = "ZONING ANALYSIS\nLOT AREA: 5,000 SF\nFAR: 3.0"

RESPONSE = {
    "totals": {"total_units": 14},
    "unit_mix": {"br1": 14},
    "unit_records": [{"unit_id": "2A", "area_sf": 650, "bedroom_type": "1BR"}],
    "zoning": {"far": 3.0, "lot_area_sf": 5000, "zone": "R7A"},
    "confidence": {"overall": 0.8},
}


class FakeMessages:
    def __init__(self, replies):
        self.replies = list(replies)
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=reply)])


def fake_client(*replies):
    return SimpleNamespace(messages=FakeMessages(replies))


class TestPageInputs:
    def test_priority_and_filtering(self):
        texts = {1: "GENERAL NOTES AND SYMBOLS LEGEND", 2: "x", 3: ZONING_TEXT, 4: COVER_TEXT}
        hints = {3: ZONING, 4: COVER_SHEET}
        inputs = build_page_inputs(texts, hints)
        assert [(p.page, p.type) for p in inputs] == [(4, COVER_SHEET), (3, ZONING), (1, GENERAL)]

    def test_caps(self):
        texts = {p: "FLOOR PLAN TEXT " * 10 for p in range(1, 6)}
        inputs = build_page_inputs(texts, max_pages=2, max_chars=20)
        assert [p.page for p in inputs] == [1, 2]
        assert all(len(p.text) <= 20 for p in inputs)

    def test_hints_from_sheets_and_recipes(self):
        index = SheetIndex(pages=[
            SheetInfo(page_number=1, drawing_no="T-001", drawing_title="TITLE SHEET", confidence=0.9),
            SheetInfo(page_number=2, drawing_no="A-101", drawing_title="TYPICAL FLOOR PLAN",
                      sheet_type=SheetType.FLOOR_PLAN, confidence=0.9),
            SheetInfo(page_number=3, drawing_no="A-501", drawing_title="DETAILS", confidence=0.9),
        ])
        recipes = [RecipeResult(recipe=RecipeType.ZONING_SCHEDULE, pages=[3])]
        assert page_type_hints(index, recipes) == {1: COVER_SHEET, 2: FLOOR_PLAN, 3: ZONING}


class TestUserMessage:
    def test_preamble(self):
        message = build_user_message([PageInput(page=1, type=COVER_SHEET, text=COVER_TEXT)], 14, "- Lot Area: 5,000 SF")
        assert "approximately 14 dwelling units" in message
        assert "CITY DATA CONTEXT:\n- Lot Area: 5,000 SF" in message
        assert "=== PAGE 1 [COVER_SHEET] ===" in message


class TestJsonFromResponse:
    def test_code_block(self):
        assert extract_json_from_response('Here you go:\n```json\n{"a": 1}\n```') == {"a": 1}

    def test_embedded_object(self):
        assert extract_json_from_response('result: {"a": 2} done') == {"a": 2}

    def test_no_json(self):
        with pytest.raises(ValueError):
            extract_json_from_response("no data")

    def test_unlabelled_fence_and_array_skipped(self):
        assert extract_json_from_response('```\n[1, 2]\n```\n```\n{"b": 3}\n```') == {"b": 3}


class TestRetryWithBackoff:
    def test_retries_then_raises(self, monkeypatch):
        sleeps = []
        monkeypatch.setattr("agents.extractors.base.time.sleep", sleeps.append)
        calls = []

        @retry_with_backoff(max_retries=3, base_delay=1.0)
        def flaky():
            calls.append(1)
            raise ConnectionError("reset")

        with pytest.raises(AiExtractionError, match="flaky failed: reset"):
            flaky()
        assert len(calls) == 3
        assert sleeps == [1.0, 2.0]

    def test_cancellation_not_retried(self, monkeypatch):
        monkeypatch.setattr("agents.extractors.base.time.sleep", lambda s: None)
        calls = []

        @retry_with_backoff(max_retries=3)
        def cancelled():
            calls.append(1)
            raise PipelineCancelled("LLM_EXTRACT")

        with pytest.raises(PipelineCancelled):
            cancelled()
        assert len(calls) == 1

    def test_load_instructions(self, tmp_path):
        (tmp_path / "a.md").write_text("# A\n\n")
        (tmp_path / "b.md").write_text("# B")
        assert load_instructions(tmp_path, "a.md", "b.md") == "# A\n\n---\n\n# B"
        with pytest.raises(FileNotFoundError):
            load_instructions(tmp_path, "missing.md")


class TestAnthropicPlanExtractor:
    def test_success(self):
        client = fake_client(json.dumps(RESPONSE))
        extractor = AnthropicPlanExtractor(client=client, max_retries=1)
        extraction, status = extractor.extract_from_pages(
            {1: COVER_TEXT, 3: ZONING_TEXT}, {1: COVER_SHEET, 3: ZONING}, parcel_context="- Lot Area: 5,000 SF"
        )
        assert status.status == "success"
        assert status.pages_sent == [1, 3]
        assert status.retry_count == 0
        assert extraction.totals.total_units == 14
        assert extraction.unit_records[0].unit_id == "2A"

        request = client.messages.requests[0]
        assert "Plan Extractor" in request["system"]
        user_text = request["messages"][0]["content"][0]["text"]
        assert "approximately 14 dwelling units" in user_text
        assert "CITY DATA CONTEXT" in user_text

    def test_retry_then_success(self, monkeypatch):
        monkeypatch.setattr("agents.extractors.base.time.sleep", lambda s: None)
        client = fake_client(ConnectionError("reset"), "```json\n" + json.dumps(RESPONSE) + "\n```")
        extraction, status = AnthropicPlanExtractor(client=client, max_retries=2).extract_from_pages(
            {1: COVER_TEXT}, {1: COVER_SHEET}
        )
        assert status.status == "success"
        assert status.retry_count == 1
        assert extraction is not None

    def test_request_failure(self):
        client = fake_client(ConnectionError("reset"))
        extraction, status = AnthropicPlanExtractor(client=client, max_retries=1).extract_from_pages(
            {1: COVER_TEXT}, {1: COVER_SHEET}
        )
        assert extraction is None
        assert status.status == "failed"
        assert "reset" in status.reason

    def test_unparseable_response(self):
        extraction, status = AnthropicPlanExtractor(client=fake_client("I could not read the plans."), max_retries=1) \
            .extract_from_pages({1: COVER_TEXT}, {1: COVER_SHEET})
        assert extraction is None
        assert status.reason.startswith("Unparseable AI response")

    def test_no_usable_pages(self):
        client = fake_client()
        extraction, status = AnthropicPlanExtractor(client=client).extract_from_pages({1: "x"}, {})
        assert extraction is None
        assert status.status == "skipped"
        assert client.messages.requests == []

    def test_cancelled_before_request(self):
        token = CancellationToken()
        token.cancel()
        client = fake_client(json.dumps(RESPONSE))
        with pytest.raises(PipelineCancelled):
            AnthropicPlanExtractor(client=client).extract_from_pages({1: COVER_TEXT}, {1: COVER_SHEET}, cancel_token=token)
        assert client.messages.requests == []

    def test_availability(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        assert not AnthropicPlanExtractor().is_available()
        assert AnthropicPlanExtractor(client=fake_client()).is_available()
