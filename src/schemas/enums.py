"""Shared enums used across plan extraction, snapshot and gate schemas."""
from enum import Enum


class BedroomType(str, Enum):
    STUDIO = "STUDIO"
    BR1 = "1BR"
    BR2 = "2BR"
    BR3 = "3BR"
    BR4_PLUS = "4BR_PLUS"
    UNKNOWN = "UNKNOWN"


class Allocation(str, Enum):
    MARKET = "MARKET"
    AFFORDABLE = "AFFORDABLE"
    MIH_RESTRICTED = "MIH_RESTRICTED"
    UNKNOWN = "UNKNOWN"


class ExtractionMethod(str, Enum):
    """How a unit record was read. Declaration order is trust order."""
    TEXT_TABLE = "TEXT_TABLE"
    TEXT_REGEX = "TEXT_REGEX"
    OCR = "OCR"


# Lower rank wins during deduplication
METHOD_TRUST_RANK = {
    ExtractionMethod.TEXT_TABLE: 0,
    ExtractionMethod.TEXT_REGEX: 1,
    ExtractionMethod.OCR: 2,
}


class TableType(str, Enum):
    UNIT_SCHEDULE = "unit_schedule"
    ZONING_TABLE = "zoning_table"
    OCCUPANCY_LOAD = "occupancy_load"
    LIGHT_VENTILATION_SCHEDULE = "light_ventilation_schedule"
    UNKNOWN = "unknown"


class SheetMethod(str, Enum):
    PDF_TEXT = "PDF_TEXT"
    OCR = "OCR"


class SheetType(str, Enum):
    """Apparent drawing type assigned by the sheet indexer."""
    COVER_SHEET = "cover_sheet"
    ZONING_SCHEDULE = "zoning_schedule"
    UNIT_SCHEDULE = "unit_schedule"
    FLOOR_PLAN = "floor_plan"
    OCCUPANT_LOAD = "occupant_load"
    UNKNOWN = "unknown"


class RecipeType(str, Enum):
    COVER_SHEET = "COVER_SHEET"
    ZONING_SCHEDULE = "ZONING_SCHEDULE"
    FLOOR_PLAN_LABEL = "FLOOR_PLAN_LABEL"
    OCCUPANT_LOAD = "OCCUPANT_LOAD"
    GENERIC = "GENERIC"


class PageCategory(str, Enum):
    """Relevance category used to pick pages for AI extraction."""
    COVER_SHEET = "COVER_SHEET"
    ZONING_ANALYSIS = "ZONING_ANALYSIS"
    UNIT_SCHEDULE = "UNIT_SCHEDULE"
    FLOOR_PLAN = "FLOOR_PLAN"
    AFFORDABLE_HOUSING = "AFFORDABLE_HOUSING"
    IRRELEVANT = "IRRELEVANT"


class GateStatus(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    NEEDS_OVERRIDE = "NEEDS_OVERRIDE"
    CONFLICTING = "CONFLICTING"


class ExtractionStatusKind(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    CACHED = "cached"
    CANCELLED = "cancelled"


class ExtractionMode(str, Enum):
    LLM_PRIMARY = "llm_primary"
    LOCAL_ONLY = "local_only"
    AUTO = "auto"


class OcrProviderName(str, Enum):
    NONE = "none"
    TESSERACT = "tesseract"
    CLAUDE_VISION = "claude_vision"


class TextYield(str, Enum):
    NONE = "none"
    LOW = "low"
    HIGH = "high"


class EvidenceSource(str, Enum):
    COVER_SHEET = "cover_sheet"
    ZONING_TEXT = "zoning_text"
    UNIT_SCHEDULE_TABLE = "unit_schedule_table"
    OCR_TABLE = "ocr_table"
    REGEX = "regex"
    AI = "ai"
    MANUAL = "manual"


class PipelineStage(str, Enum):
    CACHE_CHECK = "CACHE_CHECK"
    TEXT_EXTRACT = "TEXT_EXTRACT"
    CLASSIFY = "CLASSIFY"
    SHEET_INDEX = "SHEET_INDEX"
    RECIPE_RUN = "RECIPE_RUN"
    LLM_EXTRACT = "LLM_EXTRACT"
    CANDIDATE_SCORE = "CANDIDATE_SCORE"
    TABLE_RECON = "TABLE_RECON"
    PARSE_ROWS = "PARSE_ROWS"
    OCR_FALLBACK = "OCR_FALLBACK"
    DEDUPE = "DEDUPE"
    LLM_NORMALIZE = "LLM_NORMALIZE"
    VALIDATE = "VALIDATE"
    PLUTO_CHECK = "PLUTO_CHECK"
    GATES = "GATES"
    CACHE_WRITE = "CACHE_WRITE"
    DONE = "DONE"
