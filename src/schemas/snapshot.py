"""Pydantic models for the reconciled extraction snapshot.

The snapshot is the single value handed to callers, cached by content
hash and transformed by the override workflow. It is frozen; every
change produces a new snapshot.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Callable, Dict, List, Optional, Union

from .ai import AiPlanExtraction
from .enums import (
    ExtractionMode,
    ExtractionStatusKind,
    GateStatus,
    OcrProviderName,
    PipelineStage,
    RecipeType,
    TextYield,
)
from .plan_data import (
    ClassifiedTable,
    CoverSheetExtraction,
    Evidence,
    FarExtraction,
    FrozenModel,
    NormalizedPlanExtract,
    RawSnippet,
    UnitCountMention,
    UnitMixCounts,
    UnitMixTotals,
    UnitRecord,
    UnitTotals,
    ValidationResult,
    ZoningFields,
)
from .sheets import RecipeResult, SheetIndex


# Cache version for migration - increment when snapshot schema changes require cache invalidation
CACHE_VERSION = 1


# ============================================================================
# Parcel data and overrides
# ============================================================================

class ParcelData(FrozenModel):
    """Authoritative parcel values from the city land-use dataset (PLUTO)."""
    lot_area: float = Field(default=0.0, ge=0.0, description="Lot area in SF")
    resid_far: float = Field(default=0.0, ge=0.0, description="Maximum residential FAR")
    bldg_area: float = Field(default=0.0, ge=0.0, description="Existing building area in SF")


class AppliedOverrides(FrozenModel):
    """Field values pinned by the user in the override workflow."""
    lot_area: Optional[float] = None
    resid_far: Optional[float] = None
    zoning_floor_area: Optional[float] = None
    proposed_floor_area: Optional[float] = None
    total_units: Optional[int] = None
    floors: Optional[int] = None
    building_area: Optional[float] = None
    zone_district: Optional[str] = None
    max_far: Optional[float] = None

    def pinned(self) -> Dict[str, Any]:
        """Return only the fields that carry an override."""
        return {k: v for k, v in self.model_dump().items() if v is not None}


# ============================================================================
# Gates and reconciliation
# ============================================================================

class ExpectedRange(FrozenModel):
    min: float
    max: float


class ValidationGate(FrozenModel):
    """Per-field status node in the conflict-resolution workflow."""
    field: str = Field(description="Field name (e.g. 'total_units', 'far', 'lot_area')")
    status: GateStatus
    extracted_value: Optional[Union[int, float, str]] = Field(default=None, description="Rule-based value")
    ai_value: Optional[Union[int, float, str]] = Field(default=None, description="AI-derived value")
    expected_range: Optional[ExpectedRange] = None
    city_basis: str = Field(default="", description="Which authoritative data the range came from")
    message: str = ""
    evidence: List[Evidence] = Field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status in (GateStatus.NEEDS_OVERRIDE, GateStatus.CONFLICTING)


class FieldReconciliation(FrozenModel):
    """Comparison of a rule-based value against the AI-derived value."""
    field: str
    rule_based_value: Optional[Union[int, float, str]] = None
    ai_value: Optional[Union[int, float, str]] = None
    agreement: Optional[bool] = Field(default=None, description="None when only one side has a value")
    final_value: Optional[Union[int, float, str]] = None
    final_confidence: float = Field(ge=0.0, le=1.0)
    note: str = ""


class DataPointEntry(FrozenModel):
    """Flat per-field view of rule-based, AI and final values."""
    key: str
    label: str
    category: str = Field(description="zoning, building, unit_mix")
    unit: Optional[str] = None
    rule_based_value: Optional[Union[int, float, str]] = None
    ai_value: Optional[Union[int, float, str]] = None
    final_value: Optional[Union[int, float, str]] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    agreement: Optional[bool] = None
    note: str = ""


class ParcelValues(FrozenModel):
    lot_area: Optional[float] = None
    resid_far: Optional[float] = None
    bldg_area: Optional[float] = None
    implied_max_units: Optional[int] = None


class ParcelCheckResult(FrozenModel):
    """Cross-check of the plans against authoritative parcel data."""
    warnings: List[str] = Field(default_factory=list)
    parcel_values: ParcelValues = Field(default_factory=ParcelValues)


# ============================================================================
# Scoring
# ============================================================================

class PageScore(FrozenModel):
    """Signals and confidence for one candidate page."""
    page: int
    confidence: float = Field(ge=0.0, le=1.0)
    rows: int = 0
    mapped_columns: int = 0
    header_detected: bool = False
    totals_found: bool = False
    totals_consistent: bool = False
    totals_value: Optional[int] = None
    dropped_rows: int = 0
    ocr_used: bool = False
    text_chars: int = 0


class SnapshotConfidence(FrozenModel):
    overall: float = Field(default=0.0, ge=0.0, le=1.0)
    by_page: Dict[int, float] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)


class SnapshotEvidence(FrozenModel):
    pages_used: List[int] = Field(default_factory=list)
    tables_found: int = 0


class PdfExtraction(FrozenModel):
    """Text-level view of the document as read (before overrides)."""
    zoning_analysis: ZoningFields = Field(default_factory=ZoningFields)
    overall_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    text_yield: TextYield = Field(default=TextYield.NONE)
    needs_ocr: bool = False
    page_count: int = 0
    raw_snippets: List[RawSnippet] = Field(default_factory=list)


# ============================================================================
# Snapshot
# ============================================================================

class ExtractionSnapshot(FrozenModel):
    """Top-level reconciled extraction result."""
    cache_version: int = Field(default=CACHE_VERSION, description="Schema version for cache migration")
    status: ExtractionStatusKind = Field(default=ExtractionStatusKind.COMPLETE)
    file_hash: Optional[str] = Field(default=None, description="SHA-256 of the input bytes")
    file_names: List[str] = Field(default_factory=list)
    bbl: Optional[str] = None

    # Units
    totals: UnitTotals = Field(default_factory=UnitTotals)
    unit_mix: UnitMixCounts = Field(default_factory=UnitMixCounts)
    unit_records: List[UnitRecord] = Field(default_factory=list)
    unit_totals: UnitMixTotals = Field(default_factory=UnitMixTotals)

    # Zoning
    zoning: ZoningFields = Field(default_factory=ZoningFields, description="Effective values after overrides")
    far: Optional[FarExtraction] = None
    cover_sheet: Optional[CoverSheetExtraction] = None
    extraction: PdfExtraction = Field(default_factory=PdfExtraction)

    # Scoring and evidence
    confidence: SnapshotConfidence = Field(default_factory=SnapshotConfidence)
    evidence: SnapshotEvidence = Field(default_factory=SnapshotEvidence)
    page_scores: List[PageScore] = Field(default_factory=list)
    tables_summary: List[ClassifiedTable] = Field(default_factory=list)
    unit_count_mentions: List[UnitCountMention] = Field(default_factory=list)
    redundancy_score: float = Field(default=0.0, ge=0.0, le=1.0)
    errors: List[str] = Field(default_factory=list)

    # Sheets and recipes
    sheet_index: Optional[SheetIndex] = None
    recipe_results: List[RecipeResult] = Field(default_factory=list)
    normalized: Optional[NormalizedPlanExtract] = None
    validation: Optional[ValidationResult] = None

    # OCR / AI usage
    ocr_used: bool = False
    ocr_provider_used: OcrProviderName = Field(default=OcrProviderName.NONE)
    ai_extraction_used: bool = False
    ai_extraction: Optional[AiPlanExtraction] = None
    ai_fallback_reason: Optional[str] = None
    reconciliation: List[FieldReconciliation] = Field(default_factory=list)

    # Parcel checks and gates
    parcel: Optional[ParcelData] = None
    parcel_check: Optional[ParcelCheckResult] = None
    validation_gates: List[ValidationGate] = Field(default_factory=list)
    needs_manual_confirmation: bool = False
    manual_overrides: AppliedOverrides = Field(default_factory=AppliedOverrides)
    confirmed_all: bool = False

    timing: Dict[str, float] = Field(default_factory=dict)

    @property
    def warnings(self) -> List[str]:
        return self.confidence.warnings

    def gate(self, field: str) -> Optional[ValidationGate]:
        for g in self.validation_gates:
            if g.field == field:
                return g
        return None


# ============================================================================
# Run options
# ============================================================================

class ProgressEvent(FrozenModel):
    stage: PipelineStage
    message: str = ""
    pct: int = Field(default=0, ge=0, le=100)
    current_page: Optional[int] = None
    total_pages: Optional[int] = None


class PipelineOptions(BaseModel):
    """Per-run options for the extraction pipeline."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    enable_ocr: bool = True
    max_ocr_pages: int = Field(default=8, ge=0)
    parcel: Optional[ParcelData] = None
    bbl: Optional[str] = None
    zone_district: Optional[str] = None
    sheet_overrides: Dict[int, Union[RecipeType, str]] = Field(
        default_factory=dict,
        description="Page -> recipe (or 'skip'); takes precedence over sheet classification"
    )
    extraction_mode: ExtractionMode = ExtractionMode.AUTO
    force_refresh: bool = False

    # Runtime hooks, never serialized
    progress: Optional[Callable[[ProgressEvent], None]] = Field(default=None, exclude=True)
    cancel_token: Optional[Any] = Field(default=None, exclude=True)
