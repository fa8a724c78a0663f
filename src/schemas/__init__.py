"""Plan extraction schemas - Pydantic models for extraction output."""
from .enums import (
    Allocation,
    BedroomType,
    EvidenceSource,
    ExtractionMethod,
    ExtractionMode,
    ExtractionStatusKind,
    GateStatus,
    METHOD_TRUST_RANK,
    OcrProviderName,
    PageCategory,
    PipelineStage,
    RecipeType,
    SheetMethod,
    SheetType,
    TableType,
    TextYield,
)
from .plan_data import (
    ClassifiedTable,
    CoverSheetExtraction,
    Evidence,
    ExtractedField,
    FarExtraction,
    NormalizedPlanExtract,
    NormalizedZoning,
    RawSnippet,
    UnitCountMention,
    UnitMixCounts,
    UnitMixTotals,
    UnitRecord,
    UnitSource,
    UnitTotals,
    ValidationResult,
    ZoningFields,
)
from .sheets import (
    SHEET_CONFIDENCE_THRESHOLD,
    RecipeEvidence,
    RecipeResult,
    SheetIndex,
    SheetInfo,
)
from .ai import (
    AiBuilding,
    AiConfidence,
    AiExtractionStatus,
    AiPlanExtraction,
    AiTotals,
    AiUnitMix,
    AiUnitRecord,
    AiZoning,
)
from .snapshot import (
    CACHE_VERSION,
    AppliedOverrides,
    DataPointEntry,
    ExpectedRange,
    ExtractionSnapshot,
    FieldReconciliation,
    PageScore,
    ParcelCheckResult,
    ParcelData,
    ParcelValues,
    PdfExtraction,
    PipelineOptions,
    ProgressEvent,
    SnapshotConfidence,
    SnapshotEvidence,
    ValidationGate,
)

__all__ = [
    # Enums
    "Allocation",
    "BedroomType",
    "EvidenceSource",
    "ExtractionMethod",
    "ExtractionMode",
    "ExtractionStatusKind",
    "GateStatus",
    "METHOD_TRUST_RANK",
    "OcrProviderName",
    "PageCategory",
    "PipelineStage",
    "RecipeType",
    "SheetMethod",
    "SheetType",
    "TableType",
    "TextYield",
    # Plan data
    "ClassifiedTable",
    "CoverSheetExtraction",
    "Evidence",
    "ExtractedField",
    "FarExtraction",
    "NormalizedPlanExtract",
    "NormalizedZoning",
    "RawSnippet",
    "UnitCountMention",
    "UnitMixCounts",
    "UnitMixTotals",
    "UnitRecord",
    "UnitSource",
    "UnitTotals",
    "ValidationResult",
    "ZoningFields",
    # Sheets
    "SHEET_CONFIDENCE_THRESHOLD",
    "RecipeEvidence",
    "RecipeResult",
    "SheetIndex",
    "SheetInfo",
    # AI extraction
    "AiBuilding",
    "AiConfidence",
    "AiExtractionStatus",
    "AiPlanExtraction",
    "AiTotals",
    "AiUnitMix",
    "AiUnitRecord",
    "AiZoning",
    # Snapshot
    "CACHE_VERSION",
    "AppliedOverrides",
    "DataPointEntry",
    "ExpectedRange",
    "ExtractionSnapshot",
    "FieldReconciliation",
    "PageScore",
    "ParcelCheckResult",
    "ParcelData",
    "ParcelValues",
    "PdfExtraction",
    "PipelineOptions",
    "ProgressEvent",
    "SnapshotConfidence",
    "SnapshotEvidence",
    "ValidationGate",
]
