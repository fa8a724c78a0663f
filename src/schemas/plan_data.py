"""Pydantic models for values read out of architectural plan sets.

Every model here is frozen: a value, once produced by an extraction stage,
is never patched in place. Transforms build new instances with
``model_copy(update=...)``.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional, Union

from .enums import Allocation, BedroomType, EvidenceSource, ExtractionMethod, TableType


class FrozenModel(BaseModel):
    """Base for immutable extraction values."""
    model_config = ConfigDict(frozen=True)


# ============================================================================
# Evidence and fields
# ============================================================================

class Evidence(FrozenModel):
    """A text snippet that supports an extracted value."""
    page: int = Field(description="1-indexed page number, -1 when not page-bound (AI)")
    snippet: str = Field(default="", description="Text surrounding the match")
    source_type: EvidenceSource = Field(description="Which extraction path produced the snippet")
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    table_index: Optional[int] = Field(default=None, description="Index of the classified table, if any")


class ExtractedField(FrozenModel):
    """A single scalar read from the plans with its provenance."""
    value: Union[int, float, str] = Field(description="Extracted value")
    confidence: float = Field(ge=0.0, le=1.0, description="Extraction reliability in [0, 1]")
    page_number: Optional[int] = Field(default=None, description="Page the value was read from")
    source: str = Field(description="Extraction path label (e.g. 'zoning_text', 'cover_sheet')")


# ============================================================================
# Unit records
# ============================================================================

class UnitSource(FrozenModel):
    """Where a unit record came from."""
    page: int = Field(description="1-indexed page number")
    method: ExtractionMethod = Field(description="TEXT_TABLE, TEXT_REGEX or OCR")
    evidence: str = Field(default="", description="Row or line text the record was parsed from")


class UnitRecord(FrozenModel):
    """One inferred dwelling unit."""
    unit_id: Optional[str] = Field(default=None, description="Unit identifier as printed (e.g. '3A', 'PH2')")
    floor: Optional[str] = Field(default=None, description="Floor label inferred from the unit id")
    bedroom_type: BedroomType = Field(default=BedroomType.UNKNOWN)
    bedroom_count: Optional[int] = Field(default=None, ge=0)
    unit_type_code: Optional[str] = Field(default=None, description="Plan-specific unit type code (e.g. 'A1')")
    allocation: Allocation = Field(default=Allocation.UNKNOWN)
    ami_band: Optional[int] = Field(default=None, description="AMI percentage band (e.g. 60)")
    area_sf: Optional[float] = Field(default=None, description="Net unit area in square feet")
    notes: Optional[str] = Field(default=None)
    source: UnitSource
    evidence_trail: List[str] = Field(
        default_factory=list,
        description="Evidence of duplicate records merged into this one (audit trail)"
    )
    record_key: Optional[str] = Field(
        default=None,
        description="Identity stamped at deduplication for records without a unit id"
    )

    @property
    def is_affordable(self) -> bool:
        return self.allocation in (Allocation.AFFORDABLE, Allocation.MIH_RESTRICTED)


class UnitMixTotals(FrozenModel):
    """Counts derived from the deduplicated unit records."""
    total_units: int = Field(default=0, ge=0)
    by_bedroom_type: Dict[str, int] = Field(default_factory=dict)
    by_allocation: Dict[str, int] = Field(default_factory=dict)
    by_allocation_and_bedroom: Dict[str, Dict[str, int]] = Field(default_factory=dict)
    by_ami_band: Optional[Dict[str, int]] = Field(default=None, description="Keys like '60%'")


class UnitMixCounts(FrozenModel):
    """Flat bedroom mix consumed by the unit-mix optimizer."""
    studio: int = 0
    br1: int = 0
    br2: int = 0
    br3: int = 0
    br4plus: int = 0

    @property
    def total(self) -> int:
        return self.studio + self.br1 + self.br2 + self.br3 + self.br4plus


class UnitTotals(FrozenModel):
    """Headline totals consumed by downstream calculators."""
    total_units: int = Field(default=0, ge=0)
    affordable_units: int = Field(default=0, ge=0)
    market_units: int = Field(default=0, ge=0)


# ============================================================================
# Zoning
# ============================================================================

class FarExtraction(FrozenModel):
    """FAR figures read from a zoning analysis sheet."""
    lot_area_sf: Optional[float] = None
    zoning_floor_area_sf: Optional[float] = None
    proposed_floor_area_sf: Optional[float] = None
    proposed_far: Optional[float] = None
    source: UnitSource
    confidence: float = Field(ge=0.0, le=1.0)


class CoverSheetExtraction(FrozenModel):
    """Key/value project data found on a cover or title sheet."""
    lot_area_sf: Optional[float] = None
    far: Optional[float] = None
    total_units: Optional[int] = None
    floors: Optional[int] = None
    building_area_sf: Optional[float] = None
    zone: Optional[str] = None
    zoning_map: Optional[str] = None
    occupancy_group: Optional[str] = None
    construction_class: Optional[str] = None
    scope_of_work: Optional[str] = None
    block: Optional[str] = None
    lot: Optional[str] = None
    bin: Optional[str] = None

    def field_count(self) -> int:
        return sum(1 for v in self.model_dump().values() if v is not None)


class ZoningFields(FrozenModel):
    """Zoning analysis values, each with provenance."""
    lot_area: Optional[ExtractedField] = None
    far: Optional[ExtractedField] = None
    resid_far: Optional[ExtractedField] = None
    zoning_floor_area: Optional[ExtractedField] = None
    proposed_floor_area: Optional[ExtractedField] = None
    total_units: Optional[ExtractedField] = None
    zone_district: Optional[ExtractedField] = None
    building_area: Optional[ExtractedField] = None
    floors: Optional[ExtractedField] = None
    bin: Optional[ExtractedField] = None

    def value_of(self, name: str) -> Any:
        """Return the raw value of a field, or None when absent."""
        field = getattr(self, name, None)
        return field.value if field is not None else None


# ============================================================================
# Tables and mentions
# ============================================================================

class ClassifiedTable(FrozenModel):
    """A detected tabular region with its inferred purpose."""
    page_index: int = Field(description="1-indexed page number")
    table_index: int = Field(default=0)
    table_type: TableType = Field(default=TableType.UNKNOWN)
    headers: List[str] = Field(default_factory=list)
    rows: List[List[str]] = Field(default_factory=list)
    confidence: float = Field(default=0.2, ge=0.0, le=1.0)


class UnitCountMention(FrozenModel):
    """A declared total unit count found somewhere in the document."""
    value: int = Field(ge=1)
    page: int = Field(description="Page number, -1 for AI-derived mentions")
    source_type: EvidenceSource
    snippet: str = ""
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)


# ============================================================================
# Normalization
# ============================================================================

class RawSnippet(FrozenModel):
    page: int
    text: str
    target: str


class NormalizedZoning(FrozenModel):
    lot_area_sf: Optional[float] = None
    zoning_floor_area_sf: Optional[float] = None
    far: Optional[float] = None


class NormalizedPlanExtract(FrozenModel):
    """Recipe results merged into one flat view."""
    total_units: Optional[int] = None
    affordable_units: Optional[int] = None
    market_units: Optional[int] = None
    unit_mix: Dict[str, int] = Field(default_factory=dict, description="Bedroom type -> count")
    unit_sizes_by_type: Dict[str, List[float]] = Field(default_factory=dict)
    avg_size_by_type: Dict[str, Optional[float]] = Field(default_factory=dict)
    zoning: NormalizedZoning = Field(default_factory=NormalizedZoning)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    warnings: List[str] = Field(default_factory=list)


class ValidationResult(FrozenModel):
    """Consistency warnings and the penalised confidence."""
    warnings: List[str] = Field(default_factory=list)
    adjusted_confidence: float = Field(ge=0.0, le=1.0)
