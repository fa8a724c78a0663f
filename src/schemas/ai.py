"""Pydantic models for the AI-assisted extraction response.

The model is deliberately lenient: every field is optional so that a
partially filled response still validates. Sanitization happens in
``agents.extractors.sanitize``.
"""
from pydantic import Field
from typing import List, Optional

from .plan_data import FrozenModel


class AiTotals(FrozenModel):
    total_units: Optional[int] = Field(default=None, description="Total dwelling units in the project")
    affordable_units: Optional[int] = Field(default=None, description="Income-restricted units")
    market_units: Optional[int] = Field(default=None, description="Market-rate units")


class AiUnitMix(FrozenModel):
    studio: Optional[int] = None
    br1: Optional[int] = None
    br2: Optional[int] = None
    br3: Optional[int] = None
    br4plus: Optional[int] = None


class AiUnitRecord(FrozenModel):
    unit_id: str = Field(description="Unit identifier as printed on the plans")
    area_sf: float = Field(description="Unit area in square feet")
    bedroom_type: str = Field(default="UNKNOWN", description="STUDIO, 1BR, 2BR, 3BR, 4BR_PLUS or UNKNOWN")
    floor: Optional[str] = None


class AiZoning(FrozenModel):
    lot_area_sf: Optional[float] = None
    zoning_floor_area_sf: Optional[float] = None
    far: Optional[float] = Field(default=None, description="Proposed floor area ratio")
    zone: Optional[str] = Field(default=None, description="Zoning district, e.g. R7A")
    max_far: Optional[float] = Field(default=None, description="Maximum permitted FAR")


class AiBuilding(FrozenModel):
    floors: Optional[int] = None
    building_area_sf: Optional[float] = None
    block: Optional[str] = None
    lot: Optional[str] = None


class AiConfidence(FrozenModel):
    overall: float = Field(default=0.5, ge=0.0, le=1.0)
    warnings: List[str] = Field(default_factory=list)


class AiPlanExtraction(FrozenModel):
    """Structured guess at the plan data returned by the AI capability."""
    totals: AiTotals = Field(default_factory=AiTotals)
    unit_mix: AiUnitMix = Field(default_factory=AiUnitMix)
    unit_records: List[AiUnitRecord] = Field(default_factory=list)
    zoning: AiZoning = Field(default_factory=AiZoning)
    building: AiBuilding = Field(default_factory=AiBuilding)
    confidence: AiConfidence = Field(default_factory=AiConfidence)


class AiExtractionStatus(FrozenModel):
    """Outcome of an AI extraction call."""
    status: str = Field(description="success, skipped, failed")
    reason: Optional[str] = Field(default=None, description="Fallback reason when not successful")
    retry_count: int = Field(default=0)
    pages_sent: List[int] = Field(default_factory=list)
