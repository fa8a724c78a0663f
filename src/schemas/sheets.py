"""Pydantic models for sheet indexing and recipe output."""
from pydantic import Field
from typing import Any, Dict, List, Optional

from .enums import RecipeType, SheetMethod, SheetType
from .plan_data import FrozenModel, UnitRecord


# Sheets below this confidence are not recognizable and skip recipe selection
SHEET_CONFIDENCE_THRESHOLD = 0.3


class SheetInfo(FrozenModel):
    """Title-block metadata for a single page."""
    page_number: int = Field(ge=1)
    drawing_no: Optional[str] = Field(default=None, description="Drawing number (e.g. 'A-101', 'Z-001')")
    drawing_title: Optional[str] = Field(default=None, description="Sheet title from the title block")
    project_title: Optional[str] = Field(default=None)
    sheet_type: SheetType = Field(default=SheetType.UNKNOWN)
    confidence: float = Field(ge=0.0, le=1.0)
    method: SheetMethod = Field(default=SheetMethod.PDF_TEXT)

    @property
    def recognizable(self) -> bool:
        return self.confidence >= SHEET_CONFIDENCE_THRESHOLD


class SheetIndex(FrozenModel):
    """Per-page sheet metadata with lookup tables."""
    pages: List[SheetInfo] = Field(default_factory=list)
    by_drawing_no: Dict[str, int] = Field(default_factory=dict, description="Drawing number -> page")
    by_title_key: Dict[str, List[int]] = Field(
        default_factory=dict,
        description="Upper-cased title word (3+ chars) -> pages"
    )

    def get(self, page_number: int) -> Optional[SheetInfo]:
        for sheet in self.pages:
            if sheet.page_number == page_number:
                return sheet
        return None

    @property
    def recognizable_pages(self) -> List[int]:
        return [s.page_number for s in self.pages if s.recognizable]

    def pages_of_type(self, sheet_type: SheetType) -> List[int]:
        return [s.page_number for s in self.pages if s.sheet_type == sheet_type]


class RecipeEvidence(FrozenModel):
    field: str
    page: int
    method: str
    snippet: str


class RecipeResult(FrozenModel):
    """Output of one recipe run over its assigned pages."""
    recipe: RecipeType
    pages: List[int] = Field(default_factory=list)
    fields: Dict[str, Any] = Field(default_factory=dict)
    unit_records: List[UnitRecord] = Field(default_factory=list)
    evidence: List[RecipeEvidence] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
