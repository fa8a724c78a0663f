"""Plan extraction - rule-based stages and the pipeline orchestrator.

The orchestrator lives in extraction.pipeline and is imported from there;
this package only re-exports the pieces other packages depend on.
"""
from .cache import ContentCache, FileContentCache, MemoryContentCache, compute_file_hash
from .cancellation import CancellationToken, check_cancelled
from .errors import (
    AiExtractionError,
    PdfParseError,
    PipelineCancelled,
    PlanExtractionError,
    UnresolvedConflictError,
)

__all__ = [
    "ContentCache",
    "FileContentCache",
    "MemoryContentCache",
    "compute_file_hash",
    "CancellationToken",
    "check_cancelled",
    "AiExtractionError",
    "PdfParseError",
    "PipelineCancelled",
    "PlanExtractionError",
    "UnresolvedConflictError",
]
