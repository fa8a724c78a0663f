"""Exception hierarchy for the plan extraction pipeline."""


class PlanExtractionError(Exception):
    """Base class for plan extraction failures."""


class PdfParseError(PlanExtractionError):
    """The document could not be opened as a PDF (corrupt, encrypted or not a PDF).

    Fatal for the file it was raised for; a batch continues with the remaining files.
    """


class PipelineCancelled(PlanExtractionError):
    """Raised at a stage boundary once the caller's cancellation token is set."""

    def __init__(self, stage: str = ""):
        self.stage = stage
        super().__init__(f"Pipeline cancelled before {stage}" if stage else "Pipeline cancelled")


class AiExtractionError(PlanExtractionError):
    """The AI extraction capability returned nothing usable."""


class UnresolvedConflictError(PlanExtractionError):
    """Confirm-all was requested while CONFLICTING gates remain open."""

    def __init__(self, fields):
        self.fields = list(fields)
        super().__init__(f"Resolve conflicting fields before confirming: {', '.join(self.fields)}")
