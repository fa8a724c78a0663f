"""Cooperative cancellation for long-running extraction runs."""
import threading
from typing import Optional

from .errors import PipelineCancelled


class CancellationToken:
    """Flag shared between a caller and a running pipeline.

    The pipeline polls the token at every stage boundary and inside
    per-page loops; nothing is interrupted preemptively.
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str = "") -> None:
        if self._event.is_set():
            raise PipelineCancelled(stage)


def check_cancelled(token: Optional[CancellationToken], stage: str = "") -> None:
    """Raise PipelineCancelled if a token was supplied and has been set."""
    if token is not None:
        token.raise_if_cancelled(stage)
