"""Stage timing for pipeline runs.

Usage:
    tel = Telemetry()

    with tel.span("TEXT_EXTRACT"):
        pdf = extract_pdf_text(data)

    with tel.span("OCR_FALLBACK"):
        with tel.span("page_3"):
            ...

    snapshot_timing = tel.durations()   # {"TEXT_EXTRACT": 0.412, ..., "total": 3.9}
    print(format_timing(snapshot_timing))
"""
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional

TOTAL_KEY = "total"


@dataclass
class Span:
    name: str
    depth: int
    start: float
    end: Optional[float] = None

    @property
    def seconds(self) -> Optional[float]:
        return None if self.end is None else self.end - self.start


class Telemetry:
    """Records named timing spans; nested spans are kept but not summed."""

    def __init__(self):
        self.spans: List[Span] = []
        self._depth = 0
        self._started = time.monotonic()

    @contextmanager
    def span(self, name: str):
        entry = Span(name=name, depth=self._depth, start=time.monotonic())
        self.spans.append(entry)
        self._depth += 1
        try:
            yield entry
        finally:
            entry.end = time.monotonic()
            self._depth -= 1

    def elapsed(self) -> float:
        """Wall-clock seconds since this telemetry was created."""
        return time.monotonic() - self._started

    def durations(self) -> Dict[str, float]:
        """Seconds per top-level span name (repeated spans are summed), plus the total."""
        totals: Dict[str, float] = {}
        for s in self.spans:
            if s.depth or s.seconds is None:
                continue
            totals[s.name] = totals.get(s.name, 0.0) + s.seconds
        timing = {name: round(seconds, 3) for name, seconds in totals.items()}
        timing[TOTAL_KEY] = round(self.elapsed(), 3)
        return timing


def format_timing(timing: Dict[str, float]) -> str:
    """Render a stage -> seconds mapping as a table with each stage's share of the total."""
    if not timing:
        return "No timing data."
    total = timing.get(TOTAL_KEY) or sum(v for k, v in timing.items() if k != TOTAL_KEY)

    lines = [f"{'Stage':<25} {'Duration':>9} {'% Total':>8}", "─" * 44]
    for stage, seconds in timing.items():
        if stage == TOTAL_KEY:
            continue
        pct = seconds / total * 100 if total > 0 else 0.0
        lines.append(f"{stage:<25} {seconds:>8.2f}s {pct:>7.0f}%")
    lines.append("─" * 44)
    lines.append(f"{TOTAL_KEY:<25} {total:>8.2f}s")
    return "\n".join(lines)
