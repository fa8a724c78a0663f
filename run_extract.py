#!/usr/bin/env python3
"""Quick local-only extraction script: run_extract.py PDF [PDF...]."""
import json
import sys
from pathlib import Path

# Must run from project root (src/ in sys.path)
sys.path.insert(0, str(Path(__file__).parent / "src"))

from extraction.pipeline import PdfInput, run_pipeline
from schemas.enums import ExtractionMode
from schemas.snapshot import PipelineOptions


def main():
    if len(sys.argv) < 2:
        print("usage: run_extract.py PDF [PDF...]")
        sys.exit(2)

    paths = [Path(p) for p in sys.argv[1:]]
    print(f"Starting {', '.join(p.name for p in paths)}...", flush=True)
    options = PipelineOptions(extraction_mode=ExtractionMode.LOCAL_ONLY)
    snapshot = run_pipeline([PdfInput.from_path(p) for p in paths], options=options)

    out = paths[0].with_suffix(".extracted.json")
    out.write_text(snapshot.model_dump_json(indent=2))

    if snapshot.errors:
        print(f"PARTIAL: {'; '.join(snapshot.errors)}")

    total = snapshot.timing.get("total", "?")
    mix = snapshot.unit_totals.by_bedroom_type
    print(f"{snapshot.status.value.upper()} ({total}s) - Units: {snapshot.totals.total_units}, Mix: {mix}")
    print(f"Timing: {json.dumps(snapshot.timing)}")


if __name__ == "__main__":
    main()
