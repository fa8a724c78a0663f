"""CLI for plan-set extraction."""
import logging
from pathlib import Path
from typing import Dict, Optional, Tuple

import click
from tqdm import tqdm

from agents.extractors.plan import AnthropicPlanExtractor
from preprocessor.text_layer import extract_pdf_text
from schemas.enums import ExtractionMode, GateStatus
from schemas.snapshot import ExtractionSnapshot, ParcelData, PipelineOptions, ProgressEvent
from telemetry import format_timing

from .cache import FileContentCache, default_cache_dir
from .config import ai_config
from .errors import PdfParseError
from .pipeline import PdfInput, run_pipeline
from .sheets import index_sheets

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def parse_overrides(values: Tuple[str, ...]) -> Dict[int, str]:
    """Parse PAGE=RECIPE pairs (e.g. '3=COVER_SHEET', '7=skip')."""
    overrides = {}
    for value in values:
        page, sep, recipe = value.partition("=")
        if not sep or not page.strip().isdigit() or not recipe.strip():
            raise click.BadParameter(f"expected PAGE=RECIPE, got '{value}'", param_hint="--override")
        overrides[int(page)] = recipe.strip()
    return overrides


def build_parcel(lot_area: Optional[float], resid_far: Optional[float], bldg_area: Optional[float]) -> Optional[ParcelData]:
    if lot_area is None and resid_far is None and bldg_area is None:
        return None
    return ParcelData(lot_area=lot_area or 0.0, resid_far=resid_far or 0.0, bldg_area=bldg_area or 0.0)


def show_summary(snapshot: ExtractionSnapshot):
    """Print the headline numbers, gates and warnings."""
    click.echo(f"\n{'='*60}")
    click.echo(f"Extraction: {', '.join(snapshot.file_names)}")
    click.echo(f"{'='*60}")
    click.echo(f"  Status:       {snapshot.status.value}")
    click.echo(f"  Total units:  {snapshot.totals.total_units}")
    click.echo(f"  Affordable:   {snapshot.totals.affordable_units}")
    click.echo(f"  Market:       {snapshot.totals.market_units}")
    click.echo(f"  Confidence:   {snapshot.confidence.overall:.2f}")
    if snapshot.ocr_used:
        click.echo(f"  OCR provider: {snapshot.ocr_provider_used.value}")
    if snapshot.ai_fallback_reason:
        click.echo(f"  AI fallback:  {snapshot.ai_fallback_reason}")

    mix = snapshot.unit_totals.by_bedroom_type
    if mix:
        click.echo("\nUnit mix:")
        for btype, count in sorted(mix.items()):
            click.echo(f"  {btype:<10} {count}")

    if snapshot.validation_gates:
        click.echo("\nValidation gates:")
        for gate in snapshot.validation_gates:
            marker = "" if gate.status in (GateStatus.PASS, GateStatus.WARN) else "  <-- review"
            click.echo(f"  {gate.field:<24} {gate.status.value:<15} {gate.message}{marker}")

    if snapshot.warnings:
        click.echo(f"\nWarnings ({len(snapshot.warnings)}):")
        for w in snapshot.warnings:
            click.echo(f"  - {w}")
    if snapshot.errors:
        click.echo(f"\nErrors ({len(snapshot.errors)}):")
        for e in snapshot.errors:
            click.echo(f"  - {e}")


def show_timing(timing: Dict[str, float]):
    """Print per-stage timing."""
    if not timing:
        return
    click.echo("\nTiming:")
    click.echo(format_timing(timing))


@click.group()
def cli():
    """Plan-set extraction CLI for unit schedules and zoning data."""
    pass


@cli.command()
@click.argument("pdfs", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--parcel-lot-area", type=float, default=None, help="Parcel lot area in SF")
@click.option("--parcel-resid-far", type=float, default=None, help="Parcel maximum residential FAR")
@click.option("--parcel-bldg-area", type=float, default=None, help="Parcel building area in SF")
@click.option("--bbl", type=str, default=None, help="Borough-block-lot identifier")
@click.option("--zone", "zone_district", type=str, default=None, help="Zoning district (e.g. R6A)")
@click.option("--no-ocr", is_flag=True, help="Disable OCR fallback")
@click.option("--max-ocr-pages", type=int, default=8, show_default=True, help="Cap on OCR'd pages per file")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in ExtractionMode]),
    default=ExtractionMode.AUTO.value,
    show_default=True,
    help="AI extraction policy"
)
@click.option("--force-refresh", is_flag=True, help="Ignore and overwrite cached results")
@click.option("--override", "overrides", multiple=True, help="Per-page recipe, PAGE=RECIPE or PAGE=skip")
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Cache directory (default: $PLAN_EXTRACT_CACHE_DIR or ~/.cache/plan-extract)"
)
@click.option("--no-cache", is_flag=True, help="Do not read or write the cache")
@click.option("--output", "-o", type=click.Path(path_type=Path), default=None, help="Write the snapshot JSON here")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging and timing breakdown")
def run(
    pdfs: Tuple[Path, ...],
    parcel_lot_area: Optional[float],
    parcel_resid_far: Optional[float],
    parcel_bldg_area: Optional[float],
    bbl: Optional[str],
    zone_district: Optional[str],
    no_ocr: bool,
    max_ocr_pages: int,
    mode: str,
    force_refresh: bool,
    overrides: Tuple[str, ...],
    cache_dir: Optional[Path],
    no_cache: bool,
    output: Optional[Path],
    verbose: bool,
):
    """
    Extract unit schedule, unit mix and zoning data from plan-set PDFs.

    Several PDFs are treated as one project and merged into one result.

    Example:
        plan-extract run plans.pdf --parcel-lot-area 5000 --parcel-resid-far 3.0
        plan-extract run a.pdf b.pdf --mode local_only --override 2=skip -o result.json
    """
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    bar = tqdm(total=100, desc="Extracting", unit="%")

    def on_progress(event: ProgressEvent):
        bar.n = event.pct
        bar.set_postfix_str(event.stage.value)
        bar.refresh()

    options = PipelineOptions(
        enable_ocr=not no_ocr,
        max_ocr_pages=max_ocr_pages,
        parcel=build_parcel(parcel_lot_area, parcel_resid_far, parcel_bldg_area),
        bbl=bbl,
        zone_district=zone_district,
        sheet_overrides=parse_overrides(overrides),
        extraction_mode=ExtractionMode(mode),
        force_refresh=force_refresh,
        progress=on_progress,
    )
    cache = None if no_cache else FileContentCache(cache_dir or default_cache_dir())
    extractor = AnthropicPlanExtractor.from_config(ai_config())

    try:
        snapshot = run_pipeline(
            [PdfInput.from_path(p) for p in pdfs],
            options=options,
            cache=cache,
            ai_extractor=extractor,
        )
    finally:
        bar.close()

    show_summary(snapshot)
    if verbose:
        show_timing(snapshot.timing)

    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(snapshot.model_dump_json(indent=2))
        click.echo(f"\nSnapshot written to {output}")

    if snapshot.needs_manual_confirmation:
        click.echo("\nSome values need review; resolve them with plan-verify override or confirm-all.")


@cli.command()
@click.argument("pdf", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def sheets(pdf: Path):
    """
    Print the sheet index (drawing numbers, titles, types) read from title blocks.

    Only the PDF text layer is used; scanned title blocks show as UNKNOWN.
    """
    try:
        text = extract_pdf_text(pdf.read_bytes())
    except PdfParseError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    index = index_sheets(text)
    click.echo(f"\n{'Page':>4}  {'Drawing':<10} {'Type':<18} {'Conf':>5}  Title")
    click.echo("-" * 72)
    for sheet in index.pages:
        click.echo(
            f"{sheet.page_number:>4}  {sheet.drawing_no or '-':<10} {sheet.sheet_type.value:<18} "
            f"{sheet.confidence:>5.2f}  {sheet.drawing_title or ''}"
        )
    click.echo(f"\n{len(index.recognizable_pages)}/{len(index.pages)} pages recognizable")


@cli.group()
def cache():
    """Manage the snapshot cache."""
    pass


@cache.command("clear")
@click.option("--cache-dir", type=click.Path(file_okay=False, path_type=Path), default=None)
def cache_clear(cache_dir: Optional[Path]):
    """Remove every cached snapshot."""
    store = FileContentCache(cache_dir or default_cache_dir())
    removed = store.clear()
    click.echo(f"Removed {removed} cache entr{'y' if removed == 1 else 'ies'} from {store.cache_dir}")


@cache.command("invalidate")
@click.argument("file_hash")
@click.option("--cache-dir", type=click.Path(file_okay=False, path_type=Path), default=None)
def cache_invalidate(file_hash: str, cache_dir: Optional[Path]):
    """Remove the cached snapshot for one file hash."""
    store = FileContentCache(cache_dir or default_cache_dir())
    store.invalidate(file_hash)
    click.echo(f"Invalidated {file_hash}")


if __name__ == "__main__":
    cli()
