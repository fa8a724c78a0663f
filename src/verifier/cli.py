"""CLI entry point for the plan verifier (validation gates and overrides)."""
import logging
from pathlib import Path
from typing import Optional, Tuple
import click
from pydantic import ValidationError

from agents.extractors.plan import AnthropicPlanExtractor
from agents.reconcile import build_data_points, verify_snapshot
from extraction.config import ai_config
from extraction.errors import PdfParseError, UnresolvedConflictError
from preprocessor.text_layer import extract_pdf_text
from schemas.enums import GateStatus
from schemas.snapshot import AppliedOverrides, ExtractionSnapshot, ParcelData

from .gates import apply_gates, evaluate_gates
from .overrides import apply_overrides, confirm_all, scale_to_total_units

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def load_snapshot(path: Path) -> ExtractionSnapshot:
    """Load a snapshot written by `plan-extract run --output`."""
    return ExtractionSnapshot.model_validate_json(Path(path).read_text())


def save_snapshot(snapshot: ExtractionSnapshot, path: Path):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(snapshot.model_dump_json(indent=2))
    click.echo(f"\nSnapshot written to {path}")


def parse_assignments(values: Tuple[str, ...]) -> dict:
    """Parse field=value pairs into override fields."""
    result = {}
    for value in values:
        key, sep, raw = value.partition('=')
        key = key.strip()
        if not sep or not raw.strip():
            raise click.BadParameter(f"expected field=value, got '{value}'", param_hint='--set')
        if key not in AppliedOverrides.model_fields:
            allowed = ', '.join(AppliedOverrides.model_fields)
            raise click.BadParameter(f"unknown field '{key}' (allowed: {allowed})", param_hint='--set')
        result[key] = raw.strip()
    return result


def parcel_from_options(snapshot: ExtractionSnapshot, lot_area, resid_far, bldg_area) -> Optional[ParcelData]:
    """Command-line parcel values win over the parcel stored on the snapshot."""
    if lot_area is None and resid_far is None and bldg_area is None:
        return snapshot.parcel
    base = snapshot.parcel or ParcelData()
    return ParcelData(
        lot_area=lot_area if lot_area is not None else base.lot_area,
        resid_far=resid_far if resid_far is not None else base.resid_far,
        bldg_area=bldg_area if bldg_area is not None else base.bldg_area,
    )


def show_gates(snapshot: ExtractionSnapshot):
    """Print one line per gate and the overall review state."""
    click.echo(f"\n{'='*60}")
    click.echo(f"Validation Gates: {', '.join(snapshot.file_names) or '(no files)'}")
    click.echo(f"{'='*60}")
    for gate in snapshot.validation_gates:
        click.echo(f"  [{gate.status.value}] {gate.field}")
        if gate.extracted_value is not None:
            click.echo(f"    Extracted: {gate.extracted_value}")
        if gate.ai_value is not None:
            click.echo(f"    AI:        {gate.ai_value}")
        if gate.expected_range is not None:
            click.echo(f"    Expected:  {gate.expected_range.min:,.2f} - {gate.expected_range.max:,.2f} ({gate.city_basis})")
        if gate.message:
            click.echo(f"    {gate.message}")

    open_gates = [g.field for g in snapshot.validation_gates if g.is_open]
    if open_gates:
        click.echo(f"\nNeeds review: {', '.join(open_gates)}")
    else:
        click.echo("\nAll gates resolved")


@click.group()
def cli():
    """Plan verifier - validation gates, overrides and AI reconciliation."""
    pass


parcel_options = [
    click.option('--parcel-lot-area', type=float, default=None, help='Parcel lot area in SF'),
    click.option('--parcel-resid-far', type=float, default=None, help='Parcel maximum residential FAR'),
    click.option('--parcel-bldg-area', type=float, default=None, help='Parcel building area in SF'),
]


def with_parcel_options(f):
    for option in reversed(parcel_options):
        f = option(f)
    return f


@cli.command()
@click.argument('snapshot_json', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@with_parcel_options
@click.option('--zone', type=str, default=None, help='Zoning district (e.g. R6A)')
@click.option('--output', '-o', type=click.Path(path_type=Path), default=None,
              help='Write the re-gated snapshot here')
def gates(snapshot_json: Path, parcel_lot_area, parcel_resid_far, parcel_bldg_area,
          zone: Optional[str], output: Optional[Path]):
    """
    Re-evaluate the validation gates of a saved snapshot.

    Example:
        plan-verify gates result.json --parcel-lot-area 5000 --parcel-resid-far 3.0
    """
    snapshot = load_snapshot(snapshot_json)
    parcel = parcel_from_options(snapshot, parcel_lot_area, parcel_resid_far, parcel_bldg_area)
    snapshot = apply_gates(snapshot.model_copy(update={'parcel': parcel}), evaluate_gates(snapshot, parcel, zone))
    show_gates(snapshot)
    if output:
        save_snapshot(snapshot, output)


@cli.command()
@click.argument('snapshot_json', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--set', 'assignments', multiple=True, required=True,
              help='Pinned value as field=value (repeatable)')
@with_parcel_options
@click.option('--output', '-o', type=click.Path(path_type=Path), default=None,
              help='Output path (default: update SNAPSHOT_JSON in place)')
def override(snapshot_json: Path, assignments: Tuple[str, ...], parcel_lot_area, parcel_resid_far,
             parcel_bldg_area, output: Optional[Path]):
    """
    Pin user-entered values and recompute derived fields and gates.

    Example:
        plan-verify override result.json --set lot_area=5000 --set resid_far=3.0
        plan-verify override result.json --set total_units=42
    """
    snapshot = load_snapshot(snapshot_json)
    try:
        overrides = AppliedOverrides(**parse_assignments(assignments))
    except ValidationError as e:
        raise click.BadParameter(str(e), param_hint='--set')

    parcel = parcel_from_options(snapshot, parcel_lot_area, parcel_resid_far, parcel_bldg_area)
    snapshot = apply_overrides(snapshot, overrides, parcel)
    show_gates(snapshot)
    save_snapshot(snapshot, output or snapshot_json)


@cli.command('confirm-all')
@click.argument('snapshot_json', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--output', '-o', type=click.Path(path_type=Path), default=None,
              help='Output path (default: update SNAPSHOT_JSON in place)')
def confirm_all_cmd(snapshot_json: Path, output: Optional[Path]):
    """
    Accept every extracted value; fails while any gate is CONFLICTING.
    """
    snapshot = load_snapshot(snapshot_json)
    try:
        snapshot = confirm_all(snapshot)
    except UnresolvedConflictError as e:
        click.echo(f"Error: {e}", err=True)
        click.echo("Resolve conflicts with 'plan-verify override' first.", err=True)
        raise SystemExit(1)
    show_gates(snapshot)
    save_snapshot(snapshot, output or snapshot_json)


@cli.command()
@click.argument('snapshot_json', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument('total', type=click.IntRange(min=0))
@click.option('--output', '-o', type=click.Path(path_type=Path), default=None,
              help='Output path (default: update SNAPSHOT_JSON in place)')
def scale(snapshot_json: Path, total: int, output: Optional[Path]):
    """
    Resize the unit records to TOTAL units, keeping the bedroom mix proportions.
    """
    snapshot = load_snapshot(snapshot_json)
    before = snapshot.totals.total_units
    snapshot = scale_to_total_units(snapshot, total)
    click.echo(f"Scaled {before} -> {snapshot.totals.total_units} units")
    for btype, count in sorted(snapshot.unit_totals.by_bedroom_type.items()):
        click.echo(f"  {btype:<10} {count}")
    save_snapshot(snapshot, output or snapshot_json)


@cli.command()
@click.argument('snapshot_json', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument('pdf', type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option('--output', '-o', type=click.Path(path_type=Path), default=None,
              help='Output path (default: update SNAPSHOT_JSON in place)')
def reconcile(snapshot_json: Path, pdf: Path, output: Optional[Path]):
    """
    Run the AI verification pass and compare its values with the rule-based ones.

    Requires ANTHROPIC_API_KEY.
    """
    snapshot = load_snapshot(snapshot_json)
    extractor = AnthropicPlanExtractor.from_config(ai_config())
    if not extractor.is_available():
        click.echo("Error: ANTHROPIC_API_KEY is not set.", err=True)
        raise SystemExit(1)

    try:
        text = extract_pdf_text(pdf.read_bytes())
    except PdfParseError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    snapshot = verify_snapshot(snapshot, text.page_texts, extractor)

    click.echo(f"\n{'Field':<26} {'Rule-based':>12} {'AI':>12} {'Final':>12}  Note")
    click.echo('-' * 80)
    for entry in build_data_points(snapshot):
        if entry.rule_based_value is None and entry.ai_value is None:
            continue
        click.echo(
            f"{entry.label:<26} {str(entry.rule_based_value or '-'):>12} {str(entry.ai_value or '-'):>12} "
            f"{str(entry.final_value or '-'):>12}  {entry.note}"
        )

    conflicting = [g.field for g in snapshot.validation_gates if g.status == GateStatus.CONFLICTING]
    if conflicting:
        click.echo(f"\nConflicting: {', '.join(conflicting)}")
    save_snapshot(snapshot, output or snapshot_json)


if __name__ == '__main__':
    cli()
