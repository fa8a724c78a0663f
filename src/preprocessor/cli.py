"""CLI entry points for PDF preprocessing diagnostics."""

from pathlib import Path

import click
from tqdm import tqdm

from extraction.errors import PdfParseError

from .rasterize import estimate_tokens, rasterize_pdf
from .text_layer import TEXT_RICH_THRESHOLD, assess_text_yield, extract_pdf_text, is_likely_scanned


@click.group()
def cli():
    """Plan preprocessor - PDF text layer and rasterization diagnostics."""
    pass


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def text(pdf_path: Path):
    """
    Show native text yield per page.

    Pages under the text-rich threshold are the ones the pipeline will
    consider for OCR.

    Example:
        plan-preprocess text plans.pdf
    """
    try:
        pdf = extract_pdf_text(pdf_path.read_bytes())
    except PdfParseError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"{'Page':>4}  {'Chars':>7}  {'Items':>6}  Scanned")
    click.echo("-" * 32)
    for page in pdf.pages:
        scanned = "yes" if page.char_count < TEXT_RICH_THRESHOLD else ""
        click.echo(f"{page.page_number:>4}  {page.char_count:>7}  {len(page.items):>6}  {scanned}")

    click.echo("")
    click.echo(f"Pages:          {pdf.page_count}")
    click.echo(f"Avg chars/page: {pdf.avg_chars_per_page:,.0f}")
    click.echo(f"Text yield:     {assess_text_yield(pdf).value}")
    click.echo(f"Likely scanned: {'yes' if is_likely_scanned(pdf) else 'no'}")
    for warning in pdf.warnings:
        click.echo(f"Warning: {warning}")


@cli.command()
@click.argument("pdf_paths", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--output-dir",
    "-o",
    type=click.Path(path_type=Path),
    default=None,
    help="Output directory (default: preprocessed/<pdf-stem> next to each PDF)",
)
@click.option(
    "--zoom",
    "-z",
    type=float,
    default=2.0,
    help="Render zoom factor (default: 2.0)",
)
@click.option(
    "--pages",
    type=str,
    default=None,
    help="Comma-separated 1-indexed pages (default: all)",
)
def rasterize(pdf_paths, output_dir: Path | None, zoom: float, pages: str | None):
    """
    Rasterize PDFs to page-001.png, page-002.png, etc.

    Example:
        plan-preprocess rasterize plans.pdf -o out/ --pages 1,3
    """
    page_list = [int(p) for p in pages.split(",")] if pages else None
    total_pages = 0
    total_tokens = 0

    for pdf_path in tqdm(pdf_paths, desc="Rasterizing PDFs"):
        target = output_dir / pdf_path.stem if output_dir else pdf_path.parent / "preprocessed" / pdf_path.stem
        try:
            rendered = rasterize_pdf(pdf_path.read_bytes(), target, zoom=zoom, pages=page_list)
        except PdfParseError as e:
            click.echo(f"Skipping {pdf_path.name}: {e}", err=True)
            continue
        total_pages += len(rendered)
        total_tokens += sum(estimate_tokens(w, h) for _, w, h in rendered)

    click.echo("")
    click.echo("Rasterizing complete!")
    click.echo(f"  Total pages: {total_pages}")
    click.echo(f"  Total estimated tokens: {total_tokens:,}")


if __name__ == "__main__":
    cli()
