"""
CLI Interface
=============
Command-line interface for the lab report scanner.

Usage:
    python -m labscan scan <report.pdf> [options]
    python -m labscan scan --images <page1.jpg> <page2.jpg> [options]
    python -m labscan parse-text <ocr_output.txt>
    python -m labscan info <report.pdf>
    python -m labscan serve [options]
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from . import __version__
from .biomarkers import BiomarkerParser
from .config import ScanConfig
from .models import BiomarkerRecord, ErrorEvent, ProgressEvent, StructuredEvent

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="labscan")
def cli():
    """Lab Report Scanner — OCR lab reports into structured biomarkers."""
    pass


@cli.command()
@click.argument(
    "paths",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, dir_okay=False),
)
@click.option(
    "--images",
    "as_images",
    is_flag=True,
    default=False,
    help="Treat inputs as page images (default: detect from extension)",
)
@click.option(
    "--scale",
    default=2.0,
    type=float,
    help="Upscale factor applied to PDF pages before OCR",
)
@click.option(
    "--lang",
    "ocr_language",
    default="eng",
    help="Tesseract language code(s), e.g. 'eng' or 'eng+deu'",
)
@click.option(
    "--tesseract-config",
    default="--psm 6",
    help="Extra arguments passed to Tesseract",
)
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
@click.option(
    "--log-file",
    default=None,
    help="Path to log file",
)
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Print events as JSON lines to stdout (for programmatic use)",
)
def scan(
    paths: tuple[str, ...],
    as_images: bool,
    scale: float,
    ocr_language: str,
    tesseract_config: str,
    log_level: str,
    log_file: str,
    json_output: bool,
):
    """Scan a PDF report or a set of page images."""
    from .engine import ScanEngine

    if json_output:
        # Keep stdout clean for JSON lines
        log_level = "ERROR"

    arguments = _build_arguments(paths, as_images)

    config = ScanConfig(
        render_scale=scale,
        ocr_language=ocr_language,
        tesseract_config=tesseract_config,
        log_level=log_level,
        log_file=log_file,
    )
    engine = ScanEngine(config)

    events = engine.iter_scan(arguments)

    if json_output:
        failed = False
        try:
            for event in events:
                print(json.dumps(event.to_wire(), ensure_ascii=False), flush=True)
                failed = failed or isinstance(event, ErrorEvent)
        except KeyboardInterrupt:
            events.close()
            sys.exit(130)
        sys.exit(1 if failed else 0)

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Lab Report Scanner v{__version__}[/]\n"
            f"[dim]Scanning: {', '.join(os.path.basename(p) for p in paths)}[/]",
            border_style="cyan",
        )
    )
    console.print()

    pages: list[StructuredEvent] = []
    error = None

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Starting scan...", total=None)

            for event in events:
                if isinstance(event, ProgressEvent):
                    progress.update(
                        task,
                        total=event.total_pages,
                        description=(
                            f"Recognizing page {event.page}/"
                            f"{event.total_pages}..."
                        ),
                    )
                elif isinstance(event, StructuredEvent):
                    pages.append(event)
                    progress.update(task, completed=event.page)
                elif isinstance(event, ErrorEvent):
                    error = event
    except KeyboardInterrupt:
        events.close()
        console.print("[yellow]Scan cancelled.[/]")
        sys.exit(130)

    for event in pages:
        _display_biomarkers(
            event.payload.biomarkers,
            title=f"Page {event.page}/{event.total_pages}",
        )

    if error is not None:
        console.print(f"[red]Error ({error.code}):[/] {error.message}")
        sys.exit(1)

    total = sum(len(e.payload.biomarkers) for e in pages)
    console.print(
        f"[bold]Total:[/] {total} biomarkers from {len(pages)} page(s)"
    )
    console.print()


@cli.command("parse-text")
@click.argument("text_file", type=click.File("r", encoding="utf-8"))
@click.option(
    "--json-output",
    is_flag=True,
    default=False,
    help="Print records as JSON instead of a table",
)
def parse_text(text_file, json_output: bool):
    """Extract biomarkers from already-recognized text (use '-' for stdin)."""
    records = BiomarkerParser().parse(text_file.read())

    if json_output:
        print(json.dumps(
            [r.model_dump(by_alias=True, exclude_none=True) for r in records],
            indent=2,
            ensure_ascii=False,
        ))
        return

    _display_biomarkers(records, title="Biomarkers")


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True))
def info(pdf_path: str):
    """Display PDF file information."""

    import fitz

    doc = fitz.open(pdf_path)

    console.print()
    table = Table(title="PDF Information", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")

    table.add_row("File", os.path.basename(pdf_path))
    table.add_row("Pages", str(doc.page_count))
    table.add_row(
        "File Size",
        f"{os.path.getsize(pdf_path) / 1024 / 1024:.2f} MB",
    )

    metadata = doc.metadata or {}
    for key in ["title", "author", "subject", "creator", "producer"]:
        val = metadata.get(key, "")
        if val:
            table.add_row(key.title(), val)

    # Pages without a text layer need OCR
    scanned = sum(1 for page in doc if not page.get_text("text").strip())
    table.add_row("Pages Without Text Layer", str(scanned))

    doc.close()
    console.print(table)
    console.print()


@cli.command()
@click.option("--host", default="0.0.0.0", help="Server host")
@click.option("--port", default=5000, type=int, help="Server port")
@click.option("--debug", is_flag=True, default=False, help="Debug mode")
def serve(host: str, port: int, debug: bool):
    """Start the HTTP scan service (start/cancel + SSE event stream)."""
    from .server import run_server

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Lab Report Scan Service[/]\n"
            f"[dim]Starting on {host}:{port}[/]",
            border_style="cyan",
        )
    )
    console.print()

    run_server(host=host, port=port, debug=debug)


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _build_arguments(paths: tuple[str, ...], as_images: bool) -> dict:
    """Turn CLI paths into scan arguments."""
    resolved = [str(Path(p).absolute()) for p in paths]
    is_pdf = [p.lower().endswith(".pdf") for p in resolved]

    if not as_images and all(is_pdf):
        if len(resolved) > 1:
            raise click.UsageError("Scan one PDF at a time.")
        return {"source": "pdf", "uri": resolved[0]}

    if not as_images and any(is_pdf):
        raise click.UsageError(
            "Cannot mix PDF files and images in one scan."
        )

    return {"source": "images", "uri": resolved[0], "imageUris": resolved}


def _display_biomarkers(records: list[BiomarkerRecord], title: str):
    """Display biomarker records as a rich table."""
    table = Table(title=title, border_style="green")
    table.add_column("Biomarker", style="bold")
    table.add_column("Value", justify="right")
    table.add_column("Unit")
    table.add_column("Reference", justify="center")
    table.add_column("Status", justify="center")

    for record in records:
        reference = ""
        if record.reference_min is not None:
            reference = f"{record.reference_min} – {record.reference_max}"

        in_range = record.in_reference_range
        if in_range is None:
            status = "[dim]-[/]"
        elif in_range:
            status = "[green]✓[/]"
        else:
            status = "[red]✗[/]"

        table.add_row(
            record.name,
            record.value,
            record.unit or "",
            reference,
            status,
        )

    if not records:
        table.add_row("[dim](none found)[/]", "", "", "", "")

    console.print(table)
    console.print()


# ─── Entry point (for python -m labscan.cli) ──────────────────────────────────


if __name__ == "__main__":
    cli()
