"""
CLI Interface
=============
Command-line interface for the PDF Prodigy job engine.

Usage:
    pdfprodigy serve [options]
    pdfprodigy info <pdf_path>
    pdfprodigy diagnose <pdf_path>
    pdfprodigy redact <pdf_path> -o <out.pdf> [options]
    pdfprodigy repair <pdf_path> -o <out.pdf> [options]
    pdfprodigy compare <original.pdf> <revised.pdf> [options]
    pdfprodigy run <kind> <pdf_path> [--settings JSON] [options]
    pdfprodigy batch <directory> <kind> [--settings JSON] [options]
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Optional

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
    TimeRemainingColumn,
)
from rich.table import Table

from . import __version__
from .config import EngineConfig
from .engine import ProdigyEngine
from .errors import ProdigyError
from .models import Category, Job, JobKind, JobState
from .repair import diagnose as diagnose_bytes

console = Console()

DETECTION_TYPES = [c.value for c in Category if c not in (
    Category.KEYWORD, Category.CUSTOM, Category.IMAGE,
)]


@click.group()
@click.version_option(version=__version__, prog_name="pdfprodigy")
def cli():
    """PDF Prodigy: redact, repair, compare, OCR, protect, number and crop PDFs."""
    pass


def _log_option(func):
    return click.option(
        "--log-level",
        default="WARNING",
        type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
        help="Logging level",
    )(func)


def _json_option(func):
    return click.option(
        "--json-output",
        is_flag=True,
        default=False,
        help="Output only the job JSON to stdout (for programmatic use)",
    )(func)


def _parse_settings(raw: Optional[str]) -> dict:
    """Accept inline JSON or @path/to/settings.json."""
    if not raw:
        return {}
    if raw.startswith("@"):
        raw = Path(raw[1:]).read_text(encoding="utf-8")
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Settings are not valid JSON: {e}") from e
    if not isinstance(value, dict):
        raise click.BadParameter("Settings must be a JSON object")
    return value


# ─── Server ───────────────────────────────────────────────────────────────────


@cli.command()
@click.option("--host", default="0.0.0.0", help="Server host")
@click.option("--port", default=5000, type=int, help="Server port")
@click.option("--debug", is_flag=True, default=False, help="Debug mode")
@click.option("--workers", "-w", default=None, type=int, help="Worker threads (default: CPU count)")
@click.option("--storage-dir", default=None, help="Persist documents in this directory")
@click.option("--db-path", default=None, help="SQLite archive for expired jobs")
@click.option("--log-level", default="INFO",
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]))
@click.option("--log-file", default=None, help="Path to log file")
def serve(host, port, debug, workers, storage_dir, db_path, log_level, log_file):
    """Start the HTTP job API."""
    from .server import run_server

    config = EngineConfig.from_env(
        workers=workers,
        storage_dir=storage_dir,
        db_path=db_path,
        log_level=log_level,
        log_file=log_file,
    )

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]PDF Prodigy v{__version__}[/]\n"
            f"[dim]Starting on {host}:{port} with {config.workers} workers[/]",
            border_style="cyan",
        )
    )
    console.print()

    run_server(host=host, port=port, debug=debug, engine_config=config)


# ─── Inspection ───────────────────────────────────────────────────────────────


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True, dir_okay=False))
def info(pdf_path: str):
    """Display PDF file information."""
    import fitz

    data = Path(pdf_path).read_bytes()

    console.print()
    table = Table(title="PDF Information", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")

    table.add_row("File", os.path.basename(pdf_path))
    table.add_row("File Size", f"{len(data) / 1024 / 1024:.2f} MB")

    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except (RuntimeError, ValueError) as e:
        table.add_row("Status", f"[red]Unreadable: {e}[/]")
        console.print(table)
        sys.exit(1)

    with doc:
        table.add_row("Pages", str(doc.page_count))
        table.add_row("Encrypted", "yes" if doc.needs_pass else "no")
        if not doc.needs_pass:
            metadata = doc.metadata or {}
            for key in ["title", "author", "subject", "creator", "producer"]:
                val = metadata.get(key, "")
                if val:
                    table.add_row(key.title(), val)

            total_images = 0
            text_pages = 0
            for page in doc:
                total_images += len(page.get_images(full=True))
                if page.get_text("text").strip():
                    text_pages += 1
            table.add_row("Total Images", str(total_images))
            table.add_row("Pages With Text", f"{text_pages}/{doc.page_count}")

    console.print(table)
    console.print()


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True, dir_okay=False))
@_json_option
def diagnose(pdf_path: str, json_output: bool):
    """Report structural problems without changing the file."""
    try:
        result = diagnose_bytes(Path(pdf_path).read_bytes())
    except ProdigyError as e:
        console.print(f"[red]Error:[/] [{e.kind}] {e.message}")
        sys.exit(1)

    if json_output:
        print(json.dumps({
            "opened": result.opened,
            "pageCount": result.page_count,
            "issues": [i.to_json_dict() for i in result.issues],
        }, indent=2))
        return

    console.print()
    if not result.issues:
        console.print(f"[green]✓[/] No issues found ({result.page_count} pages)")
        console.print()
        return

    table = Table(title=f"Diagnosis: {os.path.basename(pdf_path)}", border_style="yellow")
    table.add_column("Type", style="bold")
    table.add_column("Severity")
    table.add_column("Description")
    table.add_column("Location")
    table.add_column("Fixable", justify="center")
    for issue in result.issues:
        color = {"critical": "red", "error": "yellow"}.get(issue.severity.value, "dim")
        table.add_row(
            issue.type.value,
            f"[{color}]{issue.severity.value}[/]",
            issue.description,
            issue.location or "-",
            "[green]✓[/]" if issue.fixable else "[red]✗[/]",
        )
    console.print(table)
    console.print(f"[dim]{result.page_count} pages readable[/]")
    console.print()


# ─── Jobs ─────────────────────────────────────────────────────────────────────


def _execute(
    kind: JobKind,
    pdf_path: str,
    settings: dict,
    output: Optional[str],
    json_output: bool,
    log_level: str,
    compare_path: Optional[str] = None,
):
    """Run one job on a private single-worker engine and report it."""
    if json_output:
        log_level = "ERROR"
    config = EngineConfig.from_env(workers=1, log_level=log_level)

    try:
        with ProdigyEngine(config) as engine:
            doc = engine.upload(Path(pdf_path).read_bytes(), os.path.basename(pdf_path))
            other = None
            if compare_path:
                other = engine.upload(Path(compare_path).read_bytes(), os.path.basename(compare_path))
            job_id = engine.submit(kind, doc.id, settings, other.id if other else None)

            if json_output:
                job = engine.wait(job_id)
            else:
                with Progress(
                    SpinnerColumn(),
                    TextColumn("[progress.description]{task.description}"),
                    TimeElapsedColumn(),
                    console=console,
                    transient=True,
                ) as progress:
                    progress.add_task(f"Running {kind.value} on {os.path.basename(pdf_path)}...")
                    job = engine.wait(job_id)

            written = None
            if job.state == JobState.SUCCEEDED and output:
                output_id = (job.result or {}).get("outputDocumentId")
                if output_id:
                    Path(output).parent.mkdir(parents=True, exist_ok=True)
                    Path(output).write_bytes(engine.download(output_id))
                    written = output
            audit = engine.audit_entries(job_id) if kind.has_audit else []
    except ProdigyError as e:
        if json_output:
            print(json.dumps({"error": e.to_dict()}, indent=2))
        else:
            console.print(f"[red]Error:[/] [{e.kind}] {e.message}")
        sys.exit(1)

    if json_output:
        payload = job.to_json_dict()
        payload["audit"] = [a.to_json_dict() for a in audit]
        print(json.dumps(payload, indent=2, ensure_ascii=False))
    else:
        _display_job(job, written, audit)

    if job.state != JobState.SUCCEEDED:
        sys.exit(1)


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", required=True, help="Where to write the redacted PDF")
@click.option(
    "--mode", default="auto",
    type=click.Choice(["manual", "auto", "pattern", "keyword"]),
    help="Redaction mode",
)
@click.option(
    "--type", "-t", "types", multiple=True,
    type=click.Choice(DETECTION_TYPES),
    help="Detection type to enable (repeatable; default: the standard set)",
)
@click.option("--keyword", "-k", "keywords", multiple=True, help="Keyword to redact (repeatable)")
@click.option("--pattern", "-p", "patterns", multiple=True, help="Custom regex (repeatable)")
@click.option("--case-sensitive", is_flag=True, default=False)
@click.option("--fuzzy", is_flag=True, default=False, help="Also match keywords one edit away")
@click.option("--images", is_flag=True, default=False, help="Redact every image")
@click.option(
    "--security-level", default="high",
    type=click.Choice(["standard", "high", "military", "legal"]),
)
@click.option("--preserve-metadata", is_flag=True, default=False)
@_log_option
@_json_option
def redact(pdf_path, output, mode, types, keywords, patterns, case_sensitive, fuzzy,
           images, security_level, preserve_metadata, log_level, json_output):
    """Permanently remove sensitive content from a PDF."""
    settings = {
        "redactionMode": mode,
        "keywords": list(keywords),
        "customPatterns": list(patterns),
        "caseSensitive": case_sensitive,
        "fuzzyKeywords": fuzzy,
        "redactImages": images,
        "securityLevel": security_level,
        "preserveMetadata": preserve_metadata,
    }
    if types:
        settings["autoDetectionTypes"] = {
            name: name in types for name in DETECTION_TYPES
        }
    if patterns and mode == "auto":
        settings.setdefault("autoDetectionTypes", {})["custom"] = True
    _execute(JobKind.REDACT, pdf_path, settings, output, json_output, log_level)


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", required=True, help="Where to write the repaired PDF")
@click.option(
    "--level", "-l", default="standard",
    type=click.Choice(["basic", "standard", "aggressive", "recovery"]),
    help="Repair level",
)
@click.option("--no-optimize", is_flag=True, default=False, help="Skip stream compression")
@click.option("--no-validate", is_flag=True, default=False, help="Skip the post-repair diagnosis")
@_log_option
@_json_option
def repair(pdf_path, output, level, no_optimize, no_validate, log_level, json_output):
    """Repair a damaged PDF."""
    settings = {
        "repairLevel": level,
        "optimizeAfterRepair": not no_optimize,
        "validateAfterRepair": not no_validate,
    }
    _execute(JobKind.REPAIR, pdf_path, settings, output, json_output, log_level)


@cli.command()
@click.argument("original", type=click.Path(exists=True, dir_okay=False))
@click.argument("revised", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", default=None, help="Write the highlighted revised PDF here")
@click.option(
    "--type", "comparison_type", default="comprehensive",
    type=click.Choice(["text", "structure", "comprehensive"]),
)
@click.option(
    "--sensitivity", "-s", default="medium",
    type=click.Choice(["low", "medium", "high", "precise"]),
)
@click.option("--ignore-case", is_flag=True, default=False)
@_log_option
@_json_option
def compare(original, revised, output, comparison_type, sensitivity, ignore_case,
            log_level, json_output):
    """Compare an original PDF against a revised one."""
    settings = {
        "comparisonType": comparison_type,
        "sensitivity": sensitivity,
        "ignoreOptions": {"case": ignore_case},
        "outputFormat": "side_by_side" if output else "summary_only",
    }
    _execute(JobKind.COMPARE, original, settings, output, json_output, log_level,
             compare_path=revised)


@cli.command()
@click.argument("kind", type=click.Choice([k.value for k in JobKind]))
@click.argument("pdf_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--settings", "-s", "raw_settings", default=None,
              help="Job settings as JSON, or @file.json")
@click.option("--output", "-o", default=None, help="Where to write the resulting PDF")
@click.option("--compare-with", default=None, type=click.Path(exists=True, dir_okay=False),
              help="Revised PDF (compare jobs only)")
@_log_option
@_json_option
def run(kind, pdf_path, raw_settings, output, compare_with, log_level, json_output):
    """Run any job kind with camelCase JSON settings."""
    kind = JobKind(kind)
    if kind == JobKind.COMPARE and not compare_with:
        raise click.UsageError("compare needs --compare-with")
    _execute(kind, pdf_path, _parse_settings(raw_settings), output, json_output,
             log_level, compare_path=compare_with)


@cli.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
@click.argument("kind", type=click.Choice([k.value for k in JobKind if k != JobKind.COMPARE]))
@click.option("--settings", "-s", "raw_settings", default=None,
              help="Job settings as JSON, or @file.json")
@click.option("--output", "-o", default="output", help="Output directory")
@click.option(
    "--parallel", "-j",
    default=None,
    type=int,
    help="Number of workers (default: CPU count)",
)
@_log_option
def batch(directory, kind, raw_settings, output, parallel, log_level):
    """Run one job kind over every PDF in a directory."""
    pdf_files = sorted(Path(directory).glob("*.pdf"))
    if not pdf_files:
        console.print(f"[yellow]No PDF files found in: {directory}[/]")
        return

    settings = _parse_settings(raw_settings)
    out_dir = Path(output)
    out_dir.mkdir(parents=True, exist_ok=True)

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]Batch {kind}[/]\n"
            f"[dim]Found {len(pdf_files)} PDFs in: {directory}[/]",
            border_style="cyan",
        )
    )
    console.print()

    config = EngineConfig.from_env(workers=parallel, log_level=log_level)
    rows = []
    with ProdigyEngine(config) as engine:
        submitted = []
        for pdf_file in pdf_files:
            try:
                doc = engine.upload(pdf_file.read_bytes(), pdf_file.name)
                submitted.append((pdf_file, engine.submit(kind, doc.id, settings)))
            except ProdigyError as e:
                rows.append((pdf_file.name, "rejected", f"[{e.kind}] {e.message}"))

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeRemainingColumn(),
            console=console,
        ) as progress:
            task = progress.add_task("Processing PDFs...", total=len(submitted))
            for pdf_file, job_id in submitted:
                progress.update(task, description=f"Waiting: {pdf_file.name}")
                job = engine.wait(job_id)
                if job.state == JobState.SUCCEEDED:
                    output_id = (job.result or {}).get("outputDocumentId")
                    if output_id:
                        (out_dir / pdf_file.name).write_bytes(engine.download(output_id))
                    rows.append((pdf_file.name, job.state.value, f"{job.duration}s"))
                else:
                    message = f"[{job.error.kind}] {job.error.message}" if job.error else ""
                    rows.append((pdf_file.name, job.state.value, message))
                progress.advance(task)

    _display_batch_summary(rows)


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _display_job(job: Job, written: Optional[str], audit: list):
    """Display a finished job in formatted tables."""
    console.print()
    color = {"succeeded": "green", "failed": "red", "cancelled": "yellow"}.get(job.state.value, "white")

    table = Table(title=f"{job.kind.value} job", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")
    table.add_row("Job", job.id)
    table.add_row("State", f"[{color}]{job.state.value}[/]")
    table.add_row("Duration", f"{job.duration}s" if job.duration is not None else "-")
    if job.error:
        table.add_row("Error", f"[red][{job.error.kind}][/] {job.error.message}")
    for key, value in (job.result or {}).items():
        if isinstance(value, (str, int, float, bool)) and key != "extractedText":
            table.add_row(key, str(value))
    if written:
        table.add_row("Output", written)
    console.print(table)

    result = job.result or {}
    if job.kind == JobKind.REDACT and result.get("redactionsByType"):
        _display_counts("Redactions by Type", result["redactionsByType"])
    if job.kind == JobKind.REPAIR and result.get("issues"):
        _display_issues(result["issues"], set(result.get("remainingIssues", [])))
    if job.kind == JobKind.COMPARE and result.get("records"):
        _display_records(result["records"])
    if audit:
        console.print(f"[dim]{len(audit)} audit entries recorded[/]")
    console.print()


def _display_counts(title: str, counts: dict):
    table = Table(title=title, border_style="green")
    table.add_column("Type", style="bold")
    table.add_column("Count", justify="right")
    for name, count in sorted(counts.items()):
        table.add_row(name, str(count))
    console.print(table)


def _display_issues(issues: list[dict], remaining: set[str]):
    table = Table(title="Issues", border_style="yellow")
    table.add_column("Description", style="bold")
    table.add_column("Severity")
    table.add_column("Status", justify="center")
    for issue in issues:
        fixed = issue["description"] not in remaining
        table.add_row(
            issue["description"],
            issue["severity"],
            "[green]✓ fixed[/]" if fixed else "[red]✗ remaining[/]",
        )
    console.print(table)


def _display_records(records: list[dict], limit: int = 50):
    table = Table(title="Changes", border_style="magenta")
    table.add_column("Page", justify="right")
    table.add_column("Type", style="bold")
    table.add_column("Description")
    table.add_column("Confidence", justify="right")
    for record in records[:limit]:
        table.add_row(
            str(record["page"]),
            record["type"],
            record["description"],
            f"{record['confidence']}%",
        )
    console.print(table)
    if len(records) > limit:
        console.print(f"[dim]... {len(records) - limit} more[/]")


def _display_batch_summary(rows: list[tuple[str, str, str]]):
    """Display batch processing summary."""
    console.print()
    table = Table(title="Batch Processing Summary", border_style="cyan")
    table.add_column("PDF", style="bold")
    table.add_column("State", justify="center")
    table.add_column("Detail")

    failures = 0
    for name, state, detail in rows:
        if state == "succeeded":
            table.add_row(name, "[green]✓[/]", detail)
        else:
            failures += 1
            table.add_row(name, f"[red]✗ {state}[/]", detail)

    console.print(table)
    console.print()
    console.print(f"[bold]Total:[/] {len(rows)} PDFs, {failures} failures")
    console.print()


# ─── Entry point (for python -m pdfprodigy.cli) ───────────────────────────────


if __name__ == "__main__":
    cli()
