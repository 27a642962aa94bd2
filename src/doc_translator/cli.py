"""
CLI for doc-translator.

Provides commands for job intake, running the worker and health monitor,
reviewing and approving translations, and the pause/resume/cancel/restart
controls.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from doc_translator.app import Application, create_app
from doc_translator.config import Settings, create_default_config, load_config
from doc_translator.database import Job, JobStatus
from doc_translator.errors import TranslatorError
from doc_translator.logging_setup import setup_logging

app = typer.Typer(
    name="doc-translator",
    help="Structure-preserving document translation with human review.",
    add_completion=False,
)

console = Console()

STATUS_STYLES = {
    JobStatus.PROCESSING: "yellow",
    JobStatus.READY_FOR_REVIEW: "cyan",
    JobStatus.APPROVED: "green",
    JobStatus.PAUSE_REQUESTED: "magenta",
    JobStatus.PAUSED: "magenta",
    JobStatus.CANCEL_REQUESTED: "red",
    JobStatus.CANCELLED: "dim",
    JobStatus.FAILED: "bold red",
}

ConfigOption = typer.Option(None, "--config", "-c", help="Config file")
OwnerOption = typer.Option("default", "--owner", "-o", help="Job owner id")


def get_settings(config_path: Path | None = None) -> Settings:
    """Load settings from config file or defaults."""
    if config_path and config_path.exists():
        return load_config(config_path)
    return load_config()


def get_app(config_path: Path | None = None) -> Application:
    settings = get_settings(config_path)
    setup_logging(settings.logging, console)
    return create_app(settings)


def _fail(error: TranslatorError) -> None:
    console.print(f"[red]Error ({error.code}): {error.message}[/red]")
    raise typer.Exit(1) from None


def _status_text(status: JobStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


def _show_job(job: Job) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_row("Job", job.job_id)
    table.add_row("File", job.file_name or job.file_key)
    table.add_row("Status", _status_text(job.status))
    table.add_row("Languages", f"{job.source_language} → {job.target_language}")
    table.add_row(
        "Chunks",
        f"{job.processed_chunks}/{job.total_chunks} completed, {job.failed_chunks} failed",
    )
    table.add_row("Assets", str(job.asset_count))
    table.add_row("Health retries", str(job.health_check_retries))
    if job.provider:
        table.add_row("Provider", f"{job.provider} ({job.model or 'default'})")
    if job.error_message:
        table.add_row("Error", f"[red]{job.error_message}[/red]")
    for label, value in (
        ("Created", job.created_at),
        ("Translated", job.translated_at),
        ("Approved", job.approved_at),
        ("Paused", job.paused_at),
        ("Cancelled", job.cancelled_at),
        ("Failed", job.failed_at),
    ):
        if value:
            table.add_row(label, str(value)[:19])
    console.print(Panel(table, title="[bold blue]Translation job[/bold blue]", border_style="blue"))


@app.command()
def init(
    output_path: Path = typer.Option(Path("config.yaml"), "--output", "-o", help="Output path for config file"),
) -> None:
    """Generate a default configuration file."""
    if output_path.exists():
        overwrite = typer.confirm(f"{output_path} already exists. Overwrite?")
        if not overwrite:
            raise typer.Abort()
    create_default_config(output_path)
    console.print(f"[green]Created config file: {output_path}[/green]")
    console.print("\nSet your API key, then run:")
    console.print("  doc-translator submit ./document.docx --target en --config config.yaml")


@app.command()
def submit(
    file_path: Path = typer.Argument(..., help="Document to translate"),
    target: str | None = typer.Option(None, "--target", "-t", help="Target language"),
    source: str | None = typer.Option(None, "--source", "-s", help="Source language"),
    content_type: str | None = typer.Option(None, "--content-type", help="Declared media type"),
    run: bool = typer.Option(False, "--run", help="Process the job right away"),
    owner: str = OwnerOption,
    config: Path | None = ConfigOption,
) -> None:
    """Upload a document and create a translation job."""
    if not file_path.is_file():
        console.print(f"[red]Error: file not found: {file_path}[/red]")
        raise typer.Exit(1)

    application = get_app(config)
    try:
        job = application.service.submit_file(
            owner,
            file_path,
            target_language=target,
            source_language=source,
            content_type=content_type,
        )
    except TranslatorError as e:
        _fail(e)

    console.print(f"[green]Created job {job.job_id}[/green]")
    if run:
        asyncio.run(_drain(application))
        job = application.service.get_job(owner, job.job_id)
    _show_job(job)


async def _drain(application: Application) -> None:
    try:
        with console.status("[bold blue]Translating..."):
            stats = await application.worker.drain()
        console.print(f"Handled {stats.handled} signal(s), {stats.errors} error(s)")
    finally:
        await application.engine.aclose()


@app.command()
def worker(
    once: bool = typer.Option(False, "--once", help="Drain the queue and exit"),
    with_health: bool = typer.Option(True, "--health/--no-health", help="Run the health monitor too"),
    config: Path | None = ConfigOption,
) -> None:
    """Process queued pipeline signals."""
    application = get_app(config)

    if once:
        asyncio.run(_drain(application))
        return

    async def serve() -> None:
        tasks = [application.worker.run_forever()]
        if with_health:
            tasks.append(application.health.run_forever())
        try:
            await asyncio.gather(*tasks)
        finally:
            await application.engine.aclose()

    console.print("[bold blue]Worker running[/bold blue] (Ctrl+C to stop)")
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker stopped[/yellow]")


@app.command("health-check")
def health_check(
    config: Path | None = ConfigOption,
) -> None:
    """Run one health-check pass over in-flight jobs."""
    application = get_app(config)
    report = application.health.run_once()

    table = Table(title="Health check")
    table.add_column("Counter", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in report.to_dict().items():
        table.add_row(key.replace("_", " "), str(value))
    console.print(table)


@app.command()
def status(
    job_id: str | None = typer.Argument(None, help="Job to show; lists jobs when omitted"),
    filter_status: str | None = typer.Option(None, "--status", help="Filter list by status"),
    owner: str = OwnerOption,
    config: Path | None = ConfigOption,
) -> None:
    """Show translation jobs."""
    application = get_app(config)
    if job_id:
        try:
            _show_job(application.service.get_job(owner, job_id))
        except TranslatorError as e:
            _fail(e)
        return

    try:
        wanted = JobStatus(filter_status.upper()) if filter_status else None
    except ValueError:
        console.print(f"[red]Unknown status: {filter_status}[/red]")
        raise typer.Exit(1) from None

    jobs = application.service.list_jobs(owner, wanted)
    if not jobs:
        console.print("[yellow]No translation jobs found[/yellow]")
        return

    table = Table(title="Translation jobs")
    table.add_column("Job", style="dim")
    table.add_column("File", style="cyan")
    table.add_column("Languages")
    table.add_column("Status")
    table.add_column("Chunks", justify="right")
    table.add_column("Created", style="dim")
    for job in jobs:
        table.add_row(
            job.job_id[:8],
            job.file_name or "",
            f"{job.source_language}→{job.target_language}",
            _status_text(job.status),
            f"{job.processed_chunks}/{job.total_chunks}",
            str(job.created_at)[:19] if job.created_at else "",
        )
    console.print(table)


@app.command()
def chunks(
    job_id: str = typer.Argument(..., help="Job id"),
    show_source: bool = typer.Option(False, "--source", help="Show source text too"),
    owner: str = OwnerOption,
    config: Path | None = ConfigOption,
) -> None:
    """List a job's chunks for review."""
    application = get_app(config)
    try:
        bundle = application.service.get_chunks(owner, job_id)
    except TranslatorError as e:
        _fail(e)

    if bundle.get("review_locked"):
        console.print("[yellow]Job is approved; review is locked[/yellow]")
        return

    table = Table(title=f"Chunks for {job_id[:8]}")
    table.add_column("#", justify="right")
    table.add_column("Status")
    table.add_column("By", style="dim")
    if show_source:
        table.add_column("Source")
    table.add_column("Translation")
    for chunk in bundle["chunks"]:
        text = chunk["reviewer_html"] or chunk["machine_html"] or ""
        row = [str(chunk["order"]), chunk["status"], chunk["last_updated_by"] or ""]
        if show_source:
            row.append((chunk["source_text"] or "")[:50])
        row.append(text[:70])
        table.add_row(*row)
    console.print(table)


@app.command()
def edit(
    job_id: str = typer.Argument(..., help="Job id"),
    order: int = typer.Argument(..., help="Chunk order"),
    html: str | None = typer.Option(None, "--html", help="Replacement HTML"),
    text: str | None = typer.Option(None, "--text", help="Replacement plain text"),
    reviewer: str = typer.Option("reviewer", "--reviewer", "-r", help="Reviewer identity"),
    owner: str = OwnerOption,
    config: Path | None = ConfigOption,
) -> None:
    """Replace the reviewer output of one chunk."""
    application = get_app(config)
    try:
        application.service.put_chunks(
            owner,
            job_id,
            [{"order": order, "html": html, "text": text}],
            actor={"type": "user", "name": reviewer, "role": "reviewer"},
        )
    except TranslatorError as e:
        _fail(e)
    console.print(f"[green]Chunk {order} updated[/green]")


@app.command()
def approve(
    job_id: str = typer.Argument(..., help="Job id"),
    approver: str = typer.Option("reviewer", "--by", help="Approver identity"),
    owner: str = OwnerOption,
    config: Path | None = ConfigOption,
) -> None:
    """Approve a reviewed translation and produce the final document."""
    application = get_app(config)
    try:
        result = application.service.approve(
            owner, job_id, actor={"type": "user", "name": approver, "role": "reviewer"}
        )
    except TranslatorError as e:
        _fail(e)

    if result.already_approved:
        console.print("[yellow]Translation was already approved[/yellow]")
    else:
        fmt = "DOCX" if result.docx_generated else "HTML"
        console.print(f"[green]Approved; final output ({fmt}): {result.job.translated_file_key}[/green]")


@app.command()
def download(
    job_id: str = typer.Argument(..., help="Job id"),
    kind: str = typer.Option("translated", "--kind", "-k", help="original, machine, translated or translatedHtml"),
    owner: str = OwnerOption,
    config: Path | None = ConfigOption,
) -> None:
    """Print a short-lived download URL."""
    application = get_app(config)
    try:
        url = application.service.download(owner, job_id, kind)
    except TranslatorError as e:
        _fail(e)
    console.print(url.url)
    console.print(f"[dim]expires {str(url.expires_at)[:19]}[/dim]")


def _control(action: str, job_id: str, owner: str, config: Path | None, **kwargs) -> None:
    application = get_app(config)
    handler = getattr(application.service, f"{action}_job")
    try:
        result = handler(owner, job_id, **kwargs)
    except TranslatorError as e:
        _fail(e)
    style = "green" if result.status_code < 300 else "yellow"
    console.print(f"[{style}]{result.message}[/{style}] ({_status_text(result.job.status)})")


@app.command()
def pause(job_id: str = typer.Argument(..., help="Job id"), owner: str = OwnerOption, config: Path | None = ConfigOption) -> None:
    """Request a pause at the next checkpoint."""
    _control("pause", job_id, owner, config)


@app.command()
def resume(job_id: str = typer.Argument(..., help="Job id"), owner: str = OwnerOption, config: Path | None = ConfigOption) -> None:
    """Resume a paused job."""
    _control("resume", job_id, owner, config)


@app.command()
def cancel(
    job_id: str = typer.Argument(..., help="Job id"),
    reason: str | None = typer.Option(None, "--reason", help="Why the job is cancelled"),
    owner: str = OwnerOption,
    config: Path | None = ConfigOption,
) -> None:
    """Cancel a job and clean up its artifacts."""
    _control("cancel", job_id, owner, config, reason=reason)


@app.command()
def restart(job_id: str = typer.Argument(..., help="Job id"), owner: str = OwnerOption, config: Path | None = ConfigOption) -> None:
    """Restart a failed, stuck or cancelled job."""
    _control("restart", job_id, owner, config)


@app.command()
def delete(
    job_id: str = typer.Argument(..., help="Job id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    owner: str = OwnerOption,
    config: Path | None = ConfigOption,
) -> None:
    """Delete a finished job and its files."""
    if not yes and not typer.confirm(f"Delete job {job_id} and all its files?"):
        raise typer.Abort()
    application = get_app(config)
    try:
        application.service.delete_job(owner, job_id)
    except TranslatorError as e:
        _fail(e)
    console.print(f"[green]Deleted job {job_id}[/green]")


@app.command()
def logs(
    job_id: str = typer.Argument(..., help="Job id"),
    limit: int = typer.Option(50, "--limit", "-n", help="Max entries to show"),
    as_json: bool = typer.Option(False, "--json", help="Print raw entries"),
    owner: str = OwnerOption,
    config: Path | None = ConfigOption,
) -> None:
    """View a job's audit log."""
    application = get_app(config)
    try:
        entries = application.service.get_job_logs(owner, job_id, limit)
    except TranslatorError as e:
        _fail(e)

    if not entries:
        console.print("[yellow]No log entries found[/yellow]")
        return
    if as_json:
        console.print_json(json.dumps([vars(e) for e in entries], default=str))
        return

    table = Table(title="Job log")
    table.add_column("Time", style="dim")
    table.add_column("Category", style="cyan")
    table.add_column("Event")
    table.add_column("Status")
    table.add_column("Message")
    for entry in entries:
        status_style = "red" if entry.status == "FAILED" else "green"
        table.add_row(
            str(entry.created_at)[:19],
            entry.category or "",
            entry.event_type or "",
            f"[{status_style}]{entry.status or ''}[/{status_style}]",
            (entry.message or "")[:60],
        )
    console.print(table)


@app.command()
def stats(
    config: Path | None = ConfigOption,
) -> None:
    """Show job and chunk statistics."""
    application = get_app(config)
    data = application.db.get_statistics()

    lines = [f"Jobs: {data['total_jobs']}"]
    lines += [f"  - {name}: {count}" for name, count in sorted(data["jobs_by_status"].items())]
    lines.append("")
    lines.append("Chunks:")
    lines += [f"  - {name}: {count}" for name, count in sorted(data["chunks_by_status"].items())]
    lines.append("")
    lines.append(f"Queued signals: {data['queued_signals']}")
    console.print(Panel("\n".join(lines), title="Processing Statistics"))


def main() -> None:
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
