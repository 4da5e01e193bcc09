from __future__ import annotations

import argparse
from pathlib import Path

from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from runsheetcapture.application.services.analysis_factory import build_analysis_runner
from runsheetcapture.application.services.analysis_job_runner import AnalysisJobRunner
from runsheetcapture.application.services.analysis_manifest import AnalysisManifest, load_manifest
from runsheetcapture.application.services.progress_events import (
    CompletionEvent,
    ProgressEvent,
    ProgressSnapshot,
    RowUpdateEvent,
)
from runsheetcapture.application.services.project_service import ProjectService
from runsheetcapture.application.services.session_service import SessionIdentity
from runsheetcapture.cli.context import CLIContext
from runsheetcapture.domain.models.analysis import AnalysisJob

_STATUS_STYLES = {
    "success": "green",
    "error": "red",
    "skipped": "yellow",
    "analyzing": "cyan",
    "pending": "dim",
}


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("analyze", help="Analyze a batch of documents into a runsheet")
    parser.add_argument("--manifest", required=True, type=Path, help="JSON job manifest")
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite populated cells instead of filling empty ones only",
    )
    parser.add_argument(
        "--user-id",
        default=None,
        help="Owner for saved runsheets (default: RUNSHEET_USER_ID; unsaved when neither is set)",
    )
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    manifest = load_manifest(args.manifest.expanduser().resolve())
    ProjectService(ctx.paths).init_project()

    identity = SessionIdentity(args.user_id or ctx.settings.user_id)
    runner = build_analysis_runner(ctx.paths, ctx.settings, identity_provider=identity)

    try:
        return _run_job(args, ctx, manifest, runner, saving=identity() is not None)
    finally:
        runner.shutdown()


def _run_job(
    args: argparse.Namespace,
    ctx: CLIContext,
    manifest: AnalysisManifest,
    runner: AnalysisJobRunner,
    *,
    saving: bool,
) -> int:
    if not saving:
        ctx.console.print("[yellow]No user id set; results will not be saved.[/yellow]")

    progress = Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        TimeElapsedColumn(),
        console=ctx.console,
    )
    summary: dict[str, CompletionEvent] = {}

    with progress:
        task = progress.add_task(f"Analyzing '{escape(manifest.dataset_name)}'", total=max(len(manifest.queue), 1))

        def _on_event(event: ProgressEvent) -> None:
            if isinstance(event, ProgressSnapshot):
                progress.update(task, completed=event.completed)
            elif isinstance(event, RowUpdateEvent) and event.extracted_fields:
                fields = ", ".join(sorted(event.extracted_fields))
                progress.console.print(f"[green]Row {event.row_index + 1}[/green] {escape(fields)}")
            elif isinstance(event, CompletionEvent):
                summary["completion"] = event

        unsubscribe = runner.subscribe(_on_event)
        try:
            runner.start(
                manifest.dataset_id,
                manifest.dataset_name,
                manifest.columns,
                manifest.column_instructions,
                manifest.queue,
                manifest.data,
                fill_empty_only=not args.overwrite,
            )
            while not runner.join(timeout=0.2):
                pass
        except KeyboardInterrupt:
            runner.cancel()
            ctx.console.print("[yellow]Analysis cancelled.[/yellow]")
            return 1
        finally:
            unsubscribe()

    job = runner.get_status()
    if job is not None:
        ctx.console.print(_results_table(job))
        if job.last_save_error:
            ctx.console.print(f"[red]Last save failed:[/red] {escape(job.last_save_error)}")

    completion = summary.get("completion")
    if completion is None:
        ctx.console.print("[red]Analysis did not complete.[/red]")
        return 1

    ctx.console.print(
        Panel(
            f"Processed {completion.total} documents\n"
            f"Succeeded: {completion.success_count}  "
            f"Failed: {completion.error_count}  "
            f"Skipped: {completion.skipped_count}"
            + (f"\nRunsheet id: {job.dataset_id}" if job is not None and job.dataset_id else ""),
            title="Analysis complete",
            border_style="green" if completion.error_count == 0 else "yellow",
        )
    )
    return 0


def _results_table(job: AnalysisJob) -> Table:
    table = Table(title=f"Results ({job.total})")
    table.add_column("Row", justify="right")
    table.add_column("Document")
    table.add_column("Status")
    table.add_column("Detail", overflow="fold")

    for result in job.results:
        style = _STATUS_STYLES.get(result.status.value, "")
        detail = result.error or result.skip_reason or result.save_error or ""
        if not detail and result.extracted:
            detail = ", ".join(sorted(result.extracted))
        table.add_row(
            str(result.row_index + 1),
            escape(result.document_name),
            f"[{style}]{result.status.value}[/{style}]" if style else result.status.value,
            escape(detail),
        )
    return table
