from __future__ import annotations

import argparse

from rich.panel import Panel

from runsheetcapture.application.services.analysis_factory import build_progress_storage
from runsheetcapture.application.services.project_service import ProjectService
from runsheetcapture.cli.context import CLIContext
from runsheetcapture.core.errors import ProjectNotInitializedError
from runsheetcapture.domain.models.analysis import JobStatus


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("status", help="Show the last analysis checkpoint")
    parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    if not ProjectService(ctx.paths).is_initialized():
        raise ProjectNotInitializedError(
            f"Project is not initialized. Run 'runsheet init' first in {ctx.paths.project_root}"
        )

    metadata = build_progress_storage(ctx.paths, ctx.settings).load_last_known()
    if metadata is None:
        ctx.console.print("[green]No analysis checkpoint recorded.[/green]")
        return 0

    interrupted = metadata.status in (JobStatus.RUNNING.value, JobStatus.PAUSED.value)
    counts = ", ".join(f"{name} {count}" for name, count in sorted(metadata.counts.items()) if count)
    ctx.console.print(
        Panel(
            f"Job: {metadata.job_id}\n"
            f"Runsheet: {metadata.dataset_name or '-'} ({metadata.dataset_id or 'unsaved'})\n"
            f"Status: {metadata.status}\n"
            f"Progress: {metadata.cursor}/{metadata.total}\n"
            f"Results: {counts or 'none'}\n"
            f"Updated: {metadata.updated_at}",
            title="Interrupted analysis (not resumed)" if interrupted else "Last analysis",
            border_style="yellow" if interrupted else "green",
        )
    )
    return 0
