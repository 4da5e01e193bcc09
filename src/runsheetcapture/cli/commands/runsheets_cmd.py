from __future__ import annotations

import argparse

from rich.table import Table

from runsheetcapture.application.services.project_service import ProjectService
from runsheetcapture.application.services.runsheet_persistence_service import RunsheetPersistenceService
from runsheetcapture.cli.context import CLIContext
from runsheetcapture.core.errors import ProjectNotInitializedError
from runsheetcapture.infrastructure.db.repos.runsheet_repo import RunsheetRepo


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("runsheets", help="Inspect saved runsheets")
    runsheet_subparsers = parser.add_subparsers(dest="runsheets_command", required=True)

    list_parser = runsheet_subparsers.add_parser("list", help="List saved runsheets")
    list_parser.add_argument("--user-id", default=None)
    list_parser.add_argument("--limit", type=int, default=50)
    list_parser.set_defaults(handler=run_list)

    show_parser = runsheet_subparsers.add_parser("show", help="Show one runsheet's rows")
    show_parser.add_argument("runsheet_id")
    show_parser.set_defaults(handler=run_show)


def _service(ctx: CLIContext) -> RunsheetPersistenceService:
    if not ProjectService(ctx.paths).is_initialized():
        raise ProjectNotInitializedError(
            f"Project is not initialized. Run 'runsheet init' first in {ctx.paths.project_root}"
        )
    return RunsheetPersistenceService(RunsheetRepo(ctx.paths.db_path))


def run_list(args: argparse.Namespace, ctx: CLIContext) -> int:
    runsheets = _service(ctx).list_runsheets(user_id=args.user_id, limit=args.limit)

    table = Table(title=f"Runsheets ({len(runsheets)})")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Owner")
    table.add_column("Rows", justify="right")
    table.add_column("Updated")

    for r in runsheets:
        table.add_row(r.id, r.name, r.user_id, str(len(r.data)), r.updated_at)

    ctx.console.print(table)
    return 0


def run_show(args: argparse.Namespace, ctx: CLIContext) -> int:
    runsheet = _service(ctx).get_runsheet(args.runsheet_id)

    table = Table(title=f"{runsheet.name} ({len(runsheet.data)} rows)")
    table.add_column("#", justify="right")
    for column in runsheet.columns:
        table.add_column(column, overflow="fold")

    for index, row in enumerate(runsheet.data, start=1):
        table.add_row(str(index), *(str(row.get(column, "")) for column in runsheet.columns))

    ctx.console.print(table)
    return 0
