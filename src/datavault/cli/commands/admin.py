"""``datavault init-db`` and ``datavault reconcile``: store maintenance."""

from __future__ import annotations

from typing import TYPE_CHECKING

import click

from datavault.bootstrap import open_service
from datavault.cli import _async
from datavault.cli._output import print_result, print_success
from datavault.cli.main import handle_errors

if TYPE_CHECKING:
    from datavault.cli._context import CliContext
    from datavault.schemas import ReconcileReport


@click.command("init-db")
@click.pass_obj
@handle_errors
def init_db_cmd(ctx: CliContext) -> None:
    """Create the metadata store tables."""

    async def _run() -> None:
        async with open_service(ctx.settings, create_schema=True):
            pass

    _async.run_async(_run())
    print_success(ctx, "Metadata store initialized.")


@click.command("reconcile")
@click.option(
    "--older-than",
    type=float,
    default=None,
    help="Only settle intents older than this many seconds (default from settings).",
)
@click.pass_obj
@handle_errors
def reconcile_cmd(ctx: CliContext, older_than: float | None) -> None:
    """Roll forward or fail operations left pending by interrupted calls."""

    async def _run() -> ReconcileReport:
        async with open_service(ctx.settings) as service:
            return await service.reconcile_pending_operations(older_than)

    report = _async.run_async(_run())
    print_result(ctx, report, title="Reconciliation")
