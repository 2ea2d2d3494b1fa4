"""``datavault versions|diff|validate|tag``: version history inspection."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import click

from datavault.bootstrap import open_service
from datavault.cli import _async
from datavault.cli._output import print_result, print_success
from datavault.cli.main import handle_errors
from datavault.schemas import ValidationOptions

if TYPE_CHECKING:
    from datavault.cli._context import CliContext
    from datavault.repository.schemas import VersionTag
    from datavault.schemas import ValidationResult, VersionComparison, VersionSummary

_VERSION_COLUMNS: list[tuple[str, str]] = [
    ("Version", "version"),
    ("Parent", "parent_version"),
    ("Files", "file_count"),
    ("Description", "description"),
    ("Created", "created_at"),
]

_ISSUE_COLUMNS: list[tuple[str, str]] = [
    ("Code", "code"),
    ("Severity", "severity"),
    ("Path", "path"),
    ("Message", "message"),
]


@click.command("versions")
@click.argument("owner")
@click.argument("dataset_id")
@click.pass_obj
@handle_errors
def versions_cmd(ctx: CliContext, owner: str, dataset_id: str) -> None:
    """List the version history of a dataset, root first."""

    async def _run() -> list[VersionSummary]:
        async with open_service(ctx.settings) as service:
            return await service.list_versions(owner, dataset_id)

    print_result(ctx, _async.run_async(_run()), columns=_VERSION_COLUMNS, title="Versions")


@click.command("diff")
@click.argument("owner")
@click.argument("dataset_id")
@click.argument("from_version")
@click.argument("to_version")
@click.pass_obj
@handle_errors
def diff_cmd(
    ctx: CliContext, owner: str, dataset_id: str, from_version: str, to_version: str
) -> None:
    """Show files added, modified and removed between two versions."""

    async def _run() -> VersionComparison:
        async with open_service(ctx.settings) as service:
            return await service.compare_versions(owner, dataset_id, from_version, to_version)

    diff = _async.run_async(_run())
    if ctx.json_mode:
        print_result(ctx, diff)
        return
    rows: list[dict[str, Any]] = [
        {"change": "added", "file": f.name, "size_delta": f.size_bytes} for f in diff.added
    ]
    rows += [
        {"change": "modified", "file": m.name, "size_delta": m.size_delta} for m in diff.modified
    ]
    rows += [
        {"change": "removed", "file": f.name, "size_delta": -f.size_bytes} for f in diff.removed
    ]
    print_result(ctx, rows, title=f"{from_version} -> {to_version}")
    print_result(ctx, diff.statistics, title="Statistics")


@click.command("validate")
@click.argument("dataset_id")
@click.argument("version")
@click.option("--checksums", is_flag=True, default=False, help="Re-verify stored checksums.")
@click.option("--strict", is_flag=True, default=False, help="Exit non-zero on any error.")
@click.pass_obj
@handle_errors
def validate_cmd(
    ctx: CliContext, dataset_id: str, version: str, checksums: bool, strict: bool
) -> None:
    """Validate the files and metadata of one version."""

    async def _run() -> ValidationResult:
        async with open_service(ctx.settings) as service:
            return await service.validate_version(
                dataset_id, version, ValidationOptions(checksums=checksums)
            )

    result = _async.run_async(_run())
    if ctx.json_mode:
        print_result(ctx, result)
    else:
        print_result(ctx, result.metrics, title=f"Metrics for {version}")
        if result.errors:
            print_result(ctx, result.errors, columns=_ISSUE_COLUMNS, title="Issues")
        else:
            print_success(ctx, "No issues found.")
    if strict:
        result.raise_for_errors()


@click.command("tag")
@click.argument("owner")
@click.argument("dataset_id")
@click.argument("version")
@click.argument("name")
@click.option("--description", default="", help="Tag annotation.")
@click.pass_obj
@handle_errors
def tag_cmd(
    ctx: CliContext, owner: str, dataset_id: str, version: str, name: str, description: str
) -> None:
    """Attach a named tag to an existing version."""

    async def _run() -> VersionTag:
        async with open_service(ctx.settings) as service:
            return await service.tag_version(
                owner, dataset_id, version, name, description=description
            )

    tag = _async.run_async(_run())
    print_result(ctx, tag, title="Tag")
