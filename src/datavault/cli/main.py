"""Root CLI entry point: ``datavault`` command group."""

from __future__ import annotations

import functools
from typing import Any

import click
from rich.console import Console

from datavault import __version__
from datavault.cli._context import CliContext
from datavault.errors import error_body
from datavault.exceptions import DatavaultError
from datavault.log import setup_logging
from datavault.settings import DatavaultSettings

_SENSITIVE_KEYWORDS = ("password", "secret", "token", "access_key", "authorization")

# ---------------------------------------------------------------------------
# Error-handling decorator
# ---------------------------------------------------------------------------


def handle_errors(fn: Any) -> Any:
    """Render engine errors as ``CODE: message`` instead of a traceback."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except click.exceptions.Exit:
            raise
        except click.ClickException:
            raise
        except DatavaultError as exc:
            error = error_body(exc)["error"]
            _die(f"{error['code']}: {error['message']}")
        except Exception as exc:
            msg = str(exc)
            if any(kw in msg.lower() for kw in _SENSITIVE_KEYWORDS):
                msg = "An unexpected error occurred."
            _die(f"Unexpected error: {msg}")

    return wrapper


def _die(message: str) -> None:
    raise click.ClickException(message)


# ---------------------------------------------------------------------------
# Root group
# ---------------------------------------------------------------------------


@click.group()
@click.option("--database-url", default=None, help="Metadata store URL (overrides settings).")
@click.option("--json", "json_mode", is_flag=True, default=False, help="Output raw JSON.")
@click.option("--log-level", default=None, help="Log level (default from settings).")
@click.version_option(version=__version__, prog_name="datavault")
@click.pass_context
def cli(
    ctx: click.Context,
    database_url: str | None,
    json_mode: bool,
    log_level: str | None,
) -> None:
    """Dataset version control and content storage."""
    settings = DatavaultSettings()
    if database_url:
        settings = settings.model_copy(update={"database_url": database_url})
    setup_logging(log_level or settings.log_level)
    ctx.obj = CliContext(
        settings=settings,
        console=Console(),
        err_console=Console(stderr=True),
        json_mode=json_mode,
    )


# ---------------------------------------------------------------------------
# Register commands (lazy imports to keep startup fast)
# ---------------------------------------------------------------------------


def _register_commands() -> None:
    from datavault.cli.commands.admin import init_db_cmd, reconcile_cmd
    from datavault.cli.commands.versions import (
        diff_cmd,
        tag_cmd,
        validate_cmd,
        versions_cmd,
    )

    cli.add_command(init_db_cmd)
    cli.add_command(reconcile_cmd)
    cli.add_command(versions_cmd)
    cli.add_command(diff_cmd)
    cli.add_command(validate_cmd)
    cli.add_command(tag_cmd)


_register_commands()
