"""
Command line access to the Azure identity subsystem.

Usage:
    mssql-identity login [--device-code]
    mssql-identity accounts
    mssql-identity token --account <account key>
    mssql-identity logout --account <account key>
    mssql-identity storage-path
"""

import asyncio
import logging
import sys

import click
from loguru import logger

from mssql_identity.config import LOG_LEVEL
from mssql_identity.controller import AzureController
from mssql_identity.exceptions import IdentityError
from mssql_identity.models import AuthType, ConnectionProfile
from mssql_identity.storage import find_or_make_storage_path


class InterceptHandler(logging.Handler):
    """
    Intercepts logs from standard logging and redirects them to loguru.

    Captures the callback listener logs of uvicorn and FastAPI.
    """

    SHUTDOWN_EXCEPTIONS = (
        "CancelledError",
        "KeyboardInterrupt",
        "asyncio.exceptions.CancelledError",
    )

    def emit(self, record: logging.LogRecord) -> None:
        # uvicorn logs Ctrl+C as ERROR
        if record.exc_info:
            exc_type = record.exc_info[0]
            if exc_type is not None and exc_type.__name__ in self.SHUTDOWN_EXCEPTIONS:
                logger.info("Callback listener shutdown in progress...")
                return

        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller frame for correct source display
        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = LOG_LEVEL) -> None:
    """Replaces the default loguru sink and routes uvicorn/FastAPI logs to it."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        colorize=True,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    )

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        logging_logger = logging.getLogger(logger_name)
        logging_logger.handlers = [InterceptHandler()]
        logging_logger.propagate = False


def _run(coro_factory):
    """Runs a controller coroutine and turns identity errors into exit code 1."""
    async def _main():
        controller = AzureController.from_config()
        try:
            if not await controller.init():
                sys.exit(1)
            return await coro_factory(controller)
        finally:
            await controller.close()

    try:
        return asyncio.run(_main())
    except IdentityError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)


@click.group()
@click.option("--log-level", default=LOG_LEVEL, show_default=True, help="Log level (TRACE..CRITICAL)")
def cli(log_level: str):
    """MSSQL Identity CLI - Azure account sign-in and tokens."""
    setup_logging(log_level.upper())


@cli.command()
@click.option("--device-code", is_flag=True, help="Sign in with a device code instead of the browser")
def login(device_code: bool):
    """Sign in a new Azure account."""

    async def _login(controller: AzureController):
        if device_code:
            controller.configured_auth_type = AuthType.DEVICE_CODE
        profile = await controller.get_tokens(ConnectionProfile())
        click.echo(f"✓ Signed in as {profile.email}")
        click.echo(f"  Account: {profile.account_id}")

    _run(_login)


@cli.command()
def accounts():
    """List signed-in Azure accounts."""

    async def _list(controller: AzureController):
        items = await controller.get_accounts()
        if not items:
            click.echo("No Azure accounts found.")
            click.echo("\nSign in with: mssql-identity login")
            return

        click.echo(f"\nFound {len(items)} Azure account(s):\n")
        for account in items:
            status = "✗ Needs sign-in" if account.is_stale else "✓ Active"
            click.echo(f"  {status} - {account.display_info.email}")
            click.echo(f"    Key: {account.key}")
            click.echo(f"    Auth Type: {account.properties.auth_type.value}")
            for tenant in account.properties.tenants:
                marker = " (home)" if tenant.is_home else ""
                click.echo(f"    Tenant: {tenant.id} {tenant.display_name}{marker}")
            click.echo()

    _run(_list)


@cli.command()
@click.option("--account", "account_key", required=True, help="Account key")
def token(account_key: str):
    """Print a database access token for an account."""

    async def _token(controller: AzureController):
        click.echo(await controller.refresh_token(account_key))

    _run(_token)


@cli.command()
@click.option("--account", "account_key", required=True, help="Account key")
def logout(account_key: str):
    """Remove an account and its cached tokens."""

    async def _logout(controller: AzureController):
        if await controller.remove_account(account_key):
            click.echo(f"✓ Removed account {account_key}")
        else:
            click.echo(f"ERROR: Account {account_key} not found", err=True)
            sys.exit(1)

    _run(_logout)


@cli.command()
def storage_path():
    """Show (and create) the identity storage directory."""
    try:
        path = find_or_make_storage_path(sys.platform)
    except IdentityError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(1)
    if path is None:
        click.echo("ERROR: identity storage could not be created", err=True)
        sys.exit(1)
    click.echo(str(path))


if __name__ == "__main__":
    cli()
