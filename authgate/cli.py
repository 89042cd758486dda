"""
Command-line interface for authgate.

Starts the service in single- or multi-worker mode and provides small
operator helpers.
"""

import dataclasses
import sys
from typing import Optional

import click

from .config import get_settings
from .logging_config import configure_logging
from .repository import AccountRepository, create_pool
from .runtime.supervisor import WorkerSupervisor
from .runtime.worker import bind_socket, run_worker
from .security.passwords import PasswordHasher


@click.group()
@click.option("--log-level", "-l", default=None, help="Logging level (defaults to LOG_LEVEL)")
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str]) -> None:
    """authgate command-line interface."""
    settings = get_settings()
    if log_level:
        settings = dataclasses.replace(settings, log_level=log_level.upper())
    configure_logging(settings.log_level)
    ctx.obj = settings


@cli.command()
@click.option("--workers", "-w", type=int, default=None, help="Worker processes (defaults to WEB_CONCURRENCY or CPU count)")
@click.option("--host", default=None, help="Bind address")
@click.option("--port", "-p", type=int, default=None, help="Bind port")
@click.pass_obj
def serve(settings, workers: Optional[int], host: Optional[str], port: Optional[int]) -> None:
    """Serve the API, supervising several workers when more than one is requested."""
    overrides = {}
    if host:
        overrides["http_host"] = host
    if port:
        overrides["http_port"] = port
    if workers is not None:
        overrides["worker_count"] = workers
    settings = dataclasses.replace(settings, **overrides)

    if settings.worker_count <= 1:
        run_worker(settings)
        return

    sock = bind_socket(settings)
    supervisor = WorkerSupervisor(
        run_worker,
        settings.worker_count,
        args=(settings, sock),
        shutdown_grace=settings.drain_timeout_seconds + 5,
    )
    sys.exit(supervisor.run())


@cli.command("init-db")
@click.pass_obj
def init_db(settings) -> None:
    """Create the accounts table."""
    pool = create_pool(settings.database_url, timeout=settings.storage_timeout_seconds)
    pool.open(wait=True, timeout=settings.storage_timeout_seconds)
    repository = AccountRepository(pool, timeout=settings.storage_timeout_seconds)
    try:
        repository.ensure_schema()
    finally:
        repository.close()
    click.echo("accounts schema ready")


@cli.command("hash-password")
@click.password_option(confirmation_prompt=True)
@click.pass_obj
def hash_password(settings, password: str) -> None:
    """Print a password digest for seeding accounts by hand."""
    click.echo(PasswordHasher(rounds=settings.bcrypt_rounds).hash(password))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
