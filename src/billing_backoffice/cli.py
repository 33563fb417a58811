"""CLI entry point for the billing back-office."""

from __future__ import annotations

import asyncio
import signal
from datetime import date

import click

from .core.errors import BillingError


def _load(config: str | None):
    from .core.config import load_settings
    from .observability.logger import setup_logging

    settings = load_settings(config_path=config)
    setup_logging(settings.observability.log_level, settings.observability.log_format)
    return settings


@click.group()
def main() -> None:
    """Billing back-office."""


@main.command("init-db")
@click.option("--config", default=None, help="Config file path")
def init_db(config: str | None) -> None:
    """Create tables and store default invoice settings if none exist."""
    from .core.enums import StorageBackend
    from .core.errors import SettingsNotConfiguredError
    from .domain.settings import InvoiceSettings
    from .runtime import build_runtime

    settings = _load(config)
    if settings.storage.backend != StorageBackend.POSTGRES:
        raise click.ClickException("init-db requires storage.backend=postgres")

    async def _run() -> bool:
        from .storage.postgres.connection import create_all

        runtime = build_runtime(settings)
        try:
            await create_all(runtime.engine)
            try:
                await runtime.invoice_settings.get_settings()
                return False
            except SettingsNotConfiguredError:
                await runtime.invoice_settings.store_settings(InvoiceSettings())
                return True
        finally:
            await runtime.stop()

    try:
        seeded = asyncio.run(_run())
    except BillingError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Tables created.")
    if seeded:
        click.echo("Default invoice settings stored.")


@main.command("dispatch-jobs")
@click.option("--config", default=None, help="Config file path")
@click.option("--loop", "loop_", is_flag=True, help="Keep polling until interrupted")
@click.option("--interval", default=None, type=float, help="Poll interval in seconds")
def dispatch_jobs(config: str | None, loop_: bool, interval: float | None) -> None:
    """Publish deferred jobs that are due and handle the resulting events.

    With --loop this is the long-running worker process.
    """
    from .observability.metrics import start_metrics_server
    from .runtime import build_runtime

    settings = _load(config)
    if settings.observability.metrics_enabled:
        start_metrics_server(settings.observability.metrics_port)

    async def _run() -> None:
        runtime = build_runtime(settings)
        await runtime.start()
        try:
            if not loop_:
                report = await runtime.dispatcher.dispatch_due()
                handled = await runtime.process_pending()
                click.echo(
                    f"dispatched={len(report.dispatched)} failed={len(report.failed)} "
                    f"handled={handled}"
                )
                return
            stop = asyncio.Event()
            running = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                running.add_signal_handler(sig, stop.set)
            await runtime.dispatcher.run_forever(
                interval or settings.scheduler.poll_interval_seconds,
                stop,
                after_pass=runtime.process_pending,
            )
        finally:
            await runtime.stop()

    try:
        asyncio.run(_run())
    except BillingError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command("next-number")
@click.argument("template")
@click.argument("increment")
@click.argument("last", default="")
@click.option(
    "--date",
    "today",
    default=None,
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="Date to render (default: today)",
)
def next_number(template: str, increment: str, last: str, today) -> None:
    """Print the number that follows LAST for TEMPLATE."""
    from .core.numbering import Numbering

    day: date | None = today.date() if today is not None else None
    try:
        click.echo(Numbering.make_next_number(template, increment or template, last, day))
    except BillingError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command("show-config")
@click.option("--config", default=None, help="Config file path")
def show_config(config: str | None) -> None:
    """Print the effective settings as JSON."""
    from .core.config import load_settings

    settings = load_settings(config_path=config)
    click.echo(settings.model_dump_json(indent=2))


if __name__ == "__main__":
    main()
