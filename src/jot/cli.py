from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import anyio
import typer

from . import __version__
from .cache import SourceCatalogCache, refresh_all
from .config_store import get_config_path, init_config
from .errors import ConfigError
from .logging import get_logger, setup_logging
from .poller import Poller
from .remote import RemoteClient, RemoteFactory
from .settings import JotSettings, load_settings
from .store.kv import SqliteStore
from .store.state import SessionStateStore
from .sync import Reconciler
from .telegram import TelegramClient

logger = get_logger(__name__)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@dataclass(slots=True)
class Runtime:
    settings: JotSettings
    state: SessionStateStore
    chat: TelegramClient
    remote_factory: RemoteFactory


def _remote_factory(settings: JotSettings) -> RemoteFactory:
    policy = settings.retry.policy()

    def build(api_key: str) -> RemoteClient:
        return RemoteClient(
            api_key,
            base_url=settings.remote_base_url,
            timeout_s=settings.http_timeout_s,
            policy=policy,
        )

    return build


@asynccontextmanager
async def _open_runtime(settings: JotSettings) -> AsyncIterator[Runtime]:
    kv = SqliteStore(settings.store_path)
    chat = TelegramClient(
        settings.require_bot_token(),
        base_url=settings.telegram_api_url,
        timeout_s=settings.http_timeout_s,
        policy=settings.retry.policy(),
    )
    try:
        yield Runtime(
            settings=settings,
            state=SessionStateStore(kv),
            chat=chat,
            remote_factory=_remote_factory(settings),
        )
    finally:
        await chat.close()
        kv.close()


def _settings_or_exit() -> JotSettings:
    try:
        return load_settings()
    except ConfigError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e


app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="Bridge Telegram forum topics to remote coding-assistant sessions.",
)


@app.callback()
def app_main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    debug: bool = typer.Option(
        False,
        "--debug/--no-debug",
        help="Log every remote and Telegram call.",
    ),
) -> None:
    """Jot: one-shot triggers meant to be run from cron."""
    setup_logging(debug=debug)
    ctx.obj = {"debug": debug}


@app.command("init", help="Write .jot/config.toml in the current dir or [FOLDER].")
def init_command(
    folder: Path = typer.Argument(Path("."), help="Project root for the config."),
    bot_token: str = typer.Option(
        None, "--bot-token", help="Telegram bot token (prompted if omitted)."
    ),
    store_path: Path = typer.Option(
        None, "--store-path", help="SQLite state file (default ~/.jot/state.db)."
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config."),
) -> None:
    root = folder.resolve()
    # refuse before prompting for a token
    if get_config_path(root).exists() and not force:
        typer.echo(f"error: config already exists at {get_config_path(root)}", err=True)
        raise typer.Exit(code=1)

    if bot_token is None:
        bot_token = typer.prompt("Telegram bot token", hide_input=True)
    try:
        result = init_config(root, bot_token=bot_token, store_path=store_path, force=force)
    except ConfigError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e
    if result.backup is not None:
        typer.echo(f"Backed up existing config to {result.backup}")
    typer.echo(f"✓ Config saved to {result.path}")
    typer.echo("")
    typer.echo("Schedule the triggers, e.g. with cron:")
    typer.echo("  * * * * *     jot poll")
    typer.echo("  */15 * * * *  jot sync")
    typer.echo("  0 * * * *     jot refresh-sources")


async def _poll(settings: JotSettings) -> int:
    async with _open_runtime(settings) as rt:
        report = await Poller(
            rt.state, rt.chat, rt.remote_factory, settings=settings.poll
        ).run()
    typer.echo(
        f"dispatched {report.dispatched}, failed {report.failed}, "
        f"halted tenants {len(report.tenants_halted)}"
    )
    return 1 if report.failed or report.tenants_halted else 0


async def _sync(settings: JotSettings) -> int:
    async with _open_runtime(settings) as rt:
        report = await Reconciler(
            rt.state,
            rt.chat,
            rt.remote_factory,
            budget_s=settings.poll.sync_budget_s,
        ).run()
    typer.echo(f"removed {len(report.removed)}, updated {len(report.updated)}")
    return 1 if report.tenants_halted else 0


async def _refresh_sources(settings: JotSettings) -> int:
    async with _open_runtime(settings) as rt:
        cache = SourceCatalogCache(rt.state.kv, ttl_s=settings.sources.cache_ttl_s)
        counts = await refresh_all(
            rt.state,
            cache,
            rt.remote_factory,
            budget_s=settings.sources.refresh_budget_s,
            page_size=settings.sources.page_size,
            max_pages=settings.sources.max_pages,
        )
    for tenant_id, count in counts.items():
        typer.echo(f"{tenant_id}: {'failed' if count < 0 else count}")
    return 1 if any(count < 0 for count in counts.values()) else 0


def _run(trigger: Any) -> None:
    settings = _settings_or_exit()
    try:
        code = anyio.run(trigger, settings)
    except ConfigError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e
    except KeyboardInterrupt:
        logger.info("shutdown.interrupted")
        raise typer.Exit(code=130) from None
    if code:
        raise typer.Exit(code=code)


@app.command("poll", help="Deliver new activities for every tracked session once.")
def poll_command() -> None:
    _run(_poll)


@app.command("sync", help="Drop sessions the remote no longer has, refresh status.")
def sync_command() -> None:
    _run(_sync)


@app.command("refresh-sources", help="Refresh every group's cached source catalog.")
def refresh_sources_command() -> None:
    _run(_refresh_sources)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
