"""Click CLI for session-bridge."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click
import structlog

from session_bridge import __version__
from session_bridge.utils.logging import setup_logging

logger = structlog.get_logger()


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines.")
@click.option(
    "-c", "--config", "config_path", type=click.Path(exists=True), default=None,
    help="Path to config.yaml.",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, json_logs: bool, config_path: str | None) -> None:
    """session-bridge: keep captured platform sessions alive and watched."""
    setup_logging(verbose=verbose, json_logs=json_logs)
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_path"] = config_path


def _load_config(ctx: click.Context):
    """Load the config file, falling back to defaults when none exists and none was asked for."""
    from session_bridge.config import load_config

    config_path = ctx.obj.get("config_path")
    return load_config(Path(config_path) if config_path else None, allow_defaults=True)


@cli.command()
@click.option("--host", default=None, help="Bind address. Overrides server.host.")
@click.option("--port", type=int, default=None, help="Bind port. Overrides server.port.")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the HTTP API and the background health monitor."""
    import uvicorn

    from session_bridge.api.app import create_app

    config = _load_config(ctx)
    app = create_app(config)
    uvicorn.run(
        app,
        host=host or config.server.host,
        port=port or config.server.port,
        log_config=None,
    )


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Validate configuration."""
    from session_bridge.config import load_config
    from session_bridge.probes.registry import discover_probes, list_probes

    config_path = ctx.obj.get("config_path")

    click.echo("Validating configuration...")
    try:
        config = load_config(Path(config_path) if config_path else None)
        click.echo("  Config: OK")
    except Exception as e:
        click.echo(f"  Config: FAILED: {e}", err=True)
        sys.exit(1)

    store_path = config.storage.path or "(in memory)"
    click.echo(f"  Store: {store_path}{' [encrypted]' if config.storage.passphrase else ''}")
    click.echo(
        f"  Monitor: every {config.monitor.interval_seconds:g}s, "
        f"failed after {config.monitor.failure_threshold} consecutive failures"
    )
    click.echo(f"  Slack alerts: {'on' if config.notifications.slack_webhook_url else 'off'}")

    discover_probes()
    available = list_probes()
    unknown = sorted(set(config.probes) - set(available))
    if unknown:
        click.echo(f"  Unknown platforms in probes section: {', '.join(unknown)}", err=True)
        sys.exit(1)

    click.echo("\nAll validations passed.")


@cli.command(name="platforms")
def list_platforms_cmd() -> None:
    """List all supported platforms."""
    from session_bridge.probes.registry import discover_probes, list_probes

    discover_probes()
    probes = list_probes()

    if not probes:
        click.echo("No probes registered.")
        return

    click.echo("Supported platforms:")
    for name, cls in sorted(probes.items()):
        click.echo(f"  {name:15s} {cls.endpoint}")


@cli.command()
@click.argument("platform")
@click.argument("cookies", nargs=-1)
@click.pass_context
def probe(ctx: click.Context, platform: str, cookies: tuple[str, ...]) -> None:
    """Check once whether COOKIES (NAME=VALUE ...) are live on PLATFORM.

    Without COOKIES, the most recently captured stored session for PLATFORM is checked.
    """
    asyncio.run(_probe_async(ctx, platform, cookies))


async def _probe_async(ctx: click.Context, platform: str, cookies: tuple[str, ...]) -> None:
    from session_bridge.cookies import CookieString, normalize_cookies
    from session_bridge.engine import SessionEngine
    from session_bridge.probes.registry import discover_probes, get_probe

    config = _load_config(ctx)
    if cookies:
        cookie_map = normalize_cookies(CookieString("; ".join(cookies)))
        if not cookie_map:
            click.echo("No valid NAME=VALUE cookies given.", err=True)
            sys.exit(2)
    else:
        record = await SessionEngine.from_config(config).latest(platform)
        if record is None:
            click.echo(f"No stored session for {platform}. Pass NAME=VALUE cookies instead.", err=True)
            sys.exit(2)
        logger.info("probing_stored_session", key=record.key.short, extracted_at=record.extracted_at.isoformat())
        click.echo(f"Using session captured {record.extracted_at.isoformat()} ({record.identity[:12]})")
        cookie_map = record.cookies

    discover_probes()
    try:
        platform_probe = get_probe(platform, config.probe_config(platform))
    except KeyError as e:
        click.echo(f"ERROR: {e.args[0]}", err=True)
        sys.exit(2)

    try:
        result = await platform_probe.probe(cookie_map)
    finally:
        await platform_probe.cleanup()

    click.echo(f"{platform}: {result.verdict.value}")
    if result.reason:
        click.echo(f"  Reason: {result.reason}")
    if result.error is not None:
        click.echo(f"  {result.error.user_message}")
        for instruction in result.error.recovery_instructions():
            click.echo(f"  - {instruction}")

    if not result.live:
        sys.exit(1)


@cli.command()
@click.option("--platform", default=None, help="Only show sessions for this platform.")
@click.pass_context
def sessions(ctx: click.Context, platform: str | None) -> None:
    """List stored sessions without cookie values or credentials."""
    asyncio.run(_sessions_async(ctx, platform))


async def _sessions_async(ctx: click.Context, platform: str | None) -> None:
    from session_bridge.sessions.store import SessionStore

    config = _load_config(ctx)
    store = SessionStore(config.storage.path, config.storage.passphrase)
    records = await store.list_records(platform)

    if not records:
        click.echo("No stored sessions.")
        return

    for record in sorted(records, key=lambda r: r.extracted_at, reverse=True):
        view = record.public_view()
        click.echo(
            f"  {view['platform']:12s} {view['identity']}  "
            f"{view['extractedAt']}  cookies={','.join(view['cookieNames'])}"
        )


@cli.command()
@click.confirmation_option(prompt="Delete all stored sessions?")
@click.pass_context
def clear(ctx: click.Context) -> None:
    """Delete every stored session."""
    asyncio.run(_clear_async(ctx))


async def _clear_async(ctx: click.Context) -> None:
    from session_bridge.sessions.store import SessionStore

    config = _load_config(ctx)
    store = SessionStore(config.storage.path, config.storage.passphrase)
    removed = await store.clear()
    click.echo(f"Removed {removed} session(s).")
