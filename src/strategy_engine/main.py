"""CLI entry point - strategy execution engine command line interface."""

import json
import sys
import time
from datetime import datetime
from typing import NoReturn

import click
import httpx
from pydantic import ValidationError

from strategy_engine import __version__
from strategy_engine.config import Settings, get_settings
from strategy_engine.data.birdeye import TIMEFRAME_SECONDS
from strategy_engine.data.market import MarketDataAdapter
from strategy_engine.engine import build_engine, load_signer_provider
from strategy_engine.features.indicators import latest_indicators
from strategy_engine.journal.store import EVENT_TYPES, JournalStore
from strategy_engine.store.base import NotFoundError, StoreError
from strategy_engine.store.json_store import JsonStrategyStore
from strategy_engine.utils.logging import get_logger, setup_logging
from strategy_engine.utils.units import resolve_mint


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="Show the version")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Strategy Engine - automated SNIPER, SPOT and CONDITIONAL strategies on Solana.

    Evaluates saved strategies against live market data and executes swaps
    through the Jupiter aggregator, paper or live.
    """
    if version:
        click.echo(f"strategy-engine version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def _check_live_config() -> None:
    logger = get_logger("strategy_engine.main")
    settings = get_settings()
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            logger.error(
                "missing_required_config",
                missing_keys=missing,
                hint="Set the required keys in .env",
            )
            sys.exit(1)


@cli.command()
@click.option("--user-id", "-u", required=True, help="User whose strategies are polled")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the raw poll response")
def poll(user_id: str, as_json: bool) -> None:
    """Run one poll: evaluate active strategies and execute matches."""
    setup_logging()
    logger = get_logger("strategy_engine.main")
    settings = get_settings()
    _check_live_config()

    logger.info(
        "starting_poll",
        mode=settings.mode.value,
        user_id=user_id,
        timestamp=datetime.now().isoformat(),
    )

    engine = build_engine(settings)
    response = engine.poll_strategies(user_id)
    payload = response.to_dict()

    if as_json:
        click.echo(json.dumps(payload, indent=2, default=str))
    else:
        click.echo(payload["message"])
        for result in response.results:
            click.echo(f"  [{result.action.value}] {result.strategy_name}: {result.detail}")

    if response.error is not None:
        sys.exit(1)


@cli.command()
@click.option("--user-id", "-u", required=True, help="User whose strategies are polled")
@click.option(
    "--interval-sec",
    "-i",
    type=click.IntRange(min=1),
    default=15,
    help="Seconds between polls",
)
def loop(user_id: str, interval_sec: int) -> NoReturn:
    """Poll repeatedly.

    Runs one poll every interval. Use Ctrl+C to stop.
    """
    setup_logging()
    logger = get_logger("strategy_engine.main")
    settings = get_settings()
    _check_live_config()

    logger.info(
        "starting_loop",
        mode=settings.mode.value,
        user_id=user_id,
        interval_sec=interval_sec,
    )

    engine = build_engine(settings)
    iteration = 0

    try:
        while True:
            iteration += 1
            logger.info(
                "loop_iteration_start",
                iteration=iteration,
                timestamp=datetime.now().isoformat(),
            )

            try:
                response = engine.poll_strategies(user_id)
                logger.info(
                    "loop_iteration_completed",
                    iteration=iteration,
                    executed=response.executed,
                    message=response.message,
                    results=len(response.results),
                    error=response.error,
                )

            except Exception as e:
                logger.exception(
                    "loop_iteration_failed",
                    iteration=iteration,
                    error=str(e),
                )
                # keep looping after a failed iteration

            logger.debug("waiting_next_iteration", wait_seconds=interval_sec)
            time.sleep(interval_sec)

    except KeyboardInterrupt:
        logger.info(
            "loop_stopped",
            message="User stopped loop",
            total_iterations=iteration,
        )
        sys.exit(0)


@cli.command()
@click.option("--user-id", "-u", default=None, help="Also show this user's strategy status")
def status(user_id: str | None) -> None:
    """Show system status and configuration summary."""
    setup_logging()
    settings = get_settings()

    click.echo("=" * 50)
    click.echo("Strategy Engine - Status")
    click.echo("=" * 50)
    click.echo()

    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo()

    click.echo("[API Configuration]")
    birdeye_status = "[OK] Configured" if settings.birdeye_api_key else "[--] Not configured"
    click.echo(f"   Birdeye API: {birdeye_status}")
    click.echo(f"   DexScreener: {settings.dexscreener_base_url}")
    click.echo(f"   Jupiter: {settings.jupiter_base_url}")
    click.echo(f"   RPC: {settings.rpc_url}")
    click.echo()

    click.echo("[Risk Parameters]")
    click.echo(f"   Daily trade cap: {settings.daily_trade_cap}")
    click.echo(f"   Strategy cooldown: {settings.strategy_cooldown_seconds}s")
    click.echo(f"   Polls per minute: {settings.rate_limit_per_minute}")
    click.echo(f"   Max price impact: {settings.max_price_impact_pct}%")
    click.echo(f"   Max slippage: {settings.max_slippage_bps} bps")
    click.echo(f"   Time budget: {settings.strategy_time_budget}s per strategy, "
               f"{settings.batch_time_budget}s per poll")
    click.echo(f"   One-shot: SPOT={settings.spot_one_shot} CONDITIONAL={settings.conditional_one_shot}")
    click.echo()

    click.echo("[Storage]")
    click.echo(f"   Data dir: {settings.data_dir}")
    click.echo(f"   Journal dir: {settings.journal_dir}")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo()

    if user_id is not None:
        settings.ensure_directories()
        engine = build_engine(settings)
        try:
            summary = engine.get_strategy_status(user_id)
        except StoreError as e:
            click.echo(f"[ERROR] Store unavailable: {e}")
        else:
            click.echo(f"[Strategies for {user_id}]")
            click.echo(f"   Active: {summary['activeCount']}")
            click.echo(f"   Trades today: {summary['totalTradesToday']}")
            for item in summary["strategies"]:
                marker = "on " if item["isActive"] else "off"
                click.echo(
                    f"   [{marker}] {item['id']} {item['type']:<11} {item['name']} "
                    f"({item['tradesToday']} today)"
                )
        click.echo()

    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo("[ERROR] Live mode configuration incomplete, missing:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode does not submit transactions")

    click.echo()
    click.echo("=" * 50)


@cli.group()
def strategy() -> None:
    """Manage saved strategies."""


def _store() -> JsonStrategyStore:
    return JsonStrategyStore(get_settings().data_dir)


@strategy.command("create")
@click.option("--user-id", "-u", required=True)
@click.option("--name", "-n", required=True)
@click.option("--description", "-d", default="")
@click.option("--config", "config_json", required=True, help='Config JSON, e.g. \'{"type": "SPOT", ...}\'')
@click.option("--inactive", is_flag=True, default=False, help="Create paused")
def strategy_create(
    user_id: str,
    name: str,
    description: str,
    config_json: str,
    inactive: bool,
) -> None:
    """Create a strategy from a JSON config."""
    setup_logging()
    try:
        config = json.loads(config_json)
    except ValueError as e:
        raise click.BadParameter(f"invalid JSON: {e}", param_hint="--config") from e
    try:
        created = _store().create_strategy(
            user_id, name, description, config, is_active=not inactive
        )
    except ValidationError as e:
        raise click.BadParameter(str(e), param_hint="--config") from e
    click.echo(f"Created {created.type} strategy {created.id}")


@strategy.command("list")
@click.option("--user-id", "-u", required=True)
def strategy_list(user_id: str) -> None:
    """List a user's strategies, newest first."""
    setup_logging()
    strategies = _store().list_strategies(user_id)
    if not strategies:
        click.echo("No strategies")
        return
    for item in strategies:
        marker = "on " if item.is_active else "off"
        click.echo(f"[{marker}] {item.id} {item.type:<11} {item.name}")
        click.echo(f"      {json.dumps(item.config, sort_keys=True)}")


def _set_active(strategy_id: str, active: bool) -> None:
    setup_logging()
    try:
        updated = _store().set_active(strategy_id, active)
    except NotFoundError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"{'Resumed' if active else 'Paused'} {updated.id}")


@strategy.command("pause")
@click.argument("strategy_id")
def strategy_pause(strategy_id: str) -> None:
    """Pause a strategy."""
    _set_active(strategy_id, False)


@strategy.command("resume")
@click.argument("strategy_id")
def strategy_resume(strategy_id: str) -> None:
    """Resume a paused strategy."""
    _set_active(strategy_id, True)


@strategy.command("delete")
@click.argument("strategy_id")
def strategy_delete(strategy_id: str) -> None:
    """Delete a strategy."""
    setup_logging()
    try:
        _store().delete_strategy(strategy_id)
    except NotFoundError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Deleted {strategy_id}")


@cli.command()
@click.option("--token", "-t", required=True, help="Token symbol or mint address")
@click.option("--timeframe", type=click.Choice(list(TIMEFRAME_SECONDS)), default="1H", show_default=True)
@click.option("--limit", type=click.IntRange(min=2, max=1000), default=200, show_default=True)
def indicators(token: str, timeframe: str, limit: int) -> None:
    """Print the latest indicator snapshot for a token."""
    setup_logging()
    settings = get_settings()
    market = MarketDataAdapter(settings)
    try:
        candles = market.get_ohlcv(resolve_mint(token), timeframe, limit)
    finally:
        market.close()

    if candles.empty:
        raise click.ClickException("No candle data available (is BIRDEYE_API_KEY set?)")

    snapshot = latest_indicators(candles["close"])
    click.echo(f"{token} {timeframe} ({len(candles)} candles)")
    for key, value in snapshot.items():
        shown = "n/a" if value is None else f"{value:.6g}"
        click.echo(f"   {key}: {shown}")


@cli.command()
@click.option("--user-id", "-u", default=None, help="Only this user's events")
@click.option("--event-type", "-e", type=click.Choice(EVENT_TYPES), default=None)
@click.option("--limit", "-n", type=click.IntRange(min=1), default=20, show_default=True)
def journal(user_id: str | None, event_type: str | None, limit: int) -> None:
    """Show recent journal events, oldest first."""
    setup_logging()
    events = JournalStore(get_settings().journal_dir).load_recent(
        limit, event_type=event_type, user_id=user_id
    )
    if not events:
        click.echo("No journal events")
        return
    for event in events:
        payload = json.dumps(event["payload"], sort_keys=True, default=str)
        click.echo(f"{event['timestamp']} {event['event_type']:<14} {payload}")


def _ping_endpoints(settings: Settings) -> list[tuple[str, str | None]]:
    """(name, error) per remote endpoint; error is None when it answered."""
    results: list[tuple[str, str | None]] = []
    with httpx.Client(timeout=settings.market_data_timeout) as client:
        requests = (
            ("DexScreener", "GET", f"{settings.dexscreener_base_url}/dex/search", {"params": {"q": "SOL"}}),
            (
                "Solana RPC",
                "POST",
                settings.rpc_url,
                {"json": {"jsonrpc": "2.0", "id": 1, "method": "getHealth"}},
            ),
        )
        for name, method, url, kwargs in requests:
            try:
                client.request(method, url, **kwargs).raise_for_status()
            except httpx.HTTPError as e:
                results.append((name, str(e)))
            else:
                results.append((name, None))
    return results


@cli.command()
@click.option("--offline", is_flag=True, default=False, help="Skip the network checks")
def check(offline: bool) -> None:
    """Check storage, market data, RPC and live-mode configuration.

    Exits 1 when anything required for the current mode is missing.
    """
    setup_logging()
    logger = get_logger("strategy_engine.main")
    settings = get_settings()
    errors: list[str] = []

    click.echo(f"Checking {settings.mode.value} mode setup...")
    click.echo()

    for label, directory in (("Data dir", settings.data_dir), ("Journal dir", settings.journal_dir)):
        try:
            directory.mkdir(parents=True, exist_ok=True)
            marker = directory / ".write-check"
            marker.write_text("ok", encoding="utf-8")
            marker.unlink()
        except OSError as e:
            click.echo(f"  [ERROR] {label} not writable: {directory} ({e})")
            errors.append(label)
        else:
            click.echo(f"  [OK] {label} writable: {directory}")

    if settings.birdeye_api_key:
        click.echo("  [OK] Birdeye API key configured")
    else:
        click.echo("  [WARN] Birdeye API key not set (DexScreener fallback only, no candles)")

    if offline:
        click.echo("  [--] Network checks skipped")
    else:
        for name, error in _ping_endpoints(settings):
            if error is None:
                click.echo(f"  [OK] {name} reachable")
                continue
            click.echo(f"  [ERROR] {name} unreachable: {error}")
            # quotes and listings still work without RPC in paper mode
            if settings.is_live_mode or name != "Solana RPC":
                errors.append(name)

    if settings.is_live_mode:
        for key in settings.validate_for_live():
            click.echo(f"  [ERROR] Live mode requires {key}")
            errors.append(key)
        if settings.signer_provider:
            try:
                load_signer_provider(settings.signer_provider)
            except (ImportError, ValueError) as e:
                click.echo(f"  [ERROR] Signer provider unusable: {e}")
                errors.append("SIGNER_PROVIDER")
            else:
                click.echo(f"  [OK] Signer provider {settings.signer_provider}")

    click.echo()
    if errors:
        click.echo(f"[ERROR] {len(errors)} check(s) failed")
    else:
        click.echo("[OK] All checks passed")

    logger.info("setup_check_completed", mode=settings.mode.value, failed=errors)
    if errors:
        sys.exit(1)


if __name__ == "__main__":
    cli()
