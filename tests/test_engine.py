from __future__ import annotations

import json
import os.path
import threading
import time
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path

import pandas as pd
import pytest

from strategy_engine.config import Settings
from strategy_engine.engine import (
    POLL_IN_PROGRESS,
    StrategyExecutionEngine,
    build_engine,
    load_signer_provider,
)
from strategy_engine.exec.errors import ConfirmationTimeoutError, NoRouteError
from strategy_engine.journal.store import JournalStore
from strategy_engine.store.base import StoreError
from strategy_engine.store.json_store import JsonStrategyStore
from strategy_engine.strategy.evaluator import NoMatch
from strategy_engine.strategy.models import Strategy, Trade, TradeStatus, utc_now
from strategy_engine.types import (
    NewPair,
    NewPairQuery,
    StrategyAction,
    SwapQuote,
    SwapResult,
    TokenOverview,
)
from strategy_engine.utils.units import SOL_MINT

_USER = "user-1"
_PAIR_TOKEN = "CLaUDEcoin1111111111111111111111111111111111"

_SNIPER = {
    "type": "SNIPER",
    "maxAgeMinutes": 30,
    "minLiquidity": 5000,
    "minVolume": 10000,
    "minMarketCap": 10000,
    "nameFilter": "claude",
    "amount": 0.1,
    "slippageBps": 300,
}
_SPOT = {"type": "SPOT", "inputToken": "SOL", "outputToken": "USDC", "amount": 0.5}


def _pair() -> NewPair:
    return NewPair(
        address=_PAIR_TOKEN,
        symbol="CLAUDE",
        name="claude coin",
        price=0.002,
        liquidity=8_000.0,
        volume_24h=15_000.0,
        market_cap=20_000.0,
        age_minutes=10.0,
        decimals=6,
    )


class _FakeMarket:
    def __init__(self, pairs: list[NewPair] | None = None) -> None:
        self.pairs = pairs
        self.new_pair_calls = 0

    def get_new_pairs(self, query: NewPairQuery) -> list[NewPair] | None:
        self.new_pair_calls += 1
        return self.pairs

    def get_ohlcv(self, address: str, timeframe: str, limit: int) -> pd.DataFrame:
        return pd.DataFrame()

    def get_token_overview(self, address: str) -> TokenOverview | None:
        return None


class _FakeSwap:
    def __init__(
        self,
        *,
        error: Exception | None = None,
        signature: str = "sig-123",
        on_call: Callable[[], None] | None = None,
    ) -> None:
        self.error = error
        self.signature = signature
        self.on_call = on_call
        self.calls: list[dict[str, object]] = []

    def get_swap_quote(
        self, input_mint: str, output_mint: str, amount: int, slippage_bps: int
    ) -> SwapQuote:
        return SwapQuote(input_mint, output_mint, amount, 5_000_000, slippage_bps, 0.3)

    def execute_swap(
        self,
        signer: object,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        *,
        on_submitted: Callable[[str], None] | None = None,
    ) -> SwapResult:
        self.calls.append(
            {
                "signer": signer,
                "input_mint": input_mint,
                "output_mint": output_mint,
                "amount": amount,
                "slippage_bps": slippage_bps,
            }
        )
        if self.on_call is not None:
            self.on_call()
        if isinstance(self.error, NoRouteError):
            raise self.error
        if on_submitted is not None:
            on_submitted(self.signature)
        if self.error is not None:
            raise self.error
        return SwapResult(
            signature=self.signature,
            input_amount=amount,
            output_amount=5_000_000,
            price_impact_pct=0.3,
        )


def _build(
    tmp_path: Path,
    *,
    market: _FakeMarket | None = None,
    swap: _FakeSwap | None = None,
    store: JsonStrategyStore | None = None,
    evaluator: object | None = None,
    monotonic: Callable[[], float] = time.monotonic,
    **overrides: object,
) -> tuple[StrategyExecutionEngine, JsonStrategyStore, _FakeSwap]:
    settings = Settings(
        data_dir=tmp_path / "store",
        journal_dir=tmp_path / "journal",
        **overrides,  # type: ignore[arg-type]
    )
    store = store or JsonStrategyStore(settings.data_dir)
    swap = swap or _FakeSwap()
    engine = StrategyExecutionEngine(
        settings,
        store,
        market or _FakeMarket([_pair()]),  # type: ignore[arg-type]
        swap,
        evaluator=evaluator,  # type: ignore[arg-type]
        journal=JournalStore(settings.journal_dir),
        monotonic=monotonic,
    )
    return engine, store, swap


def _seed_trades(store: JsonStrategyStore, count: int, status: TradeStatus, **fields: object) -> None:
    for _ in range(count):
        trade = store.create_trade(
            Trade(
                user_id=fields.get("user_id", _USER),  # type: ignore[arg-type]
                strategy_id=fields.get("strategy_id"),  # type: ignore[arg-type]
                direction="BUY",
                input_token=SOL_MINT,
                output_token=fields.get("output_token", "OtherToken"),  # type: ignore[arg-type]
                input_amount=0.1,
            )
        )
        if status != TradeStatus.PENDING:
            store.update_trade(trade.id, status=status)


def test_match_creates_pending_trade_then_confirms(tmp_path: Path) -> None:
    seen: list[list[str]] = []
    engine, store, swap = _build(tmp_path)
    swap.on_call = lambda: seen.append([t.status.value for t in store.list_trades(_USER)])
    strategy = store.create_strategy(_USER, "snipe", "", _SNIPER)

    results = engine.check_and_execute_strategies(_USER)

    assert seen == [["PENDING"]]
    assert len(results) == 1
    result = results[0]
    assert result.strategy_id == strategy.id
    assert result.action == StrategyAction.TRADE_EXECUTED
    assert result.trade is not None
    assert result.trade.signature == "sig-123"
    assert result.trade.token_address == _PAIR_TOKEN

    trades = store.list_trades(_USER)
    assert len(trades) == 1
    trade = trades[0]
    assert trade.status == TradeStatus.CONFIRMED
    assert trade.signature == "sig-123"
    assert trade.strategy_id == strategy.id
    assert trade.type == "SNIPER"
    assert trade.input_amount == pytest.approx(0.1)
    assert trade.output_amount == pytest.approx(5.0)
    assert trade.price_impact_pct == pytest.approx(0.3)

    call = swap.calls[0]
    assert call["amount"] == 100_000_000
    assert call["slippage_bps"] == 300
    assert call["output_mint"] == _PAIR_TOKEN

    # SNIPER strategies stay active
    assert store.get_strategy(strategy.id).is_active


def test_swap_failure_marks_trade_failed_with_signature(tmp_path: Path) -> None:
    swap = _FakeSwap(error=ConfirmationTimeoutError("sig-late"), signature="sig-late")
    engine, store, _ = _build(tmp_path, swap=swap)
    store.create_strategy(_USER, "snipe", "", _SNIPER)

    results = engine.check_and_execute_strategies(_USER)

    assert results[0].action == StrategyAction.ERROR
    assert results[0].detail.startswith("confirmation_timeout")
    trade = store.list_trades(_USER)[0]
    assert trade.status == TradeStatus.FAILED
    assert trade.signature == "sig-late"
    assert trade.error is not None


def test_no_route_marks_trade_failed(tmp_path: Path) -> None:
    swap = _FakeSwap(error=NoRouteError("no_route: COULD_NOT_FIND_ANY_ROUTE"))
    engine, store, _ = _build(tmp_path, swap=swap)
    store.create_strategy(_USER, "snipe", "", _SNIPER)

    results = engine.check_and_execute_strategies(_USER)

    assert results[0].action == StrategyAction.ERROR
    assert results[0].detail.startswith("no_route")
    trade = store.list_trades(_USER)[0]
    assert trade.status == TradeStatus.FAILED
    assert trade.is_pending_signature


class _ConfirmFailsStore(JsonStrategyStore):
    def update_trade(self, trade_id: str, **patch: object) -> Trade:
        if patch.get("status") == TradeStatus.CONFIRMED:
            raise StoreError("store_write_failed: disk full")
        return super().update_trade(trade_id, **patch)


def test_unwritable_confirmation_still_ends_trade_failed(tmp_path: Path) -> None:
    engine, store, _ = _build(tmp_path, store=_ConfirmFailsStore(tmp_path / "store"))
    store.create_strategy(_USER, "snipe", "", _SNIPER)

    results = engine.check_and_execute_strategies(_USER)

    assert results[0].action == StrategyAction.ERROR
    assert results[0].detail == "store_error: store_write_failed: disk full"
    trade = store.list_trades(_USER)[0]
    assert trade.status == TradeStatus.FAILED
    assert trade.signature == "sig-123"
    assert trade.error is not None
    assert trade.error.startswith("unsettled: store_write_failed")


class _NoDeactivateStore(JsonStrategyStore):
    def set_active(self, strategy_id: str, active: bool) -> Strategy:
        raise StoreError("store_write_failed: read-only")


def test_deactivation_failure_keeps_trade_executed(tmp_path: Path) -> None:
    engine, store, _ = _build(tmp_path, store=_NoDeactivateStore(tmp_path / "store"))
    strategy = store.create_strategy(_USER, "swap", "", _SPOT)

    results = engine.check_and_execute_strategies(_USER)

    assert results[0].action == StrategyAction.TRADE_EXECUTED
    assert results[0].trade is not None
    assert results[0].trade.status == "CONFIRMED"
    assert store.get_strategy(strategy.id).is_active
    assert store.list_trades(_USER)[0].status == TradeStatus.CONFIRMED


def test_slippage_above_bound_is_blocked(tmp_path: Path) -> None:
    engine, store, swap = _build(tmp_path, max_slippage_bps=100)
    store.create_strategy(_USER, "snipe", "", _SNIPER)

    results = engine.check_and_execute_strategies(_USER)

    assert results[0].action == StrategyAction.ERROR
    assert results[0].detail == "slippage_too_high: 300 > 100"
    assert store.list_trades(_USER) == []
    assert swap.calls == []


def test_amount_below_one_unit_creates_no_trade(tmp_path: Path) -> None:
    engine, store, swap = _build(tmp_path)
    store.create_strategy(_USER, "dust", "", {**_SPOT, "amount": 1e-10})

    results = engine.check_and_execute_strategies(_USER)

    assert results[0].action == StrategyAction.ERROR
    assert results[0].detail == "amount_too_small"
    assert store.list_trades(_USER) == []
    assert swap.calls == []


def test_daily_cap_blocks_without_creating_trade(tmp_path: Path) -> None:
    engine, store, swap = _build(tmp_path, daily_trade_cap=5)
    _seed_trades(store, 5, TradeStatus.CONFIRMED)
    store.create_strategy(_USER, "snipe", "", _SNIPER)

    results = engine.check_and_execute_strategies(_USER)

    assert results[0].action == StrategyAction.ERROR
    assert "daily limit" in results[0].detail
    assert len(store.list_trades(_USER)) == 5
    assert swap.calls == []


def test_failed_trades_do_not_count_toward_cap(tmp_path: Path) -> None:
    engine, store, _ = _build(tmp_path, daily_trade_cap=5)
    _seed_trades(store, 5, TradeStatus.FAILED)
    store.create_strategy(_USER, "snipe", "", _SNIPER)

    results = engine.check_and_execute_strategies(_USER)

    assert results[0].action == StrategyAction.TRADE_EXECUTED


def test_pending_trade_blocks_second_execution(tmp_path: Path) -> None:
    engine, store, swap = _build(tmp_path, strategy_cooldown_seconds=0)
    strategy = store.create_strategy(_USER, "snipe", "", _SNIPER)
    _seed_trades(store, 1, TradeStatus.PENDING, strategy_id=strategy.id)

    results = engine.check_and_execute_strategies(_USER)

    assert results[0].action == StrategyAction.ERROR
    assert results[0].detail == "trade_pending"
    assert swap.calls == []
    assert len(store.list_trades(_USER)) == 1


def test_stale_pending_trade_is_reported_not_blocking(tmp_path: Path) -> None:
    engine, store, swap = _build(tmp_path, strategy_cooldown_seconds=0)
    strategy = store.create_strategy(_USER, "snipe", "", _SNIPER)
    stale = store.create_trade(
        Trade(
            user_id=_USER,
            strategy_id=strategy.id,
            direction="BUY",
            input_token=SOL_MINT,
            output_token="OtherToken",
            input_amount=0.1,
            created_at=utc_now() - timedelta(days=3),
        )
    )

    results = engine.check_and_execute_strategies(_USER)

    assert results[0].action == StrategyAction.TRADE_EXECUTED
    assert len(swap.calls) == 1
    # the stale row is left as is
    assert store.get_trade(stale.id).status == TradeStatus.PENDING
    events = JournalStore(tmp_path / "journal").load_recent(20, event_type="stale_pending")
    assert [e["payload"]["strategy_id"] for e in events] == [strategy.id]


def test_cooldown_skips_evaluation(tmp_path: Path) -> None:
    market = _FakeMarket([_pair()])
    engine, store, swap = _build(tmp_path, market=market, strategy_cooldown_seconds=600)
    strategy = store.create_strategy(_USER, "snipe", "", _SNIPER)
    _seed_trades(store, 1, TradeStatus.CONFIRMED, strategy_id=strategy.id)

    results = engine.check_and_execute_strategies(_USER)

    assert results[0].action == StrategyAction.NO_OPPORTUNITY
    assert results[0].detail == "cooldown"
    assert market.new_pair_calls == 0
    assert swap.calls == []


def test_sniper_skips_recently_bought_token(tmp_path: Path) -> None:
    engine, store, swap = _build(tmp_path)
    store.create_strategy(_USER, "snipe", "", _SNIPER)
    _seed_trades(store, 1, TradeStatus.CONFIRMED, output_token=_PAIR_TOKEN)

    results = engine.check_and_execute_strategies(_USER)

    assert results[0].action == StrategyAction.ALREADY_BOUGHT
    assert swap.calls == []


def test_spot_is_one_shot_by_default(tmp_path: Path) -> None:
    engine, store, _ = _build(tmp_path)
    strategy = store.create_strategy(_USER, "swap", "", _SPOT)

    results = engine.check_and_execute_strategies(_USER)

    assert results[0].action == StrategyAction.TRADE_EXECUTED
    assert not store.get_strategy(strategy.id).is_active
    assert engine.check_and_execute_strategies(_USER) == []


def test_spot_stays_active_when_one_shot_disabled(tmp_path: Path) -> None:
    engine, store, _ = _build(tmp_path, spot_one_shot=False)
    strategy = store.create_strategy(_USER, "swap", "", _SPOT)

    engine.check_and_execute_strategies(_USER)

    assert store.get_strategy(strategy.id).is_active


def test_one_failure_does_not_abort_batch(tmp_path: Path) -> None:
    engine, store, _ = _build(tmp_path, market=_FakeMarket(pairs=None))
    sniper = store.create_strategy(_USER, "snipe", "", _SNIPER)
    spot = store.create_strategy(_USER, "swap", "", _SPOT)
    broken = store.create_strategy(_USER, "broken", "", _SPOT)

    path = tmp_path / "store" / "strategies.json"
    rows = json.loads(path.read_text(encoding="utf-8"))
    for row in rows:
        if row["id"] == broken.id:
            row["config"] = {"type": "SPOT"}
    path.write_text(json.dumps(rows), encoding="utf-8")

    results = {r.strategy_id: r for r in engine.check_and_execute_strategies(_USER)}

    assert results[sniper.id].action == StrategyAction.ERROR
    assert results[sniper.id].detail == "market_data_unavailable"
    assert results[spot.id].action == StrategyAction.TRADE_EXECUTED
    assert results[broken.id].action == StrategyAction.ERROR
    assert results[broken.id].detail.startswith("invalid_config")
    assert store.get_strategy(broken.id).is_active
    assert all(t.status != TradeStatus.PENDING for t in store.list_trades(_USER))


def test_live_mode_without_wallet_reports_every_strategy(tmp_path: Path) -> None:
    engine, store, swap = _build(tmp_path, mode="live")
    store.create_strategy(_USER, "snipe", "", _SNIPER)
    store.create_strategy(_USER, "swap", "", _SPOT)

    results = engine.check_and_execute_strategies(_USER)

    assert [r.action for r in results] == [StrategyAction.ERROR, StrategyAction.ERROR]
    assert {r.detail for r in results} == {"wallet_not_found"}
    assert swap.calls == []


def test_rate_limited_poll_reports_error(tmp_path: Path) -> None:
    engine, store, _ = _build(tmp_path, market=_FakeMarket([]), rate_limit_per_minute=1)
    store.create_strategy(_USER, "snipe", "", _SNIPER)

    first = engine.check_and_execute_strategies(_USER)
    second = engine.check_and_execute_strategies(_USER)

    assert first[0].action == StrategyAction.NO_OPPORTUNITY
    assert second[0].action == StrategyAction.ERROR
    assert second[0].detail.startswith("rate_limited")


def test_evaluation_timeout_is_reported(tmp_path: Path) -> None:
    release = threading.Event()

    class _SlowEvaluator:
        def evaluate(self, config: object) -> NoMatch:
            release.wait(5)
            return NoMatch()

    settings = Settings(
        data_dir=tmp_path / "store",
        journal_dir=tmp_path / "journal",
        strategy_time_budget=1.0,
    )
    store = JsonStrategyStore(settings.data_dir)
    store.create_strategy(_USER, "snipe", "", _SNIPER)
    engine = StrategyExecutionEngine(
        settings,
        store,
        _FakeMarket([]),  # type: ignore[arg-type]
        _FakeSwap(),
        evaluator=_SlowEvaluator(),  # type: ignore[arg-type]
    )
    try:
        results = engine.check_and_execute_strategies(_USER)
    finally:
        release.set()

    assert results[0].action == StrategyAction.ERROR
    assert results[0].detail == "evaluation_timeout"


def test_poll_response_messages(tmp_path: Path) -> None:
    engine, store, _ = _build(tmp_path)

    empty = engine.poll_strategies(_USER)
    assert not empty.executed
    assert empty.message == "No active strategies"
    assert empty.results == []

    strategy = store.create_strategy(_USER, "snipe", "", _SNIPER)
    response = engine.poll_strategies(_USER)
    payload = response.to_dict()

    assert response.executed
    assert payload["message"] == "Executed 1 trade(s)"
    assert payload["results"][0]["action"] == "TRADE_EXECUTED"
    assert payload["results"][0]["strategyId"] == strategy.id
    assert payload["status"]["totalTradesToday"] == 1
    assert payload["status"]["strategies"][0]["tradesToday"] == 1
    assert "timestamp" in payload


def test_poll_reports_errors_and_no_opportunities(tmp_path: Path) -> None:
    engine, store, _ = _build(tmp_path, market=_FakeMarket([]))
    store.create_strategy(_USER, "snipe", "", _SNIPER)
    assert engine.poll_strategies(_USER).message == "No opportunities found"

    engine, store, _ = _build(tmp_path / "other", market=_FakeMarket(None))
    store.create_strategy(_USER, "snipe", "", _SNIPER)
    assert engine.poll_strategies(_USER).message == "1 error(s) occurred"


def test_poll_in_progress_returns_empty(tmp_path: Path) -> None:
    engine, store, swap = _build(tmp_path)
    store.create_strategy(_USER, "snipe", "", _SNIPER)

    lock = engine._user_lock(_USER)
    with lock:
        response = engine.poll_strategies(_USER)
        assert engine.check_and_execute_strategies(_USER) == []

    assert response.message == POLL_IN_PROGRESS
    assert response.results == []
    assert swap.calls == []


class _BrokenStore(JsonStrategyStore):
    def list_strategies(self, user_id: str) -> list[Strategy]:
        raise StoreError("store_read_failed: disk gone")

    def list_active_strategies(self, user_id: str) -> list[Strategy]:
        raise StoreError("store_read_failed: disk gone")


def test_store_failure_is_the_only_fatal_error(tmp_path: Path) -> None:
    engine, _, _ = _build(tmp_path, store=_BrokenStore(tmp_path / "broken"))

    with pytest.raises(StoreError):
        engine.check_and_execute_strategies(_USER)

    payload = engine.poll_strategies(_USER).to_dict()
    assert payload == {
        "error": "Failed to execute strategies",
        "message": "store_read_failed: disk gone",
    }


def test_journal_records_trade_lifecycle(tmp_path: Path) -> None:
    engine, store, _ = _build(tmp_path)
    store.create_strategy(_USER, "snipe", "", _SNIPER)

    engine.check_and_execute_strategies(_USER)

    events = [row["event_type"] for row in JournalStore(tmp_path / "journal").load_recent(20)]
    assert events[0] == "poll_start"
    assert "trade_created" in events
    assert "swap_result" in events
    assert events[-1] == "poll_end"


def test_exhausted_batch_budget_skips_remaining_strategies(tmp_path: Path) -> None:
    ticks = [0.0, 0.5]

    def monotonic() -> float:
        return ticks.pop(0) if ticks else 200.0

    engine, store, swap = _build(tmp_path, monotonic=monotonic, batch_time_budget=60)
    first = store.create_strategy(_USER, "swap a", "", _SPOT)
    second = store.create_strategy(_USER, "swap b", "", _SPOT)

    results = {r.strategy_id: r for r in engine.check_and_execute_strategies(_USER)}

    executed = [r for r in results.values() if r.action == StrategyAction.TRADE_EXECUTED]
    exhausted = [r for r in results.values() if r.detail == "batch_time_budget_exhausted"]
    assert len(executed) == 1
    assert len(exhausted) == 1
    assert {executed[0].strategy_id, exhausted[0].strategy_id} == {first.id, second.id}
    assert len(swap.calls) == 1


def test_unknown_evaluation_outcome_is_an_error(tmp_path: Path) -> None:
    class _NoneEvaluator:
        def evaluate(self, config: object) -> None:
            return None

    engine, store, swap = _build(tmp_path, evaluator=_NoneEvaluator())
    store.create_strategy(_USER, "snipe", "", _SNIPER)

    results = engine.check_and_execute_strategies(_USER)

    assert results[0].action == StrategyAction.ERROR
    assert results[0].detail == "unexpected_outcome: NoneType"
    assert swap.calls == []


def test_load_signer_provider_resolves_callable() -> None:
    assert load_signer_provider("os.path:basename") is os.path.basename
    with pytest.raises(ValueError):
        load_signer_provider("os.path")
    with pytest.raises(ValueError):
        load_signer_provider("os.path:sep")


def test_build_engine_uses_configured_signer_provider(tmp_path: Path) -> None:
    seen: list[str] = []

    def provider(user_id: str) -> None:
        seen.append(user_id)
        return None

    settings = Settings(
        data_dir=tmp_path / "store",
        journal_dir=tmp_path / "journal",
        mode="live",  # type: ignore[arg-type]
        signer_provider="os.path:basename",
    )
    engine = build_engine(settings, signer_provider=provider)
    JsonStrategyStore(settings.data_dir).create_strategy(_USER, "swap", "", _SPOT)

    results = engine.check_and_execute_strategies(_USER)

    assert seen == [_USER]
    assert results[0].detail == "wallet_not_found"
    assert build_engine(settings)._signer_provider is os.path.basename
