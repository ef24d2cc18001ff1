from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from pydantic import ValidationError

from strategy_engine.store.base import NotFoundError, StoreError
from strategy_engine.store.json_store import JsonStrategyStore
from strategy_engine.strategy.models import Trade, TradeStatus

_SPOT = {"type": "SPOT", "inputToken": "SOL", "outputToken": "USDC", "amount": 1}


def _trade(strategy_id: str | None = None, output_token: str = "Tok111") -> Trade:
    return Trade(
        user_id="u1",
        strategy_id=strategy_id,
        direction="BUY",
        input_token="SOL",
        output_token=output_token,
        input_amount=1.0,
    )


def test_strategy_crud(tmp_path: Path) -> None:
    store = JsonStrategyStore(tmp_path)
    first = store.create_strategy("u1", "first", "", _SPOT)
    second = store.create_strategy("u1", "second", "desc", _SPOT, is_active=False)
    store.create_strategy("u2", "other", "", _SPOT)

    assert {s.id for s in store.list_strategies("u1")} == {first.id, second.id}
    assert [s.id for s in store.list_active_strategies("u1")] == [first.id]

    paused = store.set_active(first.id, False)
    assert not paused.is_active
    assert store.list_active_strategies("u1") == []

    updated = store.update_strategy(second.id, name="renamed", config={**_SPOT, "amount": 2})
    assert updated.name == "renamed"
    assert updated.config["amount"] == 2
    assert store.get_strategy(second.id).name == "renamed"

    store.delete_strategy(first.id)
    with pytest.raises(NotFoundError):
        store.get_strategy(first.id)
    with pytest.raises(NotFoundError):
        store.delete_strategy(first.id)


def test_invalid_config_rejected_at_creation(tmp_path: Path) -> None:
    store = JsonStrategyStore(tmp_path)
    with pytest.raises(ValidationError):
        store.create_strategy("u1", "bad", "", {"type": "SPOT", "amount": -1})
    assert store.list_strategies("u1") == []


def test_state_persists_across_instances(tmp_path: Path) -> None:
    created = JsonStrategyStore(tmp_path).create_strategy("u1", "keep", "", _SPOT)
    reloaded = JsonStrategyStore(tmp_path).get_strategy(created.id)
    assert reloaded.config == created.config
    assert reloaded.created_at == created.created_at


def test_trade_lifecycle_is_terminal(tmp_path: Path) -> None:
    store = JsonStrategyStore(tmp_path)
    trade = store.create_trade(_trade(strategy_id="s1").model_copy(update={"status": TradeStatus.CONFIRMED}))
    assert trade.status == TradeStatus.PENDING
    assert store.has_pending_trade("s1")

    store.update_trade(trade.id, signature="sig-1")
    confirmed = store.update_trade(trade.id, status=TradeStatus.CONFIRMED, output_amount=5.0)
    assert confirmed.signature == "sig-1"
    assert not store.has_pending_trade("s1")

    with pytest.raises(StoreError, match="trade_already_final"):
        store.update_trade(trade.id, status=TradeStatus.FAILED)
    assert store.update_trade(trade.id, pnl_usd=1.5).pnl_usd == 1.5


def test_trade_counts_exclude_failed(tmp_path: Path) -> None:
    store = JsonStrategyStore(tmp_path)
    since = datetime.now(UTC) - timedelta(minutes=1)
    ok = store.create_trade(_trade(strategy_id="s1", output_token="Bought111"))
    store.update_trade(ok.id, status=TradeStatus.CONFIRMED)
    failed = store.create_trade(_trade(strategy_id="s1", output_token="Missed111"))
    store.update_trade(failed.id, status=TradeStatus.FAILED)
    store.create_trade(_trade(strategy_id="s2"))

    assert store.count_trades_since("u1", since) == 2
    assert store.count_trades_since("u1", since, excluding_status=None) == 3
    assert store.count_strategy_trades_since("s1", since) == 1
    assert store.count_trades_since("u1", datetime.now(UTC) + timedelta(minutes=1)) == 0
    assert store.bought_tokens_since("u1", since) == {"Bought111"}
    assert store.last_trade_at("s1") == store.get_trade(ok.id).created_at
    assert store.last_trade_at("unknown") is None


def test_corrupt_file_raises_store_error(tmp_path: Path) -> None:
    (tmp_path / "strategies.json").write_text("{not json", encoding="utf-8")
    store = JsonStrategyStore(tmp_path)
    with pytest.raises(StoreError):
        store.list_active_strategies("u1")
