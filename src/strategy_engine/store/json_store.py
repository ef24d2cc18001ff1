"""JSON-file backed strategy store with persistent local state."""

from __future__ import annotations

import json
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from strategy_engine.store.base import NotFoundError, StoreError
from strategy_engine.strategy.models import (
    Strategy,
    Trade,
    TradeStatus,
    Withdrawal,
    utc_now,
)

_ModelT = TypeVar("_ModelT", bound=BaseModel)

_TRADE_TERMINAL = {TradeStatus.CONFIRMED, TradeStatus.FAILED}


class JsonStrategyStore:
    """Strategies, trades and withdrawals kept in one JSON file per table.

    Safe for concurrent use within one process. Across processes only the
    atomic file replace is guaranteed.
    """

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = data_dir
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    # ==================== Strategies ====================

    def create_strategy(
        self,
        user_id: str,
        name: str,
        description: str,
        config: dict[str, Any] | BaseModel,
        *,
        is_active: bool = True,
    ) -> Strategy:
        """Validate and store a new strategy; raises pydantic.ValidationError."""
        strategy = Strategy.new(
            user_id=user_id,
            name=name,
            description=description,
            config=config,
            is_active=is_active,
        )
        with self._lock:
            rows = self._load("strategies")
            rows.append(_dump(strategy))
            self._save("strategies", rows)
        return strategy

    def get_strategy(self, strategy_id: str) -> Strategy:
        with self._lock:
            for row in self._load("strategies"):
                if row.get("id") == strategy_id:
                    return _parse(Strategy, row)
        raise NotFoundError(f"strategy_not_found: {strategy_id}")

    def list_strategies(self, user_id: str) -> list[Strategy]:
        """All strategies of a user, newest first."""
        with self._lock:
            rows = [row for row in self._load("strategies") if row.get("userId") == user_id]
        strategies = [_parse(Strategy, row) for row in rows]
        return sorted(strategies, key=lambda s: s.created_at, reverse=True)

    def list_active_strategies(self, user_id: str) -> list[Strategy]:
        """Active strategies of a user, oldest first (execution order)."""
        strategies = [s for s in self.list_strategies(user_id) if s.is_active]
        return sorted(strategies, key=lambda s: s.created_at)

    def update_strategy(
        self,
        strategy_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        config: dict[str, Any] | BaseModel | None = None,
    ) -> Strategy:
        with self._lock:
            strategy = self.get_strategy(strategy_id)
            if config is not None:
                strategy = strategy.with_config(config)
            changes: dict[str, Any] = {"updated_at": utc_now()}
            if name is not None:
                changes["name"] = name
            if description is not None:
                changes["description"] = description
            updated = Strategy.model_validate({**strategy.model_dump(), **changes})
            self._replace("strategies", strategy_id, _dump(updated))
        return updated

    def set_active(self, strategy_id: str, active: bool) -> Strategy:
        with self._lock:
            strategy = self.get_strategy(strategy_id)
            updated = strategy.model_copy(update={"is_active": active, "updated_at": utc_now()})
            self._replace("strategies", strategy_id, _dump(updated))
        return updated

    def delete_strategy(self, strategy_id: str) -> None:
        with self._lock:
            rows = self._load("strategies")
            kept = [row for row in rows if row.get("id") != strategy_id]
            if len(kept) == len(rows):
                raise NotFoundError(f"strategy_not_found: {strategy_id}")
            self._save("strategies", kept)

    # ==================== Trades ====================

    def create_trade(self, trade: Trade) -> Trade:
        """Store a new trade; it always starts PENDING."""
        pending = trade.model_copy(update={"status": TradeStatus.PENDING})
        with self._lock:
            rows = self._load("trades")
            rows.append(_dump(pending))
            self._save("trades", rows)
        return pending

    def get_trade(self, trade_id: str) -> Trade:
        with self._lock:
            for row in self._load("trades"):
                if row.get("id") == trade_id:
                    return _parse(Trade, row)
        raise NotFoundError(f"trade_not_found: {trade_id}")

    def update_trade(self, trade_id: str, **patch: Any) -> Trade:
        """Patch a trade. A terminal status is never changed again."""
        with self._lock:
            trade = self.get_trade(trade_id)
            new_status = patch.get("status")
            if (
                new_status is not None
                and trade.status in _TRADE_TERMINAL
                and TradeStatus(new_status) != trade.status
            ):
                raise StoreError(f"trade_already_final: {trade_id}: {trade.status.value}")
            updated = Trade.model_validate(
                {**trade.model_dump(), **patch, "updated_at": utc_now()}
            )
            self._replace("trades", trade_id, _dump(updated))
        return updated

    def list_trades(self, user_id: str, limit: int | None = None) -> list[Trade]:
        """Trades of a user, newest first."""
        with self._lock:
            rows = [row for row in self._load("trades") if row.get("userId") == user_id]
        trades = sorted((_parse(Trade, row) for row in rows), key=lambda t: t.created_at, reverse=True)
        return trades if limit is None else trades[:limit]

    def count_trades_since(
        self,
        user_id: str,
        since: datetime,
        excluding_status: TradeStatus | None = TradeStatus.FAILED,
    ) -> int:
        return sum(
            1
            for trade in self._trades_where(user_id=user_id)
            if trade.created_at >= since and trade.status != excluding_status
        )

    def count_strategy_trades_since(self, strategy_id: str, since: datetime) -> int:
        return sum(
            1
            for trade in self._trades_where(strategy_id=strategy_id)
            if trade.created_at >= since and trade.status != TradeStatus.FAILED
        )

    def has_pending_trade(self, strategy_id: str, since: datetime | None = None) -> bool:
        """PENDING trade for the strategy, optionally only those created at or after `since`."""
        return any(
            trade.status == TradeStatus.PENDING and (since is None or trade.created_at >= since)
            for trade in self._trades_where(strategy_id=strategy_id)
        )

    def last_trade_at(self, strategy_id: str) -> datetime | None:
        times = [
            trade.created_at
            for trade in self._trades_where(strategy_id=strategy_id)
            if trade.status != TradeStatus.FAILED
        ]
        return max(times) if times else None

    def bought_tokens_since(self, user_id: str, since: datetime) -> set[str]:
        return {
            trade.output_token
            for trade in self._trades_where(user_id=user_id)
            if trade.created_at >= since
            and trade.status == TradeStatus.CONFIRMED
            and trade.direction == "BUY"
        }

    # ==================== Withdrawals ====================

    def create_withdrawal(self, withdrawal: Withdrawal) -> Withdrawal:
        pending = withdrawal.model_copy(update={"status": TradeStatus.PENDING})
        with self._lock:
            rows = self._load("withdrawals")
            rows.append(_dump(pending))
            self._save("withdrawals", rows)
        return pending

    def update_withdrawal(self, withdrawal_id: str, **patch: Any) -> Withdrawal:
        with self._lock:
            for row in self._load("withdrawals"):
                if row.get("id") == withdrawal_id:
                    current = _parse(Withdrawal, row)
                    break
            else:
                raise NotFoundError(f"withdrawal_not_found: {withdrawal_id}")
            updated = Withdrawal.model_validate({**current.model_dump(), **patch})
            self._replace("withdrawals", withdrawal_id, _dump(updated))
        return updated

    def list_withdrawals(self, user_id: str, limit: int = 10) -> list[Withdrawal]:
        with self._lock:
            rows = [row for row in self._load("withdrawals") if row.get("userId") == user_id]
        items = sorted((_parse(Withdrawal, row) for row in rows), key=lambda w: w.created_at, reverse=True)
        return items[:limit]

    def count_withdrawals_since(self, user_id: str, since: datetime) -> int:
        return sum(
            1
            for withdrawal in self.list_withdrawals(user_id, limit=10_000)
            if withdrawal.created_at >= since and withdrawal.status != TradeStatus.FAILED
        )

    # ==================== File handling ====================

    def _trades_where(self, *, user_id: str | None = None, strategy_id: str | None = None) -> list[Trade]:
        with self._lock:
            rows = self._load("trades")
        selected = [
            row
            for row in rows
            if (user_id is None or row.get("userId") == user_id)
            and (strategy_id is None or row.get("strategyId") == strategy_id)
        ]
        return [_parse(Trade, row) for row in selected]

    def _replace(self, table: str, record_id: str, payload: dict[str, Any]) -> None:
        rows = self._load(table)
        for index, row in enumerate(rows):
            if row.get("id") == record_id:
                rows[index] = payload
                self._save(table, rows)
                return
        raise NotFoundError(f"{table}_record_not_found: {record_id}")

    def _path(self, table: str) -> Path:
        return self._data_dir / f"{table}.json"

    def _load(self, table: str) -> list[dict[str, Any]]:
        path = self._path(table)
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StoreError(f"store_read_failed: {path}: {exc}") from exc
        if not isinstance(raw, list):
            raise StoreError(f"store_corrupt: {path}")
        return raw

    def _save(self, table: str, rows: list[dict[str, Any]]) -> None:
        path = self._path(table)
        tmp_path = path.with_suffix(".json.tmp")
        serialized = json.dumps(rows, ensure_ascii=True, indent=2)
        try:
            tmp_path.write_text(serialized, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StoreError(f"store_write_failed: {path}: {exc}") from exc


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _parse(model_cls: type[_ModelT], row: dict[str, Any]) -> _ModelT:
    try:
        return model_cls.model_validate(row)
    except ValidationError as exc:
        raise StoreError(f"store_row_invalid: {model_cls.__name__}: {row.get('id')}") from exc
