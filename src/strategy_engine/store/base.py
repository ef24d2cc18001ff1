"""Strategy store contract consumed by the execution engine."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from strategy_engine.strategy.models import Strategy, Trade, TradeStatus, Withdrawal


class StoreError(Exception):
    """The store could not be read or written."""


class NotFoundError(StoreError):
    """No record with the requested id."""


class StrategyStore(Protocol):
    """Persistence operations for strategies, trades and withdrawals."""

    def list_active_strategies(self, user_id: str) -> list[Strategy]: ...

    def list_strategies(self, user_id: str) -> list[Strategy]: ...

    def set_active(self, strategy_id: str, active: bool) -> Strategy: ...

    def create_trade(self, trade: Trade) -> Trade: ...

    def update_trade(self, trade_id: str, **patch: Any) -> Trade: ...

    def list_trades(self, user_id: str, limit: int | None = None) -> list[Trade]: ...

    def count_trades_since(
        self,
        user_id: str,
        since: datetime,
        excluding_status: TradeStatus | None = TradeStatus.FAILED,
    ) -> int: ...

    def count_strategy_trades_since(self, strategy_id: str, since: datetime) -> int: ...

    def has_pending_trade(self, strategy_id: str, since: datetime | None = None) -> bool: ...

    def last_trade_at(self, strategy_id: str) -> datetime | None: ...

    def bought_tokens_since(self, user_id: str, since: datetime) -> set[str]: ...

    def create_withdrawal(self, withdrawal: Withdrawal) -> Withdrawal: ...

    def update_withdrawal(self, withdrawal_id: str, **patch: Any) -> Withdrawal: ...

    def count_withdrawals_since(self, user_id: str, since: datetime) -> int: ...
