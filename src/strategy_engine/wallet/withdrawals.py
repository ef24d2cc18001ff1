"""SOL withdrawals with a daily cap and balance reserve."""

from __future__ import annotations

import re
import threading
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from strategy_engine.config import Settings
from strategy_engine.risk.rules import local_midnight
from strategy_engine.store.base import StrategyStore
from strategy_engine.strategy.models import TradeStatus, Withdrawal, utc_now
from strategy_engine.utils.logging import get_logger, log_risk_event
from strategy_engine.utils.units import to_smallest_unit

RENT_EXEMPT_MINIMUM_SOL = 0.00089
_BASE58_ADDRESS = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


class WithdrawalError(Exception):
    """Withdrawal rejected or failed."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class SolTransfer(Protocol):
    """Wallet capability that sends native SOL."""

    def transfer_sol(self, destination: str, lamports: int) -> str:
        """Send `lamports` to `destination` and return the confirmed signature."""


class WithdrawalService:
    """Validate, record and execute withdrawals.

    The daily count and the PENDING record are created under a per-user lock,
    so two concurrent requests in one process cannot both pass the cap.
    """

    def __init__(
        self,
        settings: Settings,
        store: StrategyStore,
        transfer: SolTransfer,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._store = store
        self._transfer = transfer
        self._clock = clock
        self._logger = get_logger("strategy_engine.wallet.withdrawals")
        self._locks_guard = threading.Lock()
        self._user_locks: dict[str, threading.Lock] = {}

    @property
    def total_fee(self) -> float:
        return self._settings.network_fee_sol + self._settings.withdrawal_fee_sol

    def max_withdrawable(self, balance: float) -> float:
        return max(0.0, balance - self.total_fee - RENT_EXEMPT_MINIMUM_SOL)

    def withdrawal_info(self, user_id: str, balance: float) -> dict[str, Any]:
        """Limits and allowance for the user's next withdrawal."""
        today = self._store.count_withdrawals_since(user_id, local_midnight(self._clock()))
        max_withdrawable = self.max_withdrawable(balance)
        return {
            "solBalance": balance,
            "maxWithdrawable": round(max_withdrawable, 4),
            "minWithdrawal": self._settings.min_withdrawal_sol,
            "networkFee": self._settings.network_fee_sol,
            "platformFee": self._settings.withdrawal_fee_sol,
            "totalFee": self.total_fee,
            "withdrawalsToday": today,
            "maxDailyWithdrawals": self._settings.max_daily_withdrawals,
            "canWithdraw": today < self._settings.max_daily_withdrawals
            and max_withdrawable >= self._settings.min_withdrawal_sol,
        }

    def request_withdrawal(
        self,
        user_id: str,
        amount: float,
        destination: str,
        balance: float,
    ) -> Withdrawal:
        """Withdraw `amount` SOL; raises WithdrawalError when rejected or failed."""
        if not _BASE58_ADDRESS.match(destination):
            raise WithdrawalError("invalid_destination", "Invalid destination address")
        if amount < self._settings.min_withdrawal_sol:
            raise WithdrawalError(
                "below_minimum",
                f"Minimum withdrawal is {self._settings.min_withdrawal_sol} SOL",
            )
        if amount > self.max_withdrawable(balance):
            raise WithdrawalError(
                "insufficient_balance",
                f"Insufficient balance: max withdrawable is {self.max_withdrawable(balance):.4f} SOL",
            )

        with self._user_lock(user_id):
            today = self._store.count_withdrawals_since(user_id, local_midnight(self._clock()))
            if today >= self._settings.max_daily_withdrawals:
                log_risk_event(
                    self._logger,
                    event_type="withdrawal_daily_limit",
                    action="reject",
                    user_id=user_id,
                    count=today,
                )
                raise WithdrawalError(
                    "daily_limit",
                    f"Maximum {self._settings.max_daily_withdrawals} withdrawals per day",
                )
            withdrawal = self._store.create_withdrawal(
                Withdrawal(
                    user_id=user_id,
                    amount=amount,
                    fee=self.total_fee,
                    destination=destination,
                )
            )

        try:
            signature = self._transfer.transfer_sol(destination, to_smallest_unit(amount, 9))
        except Exception as exc:  # noqa: BLE001 - record must end FAILED.
            self._store.update_withdrawal(withdrawal.id, status=TradeStatus.FAILED, error=str(exc))
            self._logger.warning("withdrawal_failed", withdrawal_id=withdrawal.id, error=str(exc))
            raise WithdrawalError("transfer_failed", str(exc)) from exc

        confirmed = self._store.update_withdrawal(
            withdrawal.id,
            status=TradeStatus.CONFIRMED,
            signature=signature,
            confirmed_at=self._clock(),
        )
        self._logger.info(
            "withdrawal_confirmed",
            withdrawal_id=withdrawal.id,
            amount=amount,
            signature=signature,
        )
        return confirmed

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._user_locks.setdefault(user_id, threading.Lock())
