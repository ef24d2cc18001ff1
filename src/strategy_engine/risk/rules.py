"""Hard risk control rules applied before a trade is created."""

from __future__ import annotations

from datetime import datetime, timedelta

from strategy_engine.config import Settings
from strategy_engine.types import RiskCheckResult


class RiskEngine:
    """Rule-based risk controls."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def check_daily_cap(self, trades_today: int) -> RiskCheckResult:
        """Block once the user's non-failed trades since midnight reach the cap."""
        reasons: list[str] = []
        if trades_today >= self._settings.daily_trade_cap:
            reasons.append("daily limit")
        return RiskCheckResult(allowed=not reasons, reasons=reasons)

    def check_cooldown(self, last_trade_at: datetime | None, now: datetime) -> RiskCheckResult:
        """Block while the strategy's previous trade is younger than the cooldown."""
        reasons: list[str] = []
        if last_trade_at is not None:
            if last_trade_at.tzinfo is None:
                last_trade_at = last_trade_at.replace(tzinfo=now.tzinfo)
            elapsed = now - last_trade_at
            if elapsed < timedelta(seconds=self._settings.strategy_cooldown_seconds):
                reasons.append("cooldown")
        return RiskCheckResult(allowed=not reasons, reasons=reasons)

    def check_slippage(self, slippage_bps: int) -> RiskCheckResult:
        """Reject instructions whose slippage exceeds the configured bound."""
        reasons: list[str] = []
        if slippage_bps > self._settings.max_slippage_bps:
            reasons.append(f"slippage_too_high: {slippage_bps} > {self._settings.max_slippage_bps}")
        if slippage_bps <= 0:
            reasons.append("slippage_must_be_positive")
        return RiskCheckResult(allowed=not reasons, reasons=reasons)


def local_midnight(now: datetime) -> datetime:
    """Start of the local calendar day containing `now`, timezone-aware."""
    local = now.astimezone()
    return local.replace(hour=0, minute=0, second=0, microsecond=0)
