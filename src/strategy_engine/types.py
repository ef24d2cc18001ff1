"""Shared domain types for market data, evaluation and execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

Direction = Literal["BUY", "SELL"]


class StrategyAction(str, Enum):
    """Outcome tag of one strategy within a poll."""

    NO_OPPORTUNITY = "NO_OPPORTUNITY"
    TRADE_EXECUTED = "TRADE_EXECUTED"
    ALREADY_BOUGHT = "ALREADY_BOUGHT"
    ERROR = "ERROR"


@dataclass(slots=True)
class TokenOverview:
    """Normalized quote for one token."""

    address: str
    symbol: str
    name: str
    price: float
    volume_24h: float
    liquidity: float
    market_cap: float
    price_change_24h: float
    decimals: int | None = None
    source: str = "birdeye"


@dataclass(slots=True)
class NewPair:
    """Market snapshot of one newly listed pair, fresh for one evaluation pass."""

    address: str
    symbol: str
    name: str
    price: float
    liquidity: float
    volume_24h: float
    market_cap: float
    age_minutes: float
    decimals: int | None = None
    dex: str | None = None
    source: str = "birdeye"


@dataclass(slots=True)
class NewPairQuery:
    """Filter hints passed upstream; the evaluator re-applies every bound."""

    max_age_minutes: float | None = None
    min_liquidity: float | None = None
    max_liquidity: float | None = None
    min_volume: float | None = None
    min_market_cap: float | None = None
    max_market_cap: float | None = None
    limit: int = 20


@dataclass(slots=True)
class TradeInstruction:
    """Concrete swap produced by a strategy match, amounts in human units."""

    input_token: str
    output_token: str
    amount: float
    slippage_bps: int
    direction: Direction
    input_decimals: int = 9
    output_decimals: int = 9
    price_usd: float | None = None
    token_symbol: str | None = None
    reason: str = ""

    @property
    def target_token(self) -> str:
        """Token the instruction trades into (BUY) or out of (SELL)."""
        return self.output_token if self.direction == "BUY" else self.input_token


@dataclass(slots=True)
class SwapQuote:
    """Aggregator quote, amounts in smallest units."""

    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    slippage_bps: int
    price_impact_pct: float
    raw: dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class SwapResult:
    """Outcome of a confirmed swap, amounts in smallest units."""

    signature: str
    input_amount: int
    output_amount: int
    price_impact_pct: float


@dataclass(slots=True)
class TradeSummary:
    """Trade attached to a per-strategy result."""

    trade_id: str
    signature: str
    token_address: str
    token_symbol: str | None
    input_amount: float
    output_amount: float | None
    status: str


@dataclass(slots=True)
class PerStrategyResult:
    """Result of one evaluation-and-maybe-execute cycle for one strategy."""

    strategy_id: str
    strategy_name: str
    action: StrategyAction
    detail: str = ""
    trade: TradeSummary | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "strategyId": self.strategy_id,
            "strategyName": self.strategy_name,
            "action": self.action.value,
            "detail": self.detail,
        }
        if self.trade is not None:
            payload["trade"] = {
                "tradeId": self.trade.trade_id,
                "signature": self.trade.signature,
                "tokenAddress": self.trade.token_address,
                "tokenSymbol": self.trade.token_symbol,
                "inputAmount": self.trade.input_amount,
                "outputAmount": self.trade.output_amount,
                "status": self.trade.status,
            }
        return payload


@dataclass(slots=True)
class RiskCheckResult:
    """Result of a risk control check."""

    allowed: bool
    reasons: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RateLimitResult:
    """Fixed-window rate limiter decision."""

    allowed: bool
    current: int
    limit: int
    reset_in: float
    remaining: int
