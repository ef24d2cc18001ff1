"""Per-type strategy evaluation against fresh market data.

Evaluation is read-only: it fetches market data, computes indicators and
returns an outcome. It never touches the store or the swap layer, so
evaluations for different strategies may run concurrently.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field

import pandas as pd  # type: ignore[import-untyped]

from strategy_engine.config import Settings
from strategy_engine.data.market import MarketDataAdapter
from strategy_engine.features.indicators import ema, rsi, sma
from strategy_engine.strategy.models import (
    ConditionalConfig,
    ConditionSpec,
    SniperConfig,
    SpotConfig,
)
from strategy_engine.types import NewPair, NewPairQuery, TradeInstruction
from strategy_engine.utils.logging import get_logger
from strategy_engine.utils.units import (
    DEFAULT_DECIMALS,
    KNOWN_DECIMALS,
    SOL_MINT,
    known_decimals,
    resolve_mint,
)

_MIN_CANDLES = 100
_MAX_CANDLES = 1000


@dataclass(slots=True)
class NoMatch:
    """Nothing to trade this poll."""

    reason: str = "no_match"


@dataclass(slots=True)
class Match:
    """One or more instructions, in execution preference order."""

    instructions: list[TradeInstruction]
    reason: str = ""


@dataclass(slots=True)
class EvaluationError:
    """Market data missing or unusable; reported, never raised."""

    detail: str
    context: dict[str, object] = field(default_factory=dict)


EvaluationOutcome = NoMatch | Match | EvaluationError


def filter_new_pairs(pairs: Iterable[NewPair], config: SniperConfig) -> list[NewPair]:
    """Keep pairs passing the age bound, every populated bound and the name filter.

    Each pair is judged on its own, so tightening any bound can only shrink
    the result.
    """
    name_filter = config.name_filter.lower() if config.name_filter else None
    kept: list[NewPair] = []
    for pair in pairs:
        if pair.age_minutes > config.max_age_minutes:
            continue
        if config.min_liquidity is not None and pair.liquidity < config.min_liquidity:
            continue
        if config.max_liquidity is not None and pair.liquidity > config.max_liquidity:
            continue
        if config.min_volume is not None and pair.volume_24h < config.min_volume:
            continue
        if config.min_market_cap is not None and pair.market_cap < config.min_market_cap:
            continue
        if config.max_market_cap is not None and pair.market_cap > config.max_market_cap:
            continue
        if name_filter is not None and (
            name_filter not in pair.name.lower() and name_filter not in pair.symbol.lower()
        ):
            continue
        kept.append(pair)
    return kept


def condition_series(condition: ConditionSpec, closes: pd.Series) -> pd.DataFrame:
    """Observed and threshold series for a condition, aligned on the candle index.

    PRICE and RSI compare against `value`. EMA and SMA compare the indicator
    against `value` when one is set, otherwise price against the indicator.
    """
    period = condition.effective_period
    if condition.indicator == "PRICE":
        observed = closes
        threshold = pd.Series(condition.value, index=closes.index, dtype=float)
    elif condition.indicator == "RSI":
        observed = rsi(closes, period)
        threshold = pd.Series(condition.value, index=observed.index, dtype=float)
    else:
        line = ema(closes, period) if condition.indicator == "EMA" else sma(closes, period)
        if condition.value is not None:
            observed = line
            threshold = pd.Series(condition.value, index=line.index, dtype=float)
        else:
            observed = closes.reset_index(drop=True)
            threshold = line
    frame = pd.DataFrame(
        {
            "observed": observed.reset_index(drop=True),
            "threshold": threshold.reset_index(drop=True),
        }
    )
    return frame.dropna()


def trigger_fires(
    trigger: str,
    current: tuple[float, float],
    previous: tuple[float, float] | None = None,
    *,
    touch_tolerance_pct: float = 0.5,
) -> bool:
    """Apply a trigger to (observed, threshold) on the latest and previous tick.

    price_above / price_below look at the latest tick only (inclusive).
    crosses_* need the previous tick on the other side of the threshold.
    """
    value, level = current
    if trigger == "price_above":
        return value >= level
    if trigger == "price_below":
        return value <= level
    if trigger == "price_touches":
        if level == 0:
            return value == 0
        return abs(value - level) / abs(level) < touch_tolerance_pct / 100.0
    if previous is None:
        return False
    prev_value, prev_level = previous
    if trigger == "crosses_above":
        return prev_value < prev_level and value >= level
    if trigger == "crosses_below":
        return prev_value > prev_level and value <= level
    raise ValueError(f"unsupported_trigger: {trigger}")


class StrategyEvaluator:
    """Turn one validated strategy config into an evaluation outcome."""

    def __init__(self, settings: Settings, market: MarketDataAdapter) -> None:
        self._settings = settings
        self._market = market
        self._logger = get_logger("strategy_engine.strategy.evaluator")

    def evaluate(self, config: SniperConfig | SpotConfig | ConditionalConfig) -> EvaluationOutcome:
        try:
            if isinstance(config, SniperConfig):
                return self._evaluate_sniper(config)
            if isinstance(config, ConditionalConfig):
                return self._evaluate_conditional(config)
            return self._evaluate_spot(config)
        except (KeyError, ValueError) as exc:
            self._logger.warning("evaluation_failed", type=config.type, error=str(exc))
            return EvaluationError(f"evaluation_failed: {exc}")

    # ==================== SNIPER ====================

    def _evaluate_sniper(self, config: SniperConfig) -> EvaluationOutcome:
        query = NewPairQuery(
            max_age_minutes=config.max_age_minutes,
            min_liquidity=config.min_liquidity,
            max_liquidity=config.max_liquidity,
            min_volume=config.min_volume,
            min_market_cap=config.min_market_cap,
            max_market_cap=config.max_market_cap,
            limit=self._settings.new_pairs_limit,
        )
        pairs = self._market.get_new_pairs(query)
        if pairs is None:
            return EvaluationError("market_data_unavailable", {"source": "new_pairs"})

        matched = filter_new_pairs(pairs, config)
        self._logger.debug("sniper_scan", scanned=len(pairs), matched=len(matched))
        if not matched:
            return NoMatch("no_matching_pairs")

        instructions = [
            TradeInstruction(
                input_token=SOL_MINT,
                output_token=pair.address,
                amount=config.amount,
                slippage_bps=config.slippage_bps,
                direction="BUY",
                input_decimals=KNOWN_DECIMALS[SOL_MINT],
                output_decimals=self._pair_decimals(pair),
                price_usd=pair.price or None,
                token_symbol=pair.symbol,
                reason=f"new_pair age={pair.age_minutes:.0f}m liquidity={pair.liquidity:.0f}",
            )
            for pair in matched
        ]
        return Match(instructions, reason=f"{len(matched)} pair(s) matched")

    # ==================== CONDITIONAL ====================

    def _evaluate_conditional(self, config: ConditionalConfig) -> EvaluationOutcome:
        condition = config.condition
        token = resolve_mint(config.token)
        limit = min(_MAX_CANDLES, max(_MIN_CANDLES, condition.effective_period * 3))

        candles = self._market.get_ohlcv(token, condition.timeframe, limit)
        if candles.empty:
            return EvaluationError(
                "market_data_unavailable",
                {"source": "ohlcv", "token": token, "timeframe": condition.timeframe},
            )

        frame = condition_series(condition, candles["close"].astype(float))
        needed = 2 if condition.trigger.startswith("crosses_") else 1
        if len(frame) < needed:
            return NoMatch("insufficient_data")

        current = (float(frame["observed"].iloc[-1]), float(frame["threshold"].iloc[-1]))
        previous = (
            (float(frame["observed"].iloc[-2]), float(frame["threshold"].iloc[-2]))
            if len(frame) >= 2
            else None
        )
        fired = trigger_fires(
            condition.trigger,
            current,
            previous,
            touch_tolerance_pct=condition.touch_tolerance_pct,
        )
        description = (
            f"{condition.indicator}({condition.effective_period}) {condition.trigger} "
            f"observed={current[0]:.6g} threshold={current[1]:.6g}"
        )
        if not fired:
            return NoMatch(f"condition_not_met: {description}")

        last_close = float(candles["close"].iloc[-1])
        price_usd = last_close if math.isfinite(last_close) else None
        if config.direction == "buy":
            instruction = TradeInstruction(
                input_token=SOL_MINT,
                output_token=token,
                amount=config.amount,
                slippage_bps=config.slippage_bps,
                direction="BUY",
                input_decimals=KNOWN_DECIMALS[SOL_MINT],
                output_decimals=self._decimals(token),
                price_usd=price_usd,
                token_symbol=config.token if token != config.token else None,
                reason=description,
            )
        else:
            instruction = TradeInstruction(
                input_token=token,
                output_token=SOL_MINT,
                amount=config.amount,
                slippage_bps=config.slippage_bps,
                direction="SELL",
                input_decimals=self._decimals(token),
                output_decimals=KNOWN_DECIMALS[SOL_MINT],
                price_usd=price_usd,
                token_symbol=config.token if token != config.token else None,
                reason=description,
            )
        return Match([instruction], reason=description)

    # ==================== SPOT ====================

    def _evaluate_spot(self, config: SpotConfig) -> EvaluationOutcome:
        input_mint = resolve_mint(config.input_token)
        output_mint = resolve_mint(config.output_token)
        direction = "BUY" if config.direction == "buy" else "SELL"
        instruction = TradeInstruction(
            input_token=input_mint,
            output_token=output_mint,
            amount=config.amount,
            slippage_bps=config.slippage_bps,
            direction=direction,
            input_decimals=self._decimals(input_mint),
            output_decimals=self._decimals(output_mint),
            token_symbol=config.output_token if direction == "BUY" else config.input_token,
            reason="spot",
        )
        return Match([instruction], reason="spot")

    def _pair_decimals(self, pair: NewPair) -> int:
        # DexScreener listings carry no decimals
        if pair.decimals is None:
            return self._decimals(pair.address)
        return known_decimals(pair.address, pair.decimals)

    def _decimals(self, mint: str) -> int:
        if mint in KNOWN_DECIMALS:
            return KNOWN_DECIMALS[mint]
        overview = self._market.get_token_overview(mint)
        if overview is not None and overview.decimals is not None:
            return overview.decimals
        return DEFAULT_DECIMALS
