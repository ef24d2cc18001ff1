"""Strategy, trade and withdrawal records plus the per-type config schemas."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    model_validator,
)
from pydantic.alias_generators import to_camel

TimeFrame = Literal[
    "1m", "3m", "5m", "15m", "30m", "1H", "2H", "4H", "6H", "8H", "12H", "1D", "3D", "1W", "1M"
]
Indicator = Literal["EMA", "RSI", "SMA", "PRICE"]
Trigger = Literal["price_above", "price_below", "price_touches", "crosses_above", "crosses_below"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class _WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python; both accepted on input."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


# ==================== Strategy configs ====================


class SniperConfig(_WireModel):
    """Buy newly listed pairs that pass every populated bound."""

    type: Literal["SNIPER"] = "SNIPER"
    max_age_minutes: float = Field(default=60.0, gt=0)
    min_liquidity: float | None = Field(default=10_000.0, ge=0)
    max_liquidity: float | None = Field(default=None, ge=0)
    min_volume: float | None = Field(default=None, ge=0)
    min_market_cap: float | None = Field(default=None, ge=0)
    max_market_cap: float | None = Field(default=None, ge=0)
    name_filter: str | None = Field(default=None, min_length=1)
    amount: float = Field(default=0.01, gt=0)  # SOL per trade
    slippage_bps: int = Field(default=300, ge=1, le=10_000)
    take_profit: float | None = Field(default=None, gt=0)
    stop_loss: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def check_bounds(self) -> "SniperConfig":
        if (
            self.min_liquidity is not None
            and self.max_liquidity is not None
            and self.min_liquidity > self.max_liquidity
        ):
            raise ValueError("min_liquidity_above_max_liquidity")
        if (
            self.min_market_cap is not None
            and self.max_market_cap is not None
            and self.min_market_cap > self.max_market_cap
        ):
            raise ValueError("min_market_cap_above_max_market_cap")
        return self


class SpotConfig(_WireModel):
    """One-shot directional swap with no market condition."""

    type: Literal["SPOT"] = "SPOT"
    input_token: str = Field(min_length=1)
    output_token: str = Field(min_length=1)
    amount: float = Field(gt=0)  # in input token units
    direction: Literal["buy", "sell"] = "buy"
    slippage_bps: int = Field(default=50, ge=1, le=10_000)
    take_profit: float | None = Field(default=None, gt=0)
    stop_loss: float | None = Field(default=None, gt=0)


class ConditionSpec(_WireModel):
    """Indicator trigger of a CONDITIONAL strategy."""

    indicator: Indicator
    period: int | None = Field(default=None, ge=1, le=500)
    timeframe: TimeFrame = "1H"
    trigger: Trigger
    value: float | None = None
    touch_tolerance_pct: float = Field(default=0.5, gt=0, le=50)

    @model_validator(mode="after")
    def check_value(self) -> "ConditionSpec":
        if self.indicator in ("RSI", "PRICE") and self.value is None:
            raise ValueError(f"value_required_for_{self.indicator.lower()}")
        return self

    @property
    def effective_period(self) -> int:
        if self.period is not None:
            return self.period
        return 14 if self.indicator == "RSI" else 20


_CONDITION_KEYS = (
    "indicator",
    "period",
    "timeframe",
    "trigger",
    "value",
    "touchTolerancePct",
    "touch_tolerance_pct",
)


class ConditionalConfig(_WireModel):
    """Trade once an indicator condition on `token` holds."""

    type: Literal["CONDITIONAL"] = "CONDITIONAL"
    token: str = Field(
        min_length=1,
        validation_alias=AliasChoices("token", "inputToken", "input_token"),
    )
    condition: ConditionSpec
    amount: float = Field(default=0.1, gt=0)  # SOL for buy, token units for sell
    direction: Literal["buy", "sell"] = "buy"
    slippage_bps: int = Field(default=100, ge=1, le=10_000)
    take_profit: float | None = Field(default=None, gt=0)
    stop_loss: float | None = Field(default=None, gt=0)

    @model_validator(mode="before")
    @classmethod
    def lift_flat_condition(cls, data: Any) -> Any:
        """Accept the condition fields either nested or at top level."""
        if not isinstance(data, dict) or "condition" in data:
            return data
        flat = {key: data[key] for key in _CONDITION_KEYS if key in data}
        if not flat:
            return data
        rest = {key: value for key, value in data.items() if key not in _CONDITION_KEYS}
        return {**rest, "condition": flat}


StrategyConfig = Annotated[
    Union[SniperConfig, SpotConfig, ConditionalConfig],
    Field(discriminator="type"),
]

_CONFIG_ADAPTER: TypeAdapter[StrategyConfig] = TypeAdapter(StrategyConfig)


def parse_strategy_config(raw: dict[str, Any] | BaseModel) -> StrategyConfig:
    """Validate a raw config dict; raises pydantic.ValidationError."""
    if isinstance(raw, (SniperConfig, SpotConfig, ConditionalConfig)):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump(by_alias=True)
    return _CONFIG_ADAPTER.validate_python(raw)


# ==================== Records ====================


class Strategy(_WireModel):
    """User-owned trade automation rule.

    `config` holds the normalized wire form. It is validated when a strategy
    is created or edited (see `Strategy.new` and `with_config`); rows read
    back from storage are re-validated per evaluation by `parsed_config`.
    """

    id: str = Field(default_factory=new_id)
    user_id: str
    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=1000)
    config: dict[str, Any]
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def new(
        cls,
        *,
        user_id: str,
        name: str,
        description: str = "",
        config: dict[str, Any] | BaseModel,
        is_active: bool = True,
    ) -> "Strategy":
        parsed = parse_strategy_config(config)
        return cls(
            user_id=user_id,
            name=name,
            description=description,
            config=parsed.model_dump(mode="json", by_alias=True),
            is_active=is_active,
        )

    def with_config(self, config: dict[str, Any] | BaseModel) -> "Strategy":
        parsed = parse_strategy_config(config)
        return self.model_copy(
            update={"config": parsed.model_dump(mode="json", by_alias=True), "updated_at": utc_now()}
        )

    def parsed_config(self) -> SniperConfig | SpotConfig | ConditionalConfig:
        """Typed config; raises pydantic.ValidationError for a malformed row."""
        return parse_strategy_config(self.config)

    @property
    def type(self) -> str:
        return str(self.config.get("type", "UNKNOWN"))


class TradeStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class Trade(_WireModel):
    """Execution record of one swap attempt."""

    id: str = Field(default_factory=new_id)
    user_id: str
    strategy_id: str | None = None
    signature: str = Field(default_factory=lambda: f"pending-{uuid.uuid4().hex}")
    type: Literal["SPOT", "SNIPER", "PERP"] = "SPOT"
    direction: Literal["BUY", "SELL", "LONG", "SHORT"]
    input_token: str
    output_token: str
    input_amount: float
    output_amount: float | None = None
    price_usd: float | None = None
    price_impact_pct: float | None = None
    pnl_usd: float | None = None
    status: TradeStatus = TradeStatus.PENDING
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    closed_at: datetime | None = None

    @property
    def is_pending_signature(self) -> bool:
        return self.signature.startswith("pending-")


class Withdrawal(_WireModel):
    """SOL withdrawal to an external address."""

    id: str = Field(default_factory=new_id)
    user_id: str
    amount: float = Field(gt=0)
    fee: float = Field(ge=0)
    destination: str
    signature: str | None = None
    status: TradeStatus = TradeStatus.PENDING
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    confirmed_at: datetime | None = None
