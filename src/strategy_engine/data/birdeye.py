"""Birdeye market data client: token overview, OHLCV and new listings."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

import httpx
import pandas as pd  # type: ignore[import-untyped]
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from strategy_engine.config import Settings
from strategy_engine.types import NewPair, NewPairQuery, TokenOverview
from strategy_engine.utils.logging import get_logger

TIMEFRAME_SECONDS = {
    "1m": 60,
    "3m": 3 * 60,
    "5m": 5 * 60,
    "15m": 15 * 60,
    "30m": 30 * 60,
    "1H": 3600,
    "2H": 2 * 3600,
    "4H": 4 * 3600,
    "6H": 6 * 3600,
    "8H": 8 * 3600,
    "12H": 12 * 3600,
    "1D": 86_400,
    "3D": 3 * 86_400,
    "1W": 7 * 86_400,
    "1M": 30 * 86_400,
}

OHLCV_COLUMNS = ["open_time", "open", "high", "low", "close", "volume"]


class MarketDataError(Exception):
    """Raised when an upstream market data request fails."""


class BirdeyeClient:
    """Read-only Birdeye REST client. Raises MarketDataError on any failure."""

    def __init__(self, settings: Settings, *, http_client: httpx.Client | None = None) -> None:
        self._settings = settings
        self._logger = get_logger("strategy_engine.data.birdeye")
        self._http = http_client or httpx.Client(
            base_url=settings.birdeye_base_url,
            timeout=settings.market_data_timeout,
        )

    @property
    def configured(self) -> bool:
        return bool(self._settings.birdeye_api_key)

    def fetch_token_overview(self, address: str) -> TokenOverview | None:
        """Token overview; None when Birdeye has no data for the address."""
        data = self._get("/defi/token_overview", {"address": address})
        if not isinstance(data, dict) or not data:
            return None
        return TokenOverview(
            address=str(data.get("address") or address),
            symbol=str(data.get("symbol") or "???"),
            name=str(data.get("name") or "Unknown"),
            price=_num(data.get("price")),
            volume_24h=_num(data.get("v24hUSD")),
            liquidity=_num(data.get("liquidity")),
            market_cap=_num(data.get("mc", data.get("marketCap"))),
            price_change_24h=_num(data.get("priceChange24hPercent")),
            decimals=_int_or_none(data.get("decimals")),
            source="birdeye",
        )

    def fetch_ohlcv(self, address: str, timeframe: str, limit: int) -> pd.DataFrame:
        """Fetch candles for a token, oldest first."""
        step = TIMEFRAME_SECONDS.get(timeframe)
        if step is None:
            raise ValueError(f"unsupported_timeframe: {timeframe}")

        now = int(time.time())
        data = self._get(
            "/defi/ohlcv",
            {
                "address": address,
                "type": timeframe,
                "time_from": now - limit * step,
                "time_to": now,
            },
        )
        items = data.get("items") if isinstance(data, dict) else None
        if not items:
            return pd.DataFrame(columns=OHLCV_COLUMNS)

        df = pd.DataFrame(
            {
                "open_time": [item.get("unixTime") for item in items],
                "open": [item.get("o") for item in items],
                "high": [item.get("h") for item in items],
                "low": [item.get("l") for item in items],
                "close": [item.get("c") for item in items],
                "volume": [item.get("v") for item in items],
            }
        )
        numeric_cols = ["open", "high", "low", "close", "volume"]
        for col in numeric_cols:
            df[col] = pd.to_numeric(df[col], errors="coerce")
        df["open_time"] = pd.to_datetime(df["open_time"], unit="s", utc=True)
        df = df.dropna(subset=["open_time", "close"])
        return df.sort_values("open_time").reset_index(drop=True)

    def fetch_new_listings(self, query: NewPairQuery) -> list[NewPair]:
        """New listings pre-filtered by age/liquidity and enriched with overview data."""
        data = self._get(
            "/defi/v2/tokens/new_listing",
            {"limit": query.limit, "meme_platform_enabled": "true"},
        )
        items = data.get("items") if isinstance(data, dict) else None
        if not items:
            return []

        now = datetime.now(timezone.utc)
        pairs: list[NewPair] = []
        for item in items:
            address = item.get("address")
            if not address:
                continue
            age_minutes = _age_minutes(item.get("liquidityAddedAt"), now)
            liquidity = _num(item.get("liquidity"))
            if query.max_age_minutes is not None and age_minutes > query.max_age_minutes:
                continue
            if query.min_liquidity is not None and liquidity < query.min_liquidity:
                continue

            overview = self._overview_or_none(str(address))
            pairs.append(
                NewPair(
                    address=str(address),
                    symbol=str(item.get("symbol") or "???"),
                    name=str(item.get("name") or "Unknown"),
                    price=overview.price if overview else 0.0,
                    liquidity=liquidity,
                    volume_24h=overview.volume_24h if overview else 0.0,
                    market_cap=overview.market_cap if overview else 0.0,
                    age_minutes=age_minutes,
                    decimals=_int_or_none(item.get("decimals")),
                    dex=item.get("source"),
                    source="birdeye",
                )
            )
        return pairs

    def close(self) -> None:
        self._http.close()

    def _overview_or_none(self, address: str) -> TokenOverview | None:
        try:
            return self.fetch_token_overview(address)
        except MarketDataError as exc:
            self._logger.warning("listing_overview_failed", address=address, error=str(exc))
            return None

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        stop=stop_after_attempt(2),
        reraise=True,
    )
    def _send(self, path: str, params: dict[str, Any]) -> httpx.Response:
        return self._http.get(path, params=params, headers=self._headers())

    def _get(self, path: str, params: dict[str, Any]) -> Any:
        if not self.configured:
            raise MarketDataError("missing_birdeye_api_key")
        try:
            response = self._send(path, params)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise MarketDataError(f"birdeye_request_failed: {path}: {exc}") from exc

        if not isinstance(payload, dict) or not payload.get("success"):
            raise MarketDataError(f"birdeye_unsuccessful_response: {path}")
        return payload.get("data")

    def _headers(self) -> dict[str, str]:
        return {
            "X-API-KEY": self._settings.birdeye_api_key,
            "x-chain": "solana",
            "accept": "application/json",
        }


def _num(value: Any) -> float:
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _age_minutes(listed_at: Any, now: datetime) -> float:
    """Minutes since listing; accepts ISO strings or unix seconds/millis."""
    if listed_at is None:
        return float("inf")
    if isinstance(listed_at, (int, float)):
        seconds = listed_at / 1000 if listed_at > 10**11 else listed_at
        listed = datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        try:
            listed = datetime.fromisoformat(str(listed_at).replace("Z", "+00:00"))
        except ValueError:
            return float("inf")
        if listed.tzinfo is None:
            listed = listed.replace(tzinfo=timezone.utc)
    return max(0.0, (now - listed).total_seconds() / 60)
