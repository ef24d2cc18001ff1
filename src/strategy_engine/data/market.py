"""Market data adapter: one schema over Birdeye with DexScreener fallback.

Every call here is read-only and fail-soft. Upstream failures are logged and
turned into None or an empty result; nothing raises to the caller.
"""

from __future__ import annotations

import pandas as pd  # type: ignore[import-untyped]

from strategy_engine.config import Settings
from strategy_engine.data.birdeye import OHLCV_COLUMNS, BirdeyeClient, MarketDataError
from strategy_engine.data.dexscreener import DexScreenerClient
from strategy_engine.types import NewPair, NewPairQuery, TokenOverview
from strategy_engine.utils.logging import get_logger


class MarketDataAdapter:
    """Normalized quotes, candles and new listings."""

    def __init__(
        self,
        settings: Settings,
        *,
        birdeye: BirdeyeClient | None = None,
        dexscreener: DexScreenerClient | None = None,
    ) -> None:
        self._logger = get_logger("strategy_engine.data.market")
        self._birdeye = birdeye or BirdeyeClient(settings)
        self._dexscreener = dexscreener or DexScreenerClient(settings)

    def get_token_overview(self, address: str) -> TokenOverview | None:
        """Overview from the first source that answers, else None."""
        if self._birdeye.configured:
            try:
                overview = self._birdeye.fetch_token_overview(address)
                if overview is not None:
                    return overview
            except MarketDataError as exc:
                self._logger.warning("overview_primary_failed", address=address, error=str(exc))
        try:
            return self._dexscreener.fetch_token_overview(address)
        except MarketDataError as exc:
            self._logger.warning("overview_fallback_failed", address=address, error=str(exc))
            return None

    def get_ohlcv(self, address: str, timeframe: str, limit: int) -> pd.DataFrame:
        """Candles oldest first; an empty frame means no data was available."""
        if not self._birdeye.configured:
            self._logger.warning("ohlcv_source_unconfigured", address=address)
            return pd.DataFrame(columns=OHLCV_COLUMNS)
        try:
            return self._birdeye.fetch_ohlcv(address, timeframe, limit)
        except MarketDataError as exc:
            self._logger.warning(
                "ohlcv_fetch_failed",
                address=address,
                timeframe=timeframe,
                error=str(exc),
            )
            return pd.DataFrame(columns=OHLCV_COLUMNS)

    def get_new_pairs(self, query: NewPairQuery) -> list[NewPair] | None:
        """New listings; [] when none are listed, None when no source answered."""
        if self._birdeye.configured:
            try:
                return self._birdeye.fetch_new_listings(query)
            except MarketDataError as exc:
                self._logger.warning("new_pairs_primary_failed", error=str(exc))
        try:
            return self._dexscreener.fetch_new_listings(query)
        except MarketDataError as exc:
            self._logger.warning("new_pairs_fallback_failed", error=str(exc))
            return None

    def close(self) -> None:
        self._birdeye.close()
        self._dexscreener.close()
