"""DexScreener client, used as the fallback source for listings and quotes."""

from __future__ import annotations

import time
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from strategy_engine.config import Settings
from strategy_engine.data.birdeye import MarketDataError
from strategy_engine.types import NewPair, NewPairQuery, TokenOverview


class DexScreenerClient:
    """Read-only DexScreener client. Raises MarketDataError on any failure."""

    def __init__(self, settings: Settings, *, http_client: httpx.Client | None = None) -> None:
        self._http = http_client or httpx.Client(
            base_url=settings.dexscreener_base_url,
            timeout=settings.market_data_timeout,
        )

    def fetch_token_overview(self, address: str) -> TokenOverview | None:
        """Overview from the most liquid pair of the token."""
        payload = self._get(f"/dex/tokens/{address}")
        pairs = [p for p in payload.get("pairs") or [] if isinstance(p, dict)]
        if not pairs:
            return None
        best = max(pairs, key=lambda p: _num((p.get("liquidity") or {}).get("usd")))
        base = best.get("baseToken") or {}
        return TokenOverview(
            address=str(base.get("address") or address),
            symbol=str(base.get("symbol") or "???"),
            name=str(base.get("name") or "Unknown"),
            price=_num(best.get("priceUsd")),
            volume_24h=_num((best.get("volume") or {}).get("h24")),
            liquidity=_num((best.get("liquidity") or {}).get("usd")),
            market_cap=_num(best.get("marketCap", best.get("fdv"))),
            price_change_24h=_num((best.get("priceChange") or {}).get("h24")),
            source="dexscreener",
        )

    def fetch_new_listings(self, query: NewPairQuery) -> list[NewPair]:
        """Recently created Solana pairs, newest first."""
        payload = self._get("/dex/search", {"q": "solana"})
        now_ms = time.time() * 1000
        pairs: list[NewPair] = []
        for raw in payload.get("pairs") or []:
            if not isinstance(raw, dict) or raw.get("chainId") != "solana":
                continue
            try:
                created_at = float(raw.get("pairCreatedAt") or 0)
            except (TypeError, ValueError):
                continue
            if created_at <= 0:
                continue
            base = raw.get("baseToken") or {}
            address = base.get("address")
            if not address:
                continue
            pairs.append(
                NewPair(
                    address=str(address),
                    symbol=str(base.get("symbol") or "???"),
                    name=str(base.get("name") or "Unknown"),
                    price=_num(raw.get("priceUsd")),
                    liquidity=_num((raw.get("liquidity") or {}).get("usd")),
                    volume_24h=_num((raw.get("volume") or {}).get("h24")),
                    market_cap=_num(raw.get("marketCap", raw.get("fdv"))),
                    age_minutes=max(0.0, (now_ms - created_at) / 60_000),
                    dex=raw.get("dexId"),
                    source="dexscreener",
                )
            )
        pairs.sort(key=lambda p: p.age_minutes)
        return pairs[: query.limit]

    def close(self) -> None:
        self._http.close()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        stop=stop_after_attempt(2),
        reraise=True,
    )
    def _send(self, path: str, params: dict[str, Any] | None) -> httpx.Response:
        return self._http.get(path, params=params)

    def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = self._send(path, params)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise MarketDataError(f"dexscreener_request_failed: {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise MarketDataError(f"dexscreener_unexpected_payload: {path}")
        return payload


def _num(value: Any) -> float:
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0
