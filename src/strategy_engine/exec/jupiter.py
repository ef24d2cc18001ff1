"""Jupiter aggregator client and the live swap executor."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from strategy_engine.config import Settings
from strategy_engine.exec.errors import NoRouteError, SubmissionError, SwapError
from strategy_engine.exec.solana_rpc import SolanaRpcClient
from strategy_engine.types import SwapQuote, SwapResult
from strategy_engine.utils.logging import get_logger

_NO_ROUTE_CODES = {
    "COULD_NOT_FIND_ANY_ROUTE",
    "NO_ROUTES_FOUND",
    "TOKEN_NOT_TRADABLE",
    "CIRCULAR_ARBITRAGE_IS_DISABLED",
}


class Signer(Protocol):
    """Opaque wallet capability; key custody lives elsewhere."""

    @property
    def public_key(self) -> str:
        """Base58 wallet address."""

    def sign_transaction(self, transaction_b64: str) -> str:
        """Sign a base64 serialized transaction and return it re-serialized."""


class SwapExecutor(Protocol):
    """Quote and execute swaps with amounts in smallest units."""

    def get_swap_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> SwapQuote:
        """Return a route quote."""

    def execute_swap(
        self,
        signer: Signer | None,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        *,
        on_submitted: Callable[[str], None] | None = None,
    ) -> SwapResult:
        """Execute the swap; on_submitted receives the signature before confirmation."""


class JupiterClient:
    """Quote and swap-transaction builder."""

    def __init__(self, settings: Settings, *, http_client: httpx.Client | None = None) -> None:
        self._settings = settings
        self._http = http_client or httpx.Client(
            base_url=settings.jupiter_base_url,
            timeout=settings.swap_timeout,
        )

    def get_swap_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> SwapQuote:
        if amount <= 0:
            raise NoRouteError("amount_must_be_positive")
        try:
            response = self._get_quote(
                {
                    "inputMint": input_mint,
                    "outputMint": output_mint,
                    "amount": str(amount),
                    "slippageBps": str(slippage_bps),
                }
            )
        except httpx.HTTPError as exc:
            raise SwapError(f"quote_request_failed: {exc}") from exc

        if response.status_code >= 400:
            error_code, message = _error_detail(response)
            if error_code in _NO_ROUTE_CODES or response.status_code in (400, 404):
                raise NoRouteError(f"no_route: {message}")
            raise SwapError(f"quote_error: {response.status_code}: {message}")

        try:
            payload = response.json()
            quote = SwapQuote(
                input_mint=str(payload["inputMint"]),
                output_mint=str(payload["outputMint"]),
                in_amount=int(payload["inAmount"]),
                out_amount=int(payload["outAmount"]),
                slippage_bps=int(payload.get("slippageBps", slippage_bps)),
                price_impact_pct=float(payload.get("priceImpactPct") or 0.0),
                raw=payload,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise SwapError(f"quote_malformed: {exc}") from exc

        if quote.out_amount <= 0:
            raise NoRouteError("no_route: zero_output")
        return quote

    def build_swap_transaction(self, quote: SwapQuote, user_public_key: str) -> str:
        """Return the unsigned swap transaction, base64 encoded."""
        try:
            response = self._http.post(
                "/swap",
                json={
                    "quoteResponse": quote.raw,
                    "userPublicKey": user_public_key,
                    "wrapAndUnwrapSol": True,
                    "dynamicComputeUnitLimit": True,
                    "prioritizationFeeLamports": "auto",
                },
            )
            response.raise_for_status()
            transaction = response.json().get("swapTransaction")
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            raise SubmissionError(f"swap_build_failed: {exc}") from exc
        if not isinstance(transaction, str) or not transaction:
            raise SubmissionError("swap_build_failed: missing_transaction")
        return transaction

    def close(self) -> None:
        self._http.close()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _get_quote(self, params: dict[str, str]) -> httpx.Response:
        return self._http.get("/quote", params=params)


class LiveSwapExecutor:
    """Quote, build, sign, send and confirm. Never retries a submission."""

    def __init__(
        self,
        settings: Settings,
        *,
        jupiter: JupiterClient | None = None,
        rpc: SolanaRpcClient | None = None,
    ) -> None:
        self._settings = settings
        self._logger = get_logger("strategy_engine.exec.jupiter")
        self._jupiter = jupiter or JupiterClient(settings)
        self._rpc = rpc or SolanaRpcClient(settings)

    def get_swap_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> SwapQuote:
        return self._jupiter.get_swap_quote(input_mint, output_mint, amount, slippage_bps)

    def execute_swap(
        self,
        signer: Signer | None,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        *,
        on_submitted: Callable[[str], None] | None = None,
    ) -> SwapResult:
        if signer is None:
            raise SubmissionError("signer_unavailable")

        started = time.perf_counter()
        quote = self.get_swap_quote(input_mint, output_mint, amount, slippage_bps)
        check_price_impact(quote, self._settings.max_price_impact_pct)

        unsigned = self._jupiter.build_swap_transaction(quote, signer.public_key)
        try:
            signed = signer.sign_transaction(unsigned)
        except Exception as exc:  # noqa: BLE001 - signer is an external capability.
            raise SubmissionError(f"signing_failed: {exc}") from exc

        signature = self._rpc.send_transaction(signed)
        if on_submitted is not None:
            on_submitted(signature)

        self._rpc.wait_for_confirmation(signature)
        self._logger.info(
            "swap_confirmed",
            signature=signature,
            in_amount=quote.in_amount,
            out_amount=quote.out_amount,
            latency_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return SwapResult(
            signature=signature,
            input_amount=quote.in_amount,
            output_amount=quote.out_amount,
            price_impact_pct=quote.price_impact_pct,
        )


def check_price_impact(quote: SwapQuote, max_price_impact_pct: float) -> None:
    """Reject quotes whose price impact exceeds the configured bound."""
    if quote.price_impact_pct > max_price_impact_pct:
        raise NoRouteError(
            f"price_impact_too_high: {quote.price_impact_pct:.4f} > {max_price_impact_pct}"
        )


def _error_detail(response: httpx.Response) -> tuple[str | None, str]:
    try:
        body: Any = response.json()
    except ValueError:
        return None, response.text[:200]
    if not isinstance(body, dict):
        return None, str(body)[:200]
    return body.get("errorCode"), str(body.get("error") or body)[:200]
