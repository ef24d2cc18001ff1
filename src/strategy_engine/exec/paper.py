"""Paper swap executor: live quotes, simulated fills, nothing submitted."""

from __future__ import annotations

import math
import uuid
from collections.abc import Callable

from strategy_engine.config import Settings
from strategy_engine.exec.jupiter import JupiterClient, Signer, check_price_impact
from strategy_engine.types import SwapQuote, SwapResult
from strategy_engine.utils.logging import get_logger


class PaperSwapExecutor:
    """Simulated execution with a fixed extra slippage on the quoted output."""

    def __init__(
        self,
        settings: Settings,
        *,
        jupiter: JupiterClient | None = None,
        slippage_bps: float = 2.0,
    ) -> None:
        self._settings = settings
        self._jupiter = jupiter or JupiterClient(settings)
        self._slippage_bps = slippage_bps
        self._logger = get_logger("strategy_engine.exec.paper")

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
        quote = self.get_swap_quote(input_mint, output_mint, amount, slippage_bps)
        check_price_impact(quote, self._settings.max_price_impact_pct)

        signature = f"paper-{uuid.uuid4().hex}"
        if on_submitted is not None:
            on_submitted(signature)

        filled = math.floor(quote.out_amount * (1.0 - self._slippage_bps / 10_000.0))
        self._logger.info(
            "paper_fill",
            signature=signature,
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=quote.in_amount,
            out_amount=filled,
        )
        return SwapResult(
            signature=signature,
            input_amount=quote.in_amount,
            output_amount=filled,
            price_impact_pct=quote.price_impact_pct,
        )
