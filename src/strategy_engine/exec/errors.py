"""Swap execution errors."""

from __future__ import annotations


class SwapError(Exception):
    """Base swap failure."""

    code = "swap_error"

    def __init__(self, message: str, *, signature: str | None = None) -> None:
        super().__init__(message)
        self.signature = signature


class NoRouteError(SwapError):
    """No route, insufficient liquidity, or a quote outside risk bounds."""

    code = "no_route"


class SubmissionError(SwapError):
    """Building, signing, sending or landing the transaction failed."""

    code = "submission_failed"


class ConfirmationTimeoutError(SubmissionError):
    """Transaction was sent but not confirmed in time; it may still land."""

    code = "confirmation_timeout"

    def __init__(self, signature: str) -> None:
        super().__init__(f"confirmation_timeout: {signature}", signature=signature)
