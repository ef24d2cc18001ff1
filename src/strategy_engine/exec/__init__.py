"""Swap execution package exports."""

from strategy_engine.exec.errors import (
    ConfirmationTimeoutError,
    NoRouteError,
    SubmissionError,
    SwapError,
)
from strategy_engine.exec.jupiter import JupiterClient, LiveSwapExecutor, Signer, SwapExecutor
from strategy_engine.exec.paper import PaperSwapExecutor

__all__ = [
    "ConfirmationTimeoutError",
    "JupiterClient",
    "LiveSwapExecutor",
    "NoRouteError",
    "PaperSwapExecutor",
    "Signer",
    "SubmissionError",
    "SwapError",
    "SwapExecutor",
]
