"""Minimal Solana JSON-RPC client for sending and confirming transactions."""

from __future__ import annotations

import itertools
import time
from collections.abc import Callable
from typing import Any

import httpx

from strategy_engine.config import Settings
from strategy_engine.exec.errors import ConfirmationTimeoutError, SubmissionError
from strategy_engine.utils.logging import get_logger

_CONFIRMED_STATES = {"confirmed", "finalized"}


class SolanaRpcClient:
    """sendTransaction + getSignatureStatuses over HTTP."""

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._logger = get_logger("strategy_engine.exec.solana_rpc")
        self._http = http_client or httpx.Client(timeout=settings.swap_timeout)
        self._ids = itertools.count(1)
        self._sleep = sleep
        self._clock = clock

    def send_transaction(self, signed_transaction_b64: str) -> str:
        """Submit a signed transaction and return its signature."""
        result = self._call(
            "sendTransaction",
            [
                signed_transaction_b64,
                {
                    "encoding": "base64",
                    "skipPreflight": False,
                    "preflightCommitment": "confirmed",
                    "maxRetries": 3,
                },
            ],
        )
        if not isinstance(result, str) or not result:
            raise SubmissionError("send_transaction_no_signature")
        return result

    def get_signature_status(self, signature: str) -> dict[str, Any] | None:
        result = self._call("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
        values = result.get("value") if isinstance(result, dict) else None
        if not values:
            return None
        status = values[0]
        return status if isinstance(status, dict) else None

    def wait_for_confirmation(self, signature: str) -> None:
        """Block until the signature is confirmed.

        Raises SubmissionError if the transaction failed on-chain and
        ConfirmationTimeoutError if no verdict arrives within the timeout.
        """
        deadline = self._clock() + self._settings.confirmation_timeout
        while True:
            try:
                status = self.get_signature_status(signature)
            except SubmissionError as exc:
                # status read failures are retried until the deadline
                self._logger.warning("signature_status_failed", signature=signature, error=str(exc))
                status = None

            if status is not None:
                if status.get("err") is not None:
                    raise SubmissionError(
                        f"transaction_failed: {status['err']}",
                        signature=signature,
                    )
                if status.get("confirmationStatus") in _CONFIRMED_STATES:
                    return

            if self._clock() >= deadline:
                raise ConfirmationTimeoutError(signature)
            self._sleep(self._settings.confirmation_poll_interval)

    def close(self) -> None:
        self._http.close()

    def _call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self._http.post(self._settings.rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise SubmissionError(f"rpc_request_failed: {method}: {exc}") from exc

        if not isinstance(body, dict):
            raise SubmissionError(f"rpc_unexpected_payload: {method}")
        if body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise SubmissionError(f"rpc_error: {method}: {message}")
        return body.get("result")
