"""Strategy execution loop: evaluate every active strategy, execute at most once."""

from __future__ import annotations

import importlib
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from strategy_engine.config import Settings
from strategy_engine.data.market import MarketDataAdapter
from strategy_engine.exec.errors import SwapError
from strategy_engine.exec.jupiter import LiveSwapExecutor, Signer, SwapExecutor
from strategy_engine.exec.paper import PaperSwapExecutor
from strategy_engine.journal.store import JournalStore
from strategy_engine.risk.rate_limit import RateLimiter
from strategy_engine.risk.rules import RiskEngine, local_midnight
from strategy_engine.store.base import StoreError, StrategyStore
from strategy_engine.store.json_store import JsonStrategyStore
from strategy_engine.strategy.evaluator import (
    EvaluationError,
    EvaluationOutcome,
    Match,
    NoMatch,
    StrategyEvaluator,
)
from strategy_engine.strategy.models import (
    ConditionalConfig,
    SniperConfig,
    SpotConfig,
    Strategy,
    Trade,
    TradeStatus,
    utc_now,
)
from strategy_engine.types import PerStrategyResult, StrategyAction, TradeInstruction, TradeSummary
from strategy_engine.utils.logging import (
    get_logger,
    log_risk_event,
    log_swap_execution,
    log_trade_instruction,
)
from strategy_engine.utils.units import from_smallest_unit, to_smallest_unit

SignerProvider = Callable[[str], Signer | None]
ParsedConfig = SniperConfig | SpotConfig | ConditionalConfig

POLL_IN_PROGRESS = "Poll already in progress"


@dataclass(slots=True)
class PollResponse:
    """Outcome of one poll, shaped for the client that polls it."""

    executed: bool = False
    message: str = ""
    status: dict[str, Any] | None = None
    results: list[PerStrategyResult] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.error is not None:
            return {"error": self.error, "message": self.message}
        return {
            "executed": self.executed,
            "message": self.message,
            "status": self.status,
            "results": [result.to_dict() for result in self.results],
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class _Prepared:
    strategy: Strategy
    config: ParsedConfig | None = None
    result: PerStrategyResult | None = None
    future: Future[EvaluationOutcome] | None = None


class StrategyExecutionEngine:
    """Run one evaluation-and-maybe-execute pass over a user's active strategies.

    Evaluations are read-only and run concurrently on a worker pool. Everything
    that touches the store or the wallet runs sequentially in strategy order,
    under a per-user lock, so one process never submits two swaps for the
    same user at once.

    Across processes the store offers no locking. The worst case of two
    concurrent polls for the same user is one trade beyond the daily cap;
    the pending-trade guard covers the same strategy.
    """

    def __init__(
        self,
        settings: Settings,
        store: StrategyStore,
        market: MarketDataAdapter,
        swap_executor: SwapExecutor,
        *,
        evaluator: StrategyEvaluator | None = None,
        journal: JournalStore | None = None,
        risk: RiskEngine | None = None,
        rate_limiter: RateLimiter | None = None,
        signer_provider: SignerProvider | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._store = store
        self._market = market
        self._swap = swap_executor
        self._evaluator = evaluator or StrategyEvaluator(settings, market)
        self._journal = journal
        self._risk = risk or RiskEngine(settings)
        self._rate_limiter = rate_limiter or RateLimiter(settings.rate_limit_per_minute)
        self._signer_provider = signer_provider
        self._clock = clock
        self._monotonic = monotonic
        self._logger = get_logger("strategy_engine.engine")
        self._locks_guard = threading.Lock()
        self._user_locks: dict[str, threading.Lock] = {}

    # ==================== Public operations ====================

    def check_and_execute_strategies(self, user_id: str) -> list[PerStrategyResult]:
        """Evaluate and maybe execute every active strategy of the user.

        Returns [] when another poll for the same user holds the lock.
        Raises StoreError only when the active strategies cannot be listed.
        """
        lock = self._user_lock(user_id)
        if not lock.acquire(blocking=False):
            self._logger.info("poll_skipped_in_progress", user_id=user_id)
            return []
        try:
            return self._run_pass(user_id)
        finally:
            lock.release()

    def get_strategy_status(self, user_id: str) -> dict[str, Any]:
        """Active count plus today's confirmed trades, overall and per strategy."""
        strategies = self._store.list_strategies(user_id)
        since = local_midnight(self._clock())
        per_strategy: dict[str, int] = {}
        total = 0
        for trade in self._store.list_trades(user_id):
            if trade.created_at < since or trade.status != TradeStatus.CONFIRMED:
                continue
            total += 1
            if trade.strategy_id is not None:
                per_strategy[trade.strategy_id] = per_strategy.get(trade.strategy_id, 0) + 1
        return {
            "activeCount": sum(1 for s in strategies if s.is_active),
            "totalTradesToday": total,
            "strategies": [
                {
                    "id": s.id,
                    "name": s.name,
                    "isActive": s.is_active,
                    "type": s.type,
                    "tradesToday": per_strategy.get(s.id, 0),
                }
                for s in strategies
            ],
        }

    def poll_strategies(self, user_id: str) -> PollResponse:
        """Poll endpoint: status, one pass, refreshed status.

        Always returns a well-formed response; a store that cannot be read is
        the only case producing the error shape.
        """
        lock = self._user_lock(user_id)
        if not lock.acquire(blocking=False):
            return PollResponse(executed=False, message=POLL_IN_PROGRESS)
        try:
            status = self.get_strategy_status(user_id)
            if status["activeCount"] == 0:
                return PollResponse(executed=False, message="No active strategies", status=status)

            results = self._run_pass(user_id)
            executed = [r for r in results if r.action == StrategyAction.TRADE_EXECUTED]
            errors = [r for r in results if r.action == StrategyAction.ERROR]
            if executed:
                message = f"Executed {len(executed)} trade(s)"
            elif errors:
                message = f"{len(errors)} error(s) occurred"
            else:
                message = "No opportunities found"
            return PollResponse(
                executed=bool(executed),
                message=message,
                status=self.get_strategy_status(user_id),
                results=results,
            )
        except StoreError as exc:
            self._logger.error("poll_failed", user_id=user_id, error=str(exc))
            self._journal_event("error", {"user_id": user_id, "error": str(exc)})
            return PollResponse(error="Failed to execute strategies", message=str(exc))
        finally:
            lock.release()

    # ==================== Pass ====================

    def _run_pass(self, user_id: str) -> list[PerStrategyResult]:
        started = self._monotonic()
        deadline = started + self._settings.batch_time_budget
        strategies = self._store.list_active_strategies(user_id)
        self._journal_event(
            "poll_start",
            {"user_id": user_id, "mode": self._settings.mode.value, "strategies": len(strategies)},
        )
        if not strategies:
            self._journal_event("poll_end", {"user_id": user_id, "results": 0})
            return []

        blocked = self._gate(user_id, strategies)
        if blocked is not None:
            self._finish(user_id, blocked, started)
            return blocked

        signer: Signer | None = None
        if self._settings.is_live_mode:
            signer = self._signer_provider(user_id) if self._signer_provider else None
            if signer is None:
                self._logger.warning("wallet_not_found", user_id=user_id)
                results = [_result(s, StrategyAction.ERROR, "wallet_not_found") for s in strategies]
                self._finish(user_id, results, started)
                return results

        now = self._clock()
        workers = min(self._settings.evaluation_workers, len(strategies))
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="strategy-eval")
        results: list[PerStrategyResult] = []
        try:
            prepared = [self._prepare(strategy, now, pool) for strategy in strategies]
            for item in prepared:
                result = item.result
                if result is None:
                    result = self._resolve(user_id, item, deadline, signer)
                self._record(user_id, result)
                results.append(result)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        self._finish(user_id, results, started)
        return results

    def _gate(self, user_id: str, strategies: list[Strategy]) -> list[PerStrategyResult] | None:
        decision = self._rate_limiter.hit(user_id)
        if decision.allowed:
            return None
        log_risk_event(
            self._logger,
            event_type="rate_limited",
            action="skip_poll",
            user_id=user_id,
            limit=decision.limit,
            reset_in=round(decision.reset_in, 2),
        )
        self._journal_event("risk_block", {"user_id": user_id, "reason": "rate_limited"})
        detail = f"rate_limited: retry in {decision.reset_in:.0f}s"
        return [_result(s, StrategyAction.ERROR, detail) for s in strategies]

    def _prepare(self, strategy: Strategy, now: datetime, pool: ThreadPoolExecutor) -> _Prepared:
        """Validate config and cooldown, then submit the read-only evaluation."""
        item = _Prepared(strategy=strategy)
        try:
            item.config = strategy.parsed_config()
        except ValidationError as exc:
            item.result = _result(
                strategy,
                StrategyAction.ERROR,
                f"invalid_config: {exc.error_count()} error(s): {_first_error(exc)}",
            )
            return item
        try:
            cooldown = self._risk.check_cooldown(self._store.last_trade_at(strategy.id), now)
        except StoreError as exc:
            item.result = _result(strategy, StrategyAction.ERROR, f"store_error: {exc}")
            return item
        if not cooldown.allowed:
            item.result = _result(strategy, StrategyAction.NO_OPPORTUNITY, "cooldown")
            return item
        item.future = pool.submit(self._evaluator.evaluate, item.config)
        return item

    def _resolve(
        self,
        user_id: str,
        item: _Prepared,
        deadline: float,
        signer: Signer | None,
    ) -> PerStrategyResult:
        strategy = item.strategy
        if item.future is None or item.config is None:
            return _result(strategy, StrategyAction.ERROR, "not_evaluated")
        remaining = deadline - self._monotonic()
        if remaining <= 0:
            item.future.cancel()
            return _result(strategy, StrategyAction.ERROR, "batch_time_budget_exhausted")
        try:
            outcome = item.future.result(timeout=min(self._settings.strategy_time_budget, remaining))
        except FutureTimeoutError:
            item.future.cancel()
            return _result(strategy, StrategyAction.ERROR, "evaluation_timeout")
        except Exception as exc:  # noqa: BLE001 - one strategy must not abort the batch.
            self._logger.exception("evaluation_crashed", strategy_id=strategy.id)
            return _result(strategy, StrategyAction.ERROR, f"evaluation_failed: {exc}")

        self._journal_event(
            "evaluation",
            {
                "user_id": user_id,
                "strategy_id": strategy.id,
                "type": strategy.type,
                "outcome": type(outcome).__name__,
            },
        )
        try:
            return self._act(user_id, strategy, item.config, outcome, signer)
        except StoreError as exc:
            self._logger.error("store_error", strategy_id=strategy.id, error=str(exc))
            return _result(strategy, StrategyAction.ERROR, f"store_error: {exc}")
        except Exception as exc:  # noqa: BLE001 - one strategy must not abort the batch.
            self._logger.exception("strategy_crashed", strategy_id=strategy.id)
            return _result(strategy, StrategyAction.ERROR, f"unexpected_error: {exc}")

    def _act(
        self,
        user_id: str,
        strategy: Strategy,
        config: ParsedConfig,
        outcome: EvaluationOutcome,
        signer: Signer | None,
    ) -> PerStrategyResult:
        if isinstance(outcome, NoMatch):
            return _result(strategy, StrategyAction.NO_OPPORTUNITY, outcome.reason)
        if isinstance(outcome, EvaluationError):
            return _result(strategy, StrategyAction.ERROR, outcome.detail)
        if not isinstance(outcome, Match):
            return _result(
                strategy,
                StrategyAction.ERROR,
                f"unexpected_outcome: {type(outcome).__name__}",
            )

        now = self._clock()
        instructions = outcome.instructions
        if isinstance(config, SniperConfig):
            window = timedelta(hours=self._settings.rebuy_window_hours)
            bought = self._store.bought_tokens_since(user_id, now - window)
            instructions = [i for i in instructions if i.target_token not in bought]
            if not instructions:
                return _result(
                    strategy,
                    StrategyAction.ALREADY_BOUGHT,
                    f"all {len(outcome.instructions)} matched token(s) already bought",
                )
        if not instructions:
            return _result(strategy, StrategyAction.NO_OPPORTUNITY, "no_instructions")
        instruction = instructions[0]

        slippage = self._risk.check_slippage(instruction.slippage_bps)
        if not slippage.allowed:
            return self._blocked(user_id, strategy, ", ".join(slippage.reasons))

        # older PENDING rows outlived any swap and are left for reconciliation
        settle_window = self._settings.swap_timeout + self._settings.confirmation_timeout
        cutoff = now - timedelta(seconds=settle_window)
        if self._store.has_pending_trade(strategy.id, since=cutoff):
            return self._blocked(user_id, strategy, "trade_pending")
        if self._store.has_pending_trade(strategy.id):
            self._logger.warning("stale_pending", user_id=user_id, strategy_id=strategy.id)
            self._journal_event(
                "stale_pending",
                {"user_id": user_id, "strategy_id": strategy.id, "older_than_s": settle_window},
            )

        trades_today = self._store.count_trades_since(
            user_id, local_midnight(now), TradeStatus.FAILED
        )
        cap = self._risk.check_daily_cap(trades_today)
        if not cap.allowed:
            return self._blocked(
                user_id,
                strategy,
                f"daily limit reached ({trades_today}/{self._settings.daily_trade_cap})",
            )

        return self._execute(user_id, strategy, instruction, signer)

    def _execute(
        self,
        user_id: str,
        strategy: Strategy,
        instruction: TradeInstruction,
        signer: Signer | None,
    ) -> PerStrategyResult:
        amount = to_smallest_unit(instruction.amount, instruction.input_decimals)
        if amount <= 0:
            return _result(strategy, StrategyAction.ERROR, "amount_too_small")

        trade = self._store.create_trade(
            Trade(
                user_id=user_id,
                strategy_id=strategy.id,
                type="SNIPER" if strategy.type == "SNIPER" else "SPOT",
                direction=instruction.direction,
                input_token=instruction.input_token,
                output_token=instruction.output_token,
                input_amount=instruction.amount,
                price_usd=instruction.price_usd,
            )
        )
        # from here on the trade must end CONFIRMED or FAILED
        submitted: list[str] = []
        finalized = False
        try:
            log_trade_instruction(
                self._logger,
                strategy_id=strategy.id,
                direction=instruction.direction,
                input_token=instruction.input_token,
                output_token=instruction.output_token,
                amount=instruction.amount,
                trade_id=trade.id,
                slippage_bps=instruction.slippage_bps,
                reason=instruction.reason,
            )
            self._journal_event(
                "trade_created",
                {"user_id": user_id, "strategy_id": strategy.id, "trade": asdict(instruction), "trade_id": trade.id},
            )

            def on_submitted(signature: str) -> None:
                # signature is persisted before confirmation is awaited
                submitted.append(signature)
                try:
                    self._store.update_trade(trade.id, signature=signature)
                except StoreError as exc:
                    self._logger.error("signature_persist_failed", trade_id=trade.id, signature=signature, error=str(exc))

            started = time.perf_counter()
            try:
                swap = self._swap.execute_swap(
                    signer,
                    instruction.input_token,
                    instruction.output_token,
                    amount,
                    instruction.slippage_bps,
                    on_submitted=on_submitted,
                )
            except SwapError as exc:
                result = self._fail(user_id, strategy, trade, instruction, f"{exc.code}: {exc}", exc.signature, started)
                finalized = True
                return result
            except Exception as exc:  # noqa: BLE001 - trade must still end FAILED.
                self._logger.exception("swap_crashed", trade_id=trade.id)
                signature = submitted[-1] if submitted else None
                result = self._fail(user_id, strategy, trade, instruction, f"swap_failed: {exc}", signature, started)
                finalized = True
                return result

            output_amount = float(from_smallest_unit(swap.output_amount, instruction.output_decimals))
            input_amount = float(from_smallest_unit(swap.input_amount, instruction.input_decimals))
            submitted.append(swap.signature)
            confirmed = self._store.update_trade(
                trade.id,
                status=TradeStatus.CONFIRMED,
                signature=swap.signature,
                input_amount=input_amount,
                output_amount=output_amount,
                price_impact_pct=swap.price_impact_pct,
            )
            finalized = True
        except BaseException as exc:
            if not finalized:
                self._settle_unfinished(user_id, trade, submitted[-1] if submitted else None, exc)
            raise

        latency_ms = (time.perf_counter() - started) * 1000
        log_swap_execution(
            self._logger,
            trade_id=trade.id,
            status=TradeStatus.CONFIRMED.value,
            signature=swap.signature,
            latency_ms=latency_ms,
            output_amount=output_amount,
        )
        self._journal_event(
            "swap_result",
            {
                "user_id": user_id,
                "trade_id": trade.id,
                "status": TradeStatus.CONFIRMED.value,
                "signature": swap.signature,
                "output_amount": output_amount,
                "price_impact_pct": swap.price_impact_pct,
            },
        )

        if self._is_one_shot(strategy):
            try:
                self._store.set_active(strategy.id, False)
            except StoreError as exc:
                self._logger.error("strategy_deactivate_failed", strategy_id=strategy.id, error=str(exc))
            else:
                self._logger.info("strategy_deactivated", strategy_id=strategy.id, type=strategy.type)

        return _result(
            strategy,
            StrategyAction.TRADE_EXECUTED,
            instruction.reason or "trade executed",
            trade=TradeSummary(
                trade_id=confirmed.id,
                signature=confirmed.signature,
                token_address=instruction.target_token,
                token_symbol=instruction.token_symbol,
                input_amount=input_amount,
                output_amount=output_amount,
                status=confirmed.status.value,
            ),
        )

    def _settle_unfinished(
        self,
        user_id: str,
        trade: Trade,
        signature: str | None,
        exc: BaseException,
    ) -> None:
        """Best-effort FAILED for a trade whose terminal update never landed."""
        patch: dict[str, Any] = {"status": TradeStatus.FAILED, "error": f"unsettled: {exc}"}
        if signature:
            patch["signature"] = signature
        try:
            self._store.update_trade(trade.id, **patch)
        except StoreError as store_exc:
            self._logger.error(
                "trade_left_pending",
                trade_id=trade.id,
                signature=signature,
                error=str(exc),
                store_error=str(store_exc),
            )
            return
        self._logger.error("trade_settled_failed", trade_id=trade.id, signature=signature, error=str(exc))
        self._journal_event(
            "swap_result",
            {
                "user_id": user_id,
                "trade_id": trade.id,
                "status": TradeStatus.FAILED.value,
                "signature": signature,
                "error": patch["error"],
            },
        )

    def _fail(
        self,
        user_id: str,
        strategy: Strategy,
        trade: Trade,
        instruction: TradeInstruction,
        detail: str,
        signature: str | None,
        started: float,
    ) -> PerStrategyResult:
        patch: dict[str, Any] = {"status": TradeStatus.FAILED, "error": detail}
        if signature:
            patch["signature"] = signature
        failed = self._store.update_trade(trade.id, **patch)
        log_swap_execution(
            self._logger,
            trade_id=trade.id,
            status=TradeStatus.FAILED.value,
            signature=failed.signature,
            latency_ms=(time.perf_counter() - started) * 1000,
            error=detail,
        )
        self._journal_event(
            "swap_result",
            {
                "user_id": user_id,
                "trade_id": trade.id,
                "status": TradeStatus.FAILED.value,
                "signature": failed.signature,
                "error": detail,
            },
        )
        return _result(
            strategy,
            StrategyAction.ERROR,
            detail,
            trade=TradeSummary(
                trade_id=failed.id,
                signature=failed.signature,
                token_address=instruction.target_token,
                token_symbol=instruction.token_symbol,
                input_amount=instruction.amount,
                output_amount=None,
                status=failed.status.value,
            ),
        )

    def _blocked(self, user_id: str, strategy: Strategy, reason: str) -> PerStrategyResult:
        log_risk_event(
            self._logger,
            event_type=reason.split(" (")[0],
            action="skip_trade",
            user_id=user_id,
            strategy_id=strategy.id,
            reason=reason,
        )
        self._journal_event(
            "risk_block",
            {"user_id": user_id, "strategy_id": strategy.id, "reason": reason},
        )
        return _result(strategy, StrategyAction.ERROR, reason)

    def _is_one_shot(self, strategy: Strategy) -> bool:
        if strategy.type == "SPOT":
            return self._settings.spot_one_shot
        if strategy.type == "CONDITIONAL":
            return self._settings.conditional_one_shot
        return False

    # ==================== Helpers ====================

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._user_locks[user_id] = lock
            return lock

    def _record(self, user_id: str, result: PerStrategyResult) -> None:
        level = "warning" if result.action == StrategyAction.ERROR else "info"
        getattr(self._logger, level)(
            "strategy_result",
            user_id=user_id,
            strategy_id=result.strategy_id,
            action=result.action.value,
            detail=result.detail,
        )

    def _finish(self, user_id: str, results: list[PerStrategyResult], started: float) -> None:
        counts: dict[str, int] = {}
        for result in results:
            counts[result.action.value] = counts.get(result.action.value, 0) + 1
        elapsed_ms = round((self._monotonic() - started) * 1000, 2)
        self._logger.info("poll_complete", user_id=user_id, elapsed_ms=elapsed_ms, **counts)
        self._journal_event(
            "poll_end",
            {"user_id": user_id, "results": len(results), "actions": counts, "elapsed_ms": elapsed_ms},
        )

    def _journal_event(self, event_type: str, payload: dict[str, Any]) -> None:
        if self._journal is None:
            return
        try:
            self._journal.append(event_type, payload)
        except OSError as exc:
            self._logger.warning("journal_write_failed", event_type=event_type, error=str(exc))


def load_signer_provider(path: str) -> SignerProvider:
    """Resolve a 'module:callable' path to a signer provider."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"invalid_signer_provider: {path!r} (expected 'module:callable')")
    provider = getattr(importlib.import_module(module_name), attr, None)
    if not callable(provider):
        raise ValueError(f"invalid_signer_provider: {path!r} is not callable")
    return provider


def build_engine(
    settings: Settings,
    *,
    signer_provider: SignerProvider | None = None,
) -> StrategyExecutionEngine:
    """Wire the engine from settings: JSON store, journal, and paper or live swaps.

    Without an explicit `signer_provider`, live mode loads the one named by
    `settings.signer_provider`.
    """
    settings.ensure_directories()
    if signer_provider is None and settings.signer_provider:
        signer_provider = load_signer_provider(settings.signer_provider)
    market = MarketDataAdapter(settings)
    swap_executor: SwapExecutor
    if settings.is_live_mode:
        swap_executor = LiveSwapExecutor(settings)
    else:
        swap_executor = PaperSwapExecutor(settings)
    return StrategyExecutionEngine(
        settings,
        JsonStrategyStore(settings.data_dir),
        market,
        swap_executor,
        journal=JournalStore(settings.journal_dir),
        signer_provider=signer_provider,
    )


def _result(
    strategy: Strategy,
    action: StrategyAction,
    detail: str,
    *,
    trade: TradeSummary | None = None,
) -> PerStrategyResult:
    return PerStrategyResult(
        strategy_id=strategy.id,
        strategy_name=strategy.name,
        action=action,
        detail=detail,
        trade=trade,
    )


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', '')}" if location else str(first.get("msg", ""))
