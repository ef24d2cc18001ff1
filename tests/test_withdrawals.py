from __future__ import annotations

from pathlib import Path

import pytest

from strategy_engine.config import Settings
from strategy_engine.store.json_store import JsonStrategyStore
from strategy_engine.strategy.models import TradeStatus
from strategy_engine.wallet.withdrawals import (
    RENT_EXEMPT_MINIMUM_SOL,
    WithdrawalError,
    WithdrawalService,
)

_DESTINATION = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


class _FakeTransfer:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, int]] = []

    def transfer_sol(self, destination: str, lamports: int) -> str:
        if self.fail:
            raise RuntimeError("blockhash expired")
        self.sent.append((destination, lamports))
        return f"sig-{len(self.sent)}"


def _service(tmp_path: Path, transfer: _FakeTransfer, **overrides: object) -> tuple[WithdrawalService, JsonStrategyStore]:
    settings = Settings(data_dir=tmp_path / "store", journal_dir=tmp_path / "journal", **overrides)
    store = JsonStrategyStore(settings.data_dir)
    return WithdrawalService(settings, store, transfer), store


def test_withdrawal_confirmed(tmp_path: Path) -> None:
    transfer = _FakeTransfer()
    service, store = _service(tmp_path, transfer)

    withdrawal = service.request_withdrawal("u1", 0.5, _DESTINATION, balance=1.0)

    assert withdrawal.status == TradeStatus.CONFIRMED
    assert withdrawal.signature == "sig-1"
    assert withdrawal.confirmed_at is not None
    assert transfer.sent == [(_DESTINATION, 500_000_000)]
    assert store.list_withdrawals("u1")[0].id == withdrawal.id


@pytest.mark.parametrize(
    ("amount", "destination", "balance", "code"),
    [
        (0.5, "not-an-address", 1.0, "invalid_destination"),
        (0.001, _DESTINATION, 1.0, "below_minimum"),
        (1.0, _DESTINATION, 1.0, "insufficient_balance"),
    ],
)
def test_withdrawal_rejected_before_transfer(
    tmp_path: Path,
    amount: float,
    destination: str,
    balance: float,
    code: str,
) -> None:
    transfer = _FakeTransfer()
    service, store = _service(tmp_path, transfer)

    with pytest.raises(WithdrawalError) as exc_info:
        service.request_withdrawal("u1", amount, destination, balance)

    assert exc_info.value.code == code
    assert transfer.sent == []
    assert store.list_withdrawals("u1") == []


def test_withdrawal_daily_limit(tmp_path: Path) -> None:
    service, _ = _service(tmp_path, _FakeTransfer(), max_daily_withdrawals=2)
    service.request_withdrawal("u1", 0.1, _DESTINATION, balance=5.0)
    service.request_withdrawal("u1", 0.1, _DESTINATION, balance=5.0)

    with pytest.raises(WithdrawalError) as exc_info:
        service.request_withdrawal("u1", 0.1, _DESTINATION, balance=5.0)
    assert exc_info.value.code == "daily_limit"


def test_failed_transfer_recorded_and_not_counted(tmp_path: Path) -> None:
    service, store = _service(tmp_path, _FakeTransfer(fail=True), max_daily_withdrawals=1)

    with pytest.raises(WithdrawalError) as exc_info:
        service.request_withdrawal("u1", 0.1, _DESTINATION, balance=5.0)

    assert exc_info.value.code == "transfer_failed"
    [record] = store.list_withdrawals("u1")
    assert record.status == TradeStatus.FAILED
    assert record.error == "blockhash expired"
    assert service.withdrawal_info("u1", balance=5.0)["withdrawalsToday"] == 0


def test_withdrawal_info_reserves_fees_and_rent(tmp_path: Path) -> None:
    service, _ = _service(tmp_path, _FakeTransfer())
    info = service.withdrawal_info("u1", balance=1.0)

    expected = 1.0 - service.total_fee - RENT_EXEMPT_MINIMUM_SOL
    assert info["maxWithdrawable"] == round(expected, 4)
    assert info["canWithdraw"] is True
    assert service.withdrawal_info("u1", balance=0.005)["canWithdraw"] is False
