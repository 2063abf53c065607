from types import SimpleNamespace

import pytest

from app.domain.errors import ValidationError
from app.domain.payments import amounts, statuses


def _order(deposit: int = 500, balance: int = 1000) -> SimpleNamespace:
    return SimpleNamespace(deposit_pence=deposit, balance_pence=balance)


def _row(
    payment_id: str,
    amount: int,
    category: str,
    status: str = statuses.PAYMENT_STATUS_PAID,
    refund_of_id: str | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        payment_id=payment_id,
        amount_pence=amount,
        category=category,
        status=status,
        refund_of_id=refund_of_id,
    )


def test_nothing_paid_owes_everything():
    summary = amounts.breakdown(_order(), [])
    assert summary.owed("deposit") == 500
    assert summary.owed("balance") == 1000
    assert summary.owed("full") == 1500
    assert summary.deposit_settled is False
    assert summary.balance_settled is False


def test_deposit_payment_settles_deposit_only():
    rows = [_row("p1", 500, statuses.CATEGORY_DEPOSIT)]
    summary = amounts.breakdown(_order(), rows)
    assert summary.deposit_owed == 0
    assert summary.balance_owed == 1000
    assert summary.full_owed == 1000
    assert summary.deposit_settled is True
    assert summary.balance_settled is False


def test_full_payment_fills_deposit_before_balance():
    rows = [_row("p1", 700, statuses.CATEGORY_FULL)]
    summary = amounts.breakdown(_order(), rows)
    assert summary.deposit_owed == 0
    assert summary.balance_owed == 800
    assert summary.full_owed == 800


def test_partial_refund_reopens_the_amount():
    rows = [
        _row("p1", 500, statuses.CATEGORY_DEPOSIT),
        _row("r1", -200, statuses.CATEGORY_REFUND, statuses.PAYMENT_STATUS_REFUNDED, refund_of_id="p1"),
    ]
    assert amounts.amount_owed(_order(), "deposit", rows) == 200


def test_refunded_pending_and_failed_charges_do_not_count():
    rows = [
        _row("p1", 500, statuses.CATEGORY_DEPOSIT, statuses.PAYMENT_STATUS_REFUNDED),
        _row("r1", -500, statuses.CATEGORY_REFUND, statuses.PAYMENT_STATUS_REFUNDED, refund_of_id="p1"),
        _row("p2", 1000, statuses.CATEGORY_BALANCE, statuses.PAYMENT_STATUS_PENDING),
        _row("p3", 1000, statuses.CATEGORY_BALANCE, statuses.PAYMENT_STATUS_FAILED),
    ]
    assert amounts.amount_owed(_order(), "full", rows) == 1500


def test_monthly_charges_never_reduce_an_order():
    rows = [_row("m1", 4500, statuses.CATEGORY_MONTHLY)]
    assert amounts.amount_owed(_order(), "full", rows) == 1500


def test_overpayment_never_goes_negative():
    rows = [_row("p1", 9000, statuses.CATEGORY_BALANCE)]
    summary = amounts.breakdown(_order(), rows)
    assert summary.balance_owed == 0
    assert summary.full_owed == 0
    assert summary.deposit_owed == 500


def test_zero_deposit_is_never_reported_settled():
    rows = [_row("p1", 1000, statuses.CATEGORY_FULL)]
    summary = amounts.breakdown(_order(deposit=0, balance=1000), rows)
    assert summary.deposit_settled is False
    assert summary.balance_settled is True


def test_unknown_category_is_rejected():
    with pytest.raises(ValidationError):
        amounts.amount_owed(_order(), "monthly", [])
