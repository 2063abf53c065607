"""How much is still owed on an order.

Everything here is pure: callers pass the order and its ledger rows and get
pence back. The same figures drive checkout amounts and the order's
``deposit_paid`` / ``balance_paid`` flags.

Credit rules:

* only charge rows count; a charge contributes its amount plus the (negative)
  refund rows recorded against it while it is ``paid``, and nothing once it
  has been flipped to ``refunded``;
* ``full`` charges settle the deposit first and spill the remainder onto the
  balance;
* ``monthly`` charges belong to the customer, not the order, and never count.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Protocol

from app.domain.errors import ValidationError
from app.domain.payments import statuses


class OrderAmounts(Protocol):
    deposit_pence: int
    balance_pence: int


class LedgerRow(Protocol):
    payment_id: str
    amount_pence: int
    category: str
    status: str
    refund_of_id: str | None


@dataclass(frozen=True)
class OrderBreakdown:
    deposit_pence: int
    balance_pence: int
    deposit_credit: int
    balance_credit: int
    full_credit: int

    @property
    def total_credit(self) -> int:
        return self.deposit_credit + self.balance_credit + self.full_credit

    @property
    def _full_to_deposit(self) -> int:
        return min(self.full_credit, max(self.deposit_pence - self.deposit_credit, 0))

    @property
    def deposit_owed(self) -> int:
        return max(self.deposit_pence - self.deposit_credit - self._full_to_deposit, 0)

    @property
    def balance_owed(self) -> int:
        full_to_balance = self.full_credit - self._full_to_deposit
        return max(self.balance_pence - self.balance_credit - full_to_balance, 0)

    @property
    def full_owed(self) -> int:
        return max(self.deposit_pence + self.balance_pence - self.total_credit, 0)

    @property
    def deposit_settled(self) -> bool:
        return self.deposit_pence > 0 and self.deposit_owed == 0

    @property
    def balance_settled(self) -> bool:
        return self.balance_pence > 0 and self.balance_owed == 0

    def owed(self, category: str) -> int:
        if category == statuses.CATEGORY_DEPOSIT:
            return self.deposit_owed
        if category == statuses.CATEGORY_BALANCE:
            return self.balance_owed
        if category == statuses.CATEGORY_FULL:
            return self.full_owed
        raise ValidationError(
            detail=f"Unsupported payment category: {category}",
            errors=[{"field": "category", "message": "must be deposit, balance or full"}],
        )


def net_charge_amounts(payments: Iterable[LedgerRow]) -> dict[str, int]:
    """Net settled amount per charge row, keyed by payment id."""
    rows = list(payments)
    refunds: dict[str, int] = defaultdict(int)
    for row in rows:
        if row.category == statuses.CATEGORY_REFUND and row.refund_of_id:
            refunds[row.refund_of_id] += int(row.amount_pence)

    net: dict[str, int] = {}
    for row in rows:
        if row.category == statuses.CATEGORY_REFUND or row.status != statuses.PAYMENT_STATUS_PAID:
            continue
        net[row.payment_id] = max(int(row.amount_pence) + refunds.get(row.payment_id, 0), 0)
    return net


def breakdown(order: OrderAmounts, payments: Iterable[LedgerRow]) -> OrderBreakdown:
    rows = list(payments)
    net = net_charge_amounts(rows)
    credit: dict[str, int] = defaultdict(int)
    for row in rows:
        if row.payment_id in net and row.category in statuses.ORDER_CATEGORIES:
            credit[row.category] += net[row.payment_id]
    return OrderBreakdown(
        deposit_pence=int(order.deposit_pence or 0),
        balance_pence=int(order.balance_pence or 0),
        deposit_credit=credit[statuses.CATEGORY_DEPOSIT],
        balance_credit=credit[statuses.CATEGORY_BALANCE],
        full_credit=credit[statuses.CATEGORY_FULL],
    )


def amount_owed(order: OrderAmounts, category: str, payments: Iterable[LedgerRow]) -> int:
    """Pence still owed for ``category``; never negative."""
    return breakdown(order, payments).owed(category)
