PAYMENT_STATUS_PENDING = "pending"
PAYMENT_STATUS_PAID = "paid"
PAYMENT_STATUS_FAILED = "failed"
PAYMENT_STATUS_CANCELLED = "cancelled"
PAYMENT_STATUS_REFUNDED = "refunded"

PAYMENT_STATUSES = {
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_CANCELLED,
    PAYMENT_STATUS_REFUNDED,
}

# Anything not listed is a backward move and is ignored.
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PAYMENT_STATUS_PENDING: {
        PAYMENT_STATUS_PAID,
        PAYMENT_STATUS_FAILED,
        PAYMENT_STATUS_CANCELLED,
    },
    PAYMENT_STATUS_PAID: {PAYMENT_STATUS_REFUNDED},
    # A declined attempt can still be paid by a retry on the same intent.
    PAYMENT_STATUS_FAILED: {PAYMENT_STATUS_PAID, PAYMENT_STATUS_CANCELLED},
    PAYMENT_STATUS_CANCELLED: set(),
    PAYMENT_STATUS_REFUNDED: set(),
}

CATEGORY_DEPOSIT = "deposit"
CATEGORY_BALANCE = "balance"
CATEGORY_FULL = "full"
CATEGORY_MONTHLY = "monthly"
CATEGORY_REFUND = "refund"

CHARGE_CATEGORIES = {CATEGORY_DEPOSIT, CATEGORY_BALANCE, CATEGORY_FULL, CATEGORY_MONTHLY}
ORDER_CATEGORIES = {CATEGORY_DEPOSIT, CATEGORY_BALANCE, CATEGORY_FULL}

METHOD_CARD = "card"
METHOD_BANK_DEBIT = "bank_debit"
METHOD_BANK_TRANSFER = "bank_transfer"
METHOD_CASH = "cash"

PAYMENT_METHODS = {METHOD_CARD, METHOD_BANK_DEBIT, METHOD_BANK_TRANSFER, METHOD_CASH}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())
