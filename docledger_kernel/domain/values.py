"""Small domain value types shared by models and engines."""

from enum import Enum


class PaymentStatus(str, Enum):
    """Derived from paid_amount and net_payable; never set directly."""

    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
