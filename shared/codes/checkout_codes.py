"""
Checkout specific codes and store status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class CheckoutCode(IntEnum):
    # Order lifecycle (21xxx)
    ORDER_NOT_FOUND = 21000
    RETRY_CONTEXT_LOST = 21001
    ATTEMPT_IN_FLIGHT = 21002

    # Settlement (22xxx)
    INSUFFICIENT_FUNDS = 22000
    SETTLEMENT_REJECTED = 22001

    # Confirmation / side channels (23xxx)
    CONFIRMATION_TIMEOUT = 23000
    NOTIFICATION_FAILED = 23001


# Store-side verification flags -> internal verification status
STORE_VERIFICATION_TO_INTERNAL = {
    "YES": "confirmed",
    "NO": "pending",
    "PENDING": "pending",
    "REJECTED": "failed",
    "FAILED": "failed",
}

# Wallet transaction status -> internal verification status
STORE_TRANSACTION_TO_INTERNAL = {
    "pending": "pending",
    "processing": "pending",
    "completed": "confirmed",
    "failed": "failed",
    "cancelled": "failed",
}

# Error markers returned by the store's process_payment procedure
INSUFFICIENT_FUNDS_MARKERS = (
    "insufficient_funds",
    "insufficient wallet balance",
    "insufficient balance",
)

# Store order status -> internal order status; paid orders move on to
# processing/shipped/delivered in the store. Unknown values read as pending.
STORE_ORDER_STATUS_TO_INTERNAL = {
    "pending": "pending",
    "payment_processing": "payment_processing",
    "processing": "completed",
    "shipped": "completed",
    "delivered": "completed",
    "completed": "completed",
    "cancelled": "failed",
    "failed": "failed",
}
