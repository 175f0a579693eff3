"""
UPI payment reference builder.

``upi://pay?pa=<vpa>&pn=<name>&am=<amount>&cu=<currency>&tn=<note>``
"""
from __future__ import annotations

from decimal import Decimal
from urllib.parse import quote, urlencode

from domain.checkout.entity import to_money

UPI_SCHEME = "upi://pay"


def payment_note(display_id: str, transaction_id: str) -> str:
    return f"Order {display_id} {transaction_id}"


def build_upi_uri(
    *,
    payee_vpa: str,
    payee_name: str,
    amount: Decimal,
    note: str,
    currency: str = "INR",
) -> str:
    params = {
        "pa": payee_vpa,
        "pn": payee_name,
        "am": f"{to_money(amount):.2f}",
        "cu": currency,
        "tn": note,
    }
    # '@' stays literal in the VPA; spaces become %20 for UPI apps
    return f"{UPI_SCHEME}?{urlencode(params, quote_via=quote, safe='@')}"
