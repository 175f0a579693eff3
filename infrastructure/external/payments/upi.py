"""
UPI payment reference rendering (QR PNG / data URL) via segno.
"""
from __future__ import annotations

import io

import segno

from domain.checkout.payment_rail import UPI_SCHEME
from domain.common.exceptions import CheckoutValidationException


class UpiQrRenderer:
    def __init__(self, *, scale: int = 8, border: int = 2) -> None:
        self.scale = scale
        self.border = border

    def _make(self, reference: str) -> "segno.QRCode":
        if not reference or not reference.startswith(UPI_SCHEME):
            raise CheckoutValidationException("Not a UPI payment reference", field="external_reference")
        return segno.make(reference, error="m", micro=False)

    def png(self, reference: str) -> bytes:
        buffer = io.BytesIO()
        self._make(reference).save(buffer, kind="png", scale=self.scale, border=self.border)
        return buffer.getvalue()

    def data_url(self, reference: str) -> str:
        return self._make(reference).png_data_uri(scale=self.scale, border=self.border)
