"""
Payment rail helpers.
"""
from __future__ import annotations

from core.settings import checkout_settings

from .upi import UpiQrRenderer


def get_qr_renderer() -> UpiQrRenderer:
    rail = checkout_settings.rail
    return UpiQrRenderer(scale=rail.qr_scale, border=rail.qr_border)


__all__ = ["UpiQrRenderer", "get_qr_renderer"]
