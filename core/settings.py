"""
Checkout-related settings using pydantic-settings v2 with nested env keys.

This module is isolated so core.config.Settings stays about the service itself.
"""
from __future__ import annotations

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, model_validator


class ShippingFees(BaseModel):
    standard: Decimal = Decimal("0")
    express: Decimal = Decimal("99")
    priority: Decimal = Decimal("199")


class GoodwillSettings(BaseModel):
    # Drawn in minor units (paise), inclusive on both ends
    min_minor: int = 1
    max_minor: int = 99


class ConfirmationSettings(BaseModel):
    deadline_seconds: float = 300.0
    poll_interval_seconds: float = 3.0
    refund_window: str = "5-7 days"
    finished_ttl_seconds: float = 900.0
    max_finished: int = 1000


class PaymentRailSettings(BaseModel):
    payee_vpa: str = "payments@cigarro.in"
    payee_name: str = "Cigarro"
    qr_scale: int = 8
    qr_border: int = 2


class WalletTopUpSettings(BaseModel):
    min_amount: Decimal = Decimal("10")
    max_amount: Decimal = Decimal("50000")


class CheckoutSettings(BaseSettings):
    currency: str = "INR"
    shipping: ShippingFees = Field(default_factory=ShippingFees)
    goodwill: GoodwillSettings = Field(default_factory=GoodwillSettings)
    confirmation: ConfirmationSettings = Field(default_factory=ConfirmationSettings)
    rail: PaymentRailSettings = Field(default_factory=PaymentRailSettings)
    top_up: WalletTopUpSettings = Field(default_factory=WalletTopUpSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CHECKOUT__",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    @model_validator(mode="after")
    def _validate_bounds(self):
        if not 0 < self.goodwill.min_minor <= self.goodwill.max_minor:
            raise ValueError("goodwill bounds must satisfy 0 < min_minor <= max_minor")
        confirmation = self.confirmation
        if not 0 < confirmation.poll_interval_seconds < confirmation.deadline_seconds:
            raise ValueError("poll interval must be positive and shorter than the deadline")
        return self


checkout_settings = CheckoutSettings()
