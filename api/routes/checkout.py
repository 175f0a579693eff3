"""
Checkout API routes.

Thin layer over CheckoutService: request DTOs in, unified response envelope out.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import Response as RawResponse

from api.dependencies import get_checkout_service, get_owner_id, get_qr
from application.dtos.checkout import (
    AttemptView,
    CheckoutRequest,
    CodeRequest,
    CouponValidateRequest,
    QuoteRequest,
    QuoteView,
    SettlementView,
)
from application.services.checkout_service import CheckoutService
from core.logging_config import get_logger
from core.response import success_response
from infrastructure.external.payments import UpiQrRenderer


router = APIRouter(prefix="/checkout", tags=["Checkout"])
logger = get_logger(__name__)


@router.post("/quote")
async def quote(
    payload: QuoteRequest,
    owner_id: str = Depends(get_owner_id),
    service: CheckoutService = Depends(get_checkout_service),
):
    price = await service.quote(owner_id, payload)
    return success_response(data=QuoteView.from_breakdown(price, service.config.currency).model_dump(mode="json"))


@router.post("/coupons/validate")
async def validate_coupon(
    payload: CouponValidateRequest,
    owner_id: str = Depends(get_owner_id),
    service: CheckoutService = Depends(get_checkout_service),
):
    result = await service.validate_coupon(payload.code, payload.items)
    return success_response(data=result.model_dump(mode="json"))


@router.get("/referral/eligibility")
async def referral_eligibility(
    owner_id: str = Depends(get_owner_id),
    service: CheckoutService = Depends(get_checkout_service),
):
    eligibility = await service.referral_eligibility(owner_id)
    return success_response(data={"eligibility": eligibility.value})


@router.post("/referral/attach")
async def attach_referral(
    payload: CodeRequest,
    owner_id: str = Depends(get_owner_id),
    service: CheckoutService = Depends(get_checkout_service),
):
    outcome = await service.attach_referral(owner_id, payload.code)
    return success_response(data={"outcome": outcome.value})


@router.post("/referral/validate")
async def validate_referral(
    payload: CodeRequest,
    owner_id: str = Depends(get_owner_id),
    service: CheckoutService = Depends(get_checkout_service),
):
    result = await service.validate_referral_code(payload.code)
    return success_response(data=result.model_dump(mode="json"))


@router.post("/settle")
async def settle(
    payload: CheckoutRequest,
    owner_id: str = Depends(get_owner_id),
    service: CheckoutService = Depends(get_checkout_service),
):
    attempt = await service.checkout(owner_id, payload)
    return success_response(data=AttemptView.from_attempt(attempt).model_dump(mode="json"))


@router.get("/transactions/{transaction_id}")
async def transaction_status(
    transaction_id: str,
    owner_id: str = Depends(get_owner_id),
    service: CheckoutService = Depends(get_checkout_service),
):
    view: SettlementView = service.status(owner_id, transaction_id)
    return success_response(data=view.model_dump(mode="json"))


@router.post("/transactions/{transaction_id}/cancel")
async def cancel_transaction(
    transaction_id: str,
    owner_id: str = Depends(get_owner_id),
    service: CheckoutService = Depends(get_checkout_service),
):
    result = service.cancel(owner_id, transaction_id)
    logger.info("transaction_cancel_requested", transaction_id=transaction_id, status=result.status.value)
    return success_response(data=SettlementView.from_result(result).model_dump(mode="json"))


@router.get("/transactions/{transaction_id}/qr.png")
async def transaction_qr(
    transaction_id: str,
    owner_id: str = Depends(get_owner_id),
    service: CheckoutService = Depends(get_checkout_service),
    renderer: UpiQrRenderer = Depends(get_qr),
):
    attempt = service.attempt(owner_id, transaction_id)
    return RawResponse(content=renderer.png(attempt.external_reference or ""), media_type="image/png")
