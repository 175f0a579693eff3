"""
Wallet API routes: balance and top-up.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from api.dependencies import get_checkout_service, get_owner_id
from application.dtos.checkout import AttemptView, TopUpRequest
from application.services.checkout_service import CheckoutService
from core.response import success_response


router = APIRouter(prefix="/wallet", tags=["Wallet"])


@router.get("/balance")
async def wallet_balance(
    owner_id: str = Depends(get_owner_id),
    service: CheckoutService = Depends(get_checkout_service),
):
    balance = await service.wallet_balance(owner_id)
    return success_response(data={"balance": str(balance), "currency": service.config.currency})


@router.post("/top-up")
async def top_up(
    payload: TopUpRequest,
    owner_id: str = Depends(get_owner_id),
    service: CheckoutService = Depends(get_checkout_service),
):
    attempt = await service.start_top_up(owner_id, payload.amount)
    return success_response(data=AttemptView.from_attempt(attempt).model_dump(mode="json"))
