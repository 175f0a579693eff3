"""
API依赖项 - 调用方标识与应用服务
"""
from typing import Optional

from fastapi import Header, Request

from application.services.checkout_service import CheckoutService
from core.exceptions import UnauthorizedException
from infrastructure.external.payments import UpiQrRenderer, get_qr_renderer


async def get_owner_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-ID")) -> str:
    """从 X-User-ID 头中提取已认证用户标识（认证由上游网关完成）"""
    if not x_user_id or not x_user_id.strip():
        raise UnauthorizedException("Missing X-User-ID header")
    return x_user_id.strip()


async def get_checkout_service(request: Request) -> CheckoutService:
    return request.app.state.checkout_service


async def get_qr(request: Request) -> UpiQrRenderer:
    renderer = getattr(request.app.state, "qr_renderer", None)
    return renderer or get_qr_renderer()
