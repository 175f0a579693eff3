"""
Request ID 中间件
生成或透传追踪ID，并通过 structlog contextvars 传递给日志系统
"""
import uuid
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware


USER_HEADER = "X-User-ID"


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or (request.client.host if request.client else "unknown")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    1. 从请求头获取或生成 request_id
    2. 绑定 request_id / client_ip / owner_id 到日志上下文
    3. 在响应头中返回 request_id
    """

    HEADER_NAME = "X-Request-ID"

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(self.HEADER_NAME) or str(uuid.uuid4())
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        fields = {
            "request_id": request_id,
            "client_ip": _client_ip(request),
            "method": request.method,
            "path": request.url.path,
        }
        owner_id = request.headers.get(USER_HEADER)
        if owner_id:
            fields["owner_id"] = owner_id
        structlog.contextvars.bind_contextvars(**fields)

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = request_id
        return response
