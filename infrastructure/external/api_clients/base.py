"""
REST API客户端基类

提供通用的HTTP请求功能，包括：
- 仅对幂等请求自动重试（写操作只发送一次）
- 错误响应到异常的映射
- 请求/响应日志
- 可注入 httpx transport（测试使用 MockTransport）
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Union

import httpx
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.logging_config import get_logger

logger = get_logger(__name__)
# tenacity's before_sleep_log wants a stdlib logger
_retry_logger = logging.getLogger(__name__)


@dataclass
class APIResponse:
    """API响应封装"""
    status_code: int
    headers: Dict[str, str]
    data: Any
    raw_content: bytes
    elapsed_ms: float
    request_id: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400

    def json(self) -> Any:
        if self.data is not None:
            return self.data
        if not self.raw_content:
            return None
        return json.loads(self.raw_content)

    def text(self) -> str:
        return self.raw_content.decode("utf-8")


class APIError(Exception):
    """API错误基类"""
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[APIResponse] = None,
        request_id: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response = response
        self.request_id = request_id
        super().__init__(self.message)

    def __str__(self):
        parts = [self.message]
        if self.status_code:
            parts.append(f"Status: {self.status_code}")
        if self.request_id:
            parts.append(f"Request ID: {self.request_id}")
        return " | ".join(parts)


class AuthenticationError(APIError):
    """认证错误"""


class NotFoundError(APIError):
    """资源未找到错误"""


class ServerError(APIError):
    """服务器错误"""


class RetryableAPIError(APIError):
    """可重试的API错误（仅幂等请求会被重试）"""


RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


def _error_message(response: APIResponse) -> str:
    default = f"API request failed with status {response.status_code}"
    if isinstance(response.data, dict):
        return (
            response.data.get("message")
            or response.data.get("error")
            or response.data.get("detail")
            or response.data.get("hint")
            or default
        )
    return default


class BaseAPIClient:
    """
    REST API客户端基类

    子类继承并实现具体的 API 调用；``idempotent=True`` 的请求在超时、
    网络错误或 5xx/429 时按指数退避重试。
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        max_retries: int = 2,
        retry_delay: float = 0.2,
        headers: Optional[Dict[str, str]] = None,
        auth_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._transport = transport

        self.default_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "checkout-settlement/1.0",
        }
        if headers:
            self.default_headers.update(headers)
        if auth_token:
            self.set_auth_token(auth_token)

        self._client: Optional[httpx.AsyncClient] = None

    def set_auth_token(self, token: str, header_name: str = "Authorization", prefix: str = "Bearer"):
        self.default_headers[header_name] = f"{prefix} {token}" if prefix else token

    @property
    def client(self) -> httpx.AsyncClient:
        """获取或创建HTTP客户端"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _build_url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _raise_for_response(self, response: APIResponse) -> None:
        error_map = {
            401: AuthenticationError,
            403: AuthenticationError,
            404: NotFoundError,
        }
        error_class = error_map.get(response.status_code)
        if error_class is None:
            error_class = ServerError if response.status_code >= 500 else APIError
        raise error_class(
            message=_error_message(response),
            status_code=response.status_code,
            response=response,
            request_id=response.request_id,
        )

    async def _send_once(
        self,
        method: str,
        url: str,
        *,
        json_data: Any,
        params: Optional[Dict[str, Any]],
        headers: Dict[str, str],
        retryable: bool,
    ) -> APIResponse:
        start_time = datetime.now()
        response = await self.client.request(
            method=method, url=url, params=params, json=json_data, headers=headers
        )
        elapsed = (datetime.now() - start_time).total_seconds() * 1000

        response_data = None
        if "application/json" in response.headers.get("content-type", ""):
            try:
                response_data = response.json()
            except json.JSONDecodeError:
                response_data = None

        api_response = APIResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            data=response_data,
            raw_content=response.content,
            elapsed_ms=elapsed,
            request_id=response.headers.get("x-request-id"),
        )
        logger.debug(
            "api_response",
            method=method,
            url=url,
            status_code=api_response.status_code,
            elapsed_ms=round(elapsed, 2),
        )

        if api_response.is_error and retryable and api_response.status_code in RETRY_STATUS_CODES:
            retry_header = api_response.headers.get("retry-after")
            if api_response.status_code == 429 and retry_header:
                try:
                    await asyncio.sleep(float(retry_header))
                except ValueError:
                    pass
            raise RetryableAPIError(
                message=f"Transient API error with status {api_response.status_code}",
                status_code=api_response.status_code,
                response=api_response,
                request_id=api_response.request_id,
            )
        if api_response.is_error:
            self._raise_for_response(api_response)
        return api_response

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        json_data: Optional[Union[Dict[str, Any], BaseModel]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        idempotent: bool = False,
    ) -> APIResponse:
        """
        发送HTTP请求

        Raises:
            APIError: 任何失败（传输错误统一转换为 APIError，status_code 为 None）
        """
        url = self._build_url(endpoint)
        request_headers = {**self.default_headers, **(headers or {})}
        if isinstance(json_data, BaseModel):
            json_data = json_data.model_dump(mode="json", exclude_unset=True)

        attempts = self.max_retries + 1 if idempotent else 1
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.retry_delay, min=self.retry_delay, max=self.retry_delay * 8),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError, RetryableAPIError)),
            before_sleep=before_sleep_log(_retry_logger, logging.WARNING),
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await self._send_once(
                        method,
                        url,
                        json_data=json_data,
                        params=params,
                        headers=request_headers,
                        retryable=idempotent,
                    )
        except httpx.TimeoutException as exc:
            raise APIError(f"Request timeout after {self.timeout}s") from exc
        except httpx.TransportError as exc:
            raise APIError(f"Network error: {exc}") from exc
        except RetryableAPIError as exc:
            if exc.response is not None:
                self._raise_for_response(exc.response)
            raise
        raise APIError("Request was not attempted")  # pragma: no cover

    async def get(self, endpoint: str, **kwargs) -> APIResponse:
        return await self.request("GET", endpoint, idempotent=True, **kwargs)

    async def post(self, endpoint: str, **kwargs) -> APIResponse:
        return await self.request("POST", endpoint, **kwargs)
