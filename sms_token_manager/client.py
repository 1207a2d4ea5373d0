"""
SMS API Client
短信服务后端客户端模块

提供异步RPC接口：
- register: 发起注册，返回打开短信应用所需的 sms: 链接
- send_message: 使用Token发送短信
- unregister: 注销Token
- check_token_valid: 查询Token在后端是否仍然有效

所有后端错误统一转换为 TransportError，错误信息原样透传，不做自动重试。
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from .config import (
    SMS_API_BASE_URL,
    SMS_GAME_API_KEY,
    SMS_SERVICE_PHONE_NUMBER,
    SMS_HTTP_TIMEOUT,
)
from .crypto_utils import mask_token
from .errors import TransportError

# 配置日志
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistrationTicket:
    """注册请求结果"""
    sms_uri: str  # 打开短信应用的链接，例如 sms:+359123456789?body=REG-1234
    code: str


class SmsApiClient(ABC):
    """短信服务后端接口"""

    @abstractmethod
    async def register(self) -> RegistrationTicket:
        """发起注册"""

    @abstractmethod
    async def send_message(self, token: str, text: str) -> None:
        """发送短信"""

    @abstractmethod
    async def unregister(self, token: str) -> None:
        """注销Token"""

    @abstractmethod
    async def check_token_valid(self, token: str) -> bool:
        """检查Token是否有效"""

    async def close(self) -> None:
        """释放资源"""


class HttpSmsApiClient(SmsApiClient):
    """
    基于httpx的短信服务客户端

    请求头携带 X-Api-Key，Token通过 Authorization: Bearer 传递
    """

    # HTTP状态码
    HTTP_UNAUTHORIZED = 401
    HTTP_FORBIDDEN = 403

    REGISTER_PATH = "/api/sms/register"
    SEND_PATH = "/api/sms/send"
    UNREGISTER_PATH = "/api/sms/unregister"
    STATUS_PATH = "/api/sms/token/status"

    def __init__(
        self,
        base_url: str = SMS_API_BASE_URL,
        api_key: str = SMS_GAME_API_KEY,
        service_phone_number: str = SMS_SERVICE_PHONE_NUMBER,
        timeout: float = SMS_HTTP_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        初始化客户端

        Args:
            base_url: 后端地址
            api_key: 游戏API密钥
            service_phone_number: 接收注册短信的服务号码
            timeout: 请求超时（秒）
            http_client: HTTP客户端实例，如果不提供则自动创建
        """
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._service_phone_number = service_phone_number
        self._timeout = timeout
        self._http_client = http_client
        self._owns_http_client = http_client is None

        logger.info(f"HttpSmsApiClient初始化完成, base_url={self._base_url}")

    @property
    def http_client(self) -> httpx.AsyncClient:
        """获取HTTP客户端实例"""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True
            )
        return self._http_client

    async def close(self) -> None:
        """关闭HTTP客户端"""
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _headers(self, token: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Api-Key": self._api_key,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        token: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            return await self.http_client.request(method, url, headers=self._headers(token), json=json)
        except httpx.TimeoutException:
            logger.warning(f"短信服务请求超时: {method} {path}")
            raise TransportError(f"短信服务请求超时: {path}")
        except httpx.RequestError as e:
            logger.error(f"短信服务请求失败: {method} {path}, error={str(e)}")
            raise TransportError(f"短信服务请求失败: {str(e)}")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """从响应中提取错误信息"""
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            for key in ("message", "error", "detail", "msg"):
                if data.get(key):
                    return str(data[key])
        text = response.text.strip()
        return text or f"HTTP {response.status_code}"

    def _raise_for_status(self, response: httpx.Response, action: str) -> None:
        if 200 <= response.status_code < 300:
            return
        message = self._error_message(response)
        logger.warning(f"{action}失败: status={response.status_code}, message={message}")
        raise TransportError(f"{action}失败({response.status_code}): {message}")

    @staticmethod
    def _json(response: httpx.Response, action: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            raise TransportError(f"{action}返回的数据无法解析")
        if not isinstance(data, dict):
            raise TransportError(f"{action}返回的数据格式无效")
        return data

    def build_sms_uri(self, code: str) -> str:
        """构造打开短信应用的链接"""
        return f"sms:{self._service_phone_number}?body={quote(code)}"

    async def register(self) -> RegistrationTicket:
        response = await self._request("POST", self.REGISTER_PATH, json={
            "phoneNumber": self._service_phone_number
        })
        self._raise_for_status(response, "注册请求")
        data = self._json(response, "注册请求")

        code = data.get("code")
        if not code:
            raise TransportError("注册请求返回的数据缺少注册码")

        sms_uri = data.get("smsUri") or self.build_sms_uri(str(code))
        logger.info("注册请求成功，等待用户发送短信")
        return RegistrationTicket(sms_uri=sms_uri, code=str(code))

    async def send_message(self, token: str, text: str) -> None:
        response = await self._request("POST", self.SEND_PATH, token=token, json={"message": text})
        self._raise_for_status(response, "发送短信")
        logger.info(f"短信发送成功: token={mask_token(token)}")

    async def unregister(self, token: str) -> None:
        response = await self._request("POST", self.UNREGISTER_PATH, token=token)
        self._raise_for_status(response, "注销Token")
        logger.info(f"Token注销成功: token={mask_token(token)}")

    async def check_token_valid(self, token: str) -> bool:
        response = await self._request("GET", self.STATUS_PATH, token=token)

        if response.status_code in (self.HTTP_UNAUTHORIZED, self.HTTP_FORBIDDEN):
            logger.warning(f"Token被后端拒绝({response.status_code}): token={mask_token(token)}")
            return False

        self._raise_for_status(response, "查询Token状态")
        data = self._json(response, "查询Token状态")

        valid = data.get("valid")
        if not isinstance(valid, bool):
            raise TransportError("查询Token状态返回的数据缺少valid字段")
        return valid
