"""
SMS Token Manager Server
FastAPI服务端点模块

为宿主应用提供本地HTTP接口，包括：
- Token状态查询
- 发起注册 / 接收深度链接回调
- 发送短信、检查Token、注销
- localhost访问控制中间件
"""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .app import SmsLinkApp, build_app
from .config import utc_now
from .crypto_utils import mask_token
from .deep_link import DeepLinkRequest
from .errors import (
    ExpiredTokenError,
    InvalidDestinationError,
    InvalidMessageError,
    MalformedUrlError,
    NavigationError,
    NoValidTokenError,
    RegistrationFailedError,
    StorageError,
    TransportError,
    UnrecognizedLinkError,
)
from .lifecycle import OperationResult

# 配置日志
logger = logging.getLogger(__name__)

# 创建FastAPI应用
app = FastAPI(
    title="SMS Token Manager API",
    description="短信注册Token管理服务API",
    version="1.0.0"
)


# ============== Pydantic模型 ==============

class TokenStatusResponse(BaseModel):
    """Token状态响应模型"""
    state: str
    has_valid_token: bool
    token_masked: Optional[str] = None
    issued_at: Optional[str] = None
    expires_at: Optional[str] = None


class MessageResponse(BaseModel):
    """通用消息响应模型"""
    success: bool
    message: str


class RegistrationResponse(MessageResponse):
    """注册响应模型"""
    sms_uri: Optional[str] = None


class DeepLinkBody(BaseModel):
    """深度链接请求模型"""
    url: str = Field(..., min_length=1, description="宿主平台传入的URL")


class DeepLinkResponse(MessageResponse):
    """深度链接处理结果"""
    state: str
    destination: Optional[str] = None
    parameters: dict = Field(default_factory=dict)


class SendMessageBody(BaseModel):
    """发送短信请求模型"""
    text: Optional[str] = Field(None, description="短信内容，为空时使用默认测试短信")


# ============== 中间件 ==============

# 允许的本地地址
ALLOWED_HOSTS = {"127.0.0.1", "localhost", "::1", "testclient"}

# 允许的局域网网段
ALLOWED_NETWORKS = ["10.", "192.168."] + [f"172.{n}." for n in range(16, 32)]


def is_allowed_host(host: str) -> bool:
    """检查是否是允许的主机地址"""
    if not host:
        return False

    if host in ALLOWED_HOSTS:
        return True

    for network in ALLOWED_NETWORKS:
        if host.startswith(network):
            return True

    return False


async def localhost_access_control(request: Request, call_next):
    """
    访问控制中间件

    API和深度链接入口只允许来自localhost和局域网的请求
    """
    client_host = request.client.host if request.client else None

    if request.url.path.startswith("/api") or request.url.path == "/deeplink":
        if not is_allowed_host(client_host):
            logger.warning(f"API请求被拒绝: 非允许来源 {client_host}")
            return JSONResponse(
                status_code=403,
                content={"detail": "Forbidden: Only local/LAN access is allowed"}
            )

    return await call_next(request)


app.middleware("http")(localhost_access_control)


# ============== 依赖注入 ==============

_app_instance: Optional[SmsLinkApp] = None


def get_sms_app() -> SmsLinkApp:
    """获取全局宿主应用实例"""
    global _app_instance
    if _app_instance is None:
        _app_instance = build_app()
    return _app_instance


def reset_sms_app() -> None:
    """重置全局宿主应用实例（主要用于测试）"""
    global _app_instance
    _app_instance = None


# ============== 辅助函数 ==============

# 错误类型到HTTP状态码的映射
ERROR_STATUS_CODES = [
    (NoValidTokenError, 409),
    (ExpiredTokenError, 410),
    (TransportError, 502),
    (StorageError, 500),
    (NavigationError, 500),
    (MalformedUrlError, 400),
    (UnrecognizedLinkError, 400),
    (InvalidDestinationError, 400),
    (InvalidMessageError, 400),
    (RegistrationFailedError, 400),
]


def raise_for_result(result: OperationResult) -> None:
    """失败结果转换为HTTPException"""
    if result.success:
        return
    status_code = 400
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(result.error, error_type):
            status_code = code
            break
    raise HTTPException(status_code=status_code, detail=result.message)


def token_status(sms_app: SmsLinkApp) -> TokenStatusResponse:
    """构造Token状态响应"""
    manager = sms_app.manager
    token = manager.current_token
    return TokenStatusResponse(
        state=manager.current_state().value,
        has_valid_token=manager.has_valid_token(),
        token_masked=mask_token(token.value) if token else None,
        issued_at=token.issued_at.isoformat() if token else None,
        expires_at=token.expires_at.isoformat() if token and token.expires_at else None,
    )


async def _handle_deep_link(url: str, sms_app: SmsLinkApp) -> DeepLinkResponse:
    result = await sms_app.on_deep_link(url)
    raise_for_result(result)
    request = result.value if isinstance(result.value, DeepLinkRequest) else None
    return DeepLinkResponse(
        success=True,
        message=result.message,
        state=sms_app.current_state().value,
        destination=request.destination if request else None,
        parameters=dict(request.parameters) if request else {},
    )


# ============== REST API端点 ==============

@app.get("/api/token", response_model=TokenStatusResponse, tags=["Token"])
async def get_token_status(sms_app: SmsLinkApp = Depends(get_sms_app)):
    """获取当前Token状态"""
    await sms_app.manager.init()
    return token_status(sms_app)


@app.post("/api/registration", response_model=RegistrationResponse, tags=["Registration"])
async def start_registration(sms_app: SmsLinkApp = Depends(get_sms_app)):
    """发起注册，返回打开短信应用的链接"""
    result = await sms_app.register()
    raise_for_result(result)
    return RegistrationResponse(
        success=True,
        message=result.message,
        sms_uri=result.value.sms_uri if result.value else None
    )


@app.get("/deeplink", response_model=DeepLinkResponse, tags=["DeepLink"])
async def deep_link_callback(
    url: str = Query(..., min_length=1, description="宿主平台传入的URL"),
    sms_app: SmsLinkApp = Depends(get_sms_app)
):
    """深度链接回调入口（GET）"""
    return await _handle_deep_link(url, sms_app)


@app.post("/api/deeplink", response_model=DeepLinkResponse, tags=["DeepLink"])
async def post_deep_link(data: DeepLinkBody, sms_app: SmsLinkApp = Depends(get_sms_app)):
    """深度链接回调入口（POST）"""
    return await _handle_deep_link(data.url, sms_app)


@app.post("/api/messages", response_model=MessageResponse, tags=["Messages"])
async def send_message(data: SendMessageBody, sms_app: SmsLinkApp = Depends(get_sms_app)):
    """使用当前Token发送短信"""
    result = await sms_app.send_sms(data.text)
    raise_for_result(result)
    return MessageResponse(success=True, message=result.message)


@app.post("/api/token/check", response_model=MessageResponse, tags=["Token"])
async def check_token(sms_app: SmsLinkApp = Depends(get_sms_app)):
    """向后端确认Token是否有效"""
    result = await sms_app.check_token_status()
    raise_for_result(result)
    return MessageResponse(success=True, message=result.message)


@app.delete("/api/token", response_model=MessageResponse, tags=["Token"])
async def unregister_token(sms_app: SmsLinkApp = Depends(get_sms_app)):
    """注销当前Token"""
    result = await sms_app.unregister()
    raise_for_result(result)
    return MessageResponse(success=True, message=result.message)


# ============== 健康检查端点 ==============

@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点"""
    return {"status": "healthy", "timestamp": utc_now().isoformat()}
