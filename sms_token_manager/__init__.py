"""
SMS Token Manager
短信注册Token管理系统 - 通过短信验证注册手机号，并管理注册得到的Token
"""

__version__ = "1.0.0"

# 导出核心组件
from .errors import (
    SmsTokenError,
    MalformedUrlError,
    UnrecognizedLinkError,
    InvalidDestinationError,
    NavigationError,
    NoValidTokenError,
    RegistrationFailedError,
    TransportError,
    ExpiredTokenError,
    InvalidMessageError,
    StorageError,
    CorruptedCredentialError,
)
from .url_parser import URLQueryParser, ParsedUrl, parse_url
from .deep_link import DeepLinkRouter, DeepLinkRequest, DeepLinkResult
from .models import Token, TokenState, init_database, close_database
from .storage import KeyValueStore, SqlKeyValueStore, MemoryKeyValueStore
from .credential_store import CredentialStore
from .crypto_utils import encrypt_token, decrypt_token, mask_token
from .client import SmsApiClient, HttpSmsApiClient, RegistrationTicket
from .lifecycle import TokenLifecycleManager, OperationResult
from .app import SmsLinkApp, build_app

__all__ = [
    # 版本
    "__version__",
    # 异常
    "SmsTokenError",
    "MalformedUrlError",
    "UnrecognizedLinkError",
    "InvalidDestinationError",
    "NavigationError",
    "NoValidTokenError",
    "RegistrationFailedError",
    "TransportError",
    "ExpiredTokenError",
    "InvalidMessageError",
    "StorageError",
    "CorruptedCredentialError",
    # 深度链接
    "URLQueryParser",
    "ParsedUrl",
    "parse_url",
    "DeepLinkRouter",
    "DeepLinkRequest",
    "DeepLinkResult",
    # 模型
    "Token",
    "TokenState",
    "init_database",
    "close_database",
    # 存储
    "KeyValueStore",
    "SqlKeyValueStore",
    "MemoryKeyValueStore",
    "CredentialStore",
    # 加密工具
    "encrypt_token",
    "decrypt_token",
    "mask_token",
    # 短信服务客户端
    "SmsApiClient",
    "HttpSmsApiClient",
    "RegistrationTicket",
    # 生命周期
    "TokenLifecycleManager",
    "OperationResult",
    # 宿主应用
    "SmsLinkApp",
    "build_app",
]
