"""
Credential Encryption Utilities
Token记录加密工具模块

Token记录以Fernet加密后写入键值存储，日志中只出现脱敏后的Token。
"""

import os
import logging
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from .config import TOKEN_ENCRYPT_KEY

# 配置日志
logger = logging.getLogger(__name__)

# 脱敏时首尾各保留的字符数
MASK_VISIBLE_CHARS = 8


class TokenCrypto:
    """Fernet加解密封装"""

    def __init__(self, key: Optional[Union[str, bytes]] = None):
        """
        Args:
            key: Fernet密钥；为空时依次读取环境变量 TOKEN_ENCRYPT_KEY 和配置，
                 都没有则生成临时密钥并写回环境变量
        """
        resolved = key or os.getenv("TOKEN_ENCRYPT_KEY") or TOKEN_ENCRYPT_KEY
        if not resolved:
            # 临时密钥重启后失效，之前保存的Token会被当作损坏记录清除
            logger.warning("未配置TOKEN_ENCRYPT_KEY，本次运行使用临时生成的密钥")
            resolved = self.generate_key()
            os.environ["TOKEN_ENCRYPT_KEY"] = resolved

        self._key = resolved.decode() if isinstance(resolved, bytes) else resolved
        self._fernet = Fernet(self._key.encode())

    @property
    def key(self) -> str:
        return self._key

    @staticmethod
    def generate_key() -> str:
        """生成新的Fernet密钥（urlsafe base64字符串）"""
        return Fernet.generate_key().decode()

    def encrypt(self, payload: str) -> str:
        """
        加密字符串

        Raises:
            ValueError: payload为空
        """
        if not payload:
            raise ValueError("Payload cannot be empty")
        return self._fernet.encrypt(payload.encode()).decode()

    def decrypt(self, encrypted: str) -> str:
        """
        解密字符串

        Raises:
            ValueError: 数据为空、已损坏或密钥不匹配
        """
        if not encrypted:
            raise ValueError("Encrypted payload cannot be empty")
        try:
            return self._fernet.decrypt(encrypted.encode()).decode()
        except InvalidToken:
            raise ValueError("Failed to decrypt payload: invalid data or key")

    @staticmethod
    def mask_token(token: Optional[str]) -> str:
        """长度超过16的Token保留首尾8位，其余一律显示为****"""
        if not token or len(token) <= MASK_VISIBLE_CHARS * 2:
            return "****"
        return f"{token[:MASK_VISIBLE_CHARS]}...{token[-MASK_VISIBLE_CHARS:]}"


_crypto: Optional[TokenCrypto] = None


def get_crypto() -> TokenCrypto:
    """进程内共享的加密实例"""
    global _crypto
    if _crypto is None:
        _crypto = TokenCrypto()
    return _crypto


def reset_crypto() -> None:
    """丢弃共享实例，下次使用时按当前环境变量重新创建（测试用）"""
    global _crypto
    _crypto = None


def encrypt_token(payload: str) -> str:
    return get_crypto().encrypt(payload)


def decrypt_token(encrypted: str) -> str:
    return get_crypto().decrypt(encrypted)


def mask_token(token: Optional[str]) -> str:
    return TokenCrypto.mask_token(token)
