"""
Credential Store
Token持久化模块

在键值存储的单个槽位中保存至多一个加密后的Token记录。
只负责序列化/反序列化，不判断是否过期。
"""

import json
import logging
from datetime import datetime
from typing import Optional

from .config import TOKEN_STORAGE_KEY, PENDING_STORAGE_KEY
from .crypto_utils import TokenCrypto, get_crypto, mask_token
from .errors import CorruptedCredentialError
from .models import Token, parse_timestamp
from .storage import KeyValueStore

# 配置日志
logger = logging.getLogger(__name__)


class CredentialStore:
    """
    Token存储

    - save: 序列化、加密并覆盖槽位
    - load: 读取并还原，不做过期检查
    - clear: 删除槽位
    """

    def __init__(
        self,
        store: KeyValueStore,
        key: str = TOKEN_STORAGE_KEY,
        pending_key: str = PENDING_STORAGE_KEY,
        crypto: Optional[TokenCrypto] = None
    ):
        """
        初始化Token存储

        Args:
            store: 键值存储
            key: Token槽位的键名
            pending_key: 注册进行中标记的键名
            crypto: 加密工具，如果不提供则使用全局实例
        """
        self._store = store
        self._key = key
        self._pending_key = pending_key
        self._crypto = crypto

    @property
    def key(self) -> str:
        return self._key

    @property
    def crypto(self) -> TokenCrypto:
        if self._crypto is None:
            self._crypto = get_crypto()
        return self._crypto

    def save(self, token: Token) -> None:
        """保存Token，覆盖已有记录"""
        payload = json.dumps(token.to_dict(), ensure_ascii=False)
        self._store.set(self._key, self.crypto.encrypt(payload))
        logger.info(f"Token已保存: key={self._key}, token={mask_token(token.value)}")

    def load(self) -> Optional[Token]:
        """
        读取Token

        Returns:
            Optional[Token]: 不存在时返回None

        Raises:
            CorruptedCredentialError: 记录无法解密或解析
        """
        encrypted = self._store.get(self._key)
        if encrypted is None:
            return None

        try:
            payload = self.crypto.decrypt(encrypted)
            token = Token.from_dict(json.loads(payload))
        except ValueError as e:
            # json.JSONDecodeError 是 ValueError 的子类
            logger.warning(f"Token记录损坏: key={self._key}, error={str(e)}")
            raise CorruptedCredentialError(f"Token记录无法读取: {str(e)}")

        logger.debug(f"Token已读取: key={self._key}, token={mask_token(token.value)}")
        return token

    def clear(self) -> bool:
        """删除Token，返回是否存在记录"""
        removed = self._store.delete(self._key)
        if removed:
            logger.info(f"Token已从存储中清除: key={self._key}")
        return removed

    def exists(self) -> bool:
        return self._store.has(self._key)

    # ============== 注册进行中标记 ==============

    def mark_pending(self, started_at: datetime) -> None:
        """记录注册开始时间，重启后仍可完成注册"""
        self._store.set(self._pending_key, started_at.isoformat())

    def load_pending(self) -> Optional[datetime]:
        """读取注册开始时间，标记无效时清除并返回None"""
        raw = self._store.get(self._pending_key)
        if raw is None:
            return None
        try:
            return parse_timestamp(raw, "pending")
        except ValueError:
            logger.warning(f"注册标记格式无效，已清除: {raw!r}")
            self._store.delete(self._pending_key)
            return None

    def clear_pending(self) -> bool:
        return self._store.delete(self._pending_key)
