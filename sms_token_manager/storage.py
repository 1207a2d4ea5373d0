"""
Key-Value Storage
持久化键值存储模块

宿主应用的字符串键值存储（get/set/delete），包括：
- KeyValueStore 抽象接口
- SqlKeyValueStore: 基于SQLAlchemy的持久化实现
- MemoryKeyValueStore: 内存实现，用于测试或临时宿主
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from .config import utc_now
from .errors import StorageError
from .models import KeyValueEntry, get_db_session, init_database

# 配置日志
logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """字符串键值存储接口"""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """读取键值，不存在返回None"""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """写入键值，覆盖已有值"""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """删除键，返回是否存在并已删除"""

    def has(self, key: str) -> bool:
        return self.get(key) is not None


class MemoryKeyValueStore(KeyValueStore):
    """内存键值存储"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self):
        return list(self._data.keys())


class SqlKeyValueStore(KeyValueStore):
    """
    基于SQLAlchemy的键值存储

    每次写操作立即提交，读操作不缓存
    """

    def __init__(self, session: Optional[Session] = None):
        """
        初始化存储

        Args:
            session: 可选的数据库会话，如果不提供则自动创建
        """
        self._session = session
        self._owns_session = session is None

        # 确保数据库已初始化
        init_database()

    @property
    def session(self) -> Session:
        """获取数据库会话"""
        if self._session is None:
            self._session = get_db_session()
        return self._session

    def close(self):
        """关闭存储，释放资源"""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def get(self, key: str) -> Optional[str]:
        try:
            entry = self.session.get(KeyValueEntry, key)
            return entry.value if entry is not None else None
        except SQLAlchemyError as e:
            logger.error(f"读取键值失败: key={key}, error={str(e)}")
            raise StorageError(f"读取键值失败: {str(e)}")

    def set(self, key: str, value: str) -> None:
        try:
            entry = self.session.get(KeyValueEntry, key)
            if entry is None:
                self.session.add(KeyValueEntry(key=key, value=value, updated_at=utc_now()))
            else:
                entry.value = value
                entry.updated_at = utc_now()
            self.session.commit()
            logger.debug(f"写入键值: key={key}")
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"写入键值失败: key={key}, error={str(e)}")
            raise StorageError(f"写入键值失败: {str(e)}")

    def delete(self, key: str) -> bool:
        try:
            entry = self.session.get(KeyValueEntry, key)
            if entry is None:
                return False
            self.session.delete(entry)
            self.session.commit()
            logger.debug(f"删除键值: key={key}")
            return True
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"删除键值失败: key={key}, error={str(e)}")
            raise StorageError(f"删除键值失败: {str(e)}")
