"""
SMS Token Models
短信Token数据模型与持久化表定义
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Column, String, Text, DateTime, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .config import DATABASE_URL, utc_now
from .crypto_utils import mask_token

Base = declarative_base()


class TokenState(str, enum.Enum):
    """Token生命周期状态枚举"""
    UNINITIALIZED = "uninitialized"
    NO_TOKEN = "no_token"
    REGISTRATION_PENDING = "registration_pending"
    TOKEN_ACTIVE = "token_active"
    TOKEN_EXPIRED = "token_expired"


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any, name: str) -> datetime:
    if isinstance(value, datetime):
        return _ensure_utc(value)
    if not isinstance(value, str) or not value:
        raise ValueError(f"{name}格式无效: {value!r}")
    if value[-1] in ("Z", "z"):
        # Python 3.11 之前的 fromisoformat 不接受 Z 后缀
        value = value[:-1] + "+00:00"
    try:
        return _ensure_utc(datetime.fromisoformat(value))
    except ValueError:
        raise ValueError(f"{name}格式无效: {value!r}")


@dataclass(frozen=True)
class Token:
    """
    短信注册Token

    不可变值对象，只能由注册完成回调创建。
    expires_at 为 None 表示永不过期。
    """
    value: str = field(repr=False)
    issued_at: datetime
    expires_at: Optional[datetime] = None
    phone_number: Optional[str] = None

    def __post_init__(self):
        if not self.value:
            raise ValueError("Token值不能为空")
        object.__setattr__(self, "issued_at", _ensure_utc(self.issued_at))
        if self.expires_at is not None:
            object.__setattr__(self, "expires_at", _ensure_utc(self.expires_at))

    def __repr__(self):
        expires = self.expires_at.isoformat() if self.expires_at else "never"
        return f"<Token(value={mask_token(self.value)}, expires_at={expires})>"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """当前时间 >= 过期时间即视为过期"""
        if self.expires_at is None:
            return False
        now = _ensure_utc(now) if now is not None else utc_now()
        return now >= self.expires_at

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return not self.is_expired(now)

    def remaining(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        """剩余有效期，永不过期返回None"""
        if self.expires_at is None:
            return None
        now = _ensure_utc(now) if now is not None else utc_now()
        return max(self.expires_at - now, timedelta(0))

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        return {
            "value": self.value,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "phone_number": self.phone_number,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Token":
        """
        从字典还原Token

        Raises:
            ValueError: 数据缺失或格式无效
        """
        if not isinstance(data, dict):
            raise ValueError("Token记录必须是对象")

        value = data.get("value")
        if not isinstance(value, str) or not value:
            raise ValueError("Token记录缺少value")

        expires_raw = data.get("expires_at")
        return cls(
            value=value,
            issued_at=parse_timestamp(data.get("issued_at"), "issued_at"),
            expires_at=parse_timestamp(expires_raw, "expires_at") if expires_raw is not None else None,
            phone_number=data.get("phone_number"),
        )


class KeyValueEntry(Base):
    """持久化键值存储表"""
    __tablename__ = "kv_store"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    def __repr__(self):
        return f"<KeyValueEntry(key={self.key})>"


# 数据库引擎和会话工厂
_engine = None
_SessionLocal = None


def get_engine():
    """获取数据库引擎（单例模式）"""
    global _engine
    if _engine is None:
        # SQLite特殊配置
        if DATABASE_URL.startswith("sqlite"):
            _engine = create_engine(
                DATABASE_URL,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=False
            )
        else:
            _engine = create_engine(DATABASE_URL, echo=False)
    return _engine


def get_session_factory():
    """获取会话工厂（单例模式）"""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine()
        )
    return _SessionLocal


def init_database():
    """初始化数据库，创建所有表"""
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    return engine


def get_db_session() -> Session:
    """获取数据库会话"""
    SessionLocal = get_session_factory()
    return SessionLocal()


def close_database():
    """关闭数据库连接"""
    global _engine, _SessionLocal
    if _engine:
        _engine.dispose()
        _engine = None
        _SessionLocal = None
