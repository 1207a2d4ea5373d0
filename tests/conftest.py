"""
Test Configuration
测试公共配置与夹具
"""

import os

from cryptography.fernet import Fernet

# 设置测试数据库和加密密钥（必须在导入包之前）
os.environ["SMS_TOKEN_DB_URL"] = "sqlite:///:memory:"
os.environ.setdefault("TOKEN_ENCRYPT_KEY", Fernet.generate_key().decode())

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from sms_token_manager.client import SmsApiClient, RegistrationTicket
from sms_token_manager.credential_store import CredentialStore
from sms_token_manager.crypto_utils import TokenCrypto, reset_crypto
from sms_token_manager.lifecycle import TokenLifecycleManager
from sms_token_manager.storage import MemoryKeyValueStore


TEST_ENCRYPT_KEY = TokenCrypto.generate_key()
VALID_TOKEN = "sms_token_ABCDEFGHIJ1234567890"
REGISTRATION_URL = f"smsapp://sms-verified?token={VALID_TOKEN}&expires_in=3600&phone=%2B359888123456"


class FakeClock:
    """可控的时钟"""

    def __init__(self, now: datetime = None):
        self.now = now or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def reset_global_crypto():
    """每个测试前后重置全局加密实例"""
    reset_crypto()
    yield
    reset_crypto()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv_store():
    return MemoryKeyValueStore()


@pytest.fixture
def credential_store(kv_store):
    return CredentialStore(kv_store, crypto=TokenCrypto(TEST_ENCRYPT_KEY))


@pytest.fixture
def sms_client():
    """模拟的短信服务客户端"""
    client = AsyncMock(spec=SmsApiClient)
    client.register.return_value = RegistrationTicket(
        sms_uri="sms:+359123456789?body=REG-1234",
        code="REG-1234"
    )
    client.check_token_valid.return_value = True
    client.send_message.return_value = None
    client.unregister.return_value = None
    return client


@pytest.fixture
def sms_launcher():
    """记录被打开的 sms: 链接"""
    return []


@pytest.fixture
def manager(sms_client, credential_store, clock, sms_launcher):
    """使用内存存储和模拟客户端的管理器"""
    return TokenLifecycleManager(
        client=sms_client,
        credential_store=credential_store,
        scheme="smsapp",
        registration_link="sms-verified",
        sms_launcher=sms_launcher.append,
        clock=clock,
        pending_timeout=1800,
    )
