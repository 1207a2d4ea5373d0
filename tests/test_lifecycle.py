"""
Token Lifecycle Tests
Token生命周期管理测试
"""

import asyncio
from datetime import timedelta

import pytest

from sms_token_manager.errors import (
    ExpiredTokenError,
    InvalidMessageError,
    NoValidTokenError,
    RegistrationFailedError,
    TransportError,
    UnrecognizedLinkError,
)
from sms_token_manager.lifecycle import OperationResult, TokenLifecycleManager
from sms_token_manager.models import Token, TokenState

from conftest import VALID_TOKEN, REGISTRATION_URL


async def register_token(manager, url=REGISTRATION_URL):
    """完成一次注册流程"""
    await manager.start_registration()
    return await manager.complete_registration(url)


def saved_token(clock, expires_in=3600):
    return Token(
        value=VALID_TOKEN,
        issued_at=clock(),
        expires_at=clock() + timedelta(seconds=expires_in),
    )


class TestOperationResult:
    """操作结果测试"""

    def test_ok(self):
        """测试成功结果"""
        result = OperationResult.ok("done", value=1)
        assert result.success
        assert result.value == 1
        result.raise_for_error()

    def test_fail_raises(self):
        """测试失败结果携带异常"""
        result = OperationResult.fail(NoValidTokenError("no token"))
        assert not result.success
        assert result.message == "no token"
        with pytest.raises(NoValidTokenError):
            result.raise_for_error()


class TestInit:
    """初始化测试"""

    @pytest.mark.asyncio
    async def test_initial_state(self, manager):
        """测试构造后处于未初始化状态"""
        assert manager.current_state() == TokenState.UNINITIALIZED
        assert manager.current_token is None
        assert not manager.has_valid_token()

    @pytest.mark.asyncio
    async def test_init_without_saved_token(self, manager):
        """测试没有已保存Token时进入no_token"""
        result = await manager.init()

        assert result.success
        assert manager.state == TokenState.NO_TOKEN

    @pytest.mark.asyncio
    async def test_init_with_live_token(self, manager, credential_store, clock):
        """测试加载有效Token"""
        credential_store.save(saved_token(clock))

        result = await manager.init()

        assert result.success
        assert manager.state == TokenState.TOKEN_ACTIVE
        assert manager.current_token.value == VALID_TOKEN
        assert manager.has_valid_token()

    @pytest.mark.asyncio
    async def test_init_with_expired_token_clears_storage(self, manager, credential_store, clock):
        """测试加载过期Token：报告过期、清除存储、回到no_token"""
        credential_store.save(saved_token(clock, expires_in=60))
        clock.advance(120)
        transitions = []
        manager.add_state_listener(lambda old, new: transitions.append(new))

        result = await manager.init()

        assert not result.success
        assert isinstance(result.error, ExpiredTokenError)
        assert manager.state == TokenState.NO_TOKEN
        assert manager.current_token is None
        assert not credential_store.exists()
        assert transitions == [TokenState.TOKEN_EXPIRED, TokenState.NO_TOKEN]

    @pytest.mark.asyncio
    async def test_init_exactly_at_expiry(self, manager, credential_store, clock):
        """测试恰好到达过期时间视为过期"""
        credential_store.save(saved_token(clock, expires_in=60))
        clock.advance(60)

        result = await manager.init()

        assert isinstance(result.error, ExpiredTokenError)
        assert manager.state == TokenState.NO_TOKEN

    @pytest.mark.asyncio
    async def test_init_with_corrupted_record(self, manager, kv_store, credential_store):
        """测试损坏的记录视为过期并清除"""
        kv_store.set(credential_store.key, "corrupted-data")

        result = await manager.init()

        assert isinstance(result.error, ExpiredTokenError)
        assert manager.state == TokenState.NO_TOKEN
        assert kv_store.get(credential_store.key) is None

    @pytest.mark.asyncio
    async def test_init_twice(self, manager, credential_store, clock):
        """测试重复初始化不会重新加载"""
        await manager.init()
        credential_store.save(saved_token(clock))

        result = await manager.init()

        assert result.success
        assert manager.state == TokenState.NO_TOKEN

    @pytest.mark.asyncio
    async def test_init_restores_pending_registration(self, manager, credential_store, clock):
        """测试重启后恢复进行中的注册"""
        credential_store.mark_pending(clock() - timedelta(seconds=60))

        result = await manager.init()

        assert result.success
        assert manager.state == TokenState.REGISTRATION_PENDING

    @pytest.mark.asyncio
    async def test_init_drops_stale_pending_registration(self, manager, credential_store, clock):
        """测试超时的进行中注册被丢弃"""
        credential_store.mark_pending(clock() - timedelta(seconds=3600))

        await manager.init()

        assert manager.state == TokenState.NO_TOKEN
        assert credential_store.load_pending() is None


class TestStartRegistration:
    """发起注册测试"""

    @pytest.mark.asyncio
    async def test_start_registration(self, manager, sms_client, sms_launcher, credential_store):
        """测试发起注册进入registration_pending并打开短信应用"""
        result = await manager.start_registration()

        assert result.success
        assert result.value.code == "REG-1234"
        assert manager.state == TokenState.REGISTRATION_PENDING
        assert sms_launcher == ["sms:+359123456789?body=REG-1234"]
        assert credential_store.load_pending() is not None
        sms_client.register.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_registration_twice_reissues(self, manager, sms_client, sms_launcher):
        """测试注册进行中再次发起会重新请求"""
        await manager.start_registration()
        result = await manager.start_registration()

        assert result.success
        assert manager.state == TokenState.REGISTRATION_PENDING
        assert sms_client.register.await_count == 2
        assert len(sms_launcher) == 2

    @pytest.mark.asyncio
    async def test_start_registration_with_active_token(self, manager, sms_client, credential_store, clock):
        """测试已有有效Token时拒绝注册"""
        credential_store.save(saved_token(clock))
        await manager.init()

        result = await manager.start_registration()

        assert isinstance(result.error, RegistrationFailedError)
        assert manager.state == TokenState.TOKEN_ACTIVE
        sms_client.register.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_registration_transport_error(self, manager, sms_client, sms_launcher):
        """测试后端不可用时注册失败"""
        sms_client.register.side_effect = TransportError("服务不可用")

        result = await manager.start_registration()

        assert isinstance(result.error, TransportError)
        assert result.message == "服务不可用"
        assert manager.state == TokenState.NO_TOKEN
        assert sms_launcher == []


class TestCompleteRegistration:
    """完成注册测试"""

    @pytest.mark.asyncio
    async def test_complete_registration(self, manager, sms_client, credential_store, clock):
        """测试回调链接经后端确认后保存Token"""
        result = await register_token(manager)

        assert result.success
        assert manager.state == TokenState.TOKEN_ACTIVE
        token = manager.current_token
        assert token.value == VALID_TOKEN
        assert token.phone_number == "+359888123456"
        assert token.expires_at == clock() + timedelta(seconds=3600)
        assert credential_store.load() == token
        assert credential_store.load_pending() is None
        sms_client.check_token_valid.assert_awaited_once_with(VALID_TOKEN)

    @pytest.mark.asyncio
    async def test_complete_without_expiry_never_expires(self, manager):
        """测试回调没有过期信息时Token永不过期"""
        result = await register_token(manager, f"smsapp://sms-verified?token={VALID_TOKEN}")

        assert result.success
        assert manager.current_token.expires_at is None

    @pytest.mark.asyncio
    async def test_complete_with_iso_expiry(self, manager):
        """测试expires_at为ISO时间"""
        url = f"smsapp://sms-verified?token={VALID_TOKEN}&expires_at=2026-06-01T00:00:00%2B00:00"
        result = await register_token(manager, url)

        assert result.success
        assert manager.current_token.expires_at.isoformat() == "2026-06-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_complete_with_zulu_expiry(self, manager):
        """测试expires_at使用Z后缀"""
        url = f"smsapp://sms-verified?token={VALID_TOKEN}&expires_at=2026-06-01T00:00:00Z"
        result = await register_token(manager, url)

        assert result.success
        assert manager.current_token.expires_at.isoformat() == "2026-06-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_complete_with_base64_token(self, manager, sms_client, credential_store):
        """测试Token中的 + 和 / 原样保存"""
        token_value = "abcDEF+ghi/JKL0123=="
        result = await register_token(
            manager, f"smsapp://sms-verified?token={token_value}&phone=+359888123456"
        )

        assert result.success
        assert manager.current_token.value == token_value
        assert manager.current_token.phone_number == "+359888123456"
        assert credential_store.load().value == token_value
        sms_client.check_token_valid.assert_awaited_once_with(token_value)

    @pytest.mark.asyncio
    async def test_complete_without_pending(self, manager, sms_client):
        """测试没有进行中的注册时拒绝回调"""
        result = await manager.complete_registration(REGISTRATION_URL)

        assert isinstance(result.error, RegistrationFailedError)
        assert manager.state == TokenState.NO_TOKEN
        sms_client.check_token_valid.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backend_rejects_token(self, manager, sms_client, credential_store):
        """测试后端未确认时不保存Token"""
        sms_client.check_token_valid.return_value = False

        result = await register_token(manager)

        assert isinstance(result.error, RegistrationFailedError)
        assert manager.state == TokenState.NO_TOKEN
        assert manager.current_token is None
        assert not credential_store.exists()
        assert credential_store.load_pending() is None

    @pytest.mark.asyncio
    async def test_backend_unreachable_during_confirmation(self, manager, sms_client, credential_store):
        """测试确认时后端不可达"""
        sms_client.check_token_valid.side_effect = TransportError("timeout")

        result = await register_token(manager)

        assert isinstance(result.error, TransportError)
        assert manager.state == TokenState.NO_TOKEN
        assert not credential_store.exists()

    @pytest.mark.asyncio
    async def test_callback_reports_failure(self, manager, sms_client):
        """测试回调携带失败状态"""
        result = await register_token(manager, "smsapp://sms-verified?status=error&error=number%20blocked")

        assert isinstance(result.error, RegistrationFailedError)
        assert "number blocked" in result.message
        assert manager.state == TokenState.NO_TOKEN
        sms_client.check_token_valid.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", [
        "smsapp://sms-verified",
        "smsapp://sms-verified?token=short",
        "smsapp://sms-verified?token=bad%20token%20value",
        f"smsapp://sms-verified?token={VALID_TOKEN}&phone=12345",
        f"smsapp://sms-verified?token={VALID_TOKEN}&expires_in=-5",
        f"smsapp://sms-verified?token={VALID_TOKEN}&expires_in=abc",
        f"smsapp://sms-verified?token={VALID_TOKEN}&expires_at=yesterday",
        f"smsapp://sms-verified?token={VALID_TOKEN}&expires_at=99999999999999999999",
    ])
    async def test_invalid_callback_data(self, manager, sms_client, url):
        """测试回调数据无效"""
        result = await register_token(manager, url)

        assert isinstance(result.error, RegistrationFailedError)
        assert manager.state == TokenState.NO_TOKEN
        assert manager.current_token is None

    @pytest.mark.asyncio
    async def test_callback_with_past_expiry(self, manager, sms_client):
        """测试回调中的Token已过期"""
        url = f"smsapp://sms-verified?token={VALID_TOKEN}&expires_at=1000"
        result = await register_token(manager, url)

        assert isinstance(result.error, RegistrationFailedError)
        sms_client.check_token_valid.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", [
        f"smsapp://rewardslink?token={VALID_TOKEN}",
        f"other://sms-verified?token={VALID_TOKEN}",
    ])
    async def test_wrong_link(self, manager, url):
        """测试不是注册回调链接"""
        result = await register_token(manager, url)

        assert isinstance(result.error, UnrecognizedLinkError)
        assert manager.state == TokenState.NO_TOKEN

    @pytest.mark.asyncio
    async def test_stale_session(self, manager, clock, sms_client):
        """测试注册会话超时后回调被拒绝"""
        await manager.start_registration()
        clock.advance(1801)

        result = await manager.complete_registration(REGISTRATION_URL)

        assert isinstance(result.error, RegistrationFailedError)
        assert manager.state == TokenState.NO_TOKEN
        sms_client.check_token_valid.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_callback_ignored(self, manager):
        """测试已有Token时忽略重复回调"""
        await register_token(manager)
        token = manager.current_token

        result = await manager.complete_registration(REGISTRATION_URL)

        assert isinstance(result.error, RegistrationFailedError)
        assert manager.current_token is token

    @pytest.mark.asyncio
    async def test_complete_after_restart(self, manager, sms_client, credential_store, clock):
        """测试应用重启后仍可完成注册"""
        await manager.start_registration()

        restarted = TokenLifecycleManager(
            client=sms_client,
            credential_store=credential_store,
            scheme="smsapp",
            registration_link="sms-verified",
            clock=clock,
        )
        await restarted.init()
        assert restarted.state == TokenState.REGISTRATION_PENDING

        result = await restarted.complete_registration(REGISTRATION_URL)

        assert result.success
        assert restarted.state == TokenState.TOKEN_ACTIVE

    def test_is_registration_link(self, manager):
        """测试注册回调链接判断"""
        assert manager.is_registration_link(REGISTRATION_URL)
        assert manager.is_registration_link("SMSAPP://sms-verified?token=x")
        assert not manager.is_registration_link("smsapp://rewardslink?destination=Main")
        assert not manager.is_registration_link("not a url")


class TestSendMessage:
    """发送短信测试"""

    @pytest.mark.asyncio
    async def test_send_without_token(self, manager, sms_client):
        """测试没有Token时本地失败，不访问后端"""
        result = await manager.send_message("Hello")

        assert isinstance(result.error, NoValidTokenError)
        sms_client.send_message.assert_not_awaited()
        sms_client.check_token_valid.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_while_pending(self, manager, sms_client):
        """测试注册进行中不能发送短信"""
        await manager.start_registration()

        result = await manager.send_message("Hello")

        assert isinstance(result.error, NoValidTokenError)
        sms_client.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_with_token(self, manager, sms_client):
        """测试使用有效Token发送短信"""
        await register_token(manager)

        result = await manager.send_message("Hello from my game!")

        assert result.success
        sms_client.send_message.assert_awaited_once_with(VALID_TOKEN, "Hello from my game!")

    @pytest.mark.asyncio
    async def test_send_invalid_text(self, manager, sms_client):
        """测试短信内容无效"""
        await register_token(manager)

        result = await manager.send_message("   ")

        assert isinstance(result.error, InvalidMessageError)
        sms_client.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_with_expired_token(self, manager, sms_client, credential_store, clock):
        """测试Token过期后发送：本地失败并清除"""
        await register_token(manager)
        clock.advance(3600)

        result = await manager.send_message("Hello")

        assert isinstance(result.error, ExpiredTokenError)
        assert manager.state == TokenState.NO_TOKEN
        assert not credential_store.exists()
        sms_client.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_transport_error_keeps_token(self, manager, sms_client):
        """测试后端错误原样返回且保留Token"""
        await register_token(manager)
        sms_client.send_message.side_effect = TransportError("发送短信失败(500): boom")

        result = await manager.send_message("Hello")

        assert isinstance(result.error, TransportError)
        assert result.message == "发送短信失败(500): boom"
        assert manager.state == TokenState.TOKEN_ACTIVE


class TestUnregister:
    """注销测试"""

    @pytest.mark.asyncio
    async def test_unregister(self, manager, sms_client, credential_store):
        """测试注销成功后清除Token"""
        await register_token(manager)

        result = await manager.unregister()

        assert result.success
        assert manager.state == TokenState.NO_TOKEN
        assert manager.current_token is None
        assert not credential_store.exists()
        sms_client.unregister.assert_awaited_once_with(VALID_TOKEN)

    @pytest.mark.asyncio
    async def test_unregister_twice(self, manager, sms_client):
        """测试重复注销只访问后端一次"""
        await register_token(manager)

        await manager.unregister()
        result = await manager.unregister()

        assert isinstance(result.error, NoValidTokenError)
        assert sms_client.unregister.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_unregister(self, manager, sms_client):
        """测试并发注销只访问后端一次"""
        await register_token(manager)

        async def slow_unregister(token):
            await asyncio.sleep(0)

        sms_client.unregister.side_effect = slow_unregister

        first, second = await asyncio.gather(manager.unregister(), manager.unregister())

        assert first.success
        assert isinstance(second.error, NoValidTokenError)
        assert sms_client.unregister.await_count == 1
        assert manager.state == TokenState.NO_TOKEN

    @pytest.mark.asyncio
    async def test_unregister_without_token(self, manager, sms_client):
        """测试没有Token时注销失败"""
        result = await manager.unregister()

        assert isinstance(result.error, NoValidTokenError)
        sms_client.unregister.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unregister_backend_failure_keeps_token(self, manager, sms_client, credential_store):
        """测试后端注销失败时保留Token"""
        await register_token(manager)
        sms_client.unregister.side_effect = TransportError("注销Token失败(503): unavailable")

        result = await manager.unregister()

        assert isinstance(result.error, TransportError)
        assert manager.state == TokenState.TOKEN_ACTIVE
        assert credential_store.exists()

    @pytest.mark.asyncio
    async def test_register_again_after_unregister(self, manager, sms_client):
        """测试注销后可以重新注册"""
        await register_token(manager)
        await manager.unregister()

        result = await register_token(manager)

        assert result.success
        assert manager.state == TokenState.TOKEN_ACTIVE


class TestCheckValidity:
    """Token状态检查测试"""

    @pytest.mark.asyncio
    async def test_valid_token(self, manager, sms_client):
        """测试后端确认Token有效"""
        await register_token(manager)
        sms_client.check_token_valid.reset_mock()

        result = await manager.check_validity()

        assert result.success
        assert result.value is True
        sms_client.check_token_valid.assert_awaited_once_with(VALID_TOKEN)

    @pytest.mark.asyncio
    async def test_invalid_token_cleared(self, manager, sms_client, credential_store):
        """测试后端判定无效时清除Token"""
        await register_token(manager)
        sms_client.check_token_valid.return_value = False
        transitions = []
        manager.add_state_listener(lambda old, new: transitions.append((old, new)))

        result = await manager.check_validity()

        assert not result.success
        assert result.value is False
        assert isinstance(result.error, ExpiredTokenError)
        assert manager.state == TokenState.NO_TOKEN
        assert not credential_store.exists()
        assert transitions == [
            (TokenState.TOKEN_ACTIVE, TokenState.TOKEN_EXPIRED),
            (TokenState.TOKEN_EXPIRED, TokenState.NO_TOKEN),
        ]

    @pytest.mark.asyncio
    async def test_check_without_token(self, manager, sms_client):
        """测试没有Token时不访问后端"""
        result = await manager.check_validity()

        assert isinstance(result.error, NoValidTokenError)
        sms_client.check_token_valid.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_check_transport_error(self, manager, sms_client):
        """测试检查时后端不可达，Token保留"""
        await register_token(manager)
        sms_client.check_token_valid.side_effect = TransportError("timeout")

        result = await manager.check_validity()

        assert isinstance(result.error, TransportError)
        assert manager.state == TokenState.TOKEN_ACTIVE

    @pytest.mark.asyncio
    async def test_close_closes_client(self, manager, sms_client):
        """测试关闭管理器时关闭客户端"""
        await manager.close()
        sms_client.close.assert_awaited_once()
