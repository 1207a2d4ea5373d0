"""
Token Lifecycle Manager
Token生命周期管理模块

短信注册Token的状态机：
    uninitialized -> init() -> no_token / token_active / token_expired
    no_token -> start_registration() -> registration_pending
    registration_pending -> complete_registration(url) -> token_active / no_token
    token_active -> unregister() -> no_token
    token_active -> check_validity() -> token_active / token_expired -> no_token

发送短信、注销、检查状态都是受保护操作，没有有效Token时直接在本地失败，不访问后端。
注册完成回调可能在应用重启之后才到达，进行中的注册会持久化，状态可完全从存储恢复。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

from .client import SmsApiClient
from .config import (
    DEEP_LINK_SCHEME,
    REGISTRATION_LINK_IDENTIFIER,
    REGISTRATION_PENDING_TIMEOUT,
    utc_now,
)
from .credential_store import CredentialStore
from .crypto_utils import mask_token
from .errors import (
    SmsTokenError,
    CorruptedCredentialError,
    ExpiredTokenError,
    InvalidMessageError,
    MalformedUrlError,
    NoValidTokenError,
    RegistrationFailedError,
    StorageError,
    UnrecognizedLinkError,
)
from .models import Token, TokenState, parse_timestamp
from .url_parser import ParsedUrl, URLQueryParser
from .validators import validate_token, validate_message_text, validate_phone_number

# 配置日志
logger = logging.getLogger(__name__)

# 回调链接中表示成功的status取值
SUCCESS_STATUSES = {"ok", "success", "succeeded", "registered"}


@dataclass(frozen=True)
class OperationResult:
    """
    操作结果

    success 为 False 时 error 携带具体异常，message 为可读描述
    """
    success: bool
    message: str
    value: Any = None
    error: Optional[SmsTokenError] = None

    @classmethod
    def ok(cls, message: str, value: Any = None) -> "OperationResult":
        return cls(success=True, message=message, value=value)

    @classmethod
    def fail(cls, error: SmsTokenError, value: Any = None) -> "OperationResult":
        return cls(success=False, message=str(error), value=value, error=error)

    def raise_for_error(self) -> None:
        """失败时抛出携带的异常"""
        if self.error is not None:
            raise self.error


class TokenLifecycleManager:
    """
    Token生命周期管理器

    存储和后端客户端通过构造函数注入，便于替换为测试替身。
    同一时间只持有一个Token，只允许一个进行中的注册。
    """

    def __init__(
        self,
        client: SmsApiClient,
        credential_store: CredentialStore,
        scheme: str = DEEP_LINK_SCHEME,
        registration_link: str = REGISTRATION_LINK_IDENTIFIER,
        sms_launcher: Optional[Callable[[str], None]] = None,
        clock: Callable[[], datetime] = utc_now,
        pending_timeout: int = REGISTRATION_PENDING_TIMEOUT,
        parser: Optional[URLQueryParser] = None
    ):
        """
        初始化管理器

        Args:
            client: 短信服务后端客户端
            credential_store: Token存储
            scheme: 注册回调链接的scheme
            registration_link: 注册回调链接标识
            sms_launcher: 打开用户短信应用的回调，参数为 sms: 链接
            clock: 当前时间函数
            pending_timeout: 进行中注册的超时时间（秒）
            parser: URL解析器
        """
        self._client = client
        self._store = credential_store
        self._scheme = scheme.lower()
        self._registration_link = registration_link
        self._sms_launcher = sms_launcher
        self._clock = clock
        self._pending_timeout = timedelta(seconds=pending_timeout)
        self._parser = parser or URLQueryParser()

        self._state = TokenState.UNINITIALIZED
        self._token: Optional[Token] = None
        self._pending_since: Optional[datetime] = None
        self._unregistering: Optional[Token] = None
        self._listeners: List[Callable[[TokenState, TokenState], None]] = []

    # ============== 状态查询 ==============

    def current_state(self) -> TokenState:
        return self._state

    @property
    def state(self) -> TokenState:
        return self._state

    @property
    def current_token(self) -> Optional[Token]:
        return self._token

    @property
    def registration_link(self) -> str:
        return self._registration_link

    def has_valid_token(self) -> bool:
        return (
            self._state == TokenState.TOKEN_ACTIVE
            and self._token is not None
            and not self._token.is_expired(self._clock())
        )

    def add_state_listener(self, callback: Callable[[TokenState, TokenState], None]) -> None:
        """订阅状态变化，回调参数为 (旧状态, 新状态)"""
        self._listeners.append(callback)

    def is_registration_link(self, url: str) -> bool:
        """判断URL是否为注册完成回调链接，格式错误返回False"""
        try:
            parsed = self._parser.parse(url)
        except MalformedUrlError:
            return False
        return parsed.scheme == self._scheme and parsed.authority == self._registration_link

    def _set_state(self, new_state: TokenState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        logger.info(f"Token状态变化: {old_state.value} -> {new_state.value}")
        for listener in list(self._listeners):
            listener(old_state, new_state)

    # ============== 内部辅助 ==============

    def _clear_token(self) -> None:
        self._token = None
        self._store.clear()

    def _expire(self, token: Token, reason: str) -> None:
        """检测到过期：先清理存储，再回到no_token"""
        logger.warning(f"Token已失效: {reason}, token={mask_token(token.value)}")
        self._set_state(TokenState.TOKEN_EXPIRED)
        self._clear_token()
        self._set_state(TokenState.NO_TOKEN)

    def _clear_pending_marker(self) -> None:
        self._pending_since = None
        try:
            self._store.clear_pending()
        except StorageError as e:
            logger.error(f"清除注册标记失败: {str(e)}")

    def _abandon_registration(self) -> None:
        self._clear_pending_marker()
        self._set_state(TokenState.NO_TOKEN)

    def _pending_is_stale(self, started_at: datetime) -> bool:
        return self._clock() - started_at > self._pending_timeout

    def _active_token(self, action: str) -> Token:
        """
        获取可用Token

        Raises:
            NoValidTokenError: 当前没有Token
            ExpiredTokenError: Token已过期（已清理）
        """
        if self._state != TokenState.TOKEN_ACTIVE or self._token is None:
            raise NoValidTokenError(f"没有有效Token，无法{action}，请先注册")

        token = self._token
        if token.is_expired(self._clock()):
            self._expire(token, "本地检测到已过期")
            raise ExpiredTokenError(f"Token已过期，无法{action}，请重新注册")
        return token

    async def close(self) -> None:
        """释放后端客户端资源"""
        await self._client.close()

    async def _ensure_initialized(self) -> None:
        if self._state == TokenState.UNINITIALIZED:
            await self.init()

    # ============== 生命周期操作 ==============

    async def init(self) -> OperationResult:
        """
        从存储加载Token并判断状态

        重复调用直接返回当前状态
        """
        if self._state != TokenState.UNINITIALIZED:
            return OperationResult.ok(f"已初始化, 当前状态: {self._state.value}", value=self._state)

        try:
            token = self._store.load()
        except CorruptedCredentialError as e:
            self._set_state(TokenState.TOKEN_EXPIRED)
            try:
                self._clear_token()
            except StorageError as clear_error:
                return OperationResult.fail(clear_error)
            self._set_state(TokenState.NO_TOKEN)
            return OperationResult.fail(ExpiredTokenError(f"已保存的Token无法读取，请重新注册: {str(e)}"))
        except StorageError as e:
            logger.error(f"加载Token失败: {str(e)}")
            return OperationResult.fail(e)

        try:
            if token is None:
                return self._restore_pending()

            if token.is_expired(self._clock()):
                self._token = token
                self._expire(token, "上次保存的Token已过期")
                return OperationResult.fail(ExpiredTokenError("发现已过期的Token，请重新注册"))

            self._token = token
            self._store.clear_pending()
            self._set_state(TokenState.TOKEN_ACTIVE)
        except StorageError as e:
            logger.error(f"初始化Token状态失败: {str(e)}")
            return OperationResult.fail(e)

        logger.info(f"已加载上次会话的有效Token: token={mask_token(token.value)}")
        return OperationResult.ok("已加载上次会话保存的有效Token", value=self._state)

    def _restore_pending(self) -> OperationResult:
        started_at = self._store.load_pending()
        if started_at is not None and not self._pending_is_stale(started_at):
            self._pending_since = started_at
            self._set_state(TokenState.REGISTRATION_PENDING)
            return OperationResult.ok("存在进行中的注册，等待短信回调", value=self._state)

        if started_at is not None:
            logger.info("进行中的注册已超时，视为放弃")
            self._store.clear_pending()

        self._set_state(TokenState.NO_TOKEN)
        return OperationResult.ok("没有已保存的Token，请先注册", value=self._state)

    async def start_registration(self) -> OperationResult:
        """
        发起注册

        注册进行中再次调用会重新请求后端（幂等重发），已有有效Token时拒绝。
        """
        await self._ensure_initialized()

        if self._state == TokenState.UNINITIALIZED:
            return OperationResult.fail(RegistrationFailedError("Token存储不可用，无法发起注册"))

        if self._state == TokenState.TOKEN_ACTIVE:
            return OperationResult.fail(RegistrationFailedError("已存在有效Token，请先注销后再注册"))

        reissue = self._state == TokenState.REGISTRATION_PENDING
        if reissue:
            logger.info("注册已在进行中，重新发起注册请求")

        try:
            ticket = await self._client.register()
        except SmsTokenError as e:
            logger.warning(f"注册请求失败: {str(e)}")
            return OperationResult.fail(e)

        if self._state == TokenState.TOKEN_ACTIVE:
            # 等待期间注册已经完成
            return OperationResult.fail(RegistrationFailedError("注册已完成，忽略本次请求"))

        started_at = self._clock()
        try:
            self._store.mark_pending(started_at)
        except StorageError as e:
            logger.error(f"保存注册标记失败: {str(e)}")
            return OperationResult.fail(e)

        self._pending_since = started_at
        self._set_state(TokenState.REGISTRATION_PENDING)

        if self._sms_launcher is not None:
            self._sms_launcher(ticket.sms_uri)

        message = "已重新发起注册，请在短信应用中发送验证短信" if reissue else "正在打开短信应用进行注册"
        return OperationResult.ok(message, value=ticket)

    async def complete_registration(self, url: str) -> OperationResult:
        """
        处理注册完成回调链接

        唯一创建Token的途径。链接中的Token必须经过后端确认后才会保存。
        """
        await self._ensure_initialized()

        if self._state == TokenState.TOKEN_ACTIVE:
            return OperationResult.fail(RegistrationFailedError("已存在有效Token，忽略注册回调"))

        if self._state != TokenState.REGISTRATION_PENDING or self._pending_since is None:
            logger.warning("收到注册回调，但没有进行中的注册")
            return OperationResult.fail(RegistrationFailedError("没有进行中的注册，请先发起注册"))

        if self._pending_is_stale(self._pending_since):
            self._abandon_registration()
            return OperationResult.fail(RegistrationFailedError("注册会话已超时，请重新发起注册"))

        try:
            candidate = self._token_from_url(url)
            if candidate.is_expired(self._clock()):
                raise RegistrationFailedError("回调中的Token已过期")

            confirmed = await self._client.check_token_valid(candidate.value)
            if not confirmed:
                raise RegistrationFailedError("后端未确认回调中的Token")
        except SmsTokenError as e:
            logger.warning(f"注册回调处理失败: {str(e)}")
            if self._state == TokenState.REGISTRATION_PENDING:
                self._abandon_registration()
            return OperationResult.fail(e)

        if self._state != TokenState.REGISTRATION_PENDING:
            # 等待后端确认期间会话已结束
            return OperationResult.fail(RegistrationFailedError("注册会话已结束，忽略本次回调"))

        try:
            self._store.save(candidate)
        except StorageError as e:
            logger.error(f"保存Token失败: {str(e)}")
            self._abandon_registration()
            return OperationResult.fail(e)

        self._token = candidate
        self._clear_pending_marker()
        self._set_state(TokenState.TOKEN_ACTIVE)
        logger.info(f"注册完成: token={mask_token(candidate.value)}")
        return OperationResult.ok("注册完成，Token已保存", value=candidate)

    def _token_from_url(self, url: str) -> Token:
        """
        校验回调链接并构造候选Token

        Raises:
            MalformedUrlError: 链接格式无效
            UnrecognizedLinkError: 不是注册回调链接
            RegistrationFailedError: 回调携带失败信息或Token数据无效
        """
        parsed = self._parser.parse(url)

        if parsed.scheme != self._scheme or parsed.authority != self._registration_link:
            raise UnrecognizedLinkError(
                f"不是注册回调链接, 期望: {self._scheme}://{self._registration_link}"
            )

        status = parsed.get("status")
        if status and status.strip().lower() not in SUCCESS_STATUSES:
            reason = parsed.get("error") or parsed.get("message") or status
            raise RegistrationFailedError(f"注册被拒绝: {reason}")

        value = parsed.get("token")
        valid, error_msg = validate_token(value)
        if not valid:
            raise RegistrationFailedError(f"回调中的Token无效: {error_msg}")

        phone_number = parsed.get("phone")
        if phone_number:
            valid, error_msg = validate_phone_number(phone_number)
            if not valid:
                raise RegistrationFailedError(error_msg)

        issued_at = self._clock()
        return Token(
            value=value.strip(),
            issued_at=issued_at,
            expires_at=self._expiry_from_url(parsed, issued_at),
            phone_number=phone_number or None,
        )

    @staticmethod
    def _expiry_from_url(parsed: ParsedUrl, issued_at: datetime) -> Optional[datetime]:
        """expires_at 支持ISO-8601或Unix秒，expires_in 为有效秒数，都没有表示永不过期"""
        expires_at = parsed.get("expires_at")
        if expires_at:
            if expires_at.isascii() and expires_at.isdigit():
                try:
                    return datetime.fromtimestamp(int(expires_at), tz=timezone.utc)
                except (OverflowError, OSError, ValueError):
                    raise RegistrationFailedError(f"expires_at超出范围: {expires_at}")
            try:
                return parse_timestamp(expires_at, "expires_at")
            except ValueError as e:
                raise RegistrationFailedError(str(e))

        expires_in = parsed.get("expires_in")
        if expires_in:
            if not (expires_in.isascii() and expires_in.isdigit()) or int(expires_in) <= 0:
                raise RegistrationFailedError(f"expires_in格式无效: {expires_in!r}")
            try:
                return issued_at + timedelta(seconds=int(expires_in))
            except OverflowError:
                raise RegistrationFailedError(f"expires_in超出范围: {expires_in}")

        return None

    # ============== 受保护操作 ==============

    async def send_message(self, text: str) -> OperationResult:
        """使用当前Token发送短信"""
        await self._ensure_initialized()

        try:
            token = self._active_token("发送短信")
            valid, error_msg = validate_message_text(text)
            if not valid:
                raise InvalidMessageError(error_msg)
            await self._client.send_message(token.value, text)
        except SmsTokenError as e:
            logger.warning(f"发送短信失败: {str(e)}")
            return OperationResult.fail(e)

        return OperationResult.ok("短信发送成功")

    async def unregister(self) -> OperationResult:
        """注销当前Token，成功后清除本地存储"""
        await self._ensure_initialized()

        try:
            token = self._active_token("注销")
            if self._unregistering is token:
                raise NoValidTokenError("Token正在注销中，请勿重复操作")

            self._unregistering = token
            try:
                await self._client.unregister(token.value)
            finally:
                self._unregistering = None

            if self._token is token:
                self._clear_token()
                self._set_state(TokenState.NO_TOKEN)
        except SmsTokenError as e:
            logger.warning(f"注销失败: {str(e)}")
            return OperationResult.fail(e)

        return OperationResult.ok("注销成功，Token已失效并已清除")

    async def check_validity(self) -> OperationResult:
        """向后端确认当前Token是否仍然有效，无效时清除"""
        await self._ensure_initialized()

        try:
            token = self._active_token("检查Token状态")
            valid = await self._client.check_token_valid(token.value)
            if not valid:
                if self._token is token:
                    self._expire(token, "后端判定Token无效")
                raise ExpiredTokenError("Token已被后端判定为无效，请重新注册")
        except ExpiredTokenError as e:
            return OperationResult.fail(e, value=False)
        except SmsTokenError as e:
            logger.warning(f"检查Token状态失败: {str(e)}")
            return OperationResult.fail(e)

        return OperationResult.ok("Token当前有效", value=True)
