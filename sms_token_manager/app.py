"""
SMS Link App
宿主应用集成模块

把Token生命周期管理器和深度链接路由器组合在一起，供UI按钮或HTTP端点调用：
- 启动时加载已保存的Token并处理启动链接
- 深度链接分发（注册回调 / 页面导航）
- 注册、发送短信、注销、检查状态
- 状态文本通知
"""

import logging
from typing import Callable, Iterable, Optional

from .client import HttpSmsApiClient, SmsApiClient
from .config import (
    DEEP_LINK_SCHEME,
    DEEP_LINK_IDENTIFIER,
    DEEP_LINK_DESTINATIONS,
    REGISTRATION_LINK_IDENTIFIER,
    TEST_SMS_MESSAGE,
)
from .credential_store import CredentialStore
from .deep_link import DeepLinkRouter
from .lifecycle import OperationResult, TokenLifecycleManager
from .models import TokenState
from .storage import KeyValueStore, SqlKeyValueStore

# 配置日志
logger = logging.getLogger(__name__)


class SmsLinkApp:
    """
    短信注册宿主应用

    所有入口都不会向宿主抛出业务异常，结果通过 OperationResult 和状态文本返回
    """

    def __init__(
        self,
        manager: TokenLifecycleManager,
        router: DeepLinkRouter,
        status_callback: Optional[Callable[[str], None]] = None,
        test_message: str = TEST_SMS_MESSAGE
    ):
        self.manager = manager
        self.router = router
        self._status_callback = status_callback
        self._test_message = test_message
        self._status = ""

    @property
    def status(self) -> str:
        """最近一次状态文本"""
        return self._status

    def update_status(self, message: str) -> None:
        """更新状态文本并写入日志"""
        self._status = message
        if self._status_callback is not None:
            self._status_callback(message)
        logger.info(f"[SmsLinkApp] {message}")

    def _report(self, result: OperationResult, success_prefix: str = "SUCCESS") -> OperationResult:
        if result.success:
            self.update_status(f"{success_prefix}: {result.message}")
        else:
            self.update_status(f"ERROR: {result.message}")
        return result

    async def start(self, launch_url: Optional[str] = None) -> OperationResult:
        """
        启动：加载Token，然后处理应用启动时携带的链接
        """
        result = await self.manager.init()
        self._report(result, success_prefix="READY")
        if launch_url:
            await self.on_deep_link(launch_url)
        return result

    async def on_deep_link(self, url: str) -> OperationResult:
        """
        深度链接入口

        注册回调交给生命周期管理器，其余链接交给路由器
        """
        self.update_status(f"Deep link activated: {url}. Processing...")

        if self.manager.is_registration_link(url):
            return self._report(await self.manager.complete_registration(url))

        routed = self.router.handle(url)
        if routed.success:
            return self._report(OperationResult.ok(routed.message, value=routed.request))
        return self._report(OperationResult.fail(routed.error))

    async def register(self) -> OperationResult:
        self.update_status("Opening SMS app for registration...")
        return self._report(await self.manager.start_registration())

    async def send_sms(self, text: Optional[str] = None) -> OperationResult:
        text = text if text is not None else self._test_message
        self.update_status(f"Sending SMS: '{text}'...")
        return self._report(await self.manager.send_message(text))

    async def unregister(self) -> OperationResult:
        self.update_status("Attempting to unregister token...")
        return self._report(await self.manager.unregister())

    async def check_token_status(self) -> OperationResult:
        self.update_status("Checking token status...")
        return self._report(await self.manager.check_validity())

    def current_state(self) -> TokenState:
        return self.manager.current_state()


def build_app(
    store: Optional[KeyValueStore] = None,
    client: Optional[SmsApiClient] = None,
    navigator: Optional[Callable[[str], None]] = None,
    sms_launcher: Optional[Callable[[str], None]] = None,
    status_callback: Optional[Callable[[str], None]] = None,
    destinations: Iterable[str] = DEEP_LINK_DESTINATIONS,
    link_identifier: str = DEEP_LINK_IDENTIFIER,
    registration_link: str = REGISTRATION_LINK_IDENTIFIER,
    scheme: str = DEEP_LINK_SCHEME
) -> SmsLinkApp:
    """
    按配置组装宿主应用

    Args:
        store: 键值存储，默认使用SQLAlchemy存储
        client: 短信服务客户端，默认使用HTTP客户端
        navigator: 页面导航回调
        sms_launcher: 打开短信应用的回调
        status_callback: 状态文本回调
    """
    credential_store = CredentialStore(store if store is not None else SqlKeyValueStore())
    manager = TokenLifecycleManager(
        client=client if client is not None else HttpSmsApiClient(),
        credential_store=credential_store,
        scheme=scheme,
        registration_link=registration_link,
        sms_launcher=sms_launcher,
    )
    router = DeepLinkRouter(
        link_identifier=link_identifier,
        valid_destinations=destinations,
        navigator=navigator,
    )
    return SmsLinkApp(manager, router, status_callback=status_callback)
