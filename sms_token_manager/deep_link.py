"""
Deep Link Router
深度链接路由模块

负责处理宿主平台传入的深度链接，包括：
- 校验链接标识
- 提取导航目标并与允许列表比对
- 提取附加参数
- 触发导航回调

外部URL是信任边界：handle() 对任何输入都不会抛出异常，
错误通过返回的 DeepLinkResult 报告。
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from .config import DEEP_LINK_DESTINATION_KEY
from .errors import (
    SmsTokenError,
    MalformedUrlError,
    UnrecognizedLinkError,
    InvalidDestinationError,
    NavigationError,
)
from .url_parser import ParsedUrl, URLQueryParser
from .validators import validate_destination_name

# 配置日志
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeepLinkRequest:
    """
    单次深度链接事件

    每次回调新建，处理完即丢弃
    """
    url: str
    destination: str
    parameters: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DeepLinkResult:
    """深度链接处理结果"""
    url: str
    request: Optional[DeepLinkRequest] = None
    error: Optional[SmsTokenError] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.request is not None

    @property
    def message(self) -> str:
        if self.success:
            return f"已导航到: {self.request.destination}"
        return str(self.error)


class DeepLinkRouter:
    """
    深度链接路由器

    示例: link_identifier="rewardslink", valid_destinations={"Main", "Shop"}
    smsapp://rewardslink?destination=Main&user=123
    -> 导航到 Main, parameters = {"user": "123"}
    """

    def __init__(
        self,
        link_identifier: str,
        valid_destinations: Iterable[str] = (),
        navigator: Optional[Callable[[str], None]] = None,
        destination_key: str = DEEP_LINK_DESTINATION_KEY,
        parser: Optional[URLQueryParser] = None
    ):
        """
        初始化路由器

        Args:
            link_identifier: 期望出现在链接中的标识
            valid_destinations: 允许导航的目标名称
            navigator: 导航回调，参数为目标名称
            destination_key: 目标名称对应的查询参数名
            parser: URL解析器，默认新建
        """
        if not link_identifier or not link_identifier.strip():
            raise ValueError("link_identifier不能为空")

        self._link_identifier = link_identifier.strip()
        self._destinations = set()
        self._navigator = navigator
        self._destination_key = destination_key
        self._parser = parser or URLQueryParser()
        self._listeners: List[Callable[[DeepLinkRequest], None]] = []

        self._last_url = "[none]"
        self._parameters: Dict[str, str] = {}

        for name in valid_destinations:
            self.add_destination(name)

        logger.info(
            f"DeepLinkRouter初始化完成, link={self._link_identifier}, "
            f"destinations={sorted(self._destinations)}"
        )

    @property
    def link_identifier(self) -> str:
        return self._link_identifier

    @property
    def valid_destinations(self) -> FrozenSet[str]:
        return frozenset(self._destinations)

    @property
    def last_url(self) -> str:
        """最近一次收到的深度链接URL"""
        return self._last_url

    @property
    def parameters(self) -> Dict[str, str]:
        """最近一次成功路由提取的参数（副本）"""
        return dict(self._parameters)

    def set_navigator(self, navigator: Optional[Callable[[str], None]]) -> None:
        self._navigator = navigator

    def add_listener(self, callback: Callable[[DeepLinkRequest], None]) -> None:
        """订阅成功路由的深度链接事件"""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[DeepLinkRequest], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def add_destination(self, name: str) -> None:
        """
        添加允许的导航目标

        Raises:
            ValueError: 目标名称格式无效
        """
        valid, error_msg = validate_destination_name(name)
        if not valid:
            raise ValueError(error_msg)
        self._destinations.add(name.strip())

    def remove_destination(self, name: str) -> bool:
        if name in self._destinations:
            self._destinations.remove(name)
            return True
        return False

    def is_valid_destination(self, name: Optional[str]) -> bool:
        return name is not None and name in self._destinations

    def _contains_identifier(self, parsed: ParsedUrl) -> bool:
        # 只看authority和路径片段，查询参数中出现标识不算
        return (
            parsed.authority == self._link_identifier
            or self._link_identifier in parsed.path_segments
        )

    def matches(self, url: str) -> bool:
        """判断URL是否属于本路由器的链接标识，格式错误返回False"""
        try:
            return self._contains_identifier(self._parser.parse(url))
        except MalformedUrlError:
            return False

    def handle(self, url: str) -> DeepLinkResult:
        """
        处理深度链接

        Args:
            url: 宿主平台传入的URL

        Returns:
            DeepLinkResult: 处理结果，失败时 error 不为空
        """
        self._last_url = url
        self._parameters = {}

        try:
            parsed = self._parser.parse(url)
        except MalformedUrlError as e:
            logger.warning(f"深度链接格式无效: {str(e)}")
            return DeepLinkResult(url=url, error=e)

        if not self._contains_identifier(parsed):
            logger.warning(f"URL不包含期望的链接标识: {self._link_identifier}")
            return DeepLinkResult(
                url=url,
                error=UnrecognizedLinkError(f"无法识别的链接, 期望标识: {self._link_identifier}")
            )

        destination = parsed.get(self._destination_key)
        if not self.is_valid_destination(destination):
            logger.warning(f"深度链接中的导航目标无效: {destination}")
            return DeepLinkResult(
                url=url,
                error=InvalidDestinationError(f"无效的导航目标: {destination}")
            )

        parameters = {
            key: value
            for key, value in parsed.query_params.items()
            if key != self._destination_key
        }
        request = DeepLinkRequest(url=url, destination=destination, parameters=parameters)

        if self._navigator is not None:
            try:
                self._navigator(destination)
            except Exception as e:
                logger.exception(f"导航回调执行失败: destination={destination}")
                return DeepLinkResult(
                    url=url,
                    error=NavigationError(f"导航到{destination}失败: {str(e)}")
                )
        self._parameters = dict(parameters)
        logger.info(f"深度链接导航: destination={destination}, params={sorted(parameters)}")

        failed_listeners = 0
        for listener in list(self._listeners):
            try:
                listener(request)
            except Exception:
                logger.exception(f"深度链接监听器执行失败: {listener!r}")
                failed_listeners += 1

        if failed_listeners:
            return DeepLinkResult(
                url=url,
                error=NavigationError(f"已导航到{destination}，但有{failed_listeners}个监听器执行失败")
            )
        return DeepLinkResult(url=url, request=request)

    def handle_launch_url(self, url: Optional[str]) -> Optional[DeepLinkResult]:
        """
        处理应用冷启动时携带的URL

        Returns:
            Optional[DeepLinkResult]: 没有启动URL时返回None
        """
        if not url:
            return None
        logger.info("处理启动时的深度链接")
        return self.handle(url)
