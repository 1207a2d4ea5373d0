"""
URL Query Parser
深度链接URL解析模块

将外部传入的URL解析为链接标识（authority）和查询参数字典。
所有输入都视为不可信数据，格式错误统一抛出 MalformedUrlError。
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urlsplit, unquote

from .config import DEEP_LINK_MAX_LENGTH
from .errors import MalformedUrlError

# 配置日志
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedUrl:
    """
    URL解析结果

    authority 对于 scheme://host/... 形式取 host，
    对于 scheme:token?... 形式取第一个路径片段
    """
    raw: str
    scheme: str
    authority: str
    query_params: Dict[str, str] = field(default_factory=dict)
    path: str = ""

    @property
    def path_segments(self) -> List[str]:
        """百分号解码后的非空路径片段"""
        return [unquote(segment) for segment in self.path.split("/") if segment]

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """获取查询参数"""
        return self.query_params.get(key, default)


class URLQueryParser:
    """
    URL解析器

    查询参数规则：
    - 键和值只做百分号解码，+ 保持原样（Base64 Token中常见）
    - 重复的键以最后一次出现为准
    - 没有查询串时返回空字典
    """

    def __init__(self, max_length: int = DEEP_LINK_MAX_LENGTH):
        self._max_length = max_length

    def parse(self, url: str) -> ParsedUrl:
        """
        解析URL

        Args:
            url: 原始URL字符串

        Returns:
            ParsedUrl: 解析结果

        Raises:
            MalformedUrlError: URL格式无效
        """
        if not isinstance(url, str):
            raise MalformedUrlError(f"URL必须是字符串, 实际类型: {type(url).__name__}")

        if not url or not url.strip():
            raise MalformedUrlError("URL不能为空")

        if len(url) > self._max_length:
            raise MalformedUrlError(f"URL长度不能超过{self._max_length}个字符")

        if any(ch.isspace() or ord(ch) < 0x20 or ord(ch) == 0x7f for ch in url):
            raise MalformedUrlError("URL包含空白或控制字符")

        try:
            parts = urlsplit(url)
        except ValueError as e:
            raise MalformedUrlError(f"URL无法解析: {str(e)}")

        if not parts.scheme:
            raise MalformedUrlError(f"URL缺少scheme: {url}")

        # 去掉用户信息和端口，保留原始大小写
        authority = parts.netloc.rpartition("@")[2].split(":", 1)[0]
        if not authority:
            # scheme:token?... 形式，取路径第一段
            authority = parts.path.lstrip("/").split("/", 1)[0]

        if not authority:
            raise MalformedUrlError(f"URL缺少链接标识: {url}")

        return ParsedUrl(
            raw=url,
            scheme=parts.scheme.lower(),
            authority=authority,
            query_params=self.parse_query(parts.query),
            path=parts.path,
        )

    @staticmethod
    def parse_query(query: str) -> Dict[str, str]:
        """
        解析查询串

        Args:
            query: 不带 ? 的查询串

        Returns:
            Dict[str, str]: 参数字典，重复键取最后一次出现的值
        """
        if not query:
            return {}

        params: Dict[str, str] = {}
        for pair in query.split("&"):
            key, _, value = pair.partition("=")
            key = unquote(key)
            if not key:
                continue
            params[key] = unquote(value)
        return params


_default_parser = URLQueryParser()


def parse_url(url: str) -> ParsedUrl:
    """便捷函数：使用默认解析器解析URL"""
    return _default_parser.parse(url)
