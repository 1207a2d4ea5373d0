"""
SMS Token Errors
短信Token管理系统异常定义
"""


class SmsTokenError(Exception):
    """短信Token管理系统异常基类"""
    pass


class MalformedUrlError(SmsTokenError):
    """URL格式无效"""
    pass


class UnrecognizedLinkError(SmsTokenError):
    """URL不包含期望的链接标识"""
    pass


class InvalidDestinationError(SmsTokenError):
    """导航目标不在允许列表中"""
    pass


class NoValidTokenError(SmsTokenError):
    """没有有效Token时尝试执行受保护操作"""
    pass


class RegistrationFailedError(SmsTokenError):
    """注册失败（后端拒绝或回调携带失败信息）"""
    pass


class TransportError(SmsTokenError):
    """短信服务后端调用失败，消息原样透传"""
    pass


class ExpiredTokenError(SmsTokenError):
    """Token已过期或已被后端判定为无效"""
    pass


class InvalidMessageError(SmsTokenError):
    """短信内容无效"""
    pass


class StorageError(SmsTokenError):
    """持久化存储操作失败"""
    pass


class CorruptedCredentialError(StorageError):
    """存储中的Token记录无法解密或解析"""
    pass


class NavigationError(SmsTokenError):
    """宿主的导航回调或监听器执行失败"""
    pass
