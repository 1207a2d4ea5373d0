"""
SMS Token Validators
Token、短信内容与导航目标格式验证模块
"""

import re
from typing import Tuple


# Token格式要求
MIN_TOKEN_LENGTH = 10  # 最小长度
MAX_TOKEN_LENGTH = 500  # 最大长度
# Token允许的字符集：字母、数字、下划线、连字符、点、等号（base64常见字符）
TOKEN_PATTERN = re.compile(r'^[A-Za-z0-9_\-\.=+/]+$')

# 短信内容长度上限（多段短信拼接）
MAX_MESSAGE_LENGTH = 1600

# 导航目标名称：字母开头，字母数字下划线连字符
DESTINATION_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9_\-]{0,63}$')

# E.164 手机号
PHONE_PATTERN = re.compile(r'^\+[1-9][0-9]{6,14}$')


def validate_token(token: str) -> Tuple[bool, str]:
    """
    验证Token格式有效性

    验证规则：
    1. Token不能为空或纯空白
    2. Token长度必须在MIN_TOKEN_LENGTH到MAX_TOKEN_LENGTH之间
    3. Token只能包含允许的字符集

    Args:
        token: 待验证的Token字符串

    Returns:
        Tuple[bool, str]: (是否有效, 错误信息或空字符串)
    """
    if token is None:
        return False, "Token不能为空"

    if not token or not token.strip():
        return False, "Token不能为空或纯空白"

    token = token.strip()

    if len(token) < MIN_TOKEN_LENGTH:
        return False, f"Token长度不能小于{MIN_TOKEN_LENGTH}个字符"

    if len(token) > MAX_TOKEN_LENGTH:
        return False, f"Token长度不能超过{MAX_TOKEN_LENGTH}个字符"

    if not TOKEN_PATTERN.match(token):
        return False, "Token包含非法字符，只允许字母、数字和特定符号(_-.=+/)"

    return True, ""


def is_valid_token(token: str) -> bool:
    """简化的Token验证函数"""
    valid, _ = validate_token(token)
    return valid


def validate_message_text(text: str) -> Tuple[bool, str]:
    """
    验证短信内容

    Args:
        text: 待发送的短信内容

    Returns:
        Tuple[bool, str]: (是否有效, 错误信息或空字符串)
    """
    if text is None or not text.strip():
        return False, "短信内容不能为空"

    if len(text) > MAX_MESSAGE_LENGTH:
        return False, f"短信内容长度不能超过{MAX_MESSAGE_LENGTH}个字符"

    return True, ""


def validate_destination_name(name: str) -> Tuple[bool, str]:
    """验证导航目标名称"""
    if name is None or not name.strip():
        return False, "导航目标不能为空"

    if not DESTINATION_PATTERN.match(name.strip()):
        return False, f"导航目标名称格式无效: {name}"

    return True, ""


def validate_phone_number(phone_number: str) -> Tuple[bool, str]:
    """
    验证手机号（E.164格式，例如 +359123456789）

    Args:
        phone_number: 待验证的手机号

    Returns:
        Tuple[bool, str]: (是否有效, 错误信息或空字符串)
    """
    if phone_number is None or not phone_number.strip():
        return False, "手机号不能为空"

    if not PHONE_PATTERN.match(phone_number.strip()):
        return False, "手机号格式无效，需为E.164格式（例如 +359123456789）"

    return True, ""


def is_valid_phone_number(phone_number: str) -> bool:
    """简化的手机号验证函数"""
    valid, _ = validate_phone_number(phone_number)
    return valid
