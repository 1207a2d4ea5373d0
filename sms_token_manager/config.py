"""
SMS Token Manager Configuration
短信Token管理系统配置文件
"""

import os
from pathlib import Path
from datetime import datetime, timezone
from dotenv import load_dotenv

# 加载 .env 文件
load_dotenv()


def utc_now() -> datetime:
    """获取当前UTC时间（带时区）"""
    return datetime.now(timezone.utc)


def _split_csv(value: str) -> list:
    return [item.strip() for item in value.split(",") if item.strip()]


# 基础路径配置
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = BASE_DIR / "token_data"

# 数据库配置（持久化键值存储）
DATABASE_URL = os.getenv("SMS_TOKEN_DB_URL", f"sqlite:///{DATA_DIR}/sms_tokens.db")

if DATABASE_URL.startswith("sqlite:///") and ":memory:" not in DATABASE_URL:
    # 确保数据目录存在
    DATA_DIR.mkdir(exist_ok=True)

# ============== 短信服务后端配置 ==============
SMS_API_BASE_URL = os.getenv("SMS_API_BASE_URL", "http://127.0.0.1:8000")
SMS_GAME_API_KEY = os.getenv("SMS_GAME_API_KEY", "")
SMS_SERVICE_PHONE_NUMBER = os.getenv("SMS_SERVICE_PHONE_NUMBER", "+359123456789")
SMS_HTTP_TIMEOUT = float(os.getenv("SMS_HTTP_TIMEOUT", "30"))  # 秒

# ============== 深度链接配置 ==============
DEEP_LINK_SCHEME = os.getenv("DEEP_LINK_SCHEME", "smsapp")
# 导航链接标识，例如 smsapp://rewardslink?destination=Main
DEEP_LINK_IDENTIFIER = os.getenv("DEEP_LINK_IDENTIFIER", "rewardslink")
DEEP_LINK_DESTINATIONS = _split_csv(os.getenv("DEEP_LINK_DESTINATIONS", "Main,Shop"))
DEEP_LINK_DESTINATION_KEY = os.getenv("DEEP_LINK_DESTINATION_KEY", "destination")
DEEP_LINK_MAX_LENGTH = int(os.getenv("DEEP_LINK_MAX_LENGTH", "2048"))

# 注册完成回调链接标识，例如 smsapp://sms-verified?token=...&expires_in=3600
REGISTRATION_LINK_IDENTIFIER = os.getenv("REGISTRATION_LINK_IDENTIFIER", "sms-verified")
# 注册会话超时（秒），超时后待完成的注册视为放弃
REGISTRATION_PENDING_TIMEOUT = int(os.getenv("REGISTRATION_PENDING_TIMEOUT", "1800"))

# ============== Token存储配置 ==============
TOKEN_STORAGE_KEY = os.getenv("TOKEN_STORAGE_KEY", "sms_token")
PENDING_STORAGE_KEY = os.getenv("PENDING_STORAGE_KEY", "sms_registration_pending")

# 加密配置
TOKEN_ENCRYPT_KEY = os.getenv("TOKEN_ENCRYPT_KEY", None)

# 测试短信内容
TEST_SMS_MESSAGE = os.getenv("TEST_SMS_MESSAGE", "Hello from my game, this is a test message!")

# 服务器配置
SERVER_HOST = os.getenv("SERVER_HOST", "127.0.0.1")
SERVER_PORT = int(os.getenv("SERVER_PORT", "8080"))

# 日志配置
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
