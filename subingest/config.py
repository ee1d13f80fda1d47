# config.py
import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """配置管理类 - 所有配置均可通过环境变量或 .env 覆盖"""
    # 存储配置
    STORAGE_FILE = os.getenv('STORAGE_FILE', 'subingest.json')

    # 网络配置（毫秒）
    REQUEST_TIMEOUT_MS = int(os.getenv('REQUEST_TIMEOUT_MS', '15000'))
    CUSTOM_API_TIMEOUT_MS = int(os.getenv('CUSTOM_API_TIMEOUT_MS', '20000'))
    MAX_BODY_BYTES = int(os.getenv('MAX_BODY_BYTES', str(10 * 1024 * 1024)))

    # User-Agent
    DEFAULT_USER_AGENT = os.getenv('DEFAULT_USER_AGENT', 'v2rayNG/1.9.0')
    CUSTOM_API_USER_AGENT = os.getenv(
        'CUSTOM_API_USER_AGENT',
        'Mozilla/5.0 (Linux; Android 13) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Mobile Safari/537.36'
    )

    # 本地代理端口（隧道运行时可用）
    HTTP_PROXY_PORT = int(os.getenv('HTTP_PROXY_PORT', '10809'))

    # 控制面配置
    CONTROL_PLANE_HOST = os.getenv('CONTROL_PLANE_HOST', 'sub.example.net')
    FALLBACK_IPV4 = os.getenv('FALLBACK_IPV4', '203.0.113.10')
    REGISTRATION_URL = os.getenv('REGISTRATION_URL', 'http://sub.example.net:8001/register')
    REGISTRATION_URL_FALLBACK = os.getenv('REGISTRATION_URL_FALLBACK', 'http://203.0.113.10:8001/register')
    SUBSCRIPTION_BASE_URL = os.getenv('SUBSCRIPTION_BASE_URL', 'http://sub.example.net:8001/sub')
    SUBSCRIPTION_REMARKS = os.getenv('SUBSCRIPTION_REMARKS', 'default')

    # 请求签名
    API_SECRET_KEY = os.getenv('API_SECRET_KEY', 'YOUR_SECRET_KEY_HERE_CHANGE_THIS_IN_PRODUCTION')
    APP_PACKAGE = os.getenv('APP_PACKAGE', 'com.v2ray.ang')
    APP_VERSION = os.getenv('APP_VERSION', '1.9.0')

    # 同步配置
    SYNC_APPEND = _env_bool('SYNC_APPEND', True)
    SYNC_CONCURRENCY = int(os.getenv('SYNC_CONCURRENCY', '1'))

    # 日志
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')


config = Config()
