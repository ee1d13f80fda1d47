# utils/urls.py
import urllib.parse
from typing import Optional, Tuple

LOOPBACK_HOSTS = ('127.0.0.1', 'localhost', '::1')


def _idna(host: str) -> str:
    try:
        return host.encode('idna').decode('ascii')
    except (UnicodeError, ValueError):
        return host


def host_of(url: str) -> Optional[str]:
    try:
        return urllib.parse.urlsplit(url.strip()).hostname
    except ValueError:
        return None


def is_valid_url(value: Optional[str]) -> bool:
    """判断是否为格式正确的 http(s) URL"""
    if not value:
        return False
    value = value.strip()
    if any(ch.isspace() for ch in value):
        return False
    try:
        parts = urllib.parse.urlsplit(value)
        # 访问 port 会校验端口范围
        parts.port
    except ValueError:
        return False
    return parts.scheme in ('http', 'https') and bool(parts.hostname)


def is_valid_sub_url(value: Optional[str]) -> bool:
    """订阅链接规则：https，或者指向本机回环地址的 http"""
    if not is_valid_url(value):
        return False
    parts = urllib.parse.urlsplit(value.strip())
    if parts.scheme == 'https':
        return True
    return parts.hostname in LOOPBACK_HOSTS


def to_idn_url(url: str) -> str:
    """把域名部分转换为 punycode，其余部分保持不变"""
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return url
    host = parts.hostname
    if not host or host.isascii():
        return url
    netloc = parts.netloc.replace(host, _idna(host), 1)
    return urllib.parse.urlunsplit(parts._replace(netloc=netloc))


def replace_host(url: str, new_host: str) -> Tuple[str, str]:
    """把连接目标换成 new_host，返回 (新URL, 原始Host头)

    scheme、端口、路径、查询和 fragment 保持不变。
    """
    parts = urllib.parse.urlsplit(url)
    original_host = parts.hostname or ''
    port = parts.port
    host_header = f"{original_host}:{port}" if port else original_host

    netloc = new_host if port is None else f"{new_host}:{port}"
    userinfo = parts.netloc.rpartition('@')[0]
    if userinfo:
        netloc = f"{userinfo}@{netloc}"
    return urllib.parse.urlunsplit(parts._replace(netloc=netloc)), host_header


def build_subscription_url(base_url: str, subscription_id: str) -> str:
    """{base}/{subscriptionId}"""
    return f"{base_url.rstrip('/')}/{subscription_id}"


def fragment_of(url: str) -> str:
    try:
        return urllib.parse.unquote(urllib.parse.urlsplit(url).fragment)
    except ValueError:
        return ""
