# services/fetcher.py
"""
订阅获取 - 代理优先、直连兜底、固定IP回退

阶段A: 本地代理已就绪时通过 127.0.0.1:port 请求
阶段B: 直连
阶段C: A/B 因 DNS、代理未就绪或连接问题失败，且目标是控制面域名时，
       改为连接固定 IPv4，保留原 Host 头

全部失败时返回空内容，调用方视为"暂无更新"。
"""
import asyncio
import errno
import logging
import socket
from contextlib import asynccontextmanager
from typing import Callable, Dict, Optional

import aiohttp

from ..config import config
from ..models.errors import FailureKind, FetchResult, NetworkFailure
from ..utils.urls import LOOPBACK_HOSTS, host_of, replace_host
from .signer import RequestSigner

logger = logging.getLogger(__name__)

USERINFO_HEADER = 'Subscription-UserInfo'
USERINFO_KEYS = ('upload', 'download', 'total', 'expire')

# 可以触发固定IP回退的失败类型
STAGE_A_FALLBACK_KINDS = (FailureKind.DNS, FailureKind.PROXY_NOT_READY)
STAGE_B_FALLBACK_KINDS = (FailureKind.DNS, FailureKind.CONNECTION_ISSUE)


def parse_userinfo(header: Optional[str]) -> Dict[str, Optional[int]]:
    """
    解析 subscription-userinfo 头
    格式: upload=123; download=456; total=789; expire=1234567890
    键不区分大小写，未知键忽略，无法解析的数值只影响该键
    """
    quota: Dict[str, Optional[int]] = {key: None for key in USERINFO_KEYS}
    if not header:
        return quota
    for part in header.split(';'):
        key, sep, value = part.partition('=')
        if not sep:
            continue
        key = key.strip().lower()
        if key not in quota:
            continue
        try:
            quota[key] = int(value.strip())
        except ValueError:
            logger.debug(f"userinfo 中 {key} 的值无效: {value!r}")
    return quota


def _decode_body(data: bytes, charset: Optional[str]) -> str:
    try:
        return data.decode(charset or 'utf-8', errors='ignore')
    except LookupError:
        return data.decode('utf-8', errors='ignore')


async def _read_limited(response: aiohttp.ClientResponse, limit: int) -> Optional[bytes]:
    """读取响应体，超过 limit 字节时返回 None"""
    if response.content_length is not None and response.content_length > limit:
        return None
    data = bytearray()
    async for chunk in response.content.iter_chunked(64 * 1024):
        data.extend(chunk)
        if len(data) > limit:
            return None
    return bytes(data)


def _has_gaierror(exc: BaseException) -> bool:
    seen = 0
    while exc is not None and seen < 5:
        if isinstance(exc, socket.gaierror):
            return True
        exc = exc.__cause__ or getattr(exc, 'os_error', None)
        seen += 1
    return False


def classify_failure(exc: BaseException, via_proxy: bool = False) -> NetworkFailure:
    """把请求异常映射为失败类型"""
    message = f"{type(exc).__name__}: {exc}"
    if isinstance(exc, asyncio.TimeoutError):
        return NetworkFailure(FailureKind.TIMEOUT, message)
    if isinstance(exc, aiohttp.ClientConnectorDNSError) or _has_gaierror(exc):
        return NetworkFailure(FailureKind.DNS, message)
    if via_proxy:
        if isinstance(exc, aiohttp.ClientProxyConnectionError):
            return NetworkFailure(FailureKind.PROXY_NOT_READY, message)
        if isinstance(exc, aiohttp.ClientConnectorError) and exc.host in LOOPBACK_HOSTS:
            return NetworkFailure(FailureKind.PROXY_NOT_READY, message)
        if isinstance(exc, ConnectionRefusedError):
            return NetworkFailure(FailureKind.PROXY_NOT_READY, message)
    if isinstance(exc, (aiohttp.ServerDisconnectedError, aiohttp.ClientPayloadError,
                        aiohttp.ClientResponseError, ConnectionResetError)):
        return NetworkFailure(FailureKind.CONNECTION_ISSUE, message)
    if isinstance(exc, aiohttp.ClientOSError) and exc.errno == errno.ECONNRESET:
        return NetworkFailure(FailureKind.CONNECTION_ISSUE, message)
    return NetworkFailure(FailureKind.OTHER, message)


class ResilientFetcher:
    """带重试路径选择的 HTTP GET"""

    def __init__(self, signer: Optional[RequestSigner] = None,
                 is_proxy_running: Optional[Callable[[], bool]] = None,
                 proxy_port: Optional[int] = None,
                 control_host: Optional[str] = None,
                 fallback_ip: Optional[str] = None,
                 timeout_ms: Optional[int] = None,
                 max_body_bytes: Optional[int] = None):
        self.signer = signer or RequestSigner()
        self.is_proxy_running = is_proxy_running or (lambda: False)
        self.proxy_port = config.HTTP_PROXY_PORT if proxy_port is None else proxy_port
        self.control_host = control_host or config.CONTROL_PLANE_HOST
        self.fallback_ip = fallback_ip or config.FALLBACK_IPV4
        self.timeout_ms = timeout_ms or config.REQUEST_TIMEOUT_MS
        self.max_body_bytes = max_body_bytes or config.MAX_BODY_BYTES
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """异步上下文管理器入口"""
        self.session = aiohttp.ClientSession()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """异步上下文管理器退出"""
        if self.session:
            await self.session.close()
            self.session = None

    @asynccontextmanager
    async def _session_scope(self):
        if self.session is not None:
            yield self.session
            return
        async with aiohttp.ClientSession() as session:
            yield session

    def is_control_host(self, url: str) -> bool:
        return host_of(url) == self.control_host

    def _headers(self, url: str, user_agent: Optional[str], signed: bool) -> Dict[str, str]:
        headers = {'User-Agent': user_agent or config.DEFAULT_USER_AGENT}
        if signed or self.is_control_host(url):
            headers.update(self.signer.create_auth_headers('GET', url))
        return headers

    async def _request(self, url: str, headers: Dict[str, str], timeout_ms: int,
                       proxy: Optional[str] = None) -> FetchResult:
        """单次 GET，失败通过返回值表达"""
        timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000)
        try:
            async with self._session_scope() as session:
                async with session.get(url, headers=headers, proxy=proxy, timeout=timeout) as response:
                    data = await _read_limited(response, self.max_body_bytes)
                    if data is None:
                        return FetchResult(failure=NetworkFailure(
                            FailureKind.OTHER, f"响应内容超过 {self.max_body_bytes} 字节", response.status))
                    text = _decode_body(data, response.charset)
                    if not 200 <= response.status < 300:
                        return FetchResult(failure=NetworkFailure(
                            FailureKind.HTTP_STATUS, response.reason or '', response.status, text[:1000]))
                    return FetchResult(body=text, user_info=response.headers.get(USERINFO_HEADER))
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            return FetchResult(failure=classify_failure(e, via_proxy=proxy is not None))

    async def get(self, url: str, user_agent: Optional[str] = None, timeout_ms: Optional[int] = None,
                  proxy_port: int = 0, signed: bool = False) -> FetchResult:
        """单次请求，不做阶段回退"""
        proxy = f"http://127.0.0.1:{proxy_port}" if proxy_port > 0 else None
        return await self._request(url, self._headers(url, user_agent, signed),
                                   timeout_ms or self.timeout_ms, proxy)

    async def fetch(self, url: str, user_agent: Optional[str] = None, timeout_ms: Optional[int] = None,
                    proxy_port: Optional[int] = None) -> FetchResult:
        timeout_ms = timeout_ms or self.timeout_ms
        port = self.proxy_port if proxy_port is None else proxy_port
        failure: Optional[NetworkFailure] = None
        try_fallback = False

        # 阶段A: 代理
        if self.is_proxy_running() and port > 0:
            result = await self.get(url, user_agent, timeout_ms, proxy_port=port)
            if result.ok and result.body:
                return result
            if result.failure:
                failure = result.failure
                if failure.kind is FailureKind.PROXY_NOT_READY:
                    logger.warning(f"本地代理未就绪，改为直连: {failure}")
                elif failure.kind is not FailureKind.DNS:
                    logger.error(f"通过代理获取订阅失败: {failure}")
                try_fallback = failure.kind in STAGE_A_FALLBACK_KINDS

        # 阶段B: 直连
        result = await self.get(url, user_agent, timeout_ms)
        if result.ok and result.body:
            return result
        if result.failure:
            failure = result.failure
            if failure.kind is FailureKind.CONNECTION_ISSUE:
                logger.warning(f"连接异常，将尝试回退: {failure}")
            elif failure.kind is not FailureKind.DNS:
                logger.error(f"获取订阅内容失败: {failure}")
            try_fallback = try_fallback or failure.kind in STAGE_B_FALLBACK_KINDS
        elif result.ok:
            return result

        # 阶段C: 固定IP
        if try_fallback and self.is_control_host(url):
            fallback = await self._fetch_via_fallback_ip(url, user_agent)
            if fallback.ok and fallback.body:
                return fallback
            failure = fallback.failure or failure

        return FetchResult(failure=failure)

    async def _fetch_via_fallback_ip(self, url: str, user_agent: Optional[str]) -> FetchResult:
        ip_url, host_header = replace_host(url, self.fallback_ip)
        logger.warning(f"DNS/代理失败，改用固定IP请求 url={ip_url} host={host_header}")

        headers = {
            'User-Agent': user_agent or config.CUSTOM_API_USER_AGENT,
            'Host': host_header,
        }
        headers.update(self.signer.create_auth_headers('GET', ip_url))
        result = await self._request(ip_url, headers, config.CUSTOM_API_TIMEOUT_MS)
        if result.failure:
            if result.failure.kind is FailureKind.HTTP_STATUS:
                logger.error(f"固定IP请求返回 HTTP {result.failure.status}: {result.failure.body[:200]}")
            else:
                logger.error(f"固定IP请求失败: {result.failure}")
        return result
