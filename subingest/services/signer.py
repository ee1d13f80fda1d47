# services/signer.py
"""
请求签名 - 让控制面只接受本客户端发出的请求

签名串: UPPER(method)|url|timestamp|nonce|package[|body]
签名:   base64(HMAC-SHA256(secret, 签名串))

服务端校验规则（客户端不执行，verify 仅作参考实现）:
- |now - timestamp| 超过 5 分钟则拒绝
- package 不一致则拒绝
- 重新计算签名并做常量时间比较
"""
import base64
import hashlib
import hmac
import logging
import secrets
import time
from typing import Dict, Optional

from ..config import config
from ..models.errors import SignatureFailure

logger = logging.getLogger(__name__)

HEADER_APP_PACKAGE = "X-App-Package"
HEADER_APP_VERSION = "X-App-Version"
HEADER_TIMESTAMP = "X-Request-Timestamp"
HEADER_NONCE = "X-Request-Nonce"
HEADER_SIGNATURE = "X-Request-Signature"

MAX_TIMESTAMP_DIFF_MS = 5 * 60 * 1000


class RequestSigner:
    """HMAC-SHA256 请求签名器"""

    def __init__(self, secret: Optional[str] = None, package_id: Optional[str] = None,
                 version: Optional[str] = None):
        self.secret = (secret if secret is not None else config.API_SECRET_KEY).encode('utf-8')
        self.package_id = package_id or config.APP_PACKAGE
        self.version = version or config.APP_VERSION

    @staticmethod
    def canonical_string(method: str, url: str, timestamp_ms: int, nonce: str,
                         package_id: str, body: str = "") -> str:
        parts = [method.upper(), url, str(timestamp_ms), nonce, package_id]
        if body:
            parts.append(body)
        return "|".join(parts)

    def sign(self, method: str, url: str, timestamp_ms: int, nonce: str,
             package_id: str, body: str = "") -> str:
        string_to_sign = self.canonical_string(method, url, timestamp_ms, nonce, package_id, body)
        logger.debug(f"签名请求: {method.upper()} {url}")
        try:
            digest = hmac.new(self.secret, string_to_sign.encode('utf-8'), hashlib.sha256).digest()
        except (TypeError, ValueError) as e:
            logger.error(f"生成签名失败: {e}")
            raise SignatureFailure("Failed to generate API signature") from e
        return base64.b64encode(digest).decode('ascii')

    @staticmethod
    def generate_nonce() -> str:
        return base64.urlsafe_b64encode(secrets.token_bytes(16)).decode('ascii').rstrip('=')

    @staticmethod
    def current_timestamp() -> int:
        return int(time.time() * 1000)

    def create_auth_headers(self, method: str, url: str, body: str = "") -> Dict[str, str]:
        """每次调用都生成新的时间戳和 nonce"""
        timestamp = self.current_timestamp()
        nonce = self.generate_nonce()
        signature = self.sign(method, url, timestamp, nonce, self.package_id, body)
        return {
            HEADER_APP_PACKAGE: self.package_id,
            HEADER_APP_VERSION: self.version,
            HEADER_TIMESTAMP: str(timestamp),
            HEADER_NONCE: nonce,
            HEADER_SIGNATURE: signature,
        }

    def verify(self, method: str, url: str, timestamp_ms: int, nonce: str, package_id: str,
               body: str, received_signature: str, now_ms: Optional[int] = None) -> bool:
        """服务端校验（参考实现）"""
        now_ms = self.current_timestamp() if now_ms is None else now_ms
        if abs(now_ms - timestamp_ms) > MAX_TIMESTAMP_DIFF_MS:
            logger.warning("签名校验失败: 时间戳超出允许范围，可能是重放请求")
            return False
        if package_id != self.package_id:
            logger.warning(f"签名校验失败: package 不一致 expected={self.package_id} got={package_id}")
            return False
        expected = self.sign(method, url, timestamp_ms, nonce, package_id, body)
        return hmac.compare_digest(expected, received_signature)
