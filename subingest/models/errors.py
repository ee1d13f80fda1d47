# models/errors.py
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class IngestError(Exception):
    """所有可抛出错误的基类"""


class ParseFailure(IngestError, ValueError):
    """无法识别或格式错误的配置/订阅文本，只影响当前这一行"""

    def __init__(self, reason: str, text: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.text = text[:80]


class SignatureFailure(IngestError):
    """签名生成失败，属于构建或运行环境问题"""


class FailureKind(Enum):
    """网络失败分类"""
    DNS = "dns"
    PROXY_NOT_READY = "proxy_not_ready"
    CONNECTION_ISSUE = "connection_issue"
    HTTP_STATUS = "http_status"
    TIMEOUT = "timeout"
    OTHER = "other"


@dataclass
class NetworkFailure:
    """已分类的网络失败，作为返回值而不是异常传递"""
    kind: FailureKind
    message: str = ""
    status: Optional[int] = None
    body: str = ""

    def __str__(self) -> str:
        if self.kind is FailureKind.HTTP_STATUS:
            return f"HTTP {self.status}: {self.body[:200]}"
        return f"{self.kind.value}: {self.message}"


@dataclass
class FetchResult:
    """一次请求的结果"""
    body: str = ""
    user_info: Optional[str] = None
    failure: Optional[NetworkFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


class RegistrationError(IngestError):
    """设备注册失败"""

    def __init__(self, message: str, failure: Optional[NetworkFailure] = None):
        super().__init__(message)
        self.failure = failure


class AuthFailure(RegistrationError):
    """设备标识或订阅标识缺失"""
