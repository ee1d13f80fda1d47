# models/subscription.py
import time
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Dict, Optional


@dataclass
class SubscriptionItem:
    """订阅信息"""
    url: str = ""
    remarks: str = ""
    enabled: bool = True
    filter: Optional[str] = None
    allow_insecure_url: bool = False
    user_agent: str = ""
    upload: Optional[int] = None
    download: Optional[int] = None
    total: Optional[int] = None
    expire: Optional[int] = None
    add_time: float = 0.0

    def __post_init__(self):
        if not self.add_time:
            self.add_time = time.time()

    @property
    def used(self) -> Optional[int]:
        if self.upload is None and self.download is None:
            return None
        return (self.upload or 0) + (self.download or 0)

    @property
    def remaining(self) -> Optional[int]:
        if self.total is None or self.used is None:
            return None
        return max(0, self.total - self.used)

    @property
    def usage_percentage(self) -> float:
        if not self.total or self.used is None:
            return 0
        return min(100, (self.used / self.total) * 100)

    @property
    def is_expired(self) -> bool:
        if not self.expire:
            return False
        return datetime.now().timestamp() > self.expire

    def apply_quota(self, quota: Dict[str, Optional[int]]):
        """用 subscription-userinfo 解析结果覆盖流量字段，缺失的键视为未知"""
        self.upload = quota.get('upload')
        self.download = quota.get('download')
        self.total = quota.get('total')
        self.expire = quota.get('expire')

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'SubscriptionItem':
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class UserCredentials:
    """设备注册后得到的凭据"""
    subscription_id: str = ""
    server_url: str = ""
    login_time: float = 0.0

    def __post_init__(self):
        if not self.login_time:
            self.login_time = time.time()

    @property
    def is_valid(self) -> bool:
        return bool(self.subscription_id.strip() and self.server_url.strip())

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'UserCredentials':
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in known})
