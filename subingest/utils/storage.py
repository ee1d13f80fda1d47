# utils/storage.py
import json
import logging
import os
import threading
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

from ..models.profile import Profile
from ..models.subscription import SubscriptionItem, UserCredentials

logger = logging.getLogger(__name__)


def new_key() -> str:
    return uuid.uuid4().hex


class ProfileStore:
    """配置与订阅存储

    单个键的写入是原子的（临时文件 + os.replace），不提供跨记录事务。
    storage_file 为 None 时只保存在内存中。
    """

    def __init__(self, storage_file: Optional[str] = None):
        self.storage_file = storage_file
        self._lock = threading.RLock()
        self._device_lock = threading.Lock()
        self.data = self._load_data()

    @staticmethod
    def _empty() -> Dict:
        return {
            "profiles": {},
            "subscriptions": {},
            "selected": None,
            "credentials": None,
            "device_id": None,
        }

    def _load_data(self) -> Dict:
        """加载存储的数据"""
        data = self._empty()
        if self.storage_file and os.path.exists(self.storage_file):
            try:
                with open(self.storage_file, 'r', encoding='utf-8') as f:
                    data.update(json.load(f))
            except (OSError, ValueError) as e:
                logger.error(f"加载存储文件失败: {e}")
        return data

    def _save_data(self):
        """原子地保存到文件"""
        if not self.storage_file:
            return
        tmp = self.storage_file + '.tmp'
        try:
            directory = os.path.dirname(self.storage_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump(self.data, f, ensure_ascii=False, indent=2)
            os.replace(tmp, self.storage_file)
        except OSError as e:
            logger.error(f"保存存储文件失败: {e}")
            raise

    # 配置

    def encode_profile(self, key: Optional[str], profile: Profile) -> str:
        with self._lock:
            key = key or new_key()
            self.data["profiles"][key] = profile.to_dict()
            self._save_data()
            return key

    def decode_profile(self, key: Optional[str]) -> Optional[Profile]:
        if not key:
            return None
        raw = self.data["profiles"].get(key)
        return Profile.from_dict(raw) if raw else None

    def profiles(self, subscription_id: Optional[str] = None) -> List[Tuple[str, Profile]]:
        """按插入顺序返回配置"""
        with self._lock:
            items = list(self.data["profiles"].items())
        result = []
        for key, raw in items:
            profile = Profile.from_dict(raw)
            if subscription_id is None or profile.subscription_id == subscription_id:
                result.append((key, profile))
        return result

    def remove_profiles(self, keys: Iterable[str]) -> int:
        with self._lock:
            removed = 0
            for key in list(keys):
                if self.data["profiles"].pop(key, None) is not None:
                    removed += 1
                    if self.data["selected"] == key:
                        self.data["selected"] = None
            if removed:
                self._save_data()
            return removed

    def remove_profiles_by_subscription(self, subscription_id: str) -> int:
        keys = [key for key, profile in self.profiles(subscription_id)]
        return self.remove_profiles(keys)

    def get_selected(self) -> Optional[str]:
        return self.data.get("selected")

    def set_selected(self, key: Optional[str]):
        with self._lock:
            self.data["selected"] = key
            self._save_data()

    # 订阅

    def encode_subscription(self, key: Optional[str], item: SubscriptionItem) -> str:
        with self._lock:
            key = key or new_key()
            self.data["subscriptions"][key] = item.to_dict()
            self._save_data()
            return key

    def decode_subscription(self, key: Optional[str]) -> Optional[SubscriptionItem]:
        if not key:
            return None
        raw = self.data["subscriptions"].get(key)
        return SubscriptionItem.from_dict(raw) if raw else None

    def subscriptions(self) -> List[Tuple[str, SubscriptionItem]]:
        with self._lock:
            items = list(self.data["subscriptions"].items())
        return [(key, SubscriptionItem.from_dict(raw)) for key, raw in items]

    def remove_subscription(self, key: str) -> bool:
        with self._lock:
            if self.data["subscriptions"].pop(key, None) is None:
                return False
            self._save_data()
            return True

    # 凭据与设备标识

    def get_credentials(self) -> Optional[UserCredentials]:
        raw = self.data.get("credentials")
        return UserCredentials.from_dict(raw) if raw else None

    def save_credentials(self, credentials: UserCredentials):
        with self._lock:
            self.data["credentials"] = credentials.to_dict()
            self._save_data()

    def clear_credentials(self):
        with self._lock:
            self.data["credentials"] = None
            self._save_data()

    def get_device_id(self) -> Optional[str]:
        value = self.data.get("device_id")
        return value if value and value.strip() else None

    def get_or_create_device_id(self) -> str:
        """读取设备标识，不存在时生成一次；并发调用只会生成一个"""
        with self._device_lock:
            existing = self.get_device_id()
            if existing:
                return existing
            generated = str(uuid.uuid4())
            with self._lock:
                self.data["device_id"] = generated
                self._save_data()
            logger.info("已生成新的设备标识")
            return generated
