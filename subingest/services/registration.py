# services/registration.py
"""
设备注册 - 用设备标识换取订阅标识

GET {REGISTRATION_URL}?deviceId={uuid}
响应: {"subscriptionId": "..."}

主地址 DNS 解析失败时，用相同参数请求一次备用地址。
"""
import json
import logging
import threading
import urllib.parse
from enum import Enum
from typing import Optional

from ..config import config
from ..models.errors import AuthFailure, FailureKind, RegistrationError
from ..models.subscription import SubscriptionItem, UserCredentials
from ..utils.storage import ProfileStore
from ..utils.urls import build_subscription_url
from .fetcher import ResilientFetcher
from .importer import BatchImporter
from .sync import SubscriptionSyncCoordinator

logger = logging.getLogger(__name__)


class DeviceRegistrationClient:
    """设备注册客户端"""

    def __init__(self, fetcher: ResilientFetcher, registration_url: Optional[str] = None,
                 fallback_url: Optional[str] = None, user_agent: Optional[str] = None,
                 timeout_ms: Optional[int] = None):
        self.fetcher = fetcher
        self.registration_url = registration_url or config.REGISTRATION_URL
        self.fallback_url = fallback_url or config.REGISTRATION_URL_FALLBACK
        self.user_agent = user_agent or config.CUSTOM_API_USER_AGENT
        self.timeout_ms = timeout_ms or config.CUSTOM_API_TIMEOUT_MS

    async def register_device(self, device_id: str) -> str:
        if not device_id or not device_id.strip():
            raise AuthFailure("deviceId is blank")

        query = urllib.parse.urlencode({'deviceId': device_id})
        primary_url = f"{self.registration_url}?{query}"
        fallback_url = f"{self.fallback_url}?{query}"

        logger.info(f"设备注册请求: {primary_url}")
        result = await self.fetcher.get(primary_url, self.user_agent, self.timeout_ms, signed=True)
        if result.failure and result.failure.kind is FailureKind.DNS:
            logger.warning(f"设备注册 DNS 解析失败，改用备用地址: {result.failure}")
            logger.info(f"设备注册备用请求: {fallback_url}")
            result = await self.fetcher.get(fallback_url, self.user_agent, self.timeout_ms, signed=True)

        if result.failure:
            logger.error(f"设备注册失败: {result.failure}")
            raise RegistrationError(f"Registration request failed: {result.failure}", result.failure)
        if not result.body.strip():
            logger.error("设备注册返回空内容")
            raise RegistrationError("Empty response from registration endpoint")

        logger.info(f"设备注册响应: {result.body[:200]}")
        subscription_id = self._parse_subscription_id(result.body)
        if not subscription_id:
            logger.error(f"设备注册响应缺少 subscriptionId: {result.body[:200]}")
            raise AuthFailure("Missing subscriptionId in response")

        logger.info(f"设备注册成功; subscriptionId={subscription_id}")
        return subscription_id

    @staticmethod
    def _parse_subscription_id(body: str) -> Optional[str]:
        try:
            data = json.loads(body)
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        value = data.get('subscriptionId')
        if not isinstance(value, str):
            return None
        return value.strip() or None


class RegistrationState(Enum):
    IDLE = "idle"
    REGISTERING = "registering"
    READY = "ready"
    FAILED = "failed"


class SubscriptionBootstrap:
    """首次启动流程：注册设备 -> 写入订阅 -> 同步配置

    同一时间只允许一个流程运行，并发触发直接返回 None。
    """

    def __init__(self, store: ProfileStore, client: DeviceRegistrationClient,
                 coordinator: SubscriptionSyncCoordinator, importer: BatchImporter,
                 subscription_base_url: Optional[str] = None, remarks: Optional[str] = None,
                 user_agent: Optional[str] = None):
        self.store = store
        self.client = client
        self.coordinator = coordinator
        self.importer = importer
        self.subscription_base_url = subscription_base_url or config.SUBSCRIPTION_BASE_URL
        self.remarks = remarks or config.SUBSCRIPTION_REMARKS
        self.user_agent = user_agent or config.CUSTOM_API_USER_AGENT
        self._state = RegistrationState.IDLE
        self._state_lock = threading.Lock()
        self.last_error: Optional[Exception] = None

    @property
    def state(self) -> RegistrationState:
        return self._state

    def _try_begin(self) -> bool:
        with self._state_lock:
            if self._state is RegistrationState.REGISTERING:
                return False
            self._state = RegistrationState.REGISTERING
            return True

    def _finish(self, state: RegistrationState):
        with self._state_lock:
            self._state = state

    def subscription_id(self) -> Optional[str]:
        credentials = self.store.get_credentials()
        if credentials and credentials.subscription_id.strip():
            return credentials.subscription_id
        return None

    def is_registered(self) -> bool:
        credentials = self.store.get_credentials()
        return credentials is not None and credentials.is_valid

    def subscription_url(self) -> Optional[str]:
        credentials = self.store.get_credentials()
        if credentials is None or not credentials.is_valid:
            return None
        return build_subscription_url(credentials.server_url, credentials.subscription_id)

    async def ensure_ready(self, force_register: bool = False) -> Optional[int]:
        """返回导入的配置数量；已有流程在运行时返回 None"""
        if not self._try_begin():
            logger.info("注册流程正在进行，忽略本次触发")
            return None

        try:
            existing = self.subscription_id()
            has_stored = bool(existing) and self.store.decode_subscription(existing) is not None
            if force_register or not has_stored:
                device_id = self.store.get_or_create_device_id()
                subscription_id = await self.client.register_device(device_id)
            else:
                subscription_id = existing

            self._upsert_subscription(subscription_id)
            logger.info(f"开始同步订阅: subId={subscription_id}")
            imported = await self.coordinator.sync_all()
            logger.info(f"订阅同步结束; importedCount={imported}")

            if not self.store.profiles():
                raise RegistrationError("No configs available")
        except Exception as e:
            logger.error(f"订阅初始化失败: {type(e).__name__}: {e}")
            self.last_error = e
            self._finish(RegistrationState.FAILED)
            raise

        self.last_error = None
        self._finish(RegistrationState.READY)
        return imported

    def _upsert_subscription(self, subscription_id: str):
        url = build_subscription_url(self.subscription_base_url, subscription_id)
        item = self.store.decode_subscription(subscription_id) or SubscriptionItem()
        item.remarks = self.remarks
        item.url = url
        item.enabled = True
        # 控制面使用 http
        item.allow_insecure_url = True
        item.user_agent = self.user_agent
        self.store.encode_subscription(subscription_id, item)
        self.store.save_credentials(UserCredentials(
            subscription_id=subscription_id,
            server_url=self.subscription_base_url,
        ))

    def logout(self):
        """清除凭据并删除该订阅下的配置"""
        subscription_id = self.subscription_id()
        if subscription_id:
            logger.info(f"退出登录: 删除订阅 {subscription_id} 的配置")
            self.importer.remove_profiles(subscription_id)
        self.store.clear_credentials()
        self._finish(RegistrationState.IDLE)
        logger.info("退出登录成功")
