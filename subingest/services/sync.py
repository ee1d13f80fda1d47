# services/sync.py
import asyncio
import logging
from typing import List, Optional, Set, Tuple

from ..config import config
from ..models.subscription import SubscriptionItem
from ..utils.storage import ProfileStore
from ..utils.urls import is_valid_sub_url, is_valid_url, to_idn_url
from .fetcher import ResilientFetcher, parse_userinfo
from .importer import BatchImporter

logger = logging.getLogger(__name__)


class SubscriptionSyncCoordinator:
    """订阅同步：获取所有启用的订阅并导入其内容"""

    def __init__(self, store: ProfileStore, fetcher: ResilientFetcher, importer: BatchImporter,
                 append: Optional[bool] = None, concurrency: Optional[int] = None):
        self.store = store
        self.fetcher = fetcher
        self.importer = importer
        self.append = config.SYNC_APPEND if append is None else append
        self.concurrency = max(1, concurrency or config.SYNC_CONCURRENCY)
        self._background: Set[asyncio.Task] = set()
        self._active_passes = 0

    async def sync_all(self) -> int:
        """同步全部订阅，返回导入的配置总数

        同步过程中新导入的订阅链接会在本次调用返回前一并同步，每个订阅只同步一次。
        """
        synced: Set[str] = set()
        total = 0
        self._active_passes += 1
        try:
            while True:
                pending = [(key, item) for key, item in self.store.subscriptions() if key not in synced]
                if not pending:
                    break
                synced.update(key for key, _ in pending)
                total += await self._sync_batch(pending)
        finally:
            self._active_passes -= 1
        if synced:
            logger.info(f"订阅同步完成: {len(synced)} 个订阅, 导入 {total} 个配置")
        return total

    async def _sync_batch(self, subscriptions: List[Tuple[str, SubscriptionItem]]) -> int:
        # 使用信号量限制并发数，默认逐个处理
        semaphore = asyncio.Semaphore(self.concurrency)

        async def sync_single(key: str, item: SubscriptionItem) -> int:
            async with semaphore:
                return await self.sync_one(key, item)

        tasks = [sync_single(key, item) for key, item in subscriptions]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        total = 0
        for (key, _), result in zip(subscriptions, results):
            if isinstance(result, BaseException):
                logger.error(f"同步订阅 {key} 失败: {result}")
                continue
            total += result
        return total

    async def sync_one(self, key: str, item: SubscriptionItem) -> int:
        if not key or not item.remarks.strip() or not item.url.strip():
            return 0
        if not item.enabled:
            return 0

        url = to_idn_url(item.url.strip())
        if not is_valid_url(url):
            logger.warning(f"订阅 {item.remarks} 的链接无效: {url}")
            return 0
        if not item.allow_insecure_url and not is_valid_sub_url(url):
            logger.warning(f"订阅 {item.remarks} 不是安全链接，已跳过: {url}")
            return 0

        logger.info(f"正在同步订阅: {item.remarks} {url}")
        result = await self.fetcher.fetch(url, item.user_agent or None)
        if result.user_info:
            self.save_userinfo(key, result.user_info)
        if not result.body:
            if result.failure:
                logger.warning(f"订阅 {item.remarks} 获取失败: {result.failure}")
            return 0

        imported = self.importer.import_batch(result.body, key, self.append)
        return imported.profiles

    def save_userinfo(self, key: str, header: str):
        """解析并保存流量信息"""
        item = self.store.decode_subscription(key)
        if item is None:
            logger.warning(f"未找到订阅: {key}")
            return
        item.apply_quota(parse_userinfo(header))
        self.store.encode_subscription(key, item)
        logger.info(
            f"已保存订阅流量信息: upload={item.upload}, download={item.download}, "
            f"total={item.total}, expire={item.expire}"
        )

    def schedule_sync_all(self):
        """导入新订阅后触发一次全量同步

        已有同步在进行时不再启动新的同步，新订阅由进行中的同步负责。
        """
        if self._active_passes:
            logger.debug("同步进行中，新订阅将在本轮同步中处理")
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self.sync_all())
            return
        task = loop.create_task(self.sync_all())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
