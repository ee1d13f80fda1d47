# services/importer.py
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from ..models.errors import ParseFailure
from ..models.profile import ConfigType, Profile
from ..models.subscription import SubscriptionItem
from ..utils.storage import ProfileStore
from ..utils.urls import fragment_of, is_valid_sub_url
from .parsers import CodecRegistry, parse_custom, parse_wireguard_conf, try_base64_decode

logger = logging.getLogger(__name__)

CUSTOM_CONFIG_MARKERS = ('inbounds', 'outbounds', 'routing')


@dataclass
class ImportResult:
    """一次批量导入的统计"""
    profiles: int = 0
    subscriptions: int = 0
    failures: int = 0
    filtered: int = 0
    keys: List[str] = field(default_factory=list)

    @property
    def counts(self) -> Tuple[int, int]:
        return self.profiles, self.subscriptions

    @property
    def is_empty(self) -> bool:
        return self.profiles <= 0 and self.subscriptions <= 0


@dataclass
class _LinePass:
    profiles: List[Profile] = field(default_factory=list)
    failures: int = 0
    filtered: int = 0


def distinct_lines(text: Optional[str]) -> List[str]:
    """拆分为非空行并去重，保持首次出现的顺序"""
    if not text:
        return []
    seen = set()
    lines = []
    for line in text.splitlines():
        line = line.strip()
        if line and line not in seen:
            seen.add(line)
            lines.append(line)
    return lines


class BatchImporter:
    """批量导入：把任意文本解析为配置并写入存储

    解析顺序：base64解码后的文本 -> 原始文本 -> 完整JSON配置/WireGuard配置文件，
    前一步没有导入任何配置时才尝试下一步。
    """

    def __init__(self, store: ProfileStore, registry: Optional[CodecRegistry] = None,
                 on_subscriptions_added: Optional[Callable[[], None]] = None):
        self.store = store
        self.registry = registry or CodecRegistry()
        self.on_subscriptions_added = on_subscriptions_added

    def import_batch(self, text: Optional[str], subscription_id: str = "",
                     append: bool = True) -> ImportResult:
        result = ImportResult()
        if not text or not text.strip():
            return result

        removed_selected = self._capture_selected(subscription_id, append)
        sub_item = self.store.decode_subscription(subscription_id)
        decoded = try_base64_decode(text)

        line_pass = self._parse_lines(decoded, sub_item) if decoded else _LinePass()
        if not line_pass.profiles:
            logger.debug("base64解码后未解析到配置，尝试原始文本")
            line_pass = self._parse_lines(text, sub_item)

        profiles = line_pass.profiles
        result.failures = line_pass.failures
        result.filtered = line_pass.filtered
        if not profiles:
            logger.debug("逐行解析失败，尝试完整配置")
            profiles, structured_failures = self._parse_structured(text)
            if profiles:
                result.failures = structured_failures

        if profiles:
            result.keys = self._persist(profiles, subscription_id, append, removed_selected)
            result.profiles = len(result.keys)
        else:
            logger.warning("所有解析方式均失败，未导入任何配置")

        result.subscriptions = self.import_subscriptions(text)
        if result.subscriptions <= 0 and decoded:
            result.subscriptions = self.import_subscriptions(decoded)
        if result.subscriptions > 0 and self.on_subscriptions_added:
            self.on_subscriptions_added()

        logger.info(
            f"批量导入完成: 配置 {result.profiles} 个, 订阅 {result.subscriptions} 个, "
            f"失败 {result.failures} 行, 过滤 {result.filtered} 行"
        )
        return result

    def _capture_selected(self, subscription_id: str, append: bool) -> Optional[Profile]:
        """覆盖导入前记录当前选中的、属于同一订阅的节点"""
        if not subscription_id or append:
            return None
        selected = self.store.decode_profile(self.store.get_selected())
        if selected and selected.subscription_id == subscription_id:
            return selected
        return None

    def _parse_lines(self, text: Optional[str], sub_item: Optional[SubscriptionItem]) -> _LinePass:
        line_pass = _LinePass()
        lines = distinct_lines(text)
        if not lines:
            return line_pass

        filter_text = sub_item.filter if sub_item else None
        pattern = None
        invalid_filter = False
        if filter_text:
            try:
                pattern = re.compile(filter_text)
            except re.error as e:
                logger.warning(f"订阅过滤规则无效 {filter_text!r}: {e}")
                invalid_filter = True

        for line in lines:
            try:
                profile = self.registry.parse(line)
            except ParseFailure as e:
                line_pass.failures += 1
                logger.debug(f"解析失败 ({e.reason}): {line[:50]}...")
                continue

            if filter_text and profile.remarks:
                # 过滤规则无法编译时，带备注的行全部视为失败
                if invalid_filter:
                    line_pass.failures += 1
                    continue
                if not pattern.search(profile.remarks):
                    line_pass.filtered += 1
                    continue
            line_pass.profiles.append(profile)

        logger.debug(f"逐行解析: {len(lines)} 行中成功 {len(line_pass.profiles)} 个")
        return line_pass

    def _parse_structured(self, text: str) -> Tuple[List[Profile], int]:
        """返回 (配置列表, 被跳过的无效元素数量)"""
        stripped = text.strip()
        if all(marker in stripped for marker in CUSTOM_CONFIG_MARKERS):
            try:
                data = json.loads(stripped)
            except ValueError as e:
                logger.error(f"完整配置JSON解析失败: {e}")
                return [], 0

            if isinstance(data, list):
                profiles = []
                skipped = 0
                for item in data:
                    if not isinstance(item, dict):
                        skipped += 1
                        continue
                    try:
                        profile = parse_custom(json.dumps(item, ensure_ascii=False))
                    except ParseFailure as e:
                        logger.debug(f"跳过无效的完整配置: {e.reason}")
                        skipped += 1
                        continue
                    profile.raw = json.dumps(item, ensure_ascii=False, indent=2)
                    profiles.append(profile)
                if profiles:
                    return profiles, skipped

            try:
                return [parse_custom(stripped)], 0
            except ParseFailure as e:
                logger.error(f"解析单个完整配置失败: {e.reason}")
                return [], 0

        if stripped.startswith('[Interface]') and '[Peer]' in stripped:
            try:
                profile = parse_wireguard_conf(stripped)
            except ParseFailure as e:
                logger.error(f"解析WireGuard配置文件失败: {e.reason}")
                return [], 0
            profile.raw = stripped
            return [profile], 0
        return [], 0

    def _persist(self, profiles: Sequence[Profile], subscription_id: str, append: bool,
                 removed_selected: Optional[Profile]) -> List[str]:
        if not append:
            self.store.remove_profiles_by_subscription(subscription_id)

        keys = []
        reselected = False
        for profile in profiles:
            profile.subscription_id = subscription_id
            key = self.store.encode_profile(None, profile)
            keys.append(key)
            if (not reselected and removed_selected is not None
                    and profile.server == removed_selected.server
                    and profile.server_port == removed_selected.server_port):
                self.store.set_selected(key)
                reselected = True
        return keys

    def import_subscriptions(self, text: Optional[str]) -> int:
        count = 0
        for line in distinct_lines(text):
            if is_valid_sub_url(line):
                count += self.import_url_as_subscription(line)
        return count

    def import_url_as_subscription(self, url: str) -> int:
        for _, item in self.store.subscriptions():
            if item.url == url:
                return 0
        item = SubscriptionItem(url=url, remarks=fragment_of(url) or "import sub")
        self.store.encode_subscription(None, item)
        logger.info(f"已添加订阅: {url[:50]}...")
        return 1

    def remove_profiles(self, subscription_id: str) -> int:
        removed = self.store.remove_profiles_by_subscription(subscription_id)
        logger.info(f"已移除订阅 {subscription_id} 的 {removed} 个配置")
        return removed

    def remove_subscription(self, key: str) -> int:
        """删除订阅并级联删除其配置，返回删除的配置数量"""
        removed = self.remove_profiles(key)
        self.store.remove_subscription(key)
        return removed

    def export_batch(self, keys: Optional[Sequence[str]] = None) -> str:
        """导出为分享链接，每行一个；CUSTOM 配置没有分享链接，跳过"""
        if keys is None:
            profiles = [profile for _, profile in self.store.profiles()]
        else:
            profiles = [p for p in (self.store.decode_profile(k) for k in keys) if p]

        uris = []
        for profile in profiles:
            if profile.config_type is ConfigType.CUSTOM:
                continue
            uri = self.registry.to_uri(profile)
            if uri:
                uris.append(uri)
        return "\n".join(uris)
