# utils/formatters.py
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from ..models.subscription import SubscriptionItem

# 服务商写在节点备注里的流量信息
REMAINING_DAYS_PATTERN = re.compile(r'روز های باقی مانده:\s*(\d+)')
REMAINING_VOLUME_PATTERN = re.compile(r'حجم باقی مانده:\s*([\d.]+)\s*گیگابایت')
TOTAL_VOLUME_PATTERN = re.compile(r'کل حجم:\s*([\d.]+)\s*گیگابایت')


@dataclass
class RemarksQuota:
    """从备注中解析出的流量信息"""
    remaining_days: Optional[int] = None
    remaining_gb: Optional[float] = None
    total_gb: Optional[float] = None

    @property
    def found(self) -> bool:
        return self.remaining_days is not None or self.remaining_gb is not None

    @property
    def used_percentage(self) -> Optional[float]:
        if self.remaining_gb is None or not self.total_gb:
            return None
        return (self.total_gb - self.remaining_gb) / self.total_gb * 100


def _to_number(value: str, cast):
    try:
        return cast(value)
    except ValueError:
        return None


def parse_remarks_quota(remarks_list: Iterable[str]) -> RemarksQuota:
    """依次检查备注，找到第一个带有剩余天数或剩余流量的为止"""
    quota = RemarksQuota()
    for remarks in remarks_list:
        remarks = remarks or ""
        match = REMAINING_DAYS_PATTERN.search(remarks)
        if match:
            quota.remaining_days = _to_number(match.group(1), int)
        match = REMAINING_VOLUME_PATTERN.search(remarks)
        if match:
            quota.remaining_gb = _to_number(match.group(1), float)
        match = TOTAL_VOLUME_PATTERN.search(remarks)
        if match:
            quota.total_gb = _to_number(match.group(1), float)
        if quota.found:
            break
    return quota


def format_bytes(size_bytes: Optional[int]) -> str:
    """将字节转换为人类可读格式"""
    if size_bytes is None or size_bytes < 0:
        return "N/A"
    if size_bytes == 0:
        return "0 B"

    units = ['B', 'KB', 'MB', 'GB', 'TB']
    unit_index = 0
    size = float(size_bytes)

    while size >= 1024 and unit_index < len(units) - 1:
        size /= 1024
        unit_index += 1

    return f"{size:.2f} {units[unit_index]}"


def format_timestamp(timestamp: Optional[int]) -> str:
    """格式化时间戳"""
    if timestamp is None:
        return "未知"
    if timestamp == 0:
        return "永不过期"
    try:
        dt = datetime.fromtimestamp(timestamp)
        return dt.strftime('%Y-%m-%d %H:%M:%S')
    except (OverflowError, OSError, ValueError):
        return "时间格式错误"


def calculate_time_left(timestamp: Optional[int], now: Optional[int] = None) -> str:
    """计算剩余时间"""
    if timestamp is None:
        return "未知"
    if timestamp == 0:
        return "无限期"

    now = int(time.time()) if now is None else now
    diff = timestamp - now

    if diff <= 0:
        return "已过期"

    days = diff // 86400
    hours = (diff % 86400) // 3600
    minutes = (diff % 3600) // 60

    if days > 365:
        years = days // 365
        return f"{years}年{days % 365}天"
    elif days > 0:
        return f"{days}天{hours}小时"
    elif hours > 0:
        return f"{hours}小时{minutes}分钟"
    else:
        return f"{minutes}分钟"


def generate_progress_bar(percentage: float, length: int = 20) -> str:
    """生成文本进度条"""
    percentage = max(0, min(100, percentage))
    filled = int(length * percentage / 100)
    bar = '█' * filled + '░' * (length - filled)
    return f"[{bar}] {percentage:.1f}%"


def format_remarks_quota(quota: RemarksQuota) -> str:
    """备注中的剩余天数与流量"""
    def show(value, unit=""):
        return "未知" if value is None else f"{value}{unit}"

    line = (f"剩余天数: {show(quota.remaining_days)}, 剩余流量: {show(quota.remaining_gb, ' GB')}, "
            f"总流量: {show(quota.total_gb, ' GB')}")
    percentage = quota.used_percentage
    if percentage is None:
        return line
    return f"{line}\n{generate_progress_bar(percentage)}"


def format_subscription_usage(item: SubscriptionItem) -> str:
    """订阅流量与到期信息"""
    title = item.remarks or '未命名订阅'
    lines = [f"{title} (已过期)" if item.is_expired else title]
    if item.total is None and item.used is None and item.expire is None:
        lines.append("流量: 暂无数据")
        return "\n".join(lines)

    lines.append(f"已用: {format_bytes(item.used)} / {format_bytes(item.total)}")
    lines.append(f"剩余: {format_bytes(item.remaining)}")
    if item.total:
        lines.append(generate_progress_bar(item.usage_percentage))
    lines.append(f"到期: {format_timestamp(item.expire)} ({calculate_time_left(item.expire)})")
    return "\n".join(lines)
