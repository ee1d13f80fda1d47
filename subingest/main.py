# main.py
import argparse
import asyncio
import logging
import socket
import sys
from typing import Optional

from .config import config
from .models.errors import RegistrationError
from .services.fetcher import ResilientFetcher
from .services.importer import BatchImporter
from .services.registration import DeviceRegistrationClient, SubscriptionBootstrap
from .services.signer import RequestSigner
from .services.sync import SubscriptionSyncCoordinator
from .utils.formatters import format_remarks_quota, format_subscription_usage, parse_remarks_quota
from .utils.storage import ProfileStore

logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
)
logger = logging.getLogger(__name__)

# 禁用aiohttp的INFO日志
logging.getLogger("aiohttp").setLevel(logging.WARNING)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def local_proxy_listening(port: int, timeout: float = 0.3) -> bool:
    """本地代理端口是否在监听"""
    if port <= 0:
        return False
    try:
        with socket.create_connection(('127.0.0.1', port), timeout=timeout):
            return True
    except OSError:
        return False


class SubscriptionIngestApp:
    """组装各个服务"""

    def __init__(self, storage_file: Optional[str] = None):
        self.store = ProfileStore(storage_file or config.STORAGE_FILE)
        self.signer = RequestSigner()
        self.fetcher = ResilientFetcher(
            signer=self.signer,
            is_proxy_running=lambda: local_proxy_listening(config.HTTP_PROXY_PORT),
        )
        self.importer = BatchImporter(self.store)
        self.coordinator = SubscriptionSyncCoordinator(self.store, self.fetcher, self.importer)
        # 导入新的订阅链接后触发一次同步
        self.importer.on_subscriptions_added = self.coordinator.schedule_sync_all
        self.client = DeviceRegistrationClient(self.fetcher)
        self.bootstrap = SubscriptionBootstrap(
            self.store, self.client, self.coordinator, self.importer
        )

    def cmd_import(self, args) -> int:
        try:
            with open(args.file, 'r', encoding='utf-8') as f:
                text = f.read()
        except OSError as e:
            print(f"无法读取文件: {e}", file=sys.stderr)
            return 1

        result = self.importer.import_batch(text, args.sub_id or "", append=not args.replace)
        if result.is_empty:
            print("no valid data", file=sys.stderr)
            return 1
        print(f"导入配置 {result.profiles} 个, 订阅 {result.subscriptions} 个, "
              f"失败 {result.failures} 行, 过滤 {result.filtered} 行")
        return 0

    async def _sync(self) -> int:
        async with self.fetcher:
            return await self.coordinator.sync_all()

    def cmd_sync(self, args) -> int:
        total = asyncio.run(self._sync())
        print(f"同步完成, 导入 {total} 个配置")
        return 0

    async def _register(self, force: bool) -> Optional[int]:
        async with self.fetcher:
            return await self.bootstrap.ensure_ready(force_register=force)

    def cmd_register(self, args) -> int:
        try:
            imported = asyncio.run(self._register(args.force))
        except RegistrationError as e:
            print(f"注册失败: {e}", file=sys.stderr)
            return 1
        print(f"注册成功, subscriptionId={self.bootstrap.subscription_id()}, 导入 {imported} 个配置")
        return 0

    def cmd_list(self, args) -> int:
        selected = self.store.get_selected()
        for key, profile in self.store.profiles(args.sub_id):
            mark = '*' if key == selected else ' '
            print(f"{mark} {key}  {profile.config_type.value:<10} {profile.endpoint:<30} {profile.remarks}")
        return 0

    def cmd_export(self, args) -> int:
        keys = [key for key, _ in self.store.profiles(args.sub_id)] if args.sub_id else None
        output = self.importer.export_batch(keys)
        if output:
            print(output)
        return 0

    def cmd_status(self, args) -> int:
        credentials = self.store.get_credentials()
        print(f"设备标识: {self.store.get_device_id() or '未生成'}")
        print(f"已注册: {'是' if self.bootstrap.is_registered() else '否'}")
        if credentials and credentials.is_valid:
            print(f"订阅链接: {self.bootstrap.subscription_url()}")

        for key, item in self.store.subscriptions():
            print()
            print(f"[{key}] {item.url}")
            print(format_subscription_usage(item))
            quota = parse_remarks_quota(p.remarks for _, p in self.store.profiles(key))
            if quota.found:
                print(format_remarks_quota(quota))
        return 0

    def cmd_remove_sub(self, args) -> int:
        if self.store.decode_subscription(args.key) is None:
            print(f"未找到订阅: {args.key}", file=sys.stderr)
            return 1
        removed = self.importer.remove_subscription(args.key)
        print(f"已删除订阅及 {removed} 个配置")
        return 0

    def cmd_logout(self, args) -> int:
        self.bootstrap.logout()
        print("已退出登录")
        return 0

    def cmd_device_id(self, args) -> int:
        print(self.store.get_or_create_device_id())
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='subingest', description="订阅与配置导入工具")
    parser.add_argument('--storage', help="存储文件路径")
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('import', help="从文件批量导入配置或订阅链接")
    p.add_argument('file')
    p.add_argument('--sub-id', default="", help="归属的订阅")
    p.add_argument('--replace', action='store_true', help="替换该订阅已有的配置")
    p.set_defaults(handler='cmd_import')

    p = sub.add_parser('sync', help="同步所有启用的订阅")
    p.set_defaults(handler='cmd_sync')

    p = sub.add_parser('register', help="注册设备并同步默认订阅")
    p.add_argument('--force', action='store_true', help="忽略已有凭据重新注册")
    p.set_defaults(handler='cmd_register')

    p = sub.add_parser('list', help="列出配置")
    p.add_argument('--sub-id', default=None)
    p.set_defaults(handler='cmd_list')

    p = sub.add_parser('export', help="导出分享链接")
    p.add_argument('--sub-id', default=None)
    p.set_defaults(handler='cmd_export')

    p = sub.add_parser('status', help="显示注册状态和订阅流量")
    p.set_defaults(handler='cmd_status')

    p = sub.add_parser('remove-sub', help="删除订阅及其配置")
    p.add_argument('key')
    p.set_defaults(handler='cmd_remove_sub')

    p = sub.add_parser('logout', help="清除凭据")
    p.set_defaults(handler='cmd_logout')

    p = sub.add_parser('device-id', help="显示设备标识")
    p.set_defaults(handler='cmd_device_id')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    app = SubscriptionIngestApp(args.storage)
    return getattr(app, args.handler)(args)


if __name__ == '__main__':
    sys.exit(main())
