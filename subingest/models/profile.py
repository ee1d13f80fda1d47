# models/profile.py
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Dict


class ConfigType(Enum):
    """支持的配置类型"""
    VMESS = "vmess"
    CUSTOM = "custom"
    SHADOWSOCKS = "ss"
    SOCKS = "socks"
    HTTP = "http"
    VLESS = "vless"
    TROJAN = "trojan"
    WIREGUARD = "wireguard"
    HYSTERIA2 = "hysteria2"

    @property
    def protocol_scheme(self) -> str:
        if self is ConfigType.CUSTOM:
            return ""
        return f"{self.value}://"


HY2_SCHEME = "hy2://"


@dataclass
class Profile:
    """代理节点配置

    通用字段之外的协议字段由对应的编解码器负责填充和序列化，
    CUSTOM 类型只携带 raw 中的完整 JSON 配置。
    """
    config_type: ConfigType
    server: str = ""
    server_port: int = 0
    remarks: str = ""
    subscription_id: str = ""

    # 协议字段
    password: str = ""
    username: str = ""
    method: str = ""
    alter_id: str = ""
    flow: str = ""
    network: str = ""
    header_type: str = ""
    host: str = ""
    path: str = ""
    security: str = ""
    sni: str = ""
    alpn: str = ""
    fingerprint: str = ""
    public_key: str = ""
    short_id: str = ""
    spider_x: str = ""
    insecure: bool = False

    # WireGuard
    secret_key: str = ""
    pre_shared_key: str = ""
    local_address: str = ""
    reserved: str = ""
    mtu: int = 0

    # Hysteria2
    obfs_password: str = ""
    port_hopping: str = ""
    pin_sha256: str = ""

    raw: str = ""

    @property
    def endpoint(self) -> str:
        return f"{self.server}:{self.server_port}"

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['config_type'] = self.config_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'Profile':
        data = dict(data)
        data['config_type'] = ConfigType(data['config_type'])
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in known})
