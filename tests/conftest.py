import base64
import json

import pytest

from subingest.utils.storage import ProfileStore


@pytest.fixture
def store():
    """只在内存中保存的存储"""
    return ProfileStore()


@pytest.fixture
def file_store(tmp_path):
    return ProfileStore(str(tmp_path / "store.json"))


@pytest.fixture
def vmess_line():
    def build(server="1.2.3.4", port=443, remarks="node", uuid="b831381d-6324-4d53-ad4f-8cda48b30811",
              net="ws", path="/ray", tls="tls"):
        data = {
            "v": "2",
            "ps": remarks,
            "add": server,
            "port": str(port),
            "id": uuid,
            "aid": "0",
            "net": net,
            "type": "none",
            "host": "",
            "path": path,
            "tls": tls,
        }
        payload = json.dumps(data, ensure_ascii=False).encode("utf-8")
        return "vmess://" + base64.b64encode(payload).decode("ascii")
    return build
