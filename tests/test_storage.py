"""
存储测试
"""
import json
from concurrent.futures import ThreadPoolExecutor

from subingest.models.profile import ConfigType, Profile
from subingest.models.subscription import SubscriptionItem, UserCredentials
from subingest.utils.storage import ProfileStore


def test_device_id_created_once_under_concurrency(store):
    with ThreadPoolExecutor(max_workers=8) as pool:
        ids = set(pool.map(lambda _: store.get_or_create_device_id(), range(32)))
    assert len(ids) == 1
    assert store.get_device_id() in ids


def test_data_survives_reload(tmp_path):
    path = str(tmp_path / "data" / "store.json")
    store = ProfileStore(path)
    keys = [
        store.encode_profile(None, Profile(ConfigType.TROJAN, server=f"h{i}.example.com", server_port=443,
                                           remarks=f"p{i}", subscription_id="s"))
        for i in range(3)
    ]
    store.set_selected(keys[1])
    store.encode_subscription("s", SubscriptionItem(url="https://a.example.com/sub", remarks="A", total=10))
    store.save_credentials(UserCredentials(subscription_id="s", server_url="http://x/sub"))
    device_id = store.get_or_create_device_id()

    reloaded = ProfileStore(path)
    assert [p.remarks for _, p in reloaded.profiles()] == ["p0", "p1", "p2"]
    assert reloaded.decode_profile(keys[1]).config_type is ConfigType.TROJAN
    assert reloaded.get_selected() == keys[1]
    assert reloaded.decode_subscription("s").total == 10
    assert reloaded.get_credentials().subscription_id == "s"
    assert reloaded.get_or_create_device_id() == device_id


def test_corrupt_file_starts_empty(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{not json", encoding="utf-8")
    store = ProfileStore(str(path))
    assert store.profiles() == []
    assert store.subscriptions() == []


def test_file_is_plain_json(file_store):
    file_store.encode_subscription("k", SubscriptionItem(url="https://a.example.com", remarks="订阅"))
    with open(file_store.storage_file, encoding="utf-8") as f:
        data = json.load(f)
    assert data["subscriptions"]["k"]["remarks"] == "订阅"


def test_removing_selected_profile_clears_selection(store):
    key = store.encode_profile(None, Profile(ConfigType.VMESS, server="a", server_port=1))
    store.set_selected(key)
    assert store.remove_profiles([key, "missing"]) == 1
    assert store.get_selected() is None


def test_profiles_by_subscription(store):
    store.encode_profile(None, Profile(ConfigType.VMESS, server="a", server_port=1, subscription_id="x"))
    store.encode_profile(None, Profile(ConfigType.VMESS, server="b", server_port=1, subscription_id="y"))
    assert [p.server for _, p in store.profiles("x")] == ["a"]
    assert store.remove_profiles_by_subscription("y") == 1
    assert [p.server for _, p in store.profiles()] == ["a"]


def test_remove_unknown_subscription(store):
    assert store.remove_subscription("nope") is False
