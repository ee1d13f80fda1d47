"""
设备注册与首次启动流程测试
"""
import asyncio
import json

import pytest

from subingest.models.errors import AuthFailure, FailureKind, FetchResult, NetworkFailure, RegistrationError
from subingest.services.importer import BatchImporter
from subingest.services.registration import (
    DeviceRegistrationClient,
    RegistrationState,
    SubscriptionBootstrap,
)

PRIMARY = "http://sub.example.net:8001/register"
FALLBACK = "http://203.0.113.10:8001/register"
BASE_URL = "http://sub.example.net:8001/sub"


class FakeFetcher:
    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    async def get(self, url, user_agent=None, timeout_ms=None, proxy_port=0, signed=False):
        self.calls.append({"url": url, "signed": signed, "user_agent": user_agent})
        return self.results.pop(0)


def make_client(results):
    fetcher = FakeFetcher(results)
    client = DeviceRegistrationClient(fetcher, registration_url=PRIMARY, fallback_url=FALLBACK,
                                      user_agent="test-ua", timeout_ms=1000)
    return client, fetcher


def dns_failure():
    return FetchResult(failure=NetworkFailure(FailureKind.DNS, "no such host"))


def test_register_device():
    client, fetcher = make_client([FetchResult(body=json.dumps({"subscriptionId": "sub-42"}))])
    assert asyncio.run(client.register_device("dev-1")) == "sub-42"
    assert fetcher.calls == [{"url": f"{PRIMARY}?deviceId=dev-1", "signed": True, "user_agent": "test-ua"}]


def test_device_id_is_url_encoded():
    client, fetcher = make_client([FetchResult(body='{"subscriptionId": "s"}')])
    asyncio.run(client.register_device("a b&c"))
    assert fetcher.calls[0]["url"] == f"{PRIMARY}?deviceId=a+b%26c"


@pytest.mark.parametrize("device_id", ["", "   "])
def test_blank_device_id(device_id):
    client, fetcher = make_client([])
    with pytest.raises(AuthFailure):
        asyncio.run(client.register_device(device_id))
    assert fetcher.calls == []


def test_dns_failure_retries_fallback_once():
    client, fetcher = make_client([dns_failure(), FetchResult(body='{"subscriptionId": "via-ip"}')])
    assert asyncio.run(client.register_device("dev-1")) == "via-ip"
    assert [call["url"] for call in fetcher.calls] == [f"{PRIMARY}?deviceId=dev-1", f"{FALLBACK}?deviceId=dev-1"]


def test_fallback_also_failing():
    client, fetcher = make_client([dns_failure(), dns_failure()])
    with pytest.raises(RegistrationError) as exc:
        asyncio.run(client.register_device("dev-1"))
    assert exc.value.failure.kind is FailureKind.DNS
    assert len(fetcher.calls) == 2


def test_other_failures_do_not_retry():
    client, fetcher = make_client([FetchResult(failure=NetworkFailure(FailureKind.HTTP_STATUS, "", 500, "oops"))])
    with pytest.raises(RegistrationError) as exc:
        asyncio.run(client.register_device("dev-1"))
    assert not isinstance(exc.value, AuthFailure)
    assert exc.value.failure.status == 500
    assert len(fetcher.calls) == 1


def test_empty_body():
    client, _ = make_client([FetchResult(body="  ")])
    with pytest.raises(RegistrationError) as exc:
        asyncio.run(client.register_device("dev-1"))
    assert not isinstance(exc.value, AuthFailure)


@pytest.mark.parametrize("body", ['{"other": 1}', '{"subscriptionId": "  "}', "not json", "[1, 2]"])
def test_missing_subscription_id(body):
    client, _ = make_client([FetchResult(body=body)])
    with pytest.raises(AuthFailure):
        asyncio.run(client.register_device("dev-1"))


class FakeClient:
    def __init__(self, subscription_id="sub-1", delay=0.0, error=None):
        self.subscription_id = subscription_id
        self.delay = delay
        self.error = error
        self.device_ids = []

    async def register_device(self, device_id):
        self.device_ids.append(device_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.subscription_id


class FakeCoordinator:
    """把预设内容导入到每个订阅下"""

    def __init__(self, store, importer, lines):
        self.store = store
        self.importer = importer
        self.lines = lines
        self.runs = 0

    async def sync_all(self):
        self.runs += 1
        total = 0
        for key, _ in self.store.subscriptions():
            total += self.importer.import_batch("\n".join(self.lines), key, append=False).profiles
        return total


@pytest.fixture
def bootstrap_parts(store, vmess_line):
    importer = BatchImporter(store)
    client = FakeClient()
    coordinator = FakeCoordinator(store, importer, [vmess_line(remarks="n1"), vmess_line(server="5.5.5.5")])
    bootstrap = SubscriptionBootstrap(store, client, coordinator, importer,
                                      subscription_base_url=BASE_URL, remarks="default", user_agent="ua")
    return bootstrap, client, coordinator


def test_ensure_ready_registers_and_syncs(store, bootstrap_parts):
    bootstrap, client, coordinator = bootstrap_parts
    assert asyncio.run(bootstrap.ensure_ready()) == 2
    assert bootstrap.state is RegistrationState.READY
    assert client.device_ids == [store.get_device_id()]

    item = store.decode_subscription("sub-1")
    assert item.url == f"{BASE_URL}/sub-1"
    assert item.remarks == "default"
    assert item.allow_insecure_url is True
    assert item.enabled is True
    assert bootstrap.is_registered()
    assert bootstrap.subscription_url() == f"{BASE_URL}/sub-1"
    assert len(store.profiles("sub-1")) == 2


def test_existing_credentials_skip_registration(bootstrap_parts):
    bootstrap, client, coordinator = bootstrap_parts
    asyncio.run(bootstrap.ensure_ready())
    asyncio.run(bootstrap.ensure_ready())
    assert len(client.device_ids) == 1
    assert coordinator.runs == 2


def test_force_register(bootstrap_parts):
    bootstrap, client, _ = bootstrap_parts
    asyncio.run(bootstrap.ensure_ready())
    asyncio.run(bootstrap.ensure_ready(force_register=True))
    assert len(client.device_ids) == 2
    assert client.device_ids[0] == client.device_ids[1]


def test_registration_failure_sets_failed(store, bootstrap_parts):
    bootstrap, client, _ = bootstrap_parts
    client.error = RegistrationError("down")
    with pytest.raises(RegistrationError):
        asyncio.run(bootstrap.ensure_ready())
    assert bootstrap.state is RegistrationState.FAILED
    assert isinstance(bootstrap.last_error, RegistrationError)
    assert not bootstrap.is_registered()


def test_no_configs_after_sync(store):
    importer = BatchImporter(store)
    coordinator = FakeCoordinator(store, importer, ["nothing useful"])
    bootstrap = SubscriptionBootstrap(store, FakeClient(), coordinator, importer, subscription_base_url=BASE_URL)
    with pytest.raises(RegistrationError, match="No configs available"):
        asyncio.run(bootstrap.ensure_ready())
    assert bootstrap.state is RegistrationState.FAILED


def test_concurrent_trigger_is_ignored(bootstrap_parts):
    bootstrap, client, _ = bootstrap_parts
    client.delay = 0.05

    async def run():
        return await asyncio.gather(bootstrap.ensure_ready(), bootstrap.ensure_ready())

    assert asyncio.run(run()) == [2, None]
    assert len(client.device_ids) == 1
    assert bootstrap.state is RegistrationState.READY


def test_logout(store, bootstrap_parts, vmess_line):
    bootstrap, _, _ = bootstrap_parts
    asyncio.run(bootstrap.ensure_ready())
    BatchImporter(store).import_batch(vmess_line(server="8.8.8.8", remarks="manual"))

    bootstrap.logout()
    assert not bootstrap.is_registered()
    assert bootstrap.subscription_url() is None
    assert bootstrap.state is RegistrationState.IDLE
    assert [p.remarks for _, p in store.profiles()] == ["manual"]
