"""
命令行测试
"""
from subingest.main import main
from subingest.models.subscription import SubscriptionItem
from subingest.services.importer import BatchImporter
from subingest.utils.storage import ProfileStore


def test_import_and_list(tmp_path, capsys, vmess_line):
    storage = str(tmp_path / "store.json")
    source = tmp_path / "nodes.txt"
    source.write_text("\n".join([vmess_line(remarks="a"), vmess_line(server="5.5.5.5", remarks="b")]),
                      encoding="utf-8")

    assert main(["--storage", storage, "import", str(source)]) == 0
    assert "导入配置 2 个" in capsys.readouterr().out

    assert main(["--storage", storage, "list"]) == 0
    out = capsys.readouterr().out
    assert "1.2.3.4:443" in out
    assert "5.5.5.5:443" in out


def test_import_without_valid_data(tmp_path, capsys):
    source = tmp_path / "junk.txt"
    source.write_text("nothing here", encoding="utf-8")
    assert main(["--storage", str(tmp_path / "store.json"), "import", str(source)]) == 1
    assert "no valid data" in capsys.readouterr().err


def test_export(tmp_path, capsys):
    storage = str(tmp_path / "store.json")
    source = tmp_path / "nodes.txt"
    source.write_text("trojan://pw@example.com:443#T", encoding="utf-8")
    main(["--storage", storage, "import", str(source)])
    capsys.readouterr()

    assert main(["--storage", storage, "export"]) == 0
    assert capsys.readouterr().out.startswith("trojan://pw@example.com:443")


def test_device_id_is_stable(tmp_path, capsys):
    storage = str(tmp_path / "store.json")
    main(["--storage", storage, "device-id"])
    first = capsys.readouterr().out.strip()
    main(["--storage", storage, "device-id"])
    assert capsys.readouterr().out.strip() == first


def test_remove_unknown_subscription(tmp_path, capsys):
    assert main(["--storage", str(tmp_path / "store.json"), "remove-sub", "missing"]) == 1


def test_status_shows_quota_from_remarks(tmp_path, capsys, vmess_line):
    storage = str(tmp_path / "store.json")
    store = ProfileStore(storage)
    key = store.encode_subscription(None, SubscriptionItem(url="https://a.example.com/sub", remarks="A"))
    BatchImporter(store).import_batch(
        vmess_line(remarks="روز های باقی مانده: 12 | حجم باقی مانده: 7.5 گیگابایت | کل حجم: 30 گیگابایت"), key)

    assert main(["--storage", storage, "status"]) == 0
    out = capsys.readouterr().out
    assert "剩余天数: 12, 剩余流量: 7.5 GB, 总流量: 30.0 GB" in out
    assert "75.0%" in out
