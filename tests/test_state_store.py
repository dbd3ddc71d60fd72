import pytest

from relaykit import FileStateStore, MemoryStateStore


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryStateStore()
    return FileStateStore(tmp_path / "state")


def test_read_missing_key_returns_none(store):
    assert store.read("01-fetch") is None
    assert store.exists("01-fetch") is False


def test_write_overwrites_and_lists_sorted(store):
    store.write("02-build", {"n": 1})
    store.write("01-fetch", {"n": 1})
    store.write("02-build", {"n": 2})

    assert store.read("02-build") == {"n": 2}
    assert store.list() == ["01-fetch", "02-build"]
    assert store.list("02-") == ["02-build"]


def test_delete_with_prefix_returns_removed_keys(store):
    for key in ("00-pipeline", "01-fetch", "01-fetch-extra", "02-build"):
        store.write(key, {"key": key})

    removed = store.delete_with_prefix("01-")

    assert removed == ["01-fetch", "01-fetch-extra"]
    assert store.list() == ["00-pipeline", "02-build"]
    assert store.delete_with_prefix("09-") == []


@pytest.mark.parametrize("key", ["", "a/b", "..\\x"])
def test_invalid_keys_are_rejected(store, key):
    with pytest.raises(ValueError):
        store.write(key, {})


def test_memory_store_copies_records():
    store = MemoryStateStore()
    record = {"items": [1]}
    store.write("01-a", record)
    record["items"].append(2)

    loaded = store.read("01-a")
    loaded["items"].append(3)

    assert store.read("01-a") == {"items": [1]}


def test_file_store_writes_json_atomically(tmp_path):
    store = FileStateStore(tmp_path / "state")
    store.write("01-fetch", {"title": "café"})

    files = sorted(p.name for p in (tmp_path / "state").iterdir())
    assert files == ["01-fetch.json"]
    assert "café" in (tmp_path / "state" / "01-fetch.json").read_text(encoding="utf-8")
    assert store.path_for("01-fetch") == tmp_path / "state" / "01-fetch.json"


def test_file_store_ignores_foreign_files_and_rejects_bad_json(tmp_path):
    root = tmp_path / "state"
    root.mkdir()
    (root / "notes.txt").write_text("hello", encoding="utf-8")
    (root / "01-fetch.json").write_text("{not json", encoding="utf-8")
    store = FileStateStore(root)

    assert store.list() == ["01-fetch"]
    with pytest.raises(ValueError, match="Invalid JSON"):
        store.read("01-fetch")


def test_file_store_on_missing_root_is_empty(tmp_path):
    store = FileStateStore(tmp_path / "never-created")
    assert store.list() == []
    assert store.delete_with_prefix("") == []
