from pathlib import Path

from walletsync.core.kv_store import LOCAL_AREA, SqliteKeyValueStore


def _store(tmp_path: Path) -> SqliteKeyValueStore:
    return SqliteKeyValueStore(str(tmp_path / "runtime" / "settings.db"))


def test_get_returns_copy_of_default_and_stored_json(tmp_path: Path):
    store = _store(tmp_path)
    default = {"a": []}

    value = store.get("missing", default)
    value["a"].append(1)

    assert default == {"a": []}
    store.set("wallets", {"w1": {"id": "w1", "type": "hd"}})
    assert store.get("wallets") == {"w1": {"id": "w1", "type": "hd"}}


def test_listeners_receive_only_changed_keys(tmp_path: Path):
    store = _store(tmp_path)
    seen: list[tuple[list[str], str]] = []
    store.subscribe(lambda keys, area: seen.append((keys, area)))

    store.set_many({"a": 1, "b": 2})
    store.set_many({"a": 1, "b": 3})
    store.set("a", 1)

    assert seen == [(["a", "b"], LOCAL_AREA), (["b"], LOCAL_AREA)]


def test_unsubscribe_and_listener_errors_do_not_reach_writer(tmp_path: Path):
    store = _store(tmp_path)
    calls: list[list[str]] = []

    def _boom(_keys, _area):
        raise RuntimeError("listener failed")

    store.subscribe(_boom)
    unsubscribe = store.subscribe(lambda keys, _area: calls.append(keys))

    store.set("k", "v1")
    unsubscribe()
    store.set("k", "v2")

    assert calls == [["k"]]
    assert store.get("k") == "v2"


def test_delete_and_keys(tmp_path: Path):
    store = _store(tmp_path)
    store.set_many({"x": 1, "y": 2})

    store.delete("x")
    store.delete("missing")

    assert store.keys() == ["y"]
    assert store.get("x", "gone") == "gone"


def test_areas_share_a_database_without_sharing_keys(tmp_path: Path):
    db_path = str(tmp_path / "runtime" / "settings.db")
    local = SqliteKeyValueStore(db_path)
    session = SqliteKeyValueStore(db_path, area="session")

    local.set("wallets", {"w1": {}})
    session.set("wallets", {"w2": {}})

    assert local.get("wallets") == {"w1": {}}
    assert session.get("wallets") == {"w2": {}}
    assert session.keys() == ["wallets"]
