from pathlib import Path

from walletsync.core.kv_store import SqliteKeyValueStore
from walletsync.core.settings import SettingsRepository
from walletsync.sync.conflicts import ConflictLedger
from walletsync.sync.payload import PayloadCodec, encode_envelope, extract_ciphertext
from walletsync.sync.state import StoreDomainState


class _FakeVault:
    def __init__(self):
        self.derived: list[int] = []

    def get_wallet_mnemonic(self, wallet, password):
        return "unused"

    def derive_sub_account(self, wallet, index, name, password):
        self.derived.append(index)
        return {
            "id": f"{wallet['id']}-acc-{index}",
            "walletId": wallet["id"],
            "index": index,
            "address": f"0xDERIVED{index}",
            "name": name,
        }


class _FakePasswords:
    def __init__(self, password: str | None = "pw"):
        self.password = password

    def get_cached_password(self):
        return self.password


def _codec(tmp_path: Path, password: str | None = "pw") -> tuple[PayloadCodec, StoreDomainState, _FakeVault]:
    store = SqliteKeyValueStore(str(tmp_path / "settings.db"))
    settings = SettingsRepository(store)
    state = StoreDomainState(store)
    vault = _FakeVault()
    codec = PayloadCodec(state, vault, _FakePasswords(password), settings, ConflictLedger(settings))

    state.save_wallet({"id": "w1", "type": "hd", "accountCount": 1})
    state.save_account({"id": "a0", "walletId": "w1", "index": 0, "address": "0xAAA", "name": "A", "nameUpdatedAt": 100})
    return codec, state, vault


def _account(state: StoreDomainState, index: int = 0) -> dict:
    return next(a for a in state.get_wallet_accounts("w1") if a["index"] == index)


def test_build_payload_shape(tmp_path: Path):
    codec, state, _ = _codec(tmp_path)
    state.store.set("networks", [{"chainIdHex": "0x1"}, {"chainId": 56}, {"name": "no id"}])
    codec.settings.set("network_ids", ["0x89", "0x1"])
    state.save_contact({"id": "c1", "name": "Bob", "address": "0xB0B", "createdAt": 50})

    payload = codec.build("w1", "manual").to_store()

    assert payload["version"] == 1
    assert payload["reason"] == "manual"
    assert payload["accountCount"] == 1
    assert payload["accounts"] == [{"index": 0, "address": "0xAAA", "name": "A", "nameUpdatedAt": 100}]
    assert payload["networkIds"] == ["0x89", "0x1", "56"]
    assert payload["contacts"] == [{"id": "c1", "name": "Bob", "note": "", "address": "0xB0B", "updatedAt": 50}]
    assert payload["networksUpdatedAt"] == payload["updatedAt"]


def test_build_skips_non_hd_wallets(tmp_path: Path):
    codec, state, _ = _codec(tmp_path)
    state.save_wallet({"id": "w2", "type": "imported"})

    assert codec.build("w2", "manual") is None
    assert codec.build("missing", "manual") is None


def test_remote_newer_name_wins_without_conflict(tmp_path: Path):
    codec, state, _ = _codec(tmp_path)

    changed = codec.merge("w1", {"accounts": [{"index": 0, "address": "0xaaa", "name": "B", "nameUpdatedAt": 200}]})

    assert changed is True
    assert _account(state)["name"] == "B"
    assert _account(state)["nameUpdatedAt"] == 200
    assert codec.conflicts.list() == []


def test_equal_timestamp_different_name_records_one_conflict(tmp_path: Path):
    codec, state, _ = _codec(tmp_path)
    remote = {"accounts": [{"index": 0, "address": "0xAAA", "name": "B", "nameUpdatedAt": 100}]}

    assert codec.merge("w1", remote) is False
    codec.merge("w1", remote)

    assert _account(state)["name"] == "A"
    conflicts = codec.conflicts.list()
    assert len(conflicts) == 1
    assert conflicts[0].id == "account:w1:0"
    assert conflicts[0].local_name == "A"
    assert conflicts[0].remote_name == "B"
    assert conflicts[0].account_id == "a0"


def test_older_remote_and_address_mismatch_are_ignored(tmp_path: Path):
    codec, state, _ = _codec(tmp_path)

    assert codec.merge("w1", {"accounts": [{"index": 0, "address": "0xAAA", "name": "Old", "nameUpdatedAt": 50}]}) is False
    assert codec.merge("w1", {"accounts": [{"index": 0, "address": "0xBAD", "name": "B", "nameUpdatedAt": 500}]}) is False
    assert _account(state)["name"] == "A"
    assert codec.conflicts.list() == []


def test_missing_account_is_derived_and_count_raised(tmp_path: Path):
    codec, state, vault = _codec(tmp_path)

    changed = codec.merge("w1", {"accounts": [{"index": 5, "address": "0xDERIVED5", "name": "Savings", "nameUpdatedAt": 300}]})

    assert changed is True
    assert vault.derived == [5]
    derived = _account(state, 5)
    assert derived["name"] == "Savings"
    assert derived["nameUpdatedAt"] == 300
    assert state.get_wallets()["w1"]["accountCount"] >= 6


def test_missing_account_skipped_while_locked(tmp_path: Path):
    codec, state, vault = _codec(tmp_path, password=None)

    changed = codec.merge("w1", {"accounts": [{"index": 2, "address": "0x2", "name": "x"}]})

    assert changed is False
    assert vault.derived == []
    assert len(state.get_wallet_accounts("w1")) == 1


def test_account_count_never_decreases(tmp_path: Path):
    codec, state, _ = _codec(tmp_path)

    assert codec.merge("w1", {"accounts": [], "accountCount": 4}) is True
    assert state.get_wallets()["w1"]["accountCount"] == 4
    assert codec.merge("w1", {"accounts": [], "accountCount": 2}) is False
    assert state.get_wallets()["w1"]["accountCount"] == 4


def test_contacts_merge_rules(tmp_path: Path):
    codec, state, _ = _codec(tmp_path)
    state.save_contact({"id": "c1", "name": "Bob", "note": "", "address": "0xB0B", "updatedAt": 100})
    state.save_contact({"id": "c2", "name": "Eve", "note": "", "address": "0xEEE", "updatedAt": 100})

    changed = codec.merge_contacts(
        [
            {"id": "c1", "name": "Carol", "address": "0xB0B", "updatedAt": 10},
            {"id": "c2", "name": "Evelyn", "address": "0xEEE", "updatedAt": 100},
            {"id": "c3", "name": "Dan", "address": "0xD", "createdAt": 5},
            {"id": "c9", "name": "No address"},
        ]
    )

    contacts = {c["id"]: c for c in state.get_contact_list()}
    assert changed is True
    assert contacts["c1"]["name"] == "Bob"
    assert contacts["c2"]["name"] == "Eve"
    assert contacts["c3"]["updatedAt"] == 5
    conflict = codec.conflicts.get("contact:c2")
    assert conflict.remote_name == "Evelyn"
    assert conflict.local_name == "Eve"
    assert "c9" not in contacts


def test_contact_matched_by_address_when_id_unknown(tmp_path: Path):
    codec, state, _ = _codec(tmp_path)
    state.save_contact({"id": "c1", "name": "Bob", "note": "", "address": "0xB0B", "updatedAt": 100})

    codec.merge_contacts([{"id": "remote-id", "name": "Robert", "note": "work", "address": "0xb0b", "updatedAt": 200}])

    contacts = state.get_contact_list()
    assert len(contacts) == 1
    assert contacts[0]["id"] == "c1"
    assert contacts[0]["name"] == "Robert"
    assert contacts[0]["note"] == "work"


def test_new_contact_reuses_remote_id(tmp_path: Path):
    codec, state, _ = _codec(tmp_path)

    codec.merge_contacts([{"id": "c7", "name": "Dan", "address": "0xD", "updatedAt": 70}])

    contact = state.get_contact_list()[0]
    assert contact["id"] == "c7"
    assert contact["createdAt"] == 70


def test_network_ids_union(tmp_path: Path):
    codec, _, _ = _codec(tmp_path)
    codec.settings.set("network_ids", ["0x1"])

    assert codec.merge_network_ids(["0x1", "0x38"]) is True
    assert codec.settings.get("network_ids") == ["0x1", "0x38"]
    assert codec.merge_network_ids(["0x38"]) is False


def test_invalid_remote_payload_is_ignored(tmp_path: Path):
    codec, _, _ = _codec(tmp_path)

    assert codec.merge("w1", None) is False
    assert codec.merge("w1", {"accounts": "nope"}) is False


def test_resolution_keeps_local_or_applies_remote(tmp_path: Path):
    codec, state, _ = _codec(tmp_path)
    codec.merge("w1", {"accounts": [{"index": 0, "address": "0xAAA", "name": "B", "nameUpdatedAt": 100}]})
    conflict = codec.conflicts.get("account:w1:0")

    assert codec.apply_resolution(conflict, "local") is True
    assert _account(state)["name"] == "A"
    assert _account(state)["nameUpdatedAt"] > 100

    assert codec.apply_resolution(conflict, "remote") is True
    assert _account(state)["name"] == "B"


def test_envelope_helpers():
    body = encode_envelope("CIPHER")

    assert body == '{"version":1,"cipher":"AES-GCM","kdf":"PBKDF2","ciphertext":"CIPHER"}'
    assert extract_ciphertext(body) == "CIPHER"
    assert extract_ciphertext("cmF3LWNpcGhlcg==") == "cmF3LWNpcGhlcg=="
