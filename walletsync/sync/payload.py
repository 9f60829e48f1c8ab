"""
Payload codec: local wallet state <-> versioned sync snapshot.

`build` assembles the plaintext snapshot that gets encrypted and pushed.
`merge` folds a remote snapshot into local state field by field:

- accounts are keyed by derivation index and never touched when the
  addresses disagree;
- a strictly newer remote name wins, an equal timestamp with a different
  name becomes a Conflict, anything else is left alone;
- contacts follow the same rule, matched by id and then by address;
- network ids are a plain set union.
"""

from __future__ import annotations

import json
import logging
import secrets
import string
from typing import Any, Optional

from pydantic import Field

from walletsync.core.settings import CamelModel, Conflict, SettingsRepository
from walletsync.core.timeutil import now_ms

from .conflicts import ConflictLedger, account_conflict_id, contact_conflict_id
from .ports import WALLET_TYPE_HD, DomainState, PasswordSource, WalletVault

logger = logging.getLogger("walletsync.payload")

SYNC_PAYLOAD_VERSION = 1
ENVELOPE_CIPHER = "AES-GCM"
ENVELOPE_KDF = "PBKDF2"


class AccountEntry(CamelModel):
    index: int
    address: str = ""
    name: str = ""
    name_updated_at: int = 0


class ContactEntry(CamelModel):
    id: str = ""
    name: str = ""
    note: str = ""
    address: str = ""
    updated_at: int = 0


class SyncPayload(CamelModel):
    version: int = SYNC_PAYLOAD_VERSION
    updated_at: int
    reason: str = ""
    account_count: int = 0
    accounts: list[AccountEntry] = Field(default_factory=list)
    contacts: list[ContactEntry] = Field(default_factory=list)
    network_ids: list[str] = Field(default_factory=list)
    networks_updated_at: Optional[int] = None


def encode_envelope(ciphertext: str) -> str:
    envelope = {
        "version": SYNC_PAYLOAD_VERSION,
        "cipher": ENVELOPE_CIPHER,
        "kdf": ENVELOPE_KDF,
        "ciphertext": ciphertext,
    }
    return json.dumps(envelope, separators=(",", ":"))


def extract_ciphertext(body: str) -> str:
    """Ciphertext carried by a remote body. Bodies that are not an envelope are raw ciphertext."""
    try:
        envelope = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return body
    if isinstance(envelope, dict) and envelope.get("ciphertext"):
        return str(envelope["ciphertext"])
    return body


def _as_int(value: object) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def record_timestamp(record: dict[str, Any], *keys: str) -> int:
    """First truthy numeric timestamp among `keys`, else 0."""
    for key in keys:
        value = record.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value:
            return int(value)
    return 0


def ordered_union(*groups: list[Any]) -> list[str]:
    seen: dict[str, None] = {}
    for group in groups:
        for item in group or []:
            if item is None or item == "":
                continue
            seen.setdefault(str(item), None)
    return list(seen)


def _new_contact_id() -> str:
    suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(6))
    return f"contact_{now_ms()}_{suffix}"


class PayloadCodec:
    def __init__(
        self,
        state: DomainState,
        vault: WalletVault,
        passwords: PasswordSource,
        settings: SettingsRepository,
        conflicts: ConflictLedger,
    ):
        self.state = state
        self.vault = vault
        self.passwords = passwords
        self.settings = settings
        self.conflicts = conflicts

    def _hd_wallet(self, wallet_id: str) -> Optional[dict[str, Any]]:
        wallet = (self.state.get_wallets() or {}).get(wallet_id)
        if not wallet or wallet.get("type") != WALLET_TYPE_HD:
            return None
        return dict(wallet)

    def _stored_network_ids(self) -> list[str]:
        raw = self.settings.get("network_ids", [])
        return [str(x) for x in raw] if isinstance(raw, list) else []

    # ------------------------------------------------------------------ build

    def build(self, wallet_id: str, reason: str) -> Optional[SyncPayload]:
        wallet = self._hd_wallet(wallet_id)
        if wallet is None:
            return None

        accounts = self.state.get_wallet_accounts(wallet_id)
        account_entries = []
        for account in accounts:
            index = _as_int(account.get("index"))
            account_entries.append(
                AccountEntry(
                    index=index if index is not None else 0,
                    address=str(account.get("address") or ""),
                    name=str(account.get("name") or ""),
                    name_updated_at=record_timestamp(account, "nameUpdatedAt", "updatedAt", "createdAt"),
                )
            )

        local_network_ids = [
            n.get("chainIdHex") or n.get("chainId") for n in (self.state.get_networks() or [])
        ]
        network_ids = ordered_union(self._stored_network_ids(), local_network_ids)

        contact_entries = [
            ContactEntry(
                id=str(contact.get("id") or ""),
                name=str(contact.get("name") or ""),
                note=str(contact.get("note") or ""),
                address=str(contact.get("address") or ""),
                updated_at=record_timestamp(contact, "updatedAt", "createdAt"),
            )
            for contact in (self.state.get_contact_list() or [])
        ]

        ts = now_ms()
        return SyncPayload(
            updated_at=ts,
            reason=reason,
            account_count=_as_int(wallet.get("accountCount")) or len(accounts),
            accounts=account_entries,
            contacts=contact_entries,
            network_ids=network_ids,
            networks_updated_at=ts,
        )

    # ------------------------------------------------------------------ merge

    def merge(self, wallet_id: str, remote: Any, reason: str = "") -> bool:
        """Fold a decrypted remote payload into local state. Returns True on any local change."""
        if not isinstance(remote, dict) or not isinstance(remote.get("accounts"), list):
            return False
        wallet = self._hd_wallet(wallet_id)
        if wallet is None:
            return False

        changed = self._merge_accounts(wallet, remote)
        contacts = remote.get("contacts")
        if self.merge_contacts(contacts if isinstance(contacts, list) else []):
            changed = True
        network_ids = remote.get("networkIds")
        if self.merge_network_ids(network_ids if isinstance(network_ids, list) else []):
            changed = True

        logger.info("payload_merged wallet=%s reason=%s changed=%s", wallet_id, reason, changed)
        return changed

    def _merge_accounts(self, wallet: dict[str, Any], remote: dict[str, Any]) -> bool:
        wallet_id = str(wallet.get("id"))
        local_by_index: dict[int, dict[str, Any]] = {}
        for account in self.state.get_wallet_accounts(wallet_id):
            index = _as_int(account.get("index"))
            local_by_index[index if index is not None else 0] = account

        remote_by_index: dict[int, dict[str, Any]] = {}
        for account in remote["accounts"]:
            if not isinstance(account, dict):
                continue
            index = _as_int(account.get("index"))
            if index is None:
                continue
            remote_by_index[index] = account

        changed = False
        for index, item in remote_by_index.items():
            local = local_by_index.get(index)
            remote_updated_at = record_timestamp(item, "nameUpdatedAt", "updatedAt", "createdAt")
            remote_name = str(item.get("name") or "")

            if local is None:
                if self._adopt_missing_account(wallet, index, remote_name, remote_updated_at):
                    changed = True
                continue

            remote_address = str(item.get("address") or "")
            local_address = str(local.get("address") or "")
            if remote_address and local_address and remote_address.lower() != local_address.lower():
                logger.warning("account_address_mismatch wallet=%s index=%s", wallet_id, index)
                continue

            local_name = str(local.get("name") or "")
            local_updated_at = record_timestamp(local, "nameUpdatedAt", "updatedAt", "createdAt")
            if not remote_name or remote_name == local_name:
                continue
            if remote_updated_at > local_updated_at:
                self.state.update_account({**local, "name": remote_name, "nameUpdatedAt": remote_updated_at})
                changed = True
            elif remote_updated_at == local_updated_at:
                self.conflicts.record(
                    Conflict(
                        id=account_conflict_id(wallet_id, index),
                        type="account",
                        account_id=local.get("id"),
                        wallet_id=wallet_id,
                        index=index,
                        local_name=local_name,
                        remote_name=remote_name,
                        timestamp=remote_updated_at,
                    )
                )

        remote_count = _as_int(remote.get("accountCount"))
        if remote_count is not None:
            current = _as_int(wallet.get("accountCount")) or 0
            next_count = max(current, remote_count)
            if next_count != wallet.get("accountCount"):
                wallet["accountCount"] = next_count
                self.state.save_wallet(wallet)
                changed = True
        return changed

    def _adopt_missing_account(self, wallet: dict[str, Any], index: int, name: str, updated_at: int) -> bool:
        password = self.passwords.get_cached_password()
        if not password:
            # Locked: retried on a later merge.
            logger.info("account_derive_skipped_locked wallet=%s index=%s", wallet.get("id"), index)
            return False
        try:
            derived = dict(self.vault.derive_sub_account(wallet, index, name, password))
        except Exception as exc:
            logger.warning("account_derive_failed wallet=%s index=%s %s", wallet.get("id"), index, exc)
            return False
        if updated_at:
            derived["nameUpdatedAt"] = updated_at
        self.state.save_account(derived)
        wallet["accountCount"] = max(_as_int(wallet.get("accountCount")) or 0, index + 1)
        self.state.save_wallet(wallet)
        return True

    def merge_contacts(self, remote_contacts: list[Any]) -> bool:
        if not remote_contacts:
            return False

        local_by_id: dict[str, dict[str, Any]] = {}
        local_by_address: dict[str, dict[str, Any]] = {}
        for contact in self.state.get_contact_list() or []:
            if not contact:
                continue
            if contact.get("id"):
                local_by_id[str(contact["id"])] = contact
            addr = str(contact.get("address") or "").lower()
            if addr:
                local_by_address[addr] = contact

        changed = False
        for item in remote_contacts:
            if not isinstance(item, dict):
                continue
            remote_address = str(item.get("address") or "")
            if not remote_address:
                continue
            remote_updated_at = record_timestamp(item, "updatedAt", "createdAt")
            remote_id = str(item.get("id") or "")
            local = local_by_id.get(remote_id) if remote_id else None
            local = local or local_by_address.get(remote_address.lower())

            if local is not None:
                local_updated_at = record_timestamp(local, "updatedAt", "createdAt")
                remote_name = str(item.get("name") or "")
                local_name = str(local.get("name") or "")
                if remote_updated_at > local_updated_at:
                    updated = {
                        **local,
                        "name": remote_name or local_name,
                        "note": str(item.get("note") or ""),
                        "address": remote_address or local.get("address"),
                        "updatedAt": remote_updated_at,
                    }
                    self.state.save_contact(updated)
                    local_by_id[str(updated["id"])] = updated
                    local_by_address[remote_address.lower()] = updated
                    changed = True
                elif remote_updated_at == local_updated_at and remote_name != local_name:
                    self.conflicts.record(
                        Conflict(
                            id=contact_conflict_id(str(local.get("id"))),
                            type="contact",
                            contact_id=local.get("id"),
                            address=local.get("address"),
                            local_name=local_name,
                            local_note=str(local.get("note") or ""),
                            remote_name=remote_name,
                            remote_note=str(item.get("note") or ""),
                            timestamp=remote_updated_at,
                        )
                    )
                continue

            contact_id = remote_id if remote_id and remote_id not in local_by_id else _new_contact_id()
            created_at = remote_updated_at or now_ms()
            contact = {
                "id": contact_id,
                "name": str(item.get("name") or ""),
                "note": str(item.get("note") or ""),
                "address": remote_address,
                "createdAt": created_at,
                "updatedAt": created_at,
            }
            self.state.save_contact(contact)
            local_by_id[contact_id] = contact
            local_by_address[remote_address.lower()] = contact
            changed = True
        return changed

    def merge_network_ids(self, remote_ids: list[Any]) -> bool:
        if not remote_ids:
            return False
        stored = self._stored_network_ids()
        union = ordered_union(stored, remote_ids)
        if union == stored:
            return False
        self.settings.set("network_ids", union)
        return True

    # ------------------------------------------------------------- resolution

    def apply_resolution(self, conflict: Conflict, choice: str) -> bool:
        """Apply the user's choice for a conflict; the chosen value gets a fresh timestamp."""
        ts = now_ms()
        if conflict.type == "account":
            accounts = self.state.get_wallet_accounts(conflict.wallet_id or "")
            local = next((a for a in accounts if conflict.account_id and a.get("id") == conflict.account_id), None)
            if local is None:
                local = next((a for a in accounts if _as_int(a.get("index")) == conflict.index), None)
            if local is None:
                return False
            name = conflict.remote_name if choice == "remote" else str(local.get("name") or conflict.local_name)
            self.state.update_account({**local, "name": name, "nameUpdatedAt": ts})
            return True

        contacts = self.state.get_contact_list() or []
        local = next((c for c in contacts if c.get("id") == conflict.contact_id), None)
        if local is None:
            return False
        if choice == "remote":
            updated = {**local, "name": conflict.remote_name, "note": conflict.remote_note or "", "updatedAt": ts}
        else:
            updated = {**local, "updatedAt": ts}
        self.state.save_contact(updated)
        return True
