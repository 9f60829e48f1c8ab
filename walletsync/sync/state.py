from __future__ import annotations

import threading
import time
from typing import Any, Optional

from walletsync.errors import IdentityError

from .ports import ACCOUNTS_KEY, CONTACTS_KEY, NETWORKS_KEY, WALLETS_KEY


class StoreDomainState:
    """Wallet, account, contact and network records kept in the key-value store.

    Records are plain dicts keyed by id, stored under the same keys the
    storage listener watches, so every save raises a change notification.
    """

    def __init__(self, store):
        self.store = store

    def _map(self, key: str) -> dict[str, dict[str, Any]]:
        raw = self.store.get(key, {})
        return raw if isinstance(raw, dict) else {}

    def _set_item(self, key: str, item: dict[str, Any]) -> None:
        if not item or not item.get("id"):
            raise ValueError(f"invalid_record_for_{key}")
        items = self._map(key)
        items[str(item["id"])] = dict(item)
        self.store.set(key, items)

    def get_wallets(self) -> dict[str, dict[str, Any]]:
        return self._map(WALLETS_KEY)

    def save_wallet(self, wallet: dict[str, Any]) -> None:
        self._set_item(WALLETS_KEY, wallet)

    def get_wallet_accounts(self, wallet_id: str) -> list[dict[str, Any]]:
        return [a for a in self._map(ACCOUNTS_KEY).values() if a.get("walletId") == wallet_id]

    def save_account(self, account: dict[str, Any]) -> None:
        self._set_item(ACCOUNTS_KEY, account)

    def update_account(self, account: dict[str, Any]) -> None:
        self.save_account(account)

    def get_networks(self) -> list[dict[str, Any]]:
        raw = self.store.get(NETWORKS_KEY, [])
        if isinstance(raw, dict):
            return [n for n in raw.values() if isinstance(n, dict)]
        return [n for n in raw if isinstance(n, dict)] if isinstance(raw, list) else []

    def get_contact_list(self) -> list[dict[str, Any]]:
        return list(self._map(CONTACTS_KEY).values())

    def save_contact(self, contact: dict[str, Any]) -> None:
        self._set_item(CONTACTS_KEY, contact)


class PasswordCache:
    """Unlock password held in memory for a limited time."""

    def __init__(self, ttl_sec: float = 60.0, clock=time.monotonic):
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._lock = threading.Lock()
        self._password: Optional[str] = None
        self._expires_at = 0.0

    def cache(self, password: str, ttl_sec: float | None = None) -> None:
        with self._lock:
            self._password = password
            self._expires_at = self._clock() + (self.ttl_sec if ttl_sec is None else ttl_sec)

    def refresh(self) -> None:
        with self._lock:
            if self._password is not None:
                self._expires_at = self._clock() + self.ttl_sec

    def clear(self) -> None:
        with self._lock:
            self._password = None
            self._expires_at = 0.0

    def get_cached_password(self) -> Optional[str]:
        with self._lock:
            if self._password is None:
                return None
            if self._clock() >= self._expires_at:
                self._password = None
                return None
            return self._password


class DetachedVault:
    """Vault for processes that run without the wallet keyring (CLI, standalone console).

    No sync context can be prepared, so only settings, logs and conflicts are usable.
    """

    def get_wallet_mnemonic(self, wallet: dict[str, Any], password: str) -> str:
        raise IdentityError("wallet_vault_unavailable")

    def derive_sub_account(self, wallet: dict[str, Any], index: int, name: str, password: str) -> dict[str, Any]:
        raise IdentityError("wallet_vault_unavailable")
