"""Interfaces of the collaborators the sync engine consumes."""

from __future__ import annotations

from typing import Any, Optional, Protocol

WALLET_TYPE_HD = "hd"
WALLET_TYPE_IMPORTED = "imported"

# Storage keys whose changes mean local state diverged from the last push.
WALLETS_KEY = "wallets"
ACCOUNTS_KEY = "accounts"
NETWORKS_KEY = "networks"
CONTACTS_KEY = "contacts"
DOMAIN_KEYS = (WALLETS_KEY, ACCOUNTS_KEY, NETWORKS_KEY, CONTACTS_KEY)


class DomainState(Protocol):
    def get_wallets(self) -> dict[str, dict[str, Any]]: ...

    def get_wallet_accounts(self, wallet_id: str) -> list[dict[str, Any]]: ...

    def save_account(self, account: dict[str, Any]) -> None: ...

    def update_account(self, account: dict[str, Any]) -> None: ...

    def save_wallet(self, wallet: dict[str, Any]) -> None: ...

    def get_networks(self) -> list[dict[str, Any]]: ...

    def get_contact_list(self) -> list[dict[str, Any]]: ...

    def save_contact(self, contact: dict[str, Any]) -> None: ...


class WalletVault(Protocol):
    def get_wallet_mnemonic(self, wallet: dict[str, Any], password: str) -> str:
        """Raise when the password is wrong or the wallet has no mnemonic."""
        ...

    def derive_sub_account(self, wallet: dict[str, Any], index: int, name: str, password: str) -> dict[str, Any]: ...


class PasswordSource(Protocol):
    def get_cached_password(self) -> Optional[str]: ...
