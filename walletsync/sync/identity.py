from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from walletsync.crypto import hash_hex
from walletsync.errors import IdentityError

FINGERPRINT_DOMAIN = "yeying-sync-id:"
SYNC_KEY_DOMAIN = "yeying-sync-key:"


@dataclass(frozen=True)
class SyncContext:
    """Per-wallet sync identity. Lives in memory only while the wallet is unlocked."""

    fingerprint: str
    sync_key: str = field(repr=False)


def derive_context(mnemonic: str, hash_fn: Callable[[str], str] = hash_hex) -> SyncContext:
    """Derive the remote object identity and payload key from a wallet mnemonic.

    The two values use different domain-separation prefixes, so neither
    reveals the other or the mnemonic.
    """
    if not mnemonic or not mnemonic.strip():
        raise IdentityError("mnemonic_missing")
    # Hashed verbatim: other devices must arrive at the same fingerprint.
    return SyncContext(
        fingerprint=hash_fn(f"{FINGERPRINT_DOMAIN}{mnemonic}"),
        sync_key=hash_fn(f"{SYNC_KEY_DOMAIN}{mnemonic}"),
    )
