"""
AES-256-GCM object encryption keyed by a passphrase.

Layout of a ciphertext string: base64(salt[16] | iv[12] | ciphertext+tag).
The AES key is derived from the passphrase with PBKDF2-HMAC-SHA256.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import CryptoError

PBKDF2_ITERATIONS = 100_000
SALT_LENGTH = 16
IV_LENGTH = 12
KEY_LENGTH = 32


def _derive_key(passphrase: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def encrypt_string(text: str, passphrase: str) -> str:
    if not passphrase:
        raise CryptoError("passphrase_required")
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(_derive_key(passphrase, salt)).encrypt(iv, text.encode("utf-8"), None)
    return base64.b64encode(salt + iv + sealed).decode("ascii")


def decrypt_string(ciphertext: str, passphrase: str) -> str:
    if not passphrase:
        raise CryptoError("passphrase_required")
    if not ciphertext or not isinstance(ciphertext, str):
        raise CryptoError("ciphertext_required")
    try:
        raw = base64.b64decode(ciphertext.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CryptoError("ciphertext_not_base64") from exc
    if len(raw) <= SALT_LENGTH + IV_LENGTH:
        raise CryptoError("ciphertext_too_short")

    salt = raw[:SALT_LENGTH]
    iv = raw[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
    sealed = raw[SALT_LENGTH + IV_LENGTH:]
    try:
        plain = AESGCM(_derive_key(passphrase, salt)).decrypt(iv, sealed, None)
    except InvalidTag as exc:
        raise CryptoError("decrypt_failed_wrong_key_or_tampered") from exc
    return plain.decode("utf-8")


def encrypt_object(obj: Any, passphrase: str) -> str:
    return encrypt_string(json.dumps(obj, ensure_ascii=False, separators=(",", ":")), passphrase)


def decrypt_object(ciphertext: str, passphrase: str) -> Any:
    text = decrypt_string(ciphertext, passphrase)
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise CryptoError("decrypted_payload_not_json") from exc


def hash_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
