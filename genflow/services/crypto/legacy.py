from __future__ import annotations

import os
from typing import Final

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from genflow.core.config import Settings
from genflow.core.errors import VaultConfigError
from genflow.services.crypto.vault import KEY_BYTES, load_master_key


class LegacyCbcCipher:
    """Unauthenticated AES-256-CBC scheme kept only to read pre-GCM rows.

    Legacy rows store hex ciphertext and a hex 16-byte IV with PKCS#7 padding.
    A wrong key usually surfaces as a padding error, but CBC cannot detect
    tampering, which is why rows are migrated to the vault scheme.
    """

    scheme: Final[str] = "legacy-aes-256-cbc"

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_BYTES:
            raise VaultConfigError(f"legacy key must be {KEY_BYTES} bytes, got {len(key)}")
        self._key = key

    @classmethod
    def from_settings(cls, settings: Settings, *, master_key: bytes | None = None) -> "LegacyCbcCipher":
        if settings.vault_legacy_key:
            # Legacy keys were 32 raw characters rather than encoded bytes.
            return cls(settings.vault_legacy_key.encode("utf-8"))
        return cls(master_key if master_key is not None else load_master_key(settings))

    def encrypt(self, plaintext: str) -> tuple[str, str]:
        iv = os.urandom(16)
        padder = padding.PKCS7(128).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        return (encryptor.update(padded) + encryptor.finalize()).hex(), iv.hex()

    def decrypt(self, ciphertext_hex: str, iv_hex: str) -> str:
        # Raises ValueError (bad hex/padding) or UnicodeDecodeError on garbage.
        iv = bytes.fromhex(iv_hex)
        if len(iv) != 16:
            raise ValueError("legacy IV must be 16 bytes")
        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(bytes.fromhex(ciphertext_hex)) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        data = unpadder.update(padded) + unpadder.finalize()
        return data.decode("utf-8")
