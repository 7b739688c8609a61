"""Authenticated encryption for third-party provider credentials.

Every secret is sealed with AES-256-GCM under a single master key that is
injected from the environment. A fresh 96-bit IV is drawn per call and the
128-bit tag is stored next to the ciphertext. Decryption fails closed: any
tag mismatch, malformed field, or wrong key raises ``AuthenticationFailed``
and never yields plaintext.
"""

from __future__ import annotations

import binascii
import logging
import os
from dataclasses import dataclass
from typing import Final

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from genflow.core.config import Settings
from genflow.core.errors import AuthenticationFailed, VaultConfigError
from genflow.services.crypto.utils import b64decode_str, b64encode_bytes, decode_key_material


logger = logging.getLogger(__name__)

KEY_BYTES: Final[int] = 32
IV_BYTES: Final[int] = 12
TAG_BYTES: Final[int] = 16


@dataclass(frozen=True)
class SealedSecret:
    ciphertext: str
    iv: str
    auth_tag: str


class CredentialVault:
    scheme: Final[str] = "aes-256-gcm"

    def __init__(self, master_key: bytes) -> None:
        if len(master_key) != KEY_BYTES:
            raise VaultConfigError(f"vault master key must be {KEY_BYTES} bytes, got {len(master_key)}")
        self._aesgcm = AESGCM(master_key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVault":
        return cls(load_master_key(settings))

    def encrypt(self, plaintext: str, *, associated_data: str | None = None) -> SealedSecret:
        iv = os.urandom(IV_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), _aad(associated_data))
        # cryptography appends the tag to the ciphertext; persist them separately.
        return SealedSecret(
            ciphertext=b64encode_bytes(sealed[:-TAG_BYTES]),
            iv=b64encode_bytes(iv),
            auth_tag=b64encode_bytes(sealed[-TAG_BYTES:]),
        )

    def decrypt(
        self,
        ciphertext: str,
        iv: str,
        auth_tag: str,
        *,
        associated_data: str | None = None,
    ) -> str:
        try:
            raw_iv = b64decode_str(iv)
            raw_tag = b64decode_str(auth_tag)
            raw_cipher = b64decode_str(ciphertext)
        except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
            raise AuthenticationFailed("credential payload is malformed") from exc
        if len(raw_iv) != IV_BYTES or len(raw_tag) != TAG_BYTES:
            raise AuthenticationFailed("credential payload is malformed")
        try:
            plaintext = self._aesgcm.decrypt(raw_iv, raw_cipher + raw_tag, _aad(associated_data))
        except InvalidTag as exc:
            raise AuthenticationFailed("credential failed authentication; tampered data or wrong key") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise AuthenticationFailed("credential plaintext is not valid UTF-8") from exc


def _aad(associated_data: str | None) -> bytes | None:
    return associated_data.encode("utf-8") if associated_data is not None else None


def load_master_key(settings: Settings) -> bytes:
    if settings.vault_master_key:
        try:
            key = decode_key_material(settings.vault_master_key)
        except ValueError as exc:
            raise VaultConfigError(str(exc)) from exc
        if len(key) != KEY_BYTES:
            raise VaultConfigError(f"VAULT_MASTER_KEY must decode to {KEY_BYTES} bytes")
        return key
    if settings.environment.lower() == "production":
        raise VaultConfigError("VAULT_MASTER_KEY is required in production")
    # Ephemeral key: credentials stored in this process become unreadable after restart.
    logger.warning("vault_ephemeral_key environment=%s; set VAULT_MASTER_KEY", settings.environment)
    return os.urandom(KEY_BYTES)
