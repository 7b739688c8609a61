from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genflow.core.errors import AuthenticationFailed, MissingCredential, PersistenceError, ValidationError
from genflow.domain.models import EncryptedCredential
from genflow.persistence.repos import credentials as credentials_repo
from genflow.providers.generation.base import KeyCheck, KeyValidator
from genflow.services.crypto.legacy import LegacyCbcCipher
from genflow.services.crypto.vault import CredentialVault


logger = logging.getLogger(__name__)

VALIDATION_STATUSES = frozenset({"valid", "invalid", "unchecked"})


@dataclass(frozen=True)
class CredentialInfo:
    # Metadata only; payloads never leave the store.
    provider: str
    scheme: str
    validation_status: str
    needs_review: bool
    updated_at: datetime


def associated_data(user_id: str, provider: str) -> str:
    # Bind ciphertext to its owner so rows cannot be swapped between users.
    return f"{user_id}:{provider}"


class CredentialStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        vault: CredentialVault,
        legacy_cipher: LegacyCbcCipher | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._vault = vault
        self._legacy = legacy_cipher

    async def put(self, user_id: str, provider: str, plaintext: str) -> CredentialInfo:
        if not plaintext.strip():
            raise ValidationError("credential must not be empty")
        sealed = self._vault.encrypt(plaintext, associated_data=associated_data(user_id, provider))
        try:
            async with self._session_factory() as session:
                row = await credentials_repo.get_credential(session, user_id, provider)
                if row is None:
                    row = EncryptedCredential(id=uuid4().hex, user_id=user_id, provider=provider)
                    session.add(row)
                row.scheme = self._vault.scheme
                row.encrypted_payload = sealed.ciphertext
                row.iv = sealed.iv
                row.auth_tag = sealed.auth_tag
                row.validation_status = "unchecked"
                row.needs_review = False
                await session.commit()
                await session.refresh(row)
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to store credential") from exc
        logger.info("credential_stored user=%s provider=%s", user_id, provider)
        return _info(row)

    async def decrypt_for(self, user_id: str, provider: str) -> str:
        """Decrypt a user's credential for immediate use by one provider call.

        The returned plaintext must not be cached, logged, or persisted.
        """
        try:
            async with self._session_factory() as session:
                row = await credentials_repo.get_credential(session, user_id, provider)
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to load credential") from exc
        if row is None:
            raise MissingCredential(provider=provider)
        return self.open(row)

    def open(self, row: EncryptedCredential) -> str:
        if row.scheme == self._vault.scheme:
            if row.auth_tag is None:
                raise AuthenticationFailed("credential is missing its authentication tag")
            return self._vault.decrypt(
                row.encrypted_payload,
                row.iv,
                row.auth_tag,
                associated_data=associated_data(row.user_id, row.provider),
            )
        if row.scheme == LegacyCbcCipher.scheme and self._legacy is not None:
            try:
                return self._legacy.decrypt(row.encrypted_payload, row.iv)
            except (ValueError, UnicodeDecodeError) as exc:
                raise AuthenticationFailed("legacy credential could not be decrypted") from exc
        raise AuthenticationFailed(f"unsupported credential scheme '{row.scheme}'")

    async def verify_available(self, user_id: str, providers: list[str]) -> None:
        # Admission check: every provider must decrypt; plaintext is dropped immediately.
        for provider in providers:
            await self.decrypt_for(user_id, provider)

    async def validate(self, user_id: str, provider: str, checker: KeyValidator) -> KeyCheck:
        """Check a stored key with its provider and record the verdict.

        An inconclusive check raises ProviderFailure and leaves the recorded
        status unchanged.
        """
        credential = await self.decrypt_for(user_id, provider)
        outcome = await checker.check_key(credential)
        status = "valid" if outcome.valid else "invalid"
        await self.mark_validation(user_id, provider, status)
        logger.info("credential_validated user=%s provider=%s status=%s", user_id, provider, status)
        return outcome

    async def mark_validation(self, user_id: str, provider: str, status: str) -> None:
        if status not in VALIDATION_STATUSES:
            raise ValidationError(f"unknown validation status '{status}'")
        try:
            async with self._session_factory() as session:
                row = await credentials_repo.get_credential(session, user_id, provider)
                if row is None:
                    raise MissingCredential(provider=provider)
                row.validation_status = status
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to update credential status") from exc

    async def list_for(self, user_id: str) -> list[CredentialInfo]:
        async with self._session_factory() as session:
            rows = await credentials_repo.list_credentials(session, user_id)
        return [_info(row) for row in rows]


def _info(row: EncryptedCredential) -> CredentialInfo:
    return CredentialInfo(
        provider=row.provider,
        scheme=row.scheme,
        validation_status=row.validation_status,
        needs_review=row.needs_review,
        updated_at=row.updated_at,
    )
