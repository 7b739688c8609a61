from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genflow.core.errors import AuthenticationFailed
from genflow.domain.models import EncryptedCredential
from genflow.persistence.repos import credentials as credentials_repo
from genflow.services.credentials import associated_data
from genflow.services.crypto.legacy import LegacyCbcCipher
from genflow.services.crypto.vault import CredentialVault


logger = logging.getLogger(__name__)


@dataclass
class MigrationReport:
    migrated: list[str] = field(default_factory=list)
    flagged: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def total(self) -> int:
        return len(self.migrated) + len(self.flagged)


async def migrate_legacy_credentials(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    vault: CredentialVault,
    legacy_cipher: LegacyCbcCipher,
    batch_size: int = 200,
    dry_run: bool = False,
) -> MigrationReport:
    """Re-encrypt every legacy CBC credential under the vault scheme.

    Each row is handled in its own transaction. A row is replaced only after
    the new ciphertext decrypts back to the original plaintext; rows that fail
    either step keep their payload and are flagged ``needs_review``.
    """
    report = MigrationReport(dry_run=dry_run)
    after_id: str | None = None
    while True:
        async with session_factory() as session:
            ids = await credentials_repo.list_ids_by_scheme(
                session, LegacyCbcCipher.scheme, after_id=after_id, limit=batch_size
            )
        if not ids:
            break
        for credential_id in ids:
            migrated = await _migrate_one(
                session_factory,
                credential_id,
                vault=vault,
                legacy_cipher=legacy_cipher,
                dry_run=dry_run,
            )
            (report.migrated if migrated else report.flagged).append(credential_id)
        after_id = ids[-1]
    logger.info(
        "legacy_credential_migration_done migrated=%s flagged=%s dry_run=%s",
        len(report.migrated),
        len(report.flagged),
        dry_run,
    )
    return report


async def _migrate_one(
    session_factory: async_sessionmaker[AsyncSession],
    credential_id: str,
    *,
    vault: CredentialVault,
    legacy_cipher: LegacyCbcCipher,
    dry_run: bool,
) -> bool:
    async with session_factory() as session:
        row = (
            await session.execute(select(EncryptedCredential).where(EncryptedCredential.id == credential_id))
        ).scalar_one()
        try:
            plaintext = legacy_cipher.decrypt(row.encrypted_payload, row.iv)
            aad = associated_data(row.user_id, row.provider)
            sealed = vault.encrypt(plaintext, associated_data=aad)
            roundtrip = vault.decrypt(sealed.ciphertext, sealed.iv, sealed.auth_tag, associated_data=aad)
        except (ValueError, UnicodeDecodeError, AuthenticationFailed) as exc:
            logger.warning(
                "legacy_credential_flagged id=%s provider=%s reason=%s",
                credential_id,
                row.provider,
                type(exc).__name__,
            )
            if not dry_run:
                row.needs_review = True
                await session.commit()
            return False
        if not hmac.compare_digest(roundtrip.encode("utf-8"), plaintext.encode("utf-8")):
            logger.warning("legacy_credential_flagged id=%s provider=%s reason=roundtrip", credential_id, row.provider)
            if not dry_run:
                row.needs_review = True
                await session.commit()
            return False
        if dry_run:
            return True
        row.scheme = vault.scheme
        row.encrypted_payload = sealed.ciphertext
        row.iv = sealed.iv
        row.auth_tag = sealed.auth_tag
        try:
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.exception("legacy_credential_commit_failed id=%s", credential_id)
            raise
        return True
