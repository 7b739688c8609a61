from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from genflow.domain.models import EncryptedCredential


async def get_credential(session: AsyncSession, user_id: str, provider: str) -> EncryptedCredential | None:
    result = await session.execute(
        select(EncryptedCredential).where(
            EncryptedCredential.user_id == user_id,
            EncryptedCredential.provider == provider,
        )
    )
    return result.scalar_one_or_none()


async def list_credentials(session: AsyncSession, user_id: str) -> list[EncryptedCredential]:
    result = await session.execute(
        select(EncryptedCredential)
        .where(EncryptedCredential.user_id == user_id)
        .order_by(EncryptedCredential.provider)
    )
    return list(result.scalars().all())


async def list_ids_by_scheme(
    session: AsyncSession,
    scheme: str,
    *,
    after_id: str | None,
    limit: int,
) -> list[str]:
    # Keyset pagination keeps batch jobs stable while rows are rewritten.
    stmt = select(EncryptedCredential.id).where(
        EncryptedCredential.scheme == scheme,
        EncryptedCredential.needs_review.is_(False),
    )
    if after_id is not None:
        stmt = stmt.where(EncryptedCredential.id > after_id)
    result = await session.execute(stmt.order_by(EncryptedCredential.id).limit(limit))
    return list(result.scalars().all())
