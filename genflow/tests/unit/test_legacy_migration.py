from __future__ import annotations

import pytest
from sqlalchemy import select

from genflow.domain.models import EncryptedCredential
from genflow.services.crypto.migration import migrate_legacy_credentials


async def _add_legacy(services, credential_id: str, user_id: str, provider: str, plaintext: str | None) -> None:
    if plaintext is None:
        # Not a whole number of AES blocks, so CBC decryption must fail.
        cipher_hex, iv_hex = "00" * 20, "11" * 16
    else:
        cipher_hex, iv_hex = services.legacy_cipher.encrypt(plaintext)
    async with services.session_factory() as session:
        session.add(
            EncryptedCredential(
                id=credential_id,
                user_id=user_id,
                provider=provider,
                scheme="legacy-aes-256-cbc",
                encrypted_payload=cipher_hex,
                iv=iv_hex,
                auth_tag=None,
            )
        )
        await session.commit()


async def _rows(services) -> dict[str, EncryptedCredential]:
    async with services.session_factory() as session:
        rows = (await session.execute(select(EncryptedCredential))).scalars().all()
    return {row.id: row for row in rows}


@pytest.mark.asyncio
async def test_migration_reencrypts_and_flags_failures(services) -> None:
    await services.ledger.ensure_user("u1")
    await _add_legacy(services, "c1", "u1", "openai", "sk-openai-legacy")
    await _add_legacy(services, "c2", "u1", "image_gen", "sk-image-legacy")
    await _add_legacy(services, "c3", "u1", "video_gen", None)
    before = await _rows(services)

    report = await migrate_legacy_credentials(
        services.session_factory,
        vault=services.vault,
        legacy_cipher=services.legacy_cipher,
        batch_size=1,
    )

    assert sorted(report.migrated) == ["c1", "c2"]
    assert report.flagged == ["c3"]
    after = await _rows(services)
    assert after["c1"].scheme == "aes-256-gcm"
    assert after["c1"].auth_tag
    assert await services.credentials.decrypt_for("u1", "openai") == "sk-openai-legacy"
    assert await services.credentials.decrypt_for("u1", "image_gen") == "sk-image-legacy"
    # Failed rows keep their payload untouched.
    assert after["c3"].needs_review is True
    assert after["c3"].scheme == "legacy-aes-256-cbc"
    assert after["c3"].encrypted_payload == before["c3"].encrypted_payload

    rerun = await migrate_legacy_credentials(
        services.session_factory, vault=services.vault, legacy_cipher=services.legacy_cipher
    )
    assert rerun.total == 0


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(services) -> None:
    await services.ledger.ensure_user("u1")
    await _add_legacy(services, "c1", "u1", "openai", "sk-openai-legacy")
    await _add_legacy(services, "c2", "u1", "video_gen", None)

    report = await migrate_legacy_credentials(
        services.session_factory,
        vault=services.vault,
        legacy_cipher=services.legacy_cipher,
        dry_run=True,
    )

    assert report.dry_run
    assert report.migrated == ["c1"]
    assert report.flagged == ["c2"]
    rows = await _rows(services)
    assert {row.scheme for row in rows.values()} == {"legacy-aes-256-cbc"}
    assert not any(row.needs_review for row in rows.values())
