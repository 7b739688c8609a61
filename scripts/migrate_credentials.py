from __future__ import annotations

import argparse
import asyncio
import sys

from genflow.core.config import get_settings
from genflow.core.logging import configure_logging
from genflow.persistence.db import build_engine, build_session_factory
from genflow.services.crypto.legacy import LegacyCbcCipher
from genflow.services.crypto.migration import migrate_legacy_credentials
from genflow.services.crypto.vault import CredentialVault, load_master_key


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Re-encrypt legacy AES-256-CBC provider credentials under AES-256-GCM"
    )
    parser.add_argument("--batch-size", type=int, default=200, help="rows loaded per page")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="decrypt and verify every row without writing anything",
    )
    return parser


async def _migrate(batch_size: int, dry_run: bool) -> int:
    settings = get_settings()
    configure_logging(settings)
    master_key = load_master_key(settings)
    engine = build_engine(settings)
    try:
        report = await migrate_legacy_credentials(
            build_session_factory(engine),
            vault=CredentialVault(master_key),
            legacy_cipher=LegacyCbcCipher.from_settings(settings, master_key=master_key),
            batch_size=batch_size,
            dry_run=dry_run,
        )
    finally:
        await engine.dispose()
    print("Legacy credential migration" + (" (dry run)" if dry_run else "") + ":")
    print(f"  migrated: {len(report.migrated)}")
    print(f"  flagged for review: {len(report.flagged)}")
    for credential_id in report.flagged:
        print(f"    {credential_id}")
    # Flagged rows need an operator; signal it through the exit code.
    return 2 if report.flagged else 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    if args.batch_size <= 0:
        parser.error("--batch-size must be positive")
    try:
        return asyncio.run(_migrate(args.batch_size, args.dry_run))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"migrate_credentials failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
