from __future__ import annotations

import argparse
import asyncio
import sys

from genflow.core.config import get_settings
from genflow.persistence.db import build_engine, build_session_factory
from genflow.services.ledger import CreditLedger


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Top up a user's credit balance")
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--amount", type=int, required=True, help="credits to add")
    parser.add_argument("--reason", default="manual_top_up")
    parser.add_argument("--email", default=None, help="email for a user created by this top-up")
    return parser


async def _add(user_id: str, amount: int, reason: str, email: str | None) -> int:
    engine = build_engine(get_settings())
    try:
        ledger = CreditLedger(build_session_factory(engine))
        # Unknown users start at zero so the top-up is the only grant.
        await ledger.ensure_user(user_id, email=email)
        result = await ledger.credit(user_id, amount, reason, {"source": "add_credits"})
    finally:
        await engine.dispose()
    print("Credits added:")
    print(f"  user_id: {user_id}")
    print(f"  amount: {amount}")
    print(f"  new_balance: {result.new_balance}")
    print(f"  transaction_id: {result.transaction_id}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_add(args.user_id, args.amount, args.reason, args.email))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"add_credits failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
