"""Atomic credit accounting with an append-only transaction log.

Balances live on the ``users`` row and change only here. Every mutation
writes exactly one ``credit_transactions`` row in the same database
transaction as the balance update, so the sum of a user's transactions always
equals their balance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genflow.core.errors import InsufficientCredits, PersistenceError, UserNotFound, ValidationError
from genflow.domain.models import CreditTransaction, User


logger = logging.getLogger(__name__)

DEBIT = "DEBIT"
CREDIT = "CREDIT"


@dataclass(frozen=True)
class LedgerResult:
    new_balance: int
    transaction_id: str


@dataclass(frozen=True)
class BalanceSnapshot:
    credits: int
    credits_used: int


@dataclass(frozen=True)
class Reconciliation:
    balance: int
    ledger_total: int

    @property
    def consistent(self) -> bool:
        return self.balance == self.ledger_total


class CreditLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def can_afford(self, user_id: str, amount: int) -> bool:
        # Advisory only; debit re-checks inside its own transaction.
        snapshot = await self.balance(user_id)
        return snapshot.credits >= amount

    async def balance(self, user_id: str) -> BalanceSnapshot:
        try:
            async with self._session_factory() as session:
                row = (
                    await session.execute(select(User.credits, User.credits_used).where(User.id == user_id))
                ).one_or_none()
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to read balance") from exc
        if row is None:
            raise UserNotFound(f"user '{user_id}' not found")
        return BalanceSnapshot(credits=int(row.credits), credits_used=int(row.credits_used))

    async def debit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        metadata: dict[str, Any] | None = None,
        *,
        session: AsyncSession | None = None,
    ) -> LedgerResult:
        """Atomically take ``amount`` credits from ``user_id``.

        With ``session`` the debit joins the caller's open transaction and the
        caller commits; otherwise the debit runs and commits in its own.
        """
        _check_amount(amount)
        if session is not None:
            return await self._debit_in(session, user_id, amount, reason, metadata)
        try:
            async with self._session_factory() as own_session:
                async with own_session.begin():
                    result = await self._debit_in(own_session, user_id, amount, reason, metadata)
        except SQLAlchemyError as exc:
            raise PersistenceError("credit debit failed") from exc
        return result

    async def credit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        metadata: dict[str, Any] | None = None,
        *,
        session: AsyncSession | None = None,
    ) -> LedgerResult:
        _check_amount(amount)
        if session is not None:
            return await self._credit_in(session, user_id, amount, reason, metadata)
        try:
            async with self._session_factory() as own_session:
                async with own_session.begin():
                    result = await self._credit_in(own_session, user_id, amount, reason, metadata)
        except SQLAlchemyError as exc:
            raise PersistenceError("credit top-up failed") from exc
        return result

    async def ensure_user(self, user_id: str, *, email: str | None = None, initial_credits: int = 0) -> User:
        try:
            user = await self._get_user(user_id)
            if user is None:
                try:
                    user = await self._create_user(user_id, email, initial_credits)
                except IntegrityError:
                    # A concurrent first request inserted the row and posted its grant.
                    logger.info("user_create_raced user=%s", user_id)
                    user = await self._get_user(user_id)
        except SQLAlchemyError as exc:
            raise PersistenceError("failed to create user") from exc
        if user is None:
            raise PersistenceError("failed to create user")
        return user

    async def _get_user(self, user_id: str) -> User | None:
        async with self._session_factory() as session:
            return await session.get(User, user_id)

    async def _create_user(self, user_id: str, email: str | None, initial_credits: int) -> User:
        # Opening grants go through the log so reconciliation starts balanced.
        async with self._session_factory() as session:
            async with session.begin():
                user = User(id=user_id, email=email, credits=0, credits_used=0)
                session.add(user)
                await session.flush()
                if initial_credits > 0:
                    await self._credit_in(session, user_id, initial_credits, "initial_grant", None)
            await session.refresh(user)
        return user

    async def transactions(self, user_id: str, *, limit: int = 100) -> list[CreditTransaction]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
                .order_by(CreditTransaction.created_at, CreditTransaction.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def reconcile(self, user_id: str) -> Reconciliation:
        snapshot = await self.balance(user_id)
        async with self._session_factory() as session:
            credits = await _sum_amount(session, user_id, CREDIT)
            debits = await _sum_amount(session, user_id, DEBIT)
        return Reconciliation(balance=snapshot.credits, ledger_total=credits - debits)

    async def _debit_in(
        self,
        session: AsyncSession,
        user_id: str,
        amount: int,
        reason: str,
        metadata: dict[str, Any] | None,
    ) -> LedgerResult:
        # Guarded decrement: the balance check and write are one statement, so
        # concurrent debits serialize on the row and can never go negative.
        result = await session.execute(
            update(User)
            .where(User.id == user_id, User.credits >= amount)
            .values(credits=User.credits - amount, credits_used=User.credits_used + amount)
            .returning(User.credits)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            current = (await session.execute(select(User.credits).where(User.id == user_id))).scalar_one_or_none()
            if current is None:
                raise UserNotFound(f"user '{user_id}' not found")
            logger.info("credits_debit_rejected user=%s amount=%s balance=%s", user_id, amount, current)
            raise InsufficientCredits(balance=int(current), required=amount)
        transaction_id = await _append(session, user_id, DEBIT, amount, reason, metadata)
        logger.info("credits_debited user=%s amount=%s balance=%s reason=%s", user_id, amount, new_balance, reason)
        return LedgerResult(new_balance=int(new_balance), transaction_id=transaction_id)

    async def _credit_in(
        self,
        session: AsyncSession,
        user_id: str,
        amount: int,
        reason: str,
        metadata: dict[str, Any] | None,
    ) -> LedgerResult:
        result = await session.execute(
            update(User)
            .where(User.id == user_id)
            .values(credits=User.credits + amount)
            .returning(User.credits)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            raise UserNotFound(f"user '{user_id}' not found")
        transaction_id = await _append(session, user_id, CREDIT, amount, reason, metadata)
        logger.info("credits_added user=%s amount=%s balance=%s reason=%s", user_id, amount, new_balance, reason)
        return LedgerResult(new_balance=int(new_balance), transaction_id=transaction_id)


async def _append(
    session: AsyncSession,
    user_id: str,
    kind: str,
    amount: int,
    reason: str,
    metadata: dict[str, Any] | None,
) -> str:
    transaction = CreditTransaction(
        id=uuid4().hex,
        user_id=user_id,
        type=kind,
        amount=amount,
        reason=reason[:255],
        metadata_json=metadata or {},
    )
    session.add(transaction)
    await session.flush()
    return transaction.id


async def _sum_amount(session: AsyncSession, user_id: str, kind: str) -> int:
    result = await session.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.type == kind,
        )
    )
    return int(result.scalar_one())


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount must be a positive integer number of credits")
