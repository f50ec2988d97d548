"""Durable store contract for the credit ledger, and its SQLAlchemy implementation.

The ledger needs four things from storage:
  - read an account's allowance fields
  - reset the daily window, only if it is still due (one conditional UPDATE)
  - charge credits and append a usage row (one atomic increment, no
    read-modify-write in Python)
  - give credits back, never below zero consumed, with an audit row

Both writes stay correct with concurrent requests for the same account.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tiergate.gateway.types import Plan
from tiergate.ledger.policy import as_utc
from tiergate.models.account import Account
from tiergate.models.usage import UsageRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccountSnapshot:
    """Allowance fields of an account as last read from the store."""

    id: str
    plan: Plan
    daily_allowance: int
    daily_consumed: int
    allowance_reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(self.daily_allowance - self.daily_consumed, 0)


class AccountStore(Protocol):
    async def get_account(self, account_id: str) -> AccountSnapshot | None: ...

    async def reset_allowance_if_due(
        self, account_id: str, now: datetime, cutoff: datetime, allowance: int
    ) -> bool: ...

    async def apply_debit(
        self,
        account_id: str,
        amount: int,
        feature: str,
        tier_used: str,
        at: datetime,
    ) -> AccountSnapshot | None: ...

    async def count_usage(self, account_id: str, feature: str, since: datetime) -> int: ...

    async def apply_grant(self, account_id: str, amount: int, feature: str, at: datetime) -> AccountSnapshot | None: ...


def _snapshot(account: Account) -> AccountSnapshot:
    return AccountSnapshot(
        id=account.id,
        plan=Plan(account.plan),
        daily_allowance=account.daily_allowance,
        daily_consumed=account.daily_consumed,
        allowance_reset_at=as_utc(account.allowance_reset_at),
    )


class SqlAccountStore:
    """AccountStore over SQLAlchemy async sessions (PostgreSQL in production)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_account(self, account_id: str) -> AccountSnapshot | None:
        async with self._session_factory() as session:
            account = await session.get(Account, account_id)
            return _snapshot(account) if account else None

    async def reset_allowance_if_due(self, account_id: str, now: datetime, cutoff: datetime, allowance: int) -> bool:
        """Reset the window unless another request already did.

        The ``allowance_reset_at <= cutoff`` guard makes concurrent resets
        idempotent: only the first UPDATE matches the row.
        """
        stmt = (
            update(Account)
            .where(Account.id == account_id, Account.allowance_reset_at <= cutoff)
            .values(daily_consumed=0, daily_allowance=allowance, allowance_reset_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount == 1

    async def apply_debit(
        self,
        account_id: str,
        amount: int,
        feature: str,
        tier_used: str,
        at: datetime,
    ) -> AccountSnapshot | None:
        """Increment ``daily_consumed`` by ``amount`` and append a usage row, in one transaction."""
        async with self._session_factory() as session:
            if amount:
                result = await session.execute(
                    update(Account)
                    .where(Account.id == account_id)
                    .values(daily_consumed=Account.daily_consumed + amount)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    await session.rollback()
                    return None

            session.add(
                UsageRecord(
                    account_id=account_id,
                    feature=feature,
                    tier_used=tier_used,
                    credits_charged=amount,
                    created_at=at,
                )
            )
            await session.flush()

            row = await session.execute(select(Account).where(Account.id == account_id))
            account = row.scalar_one_or_none()
            if account is None:
                await session.rollback()
                return None

            await session.commit()
            return _snapshot(account)

    async def count_usage(self, account_id: str, feature: str, since: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(UsageRecord)
            .where(
                UsageRecord.account_id == account_id,
                UsageRecord.feature == feature,
                UsageRecord.created_at >= since,
            )
        )
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one()

    async def apply_grant(self, account_id: str, amount: int, feature: str, at: datetime) -> AccountSnapshot | None:
        """Lower ``daily_consumed`` by ``amount`` (floored at 0) and log a negative usage row."""
        lowered = case((Account.daily_consumed > amount, Account.daily_consumed - amount), else_=0)
        async with self._session_factory() as session:
            result = await session.execute(
                update(Account)
                .where(Account.id == account_id)
                .values(daily_consumed=lowered)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                return None

            session.add(
                UsageRecord(
                    account_id=account_id, feature=feature, tier_used="", credits_charged=-amount, created_at=at
                )
            )
            await session.flush()

            account = (await session.execute(select(Account).where(Account.id == account_id))).scalar_one()
            await session.commit()
            return _snapshot(account)
