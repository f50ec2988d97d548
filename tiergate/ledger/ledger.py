"""Credit Ledger: per-account daily allowance, admission and debit.

Callers check admission before dispatching to the gateway and debit only
after the request completed:

    admission = await ledger.admit(account_id, tier, estimated_words)
    result = await gateway.chat(tier, messages)
    await ledger.debit(account_id, admission.cost, "chat", tier)

Credits can also be given back with ``grant`` (rewards, referrals, bonuses).

A rejected admission never consumes quota. Unlimited accounts skip every
check and always see ``remaining == -1``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from tiergate.core.config import Settings
from tiergate.core.exceptions import (
    AccountNotFound,
    GrantLimitReached,
    GrantRejected,
    InsufficientCredits,
    PlanRestricted,
)
from tiergate.core.metrics import ADMISSION_DENIED, CREDITS_DEBITED, CREDITS_GRANTED
from tiergate.gateway.tiers import TierResolver
from tiergate.gateway.types import BackendBinding, CapabilityTier, Plan, TierAccess
from tiergate.ledger.policy import (
    as_utc,
    calculate_credits,
    daily_allowance_for,
    should_reset,
)
from tiergate.ledger.store import AccountSnapshot, AccountStore

logger = logging.getLogger(__name__)

UNLIMITED_REMAINING = -1
DEFAULT_ESTIMATED_WORDS = 1000
GRANT_WINDOW = timedelta(hours=24)


class DenialReason(str, Enum):
    PLAN_RESTRICTED = "plan_restricted"
    INSUFFICIENT_CREDITS = "insufficient_credits"


class GrantSource(str, Enum):
    REWARDED_AD = "rewarded_ad"
    REFERRAL = "referral"
    BONUS = "bonus"

    @property
    def feature(self) -> str:
        return f"grant:{self.value}"


@dataclass(frozen=True)
class AdmissionResult:
    allowed: bool
    cost: int
    remaining: int
    plan: Plan
    reason: DenialReason | None = None


@dataclass(frozen=True)
class DebitResult:
    charged: int
    consumed: int
    remaining: int


@dataclass(frozen=True)
class GrantResult:
    credited: int
    consumed: int
    remaining: int


@dataclass(frozen=True)
class Balance:
    plan: Plan
    allowance: int
    consumed: int
    remaining: int
    resets_at: datetime | None

    def to_dict(self) -> dict:
        return {
            "plan": self.plan.value,
            "allowance": self.allowance,
            "consumed": self.consumed,
            "remaining": self.remaining,
            "resets_at": self.resets_at.isoformat() if self.resets_at else None,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditLedger:
    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        resolver: TierResolver | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.settings = settings
        self.resolver = resolver or TierResolver(settings)
        self.clock = clock
        self.reset_period = timedelta(hours=settings.credit_reset_hours)

    # -- helpers -------------------------------------------------------------

    async def _load(self, account_id: str) -> AccountSnapshot:
        account = await self.store.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def _refresh(self, account: AccountSnapshot) -> AccountSnapshot:
        """Apply the daily reset if the window has elapsed."""
        now = as_utc(self.clock())
        if not should_reset(now, account.allowance_reset_at, self.reset_period):
            return account

        allowance = daily_allowance_for(account.plan, self.settings)
        applied = await self.store.reset_allowance_if_due(
            account.id, now=now, cutoff=now - self.reset_period, allowance=allowance
        )
        if applied:
            logger.info(
                "Daily credits reset for account %s (%s plan, %d credits)",
                account.id,
                account.plan.value,
                allowance,
                extra={"account_id": account.id},
            )
        # Re-read either way: a concurrent request may have reset it first.
        return await self._load(account.id)

    def _binding(self, tier: CapabilityTier | str, binding: BackendBinding | None) -> BackendBinding:
        if binding is not None:
            return binding
        return self.resolver.resolve(CapabilityTier.parse(tier))

    def calculate_cost(
        self,
        tier: CapabilityTier | str,
        estimated_words: int = DEFAULT_ESTIMATED_WORDS,
        binding: BackendBinding | None = None,
    ) -> int:
        """Metered cost of a request on ``tier``, before plan exemptions."""
        return calculate_credits(estimated_words, self._binding(tier, binding).credit_cost_per_request)

    def _deny(self, reason: DenialReason, account: AccountSnapshot, cost: int) -> AdmissionResult:
        ADMISSION_DENIED.labels(reason=reason.value).inc()
        logger.info(
            "Admission denied for account %s: %s (cost=%d, remaining=%d)",
            account.id,
            reason.value,
            cost,
            account.remaining,
            extra={"account_id": account.id},
        )
        return AdmissionResult(
            allowed=False, cost=cost, remaining=account.remaining, plan=account.plan, reason=reason
        )

    # -- admission -----------------------------------------------------------

    async def check_admission(
        self,
        account_id: str,
        tier: CapabilityTier | str,
        estimated_words: int = DEFAULT_ESTIMATED_WORDS,
        binding: BackendBinding | None = None,
    ) -> AdmissionResult:
        """Decide whether ``account_id`` may run a request on ``tier`` now."""
        account = await self._load(account_id)
        if account.plan == Plan.UNLIMITED:
            return AdmissionResult(allowed=True, cost=0, remaining=UNLIMITED_REMAINING, plan=account.plan)

        account = await self._refresh(account)
        target = self._binding(tier, binding)
        access = target.access_for(account.plan)

        if access == TierAccess.DENIED:
            return self._deny(DenialReason.PLAN_RESTRICTED, account, 0)
        if access == TierAccess.FREE:
            return AdmissionResult(allowed=True, cost=0, remaining=account.remaining, plan=account.plan)

        cost = calculate_credits(estimated_words, target.credit_cost_per_request)
        if account.remaining < cost:
            return self._deny(DenialReason.INSUFFICIENT_CREDITS, account, cost)
        return AdmissionResult(allowed=True, cost=cost, remaining=account.remaining, plan=account.plan)

    async def admit(
        self,
        account_id: str,
        tier: CapabilityTier | str,
        estimated_words: int = DEFAULT_ESTIMATED_WORDS,
        binding: BackendBinding | None = None,
    ) -> AdmissionResult:
        """Like :meth:`check_admission` but raises on denial."""
        result = await self.check_admission(account_id, tier, estimated_words, binding)
        if result.allowed:
            return result
        if result.reason == DenialReason.PLAN_RESTRICTED:
            raise PlanRestricted(CapabilityTier.parse(tier).value, result.plan.value)
        raise InsufficientCredits(result.cost, result.remaining)

    async def check_fixed_cost(self, account_id: str, credits_needed: int) -> AdmissionResult:
        """Admission for tools that charge a fixed number of credits."""
        account = await self._load(account_id)
        if account.plan == Plan.UNLIMITED:
            return AdmissionResult(allowed=True, cost=0, remaining=UNLIMITED_REMAINING, plan=account.plan)

        account = await self._refresh(account)
        if account.remaining < credits_needed:
            return self._deny(DenialReason.INSUFFICIENT_CREDITS, account, credits_needed)
        return AdmissionResult(allowed=True, cost=credits_needed, remaining=account.remaining, plan=account.plan)

    # -- debit ---------------------------------------------------------------

    async def debit(
        self,
        account_id: str,
        cost: int,
        feature: str,
        tier_used: CapabilityTier | str,
        binding: BackendBinding | None = None,
    ) -> DebitResult:
        """Charge ``cost`` credits for a completed request and record it.

        Unlimited accounts, and elevated plans on a free-for-plan tier, get
        a zero-cost usage record and no change to ``daily_consumed``.
        """
        if cost < 0:
            raise ValueError(f"Debit cost must be non-negative, got {cost}")

        account = await self._load(account_id)
        tier = CapabilityTier.parse(tier_used)
        access = self._binding(tier, binding).access_for(account.plan)
        charged = 0 if access == TierAccess.FREE else cost

        updated = await self.store.apply_debit(
            account_id, amount=charged, feature=feature, tier_used=tier.value, at=as_utc(self.clock())
        )
        if updated is None:
            raise AccountNotFound(account_id)

        if charged:
            CREDITS_DEBITED.labels(tier=tier.value).inc(charged)
        logger.info(
            "Debited %d credits from account %s for %s on %s",
            charged,
            account_id,
            feature,
            tier.value,
            extra={"account_id": account_id, "tier": tier.value},
        )

        if updated.plan == Plan.UNLIMITED:
            return DebitResult(charged=0, consumed=updated.daily_consumed, remaining=UNLIMITED_REMAINING)
        return DebitResult(charged=charged, consumed=updated.daily_consumed, remaining=updated.remaining)

    # -- grants --------------------------------------------------------------

    async def grant(self, account_id: str, amount: int, source: GrantSource | str) -> GrantResult:
        """Give ``amount`` credits back by lowering today's consumption.

        Consumption never drops below zero. Rewarded ads are limited to free
        accounts and to ``max_ad_rewards_per_day`` per rolling 24 hours.
        """
        source = GrantSource(source)
        if not 1 <= amount <= self.settings.max_grant_credits:
            raise ValueError(f"Grant amount must be between 1 and {self.settings.max_grant_credits}, got {amount}")

        account = await self._load(account_id)
        if account.plan != Plan.UNLIMITED:
            account = await self._refresh(account)

        now = as_utc(self.clock())
        if source == GrantSource.REWARDED_AD:
            if account.plan != Plan.FREE:
                raise GrantRejected(
                    f"Rewarded ads are only available on the free plan (current plan: {account.plan.value})"
                )
            recent = await self.store.count_usage(account_id, source.feature, since=now - GRANT_WINDOW)
            if recent >= self.settings.max_ad_rewards_per_day:
                raise GrantLimitReached(self.settings.max_ad_rewards_per_day)

        updated = await self.store.apply_grant(account_id, amount=amount, feature=source.feature, at=now)
        if updated is None:
            raise AccountNotFound(account_id)

        CREDITS_GRANTED.labels(source=source.value).inc(amount)
        logger.info(
            "Granted %d credits to account %s (%s)",
            amount,
            account_id,
            source.value,
            extra={"account_id": account_id},
        )

        remaining = UNLIMITED_REMAINING if updated.plan == Plan.UNLIMITED else updated.remaining
        return GrantResult(credited=amount, consumed=updated.daily_consumed, remaining=remaining)

    # -- balance -------------------------------------------------------------

    async def get_balance(self, account_id: str) -> Balance:
        account = await self._load(account_id)
        if account.plan == Plan.UNLIMITED:
            return Balance(
                plan=account.plan,
                allowance=UNLIMITED_REMAINING,
                consumed=account.daily_consumed,
                remaining=UNLIMITED_REMAINING,
                resets_at=None,
            )

        account = await self._refresh(account)
        return Balance(
            plan=account.plan,
            allowance=account.daily_allowance,
            consumed=account.daily_consumed,
            remaining=account.remaining,
            resets_at=account.allowance_reset_at + self.reset_period,
        )
