"""AI service: credit admission around gateway dispatch.

Flow per request:
  1. ledger.admit() (raises PlanRestricted / InsufficientCredits)
  2. gateway.chat() or gateway.stream()
  3. ledger.debit() once the response completed, or once a stream is
     closed or cancelled by its consumer

Requests ended by an upstream error are never charged.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from tiergate.gateway.gateway import AiGateway
from tiergate.gateway.types import BackendBinding, CapabilityTier, ChatResult, Message, coerce_messages
from tiergate.ledger import AdmissionResult, CreditLedger, DebitResult
from tiergate.ledger.policy import estimate_words

logger = logging.getLogger(__name__)


@dataclass
class ChatOutcome:
    result: ChatResult
    admission: AdmissionResult
    debit: DebitResult


class AiService:
    def __init__(self, gateway: AiGateway, ledger: CreditLedger):
        self.gateway = gateway
        self.ledger = ledger

    async def _admit(
        self,
        account_id: str,
        tier: CapabilityTier,
        messages: list[Message],
        estimated_words: int | None,
        override: BackendBinding | None,
    ) -> AdmissionResult:
        words = estimated_words if estimated_words is not None else estimate_words(messages)
        return await self.ledger.admit(account_id, tier, words, binding=override)

    async def chat(
        self,
        account_id: str,
        tier: CapabilityTier | str,
        messages: Iterable[Message | Mapping[str, Any]],
        feature: str,
        estimated_words: int | None = None,
        override: BackendBinding | None = None,
    ) -> ChatOutcome:
        tier = CapabilityTier.parse(tier)
        canonical = coerce_messages(messages)
        admission = await self._admit(account_id, tier, canonical, estimated_words, override)

        result = await self.gateway.chat(tier, canonical, override=override)

        debit = await self.ledger.debit(account_id, admission.cost, feature, tier, binding=override)
        return ChatOutcome(result=result, admission=admission, debit=debit)

    async def open_stream(
        self,
        account_id: str,
        tier: CapabilityTier | str,
        messages: Iterable[Message | Mapping[str, Any]],
        feature: str,
        estimated_words: int | None = None,
        override: BackendBinding | None = None,
    ) -> AsyncIterator[str]:
        """Admit now, then return a lazy stream that debits when it ends.

        Admission errors surface here, before any output, so the HTTP layer
        can still answer with a proper status code.
        """
        tier = CapabilityTier.parse(tier)
        canonical = coerce_messages(messages)
        admission = await self._admit(account_id, tier, canonical, estimated_words, override)
        return self._metered_stream(account_id, tier, canonical, feature, admission, override)

    async def _metered_stream(
        self,
        account_id: str,
        tier: CapabilityTier,
        messages: list[Message],
        feature: str,
        admission: AdmissionResult,
        override: BackendBinding | None,
    ) -> AsyncIterator[str]:
        source = self.gateway.stream(tier, messages, override=override)
        charge = True
        try:
            async for chunk in source:
                yield chunk
        except Exception:
            charge = False
            raise
        finally:
            await source.aclose()
            # Completed, closed and cancelled streams all pay the admitted cost
            if charge:
                await asyncio.shield(
                    self.ledger.debit(account_id, admission.cost, feature, tier, binding=override)
                )
