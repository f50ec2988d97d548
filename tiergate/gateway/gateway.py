"""AI Gateway: the provider-agnostic entry point.

Main entry point for page-level features:
  1. Accepts a capability tier + message list (or an explicit binding override)
  2. Resolves the tier to a backend binding
  3. Dispatches through the Failover Controller (retry → adapter → fallback)
  4. Returns a normalized ChatResult, or a lazy text / byte stream

Usage:
    gateway = AiGateway(settings)

    result = await gateway.chat("fast", [{"role": "user", "content": "Hi"}])

    async for chunk in gateway.stream(CapabilityTier.NORMAL, messages):
        ...

Credit admission and debit are not done here; see ``tiergate.ledger`` and
``tiergate.services.ai_service``.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from typing import Any

from tiergate.core.config import Settings
from tiergate.gateway.adapters import BaseProviderAdapter, build_adapters
from tiergate.gateway.failover import FailoverController
from tiergate.gateway.normalizer import encode_stream
from tiergate.gateway.retry import RetryPolicy
from tiergate.gateway.tiers import CredentialStore, TierResolver
from tiergate.gateway.types import (
    Backend,
    BackendBinding,
    CapabilityTier,
    ChatResult,
    Message,
    coerce_messages,
)

logger = logging.getLogger(__name__)

MessagesIn = Iterable[Message | Mapping[str, Any]]


class AiGateway:
    """Gateway orchestrator.

    Integrates:
      - TierResolver: tier → (backend, model, credential)
      - FailoverController: retry policy + single fallback hop
      - Provider adapters: one per backend
      - Stream normalizer: uniform chunk sequence
    """

    def __init__(
        self,
        settings: Settings,
        adapters: Mapping[Backend, BaseProviderAdapter] | None = None,
        retry_policy: RetryPolicy | None = None,
        resolver: TierResolver | None = None,
    ):
        self.settings = settings
        self.resolver = resolver or TierResolver(settings)
        self.adapters = dict(adapters) if adapters is not None else build_adapters()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.controller = FailoverController(
            adapters=self.adapters,
            retry_policy=self.retry_policy,
            fallback=self.resolver.fallback(),
            credentials=CredentialStore(settings),
        )

    def binding_for(self, tier: CapabilityTier | str, override: BackendBinding | None = None) -> BackendBinding:
        if override is not None:
            return override
        return self.resolver.resolve(CapabilityTier.parse(tier))

    async def chat(
        self,
        tier: CapabilityTier | str,
        messages: MessagesIn,
        override: BackendBinding | None = None,
    ) -> ChatResult:
        """Single blocking-style result."""
        binding = self.binding_for(tier, override)
        canonical = coerce_messages(messages)
        logger.debug("chat via %s (%d messages)", binding.label, len(canonical))
        return await self.controller.execute(binding, canonical)

    def stream(
        self,
        tier: CapabilityTier | str,
        messages: MessagesIn,
        override: BackendBinding | None = None,
    ) -> AsyncIterator[str]:
        """Lazy text stream. Nothing is sent upstream until iteration starts."""
        binding = self.binding_for(tier, override)
        canonical = coerce_messages(messages)
        logger.debug("stream via %s (%d messages)", binding.label, len(canonical))
        return self.controller.execute_stream(binding, canonical)

    def stream_bytes(
        self,
        tier: CapabilityTier | str,
        messages: MessagesIn,
        override: BackendBinding | None = None,
    ) -> AsyncIterator[bytes]:
        """UTF-8 byte view of :meth:`stream`."""
        return encode_stream(self.stream(tier, messages, override))

    def get_status(self) -> dict:
        return {
            "tiers": {info.tier.value: self.resolver.resolve(info.tier).label for info in self.resolver.catalogue()},
            "fallback": self.resolver.fallback().label,
            "backends": sorted(b.value for b in self.adapters),
            "retry": {
                "max_retries": self.retry_policy.max_retries,
                "base_delay": self.retry_policy.base_delay,
            },
        }
