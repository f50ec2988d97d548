"""Failover Controller: primary with retries, then one hop to the fallback.

Per request:

  ResolvePrimary → AttemptPrimary (RetryPolicy)
      ├─ success                      → done
      ├─ auth / protocol error        → propagate as-is
      └─ rate limited / unavailable   → AttemptFallback (single attempt)
                                           ├─ success → done
                                           └─ failure → ServiceUnavailableError

Streams fail over only if the primary broke before its first chunk.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping

from tiergate.core.exceptions import ServiceUnavailableError, UpstreamError
from tiergate.core.metrics import FAILOVERS, UPSTREAM_REQUESTS
from tiergate.gateway.adapters import BaseProviderAdapter
from tiergate.gateway.normalizer import normalize_result, normalize_stream
from tiergate.gateway.retry import RetryPolicy
from tiergate.gateway.tiers import CredentialStore
from tiergate.gateway.types import Backend, BackendBinding, ChatResult, Message

logger = logging.getLogger(__name__)


class FailoverController:
    """Executes a binding through the retry policy with a single fallback hop."""

    def __init__(
        self,
        adapters: Mapping[Backend, BaseProviderAdapter],
        retry_policy: RetryPolicy,
        fallback: BackendBinding,
        credentials: CredentialStore,
    ):
        self.adapters = adapters
        self.retry_policy = retry_policy
        self.fallback_binding = fallback
        self.credentials = credentials

    def _adapter(self, backend: Backend) -> BaseProviderAdapter:
        try:
            return self.adapters[backend]
        except KeyError:
            raise ValueError(f"No adapter configured for backend: {backend.value}") from None

    def can_fail_over(self, binding: BackendBinding, exc: UpstreamError) -> bool:
        if not exc.transient or exc.after_first_chunk:
            return False
        fallback = self.fallback_binding
        return (binding.backend, binding.model_id) != (fallback.backend, fallback.model_id)

    # -- non-streaming -------------------------------------------------------

    async def execute(self, binding: BackendBinding, messages: list[Message]) -> ChatResult:
        try:
            result = await self._attempt_primary(binding, messages)
        except UpstreamError as primary_error:
            UPSTREAM_REQUESTS.labels(backend=binding.backend.value, outcome=primary_error.code).inc()
            if not self.can_fail_over(binding, primary_error):
                raise
            return await self._attempt_fallback(binding, messages, primary_error)

        UPSTREAM_REQUESTS.labels(backend=binding.backend.value, outcome="success").inc()
        return normalize_result(result)

    async def _attempt_primary(self, binding: BackendBinding, messages: list[Message]) -> ChatResult:
        adapter = self._adapter(binding.backend)
        credential = self.credentials.get(binding)
        return await self.retry_policy.run(
            lambda: adapter.complete(messages, binding.model_id, credential),
            label=binding.label,
        )

    async def _attempt_fallback(
        self, binding: BackendBinding, messages: list[Message], primary_error: UpstreamError
    ) -> ChatResult:
        fallback = self.fallback_binding
        logger.warning("%s failed (%s), falling back to %s", binding.label, primary_error.code, fallback.label)

        adapter = self._adapter(fallback.backend)
        credential = self.credentials.get(fallback)
        try:
            result = await adapter.complete(messages, fallback.model_id, credential)
        except UpstreamError as fallback_error:
            FAILOVERS.labels(from_backend=binding.backend.value, outcome="failure").inc()
            if not fallback_error.transient:
                raise
            raise ServiceUnavailableError(primary_error, fallback_error) from fallback_error

        FAILOVERS.labels(from_backend=binding.backend.value, outcome="success").inc()
        result.fell_back = True
        return normalize_result(result)

    # -- streaming -----------------------------------------------------------

    def _open_stream(self, binding: BackendBinding, messages: list[Message], credential: str) -> AsyncIterator[str]:
        adapter = self._adapter(binding.backend)
        raw = adapter.stream_complete(messages, binding.model_id, credential)
        return normalize_stream(raw, backend=binding.backend.value)

    async def execute_stream(self, binding: BackendBinding, messages: list[Message]) -> AsyncIterator[str]:
        credential = self.credentials.get(binding)
        emitted = False
        primary = self.retry_policy.stream(
            lambda: self._open_stream(binding, messages, credential),
            label=binding.label,
        )
        try:
            async for chunk in primary:
                emitted = True
                yield chunk
        except UpstreamError as primary_error:
            UPSTREAM_REQUESTS.labels(backend=binding.backend.value, outcome=primary_error.code).inc()
            if emitted:
                primary_error.after_first_chunk = True
            if not self.can_fail_over(binding, primary_error):
                raise
            failure = primary_error
        else:
            UPSTREAM_REQUESTS.labels(backend=binding.backend.value, outcome="success").inc()
            return
        finally:
            await primary.aclose()

        async for chunk in self._fallback_stream(binding, messages, failure):
            yield chunk

    async def _fallback_stream(
        self, binding: BackendBinding, messages: list[Message], primary_error: UpstreamError
    ) -> AsyncIterator[str]:
        fallback = self.fallback_binding
        logger.warning("%s stream failed (%s), falling back to %s", binding.label, primary_error.code, fallback.label)

        credential = self.credentials.get(fallback)
        source = self._open_stream(fallback, messages, credential)
        try:
            async for chunk in source:
                yield chunk
        except UpstreamError as fallback_error:
            FAILOVERS.labels(from_backend=binding.backend.value, outcome="failure").inc()
            if not fallback_error.transient or fallback_error.after_first_chunk:
                raise
            raise ServiceUnavailableError(primary_error, fallback_error) from fallback_error
        else:
            FAILOVERS.labels(from_backend=binding.backend.value, outcome="success").inc()
        finally:
            await source.aclose()
