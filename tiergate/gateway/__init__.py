"""AI Gateway Layer.

Provides async infrastructure for dispatching chat requests to language-model
backends with:
  - Provider Adapters (one per backend, protocol differences)
  - Retry Policy (exponential backoff on rate limits)
  - Tier Resolver (capability tier → backend binding)
  - Failover Controller (single hop to a fallback backend)
  - Stream Normalizer (uniform lazy chunk sequence)
"""
