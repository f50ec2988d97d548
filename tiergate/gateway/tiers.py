"""Tier Resolver: capability tier → concrete backend binding.

The tier names are the public contract; what backs them lives in settings
and can change without touching callers. ``super-smart`` and ``pro-smart``
share the Gemini backend but use separate model ids and keys so each can be
throttled and tracked independently. ``fast`` is served by Groq for latency.
"""

from __future__ import annotations

from dataclasses import dataclass

from tiergate.core.config import Settings
from tiergate.core.exceptions import MissingCredentialError
from tiergate.gateway.types import Backend, BackendBinding, CapabilityTier


@dataclass(frozen=True)
class TierInfo:
    """Display metadata for a tier (model selector, pricing page)."""

    tier: CapabilityTier
    name: str
    description: str
    credits: int
    requires_elevated_plan: bool

    def to_dict(self) -> dict:
        return {
            "tier": self.tier.value,
            "name": self.name,
            "description": self.description,
            "credits": self.credits,
            "requires_elevated_plan": self.requires_elevated_plan,
        }


_TIER_TEXT: dict[CapabilityTier, tuple[str, str]] = {
    CapabilityTier.SUPER_SMART: ("Super Smart", "Most powerful AI model"),
    CapabilityTier.PRO_SMART: ("Pro Smart", "Fast & intelligent"),
    CapabilityTier.NORMAL: ("Normal", "Balanced speed and quality"),
    CapabilityTier.FAST: ("Fast", "Ultra fast responses"),
}


class TierResolver:
    """Pure mapping built once per configuration epoch."""

    def __init__(self, settings: Settings):
        self._bindings: dict[CapabilityTier, BackendBinding] = {
            CapabilityTier.SUPER_SMART: BackendBinding(
                backend=Backend.GEMINI,
                model_id=settings.super_smart_model,
                credential_ref="gemini_super_smart_api_key",
                credit_cost_per_request=0,
                requires_elevated_plan=True,
            ),
            CapabilityTier.PRO_SMART: BackendBinding(
                backend=Backend.GEMINI,
                model_id=settings.pro_smart_model,
                credential_ref="gemini_pro_smart_api_key",
                credit_cost_per_request=5,
            ),
            CapabilityTier.NORMAL: BackendBinding(
                backend=Backend.GROK,
                model_id=settings.normal_model,
                credential_ref="grok_api_key",
                credit_cost_per_request=3,
            ),
            CapabilityTier.FAST: BackendBinding(
                backend=Backend.GROQ,
                model_id=settings.fast_model,
                credential_ref="groq_api_key",
                credit_cost_per_request=3,
            ),
        }
        self._fallback = BackendBinding(
            backend=Backend.GEMINI,
            model_id=settings.fallback_model,
            credential_ref="gemini_fallback_api_key",
        )

    def resolve(self, tier: CapabilityTier) -> BackendBinding:
        return self._bindings[tier]

    def fallback(self) -> BackendBinding:
        return self._fallback

    def catalogue(self) -> list[TierInfo]:
        result = []
        for tier, binding in self._bindings.items():
            name, description = _TIER_TEXT[tier]
            result.append(
                TierInfo(
                    tier=tier,
                    name=name,
                    description=description,
                    credits=binding.credit_cost_per_request or 0,
                    requires_elevated_plan=binding.requires_elevated_plan,
                )
            )
        return result


class CredentialStore:
    """Reads binding secrets from settings on first use."""

    def __init__(self, settings: Settings):
        self._settings = settings

    def get(self, binding: BackendBinding) -> str:
        secret = self._settings.credential(binding.credential_ref)
        if not secret:
            raise MissingCredentialError(binding.credential_ref)
        return secret
