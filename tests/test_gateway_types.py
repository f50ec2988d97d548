"""Tests for gateway types, the tier resolver and the credential store."""

import pytest

from tiergate.core.config import Settings
from tiergate.core.exceptions import MissingCredentialError
from tiergate.gateway.adapters import ADAPTER_REGISTRY, build_adapters
from tiergate.gateway.tiers import CredentialStore, TierResolver
from tiergate.gateway.types import (
    DEFAULT_BACKEND_CONFIGS,
    Backend,
    BackendBinding,
    CapabilityTier,
    ChatResult,
    Message,
    Plan,
    Role,
    TierAccess,
    coerce_messages,
    split_system,
)


class TestMessages:
    def test_coerce_accepts_dicts_and_messages(self):
        messages = coerce_messages(
            [
                {"role": "system", "content": "Be brief"},
                Message(role=Role.USER, content="Hi"),
            ]
        )
        assert messages == [Message(Role.SYSTEM, "Be brief"), Message(Role.USER, "Hi")]

    def test_coerce_requires_a_dialogue_turn(self):
        with pytest.raises(ValueError):
            coerce_messages([{"role": "system", "content": "only instructions"}])

    def test_coerce_rejects_unknown_role(self):
        with pytest.raises(ValueError):
            coerce_messages([{"role": "tool", "content": "x"}])

    def test_split_system_joins_in_order(self):
        system, turns = split_system(
            [
                Message(Role.SYSTEM, "First"),
                Message(Role.USER, "Question"),
                Message(Role.SYSTEM, "Second"),
            ]
        )
        assert system == "First\n\nSecond"
        assert turns == [Message(Role.USER, "Question")]


class TestCapabilityTier:
    def test_parse_known(self):
        assert CapabilityTier.parse("pro-smart") == CapabilityTier.PRO_SMART

    def test_parse_unknown_falls_back_to_fast(self):
        assert CapabilityTier.parse("ultra") == CapabilityTier.FAST
        assert CapabilityTier.parse(None) == CapabilityTier.FAST

    def test_plan_elevation(self):
        assert not Plan.FREE.is_elevated
        assert Plan.PRO.is_elevated
        assert Plan.UNLIMITED.is_elevated


class TestBindingAccess:
    def test_elevated_binding(self):
        binding = BackendBinding(Backend.GEMINI, "gemini-2.5-pro", "k", 0, requires_elevated_plan=True)
        assert binding.access_for(Plan.FREE) == TierAccess.DENIED
        assert binding.access_for(Plan.PRO) == TierAccess.FREE
        assert binding.access_for(Plan.UNLIMITED) == TierAccess.FREE

    def test_metered_binding(self):
        binding = BackendBinding(Backend.GROQ, "kimi", "k", 3)
        assert binding.access_for(Plan.FREE) == TierAccess.METERED
        assert binding.access_for(Plan.PRO) == TierAccess.METERED
        assert binding.access_for(Plan.UNLIMITED) == TierAccess.FREE

    def test_label(self):
        assert BackendBinding(Backend.GROK, "grok-3-mini", "k").label == "grok:grok-3-mini"


class TestChatResult:
    def test_to_dict(self):
        result = ChatResult(content="Hi", tokens_used=5, model="m", backend=Backend.CLAUDE, fell_back=True)
        data = result.to_dict()
        assert data["backend"] == "claude"
        assert data["fell_back"] is True
        assert data["tokens_used"] == 5


class TestTierResolver:
    def test_resolve_is_stable(self, test_settings: Settings):
        resolver = TierResolver(test_settings)
        for tier in CapabilityTier:
            assert resolver.resolve(tier) is resolver.resolve(tier)

    def test_default_bindings(self, test_settings: Settings):
        resolver = TierResolver(test_settings)
        super_smart = resolver.resolve(CapabilityTier.SUPER_SMART)
        assert super_smart.backend == Backend.GEMINI
        assert super_smart.model_id == "gemini-2.5-pro"
        assert super_smart.requires_elevated_plan
        assert super_smart.credit_cost_per_request == 0

        pro_smart = resolver.resolve(CapabilityTier.PRO_SMART)
        assert pro_smart.backend == Backend.GEMINI
        assert pro_smart.credential_ref != super_smart.credential_ref
        assert pro_smart.credit_cost_per_request == 5

        assert resolver.resolve(CapabilityTier.NORMAL).backend == Backend.GROK
        assert resolver.resolve(CapabilityTier.FAST).backend == Backend.GROQ

    def test_fallback_binding(self, test_settings: Settings):
        fallback = TierResolver(test_settings).fallback()
        assert fallback.backend == Backend.GEMINI
        assert fallback.model_id == "gemini-2.0-flash"

    def test_model_override_from_settings(self):
        settings = Settings(_env_file=None, normal_model="grok-4-0709")
        assert TierResolver(settings).resolve(CapabilityTier.NORMAL).model_id == "grok-4-0709"

    def test_catalogue(self, test_settings: Settings):
        catalogue = {info.tier: info for info in TierResolver(test_settings).catalogue()}
        assert set(catalogue) == set(CapabilityTier)
        assert catalogue[CapabilityTier.SUPER_SMART].requires_elevated_plan
        assert catalogue[CapabilityTier.PRO_SMART].to_dict()["credits"] == 5


class TestCredentialStore:
    def test_reads_secret(self, test_settings: Settings):
        binding = TierResolver(test_settings).resolve(CapabilityTier.FAST)
        assert CredentialStore(test_settings).get(binding) == "test-groq"

    def test_missing_secret_raises(self):
        settings = Settings(_env_file=None, groq_api_key="  ")
        binding = TierResolver(settings).resolve(CapabilityTier.FAST)
        with pytest.raises(MissingCredentialError) as exc_info:
            CredentialStore(settings).get(binding)
        assert exc_info.value.credential_ref == "groq_api_key"
        assert "GROQ_API_KEY" in exc_info.value.message


class TestRegistry:
    def test_registry_covers_every_backend(self):
        assert set(ADAPTER_REGISTRY) == set(Backend)

    def test_default_configs_cover_every_backend(self):
        assert set(DEFAULT_BACKEND_CONFIGS) == set(Backend)

    def test_build_adapters(self):
        adapters = build_adapters()
        for backend, adapter in adapters.items():
            assert adapter.backend == backend
            assert adapter.config.backend == backend
