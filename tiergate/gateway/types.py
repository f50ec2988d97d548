"""Core types and DTOs for the AI gateway."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Backend(str, Enum):
    """Supported upstream language-model services."""

    OPENAI = "openai"
    CLAUDE = "claude"
    GEMINI = "gemini"
    GROK = "grok"
    GROQ = "groq"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class CapabilityTier(str, Enum):
    """Public capability labels. Their backing binding may change over time."""

    SUPER_SMART = "super-smart"
    PRO_SMART = "pro-smart"
    NORMAL = "normal"
    FAST = "fast"

    @classmethod
    def parse(cls, value: str | CapabilityTier | None) -> CapabilityTier:
        """Coerce caller input to a tier; anything unknown falls back to ``fast``."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.FAST


class Plan(str, Enum):
    FREE = "free"
    PRO = "pro"
    UNLIMITED = "unlimited"

    @property
    def is_elevated(self) -> bool:
        return self in (Plan.PRO, Plan.UNLIMITED)


class TierAccess(str, Enum):
    """Outcome of the plan/tier authorization predicate."""

    DENIED = "denied"  # tier needs an elevated plan
    FREE = "free"  # elevated plan on a free-for-plan tier
    METERED = "metered"  # charged by the cost formula


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    @classmethod
    def from_value(cls, value: Message | Mapping[str, Any]) -> Message:
        if isinstance(value, Message):
            return value
        return cls(role=Role(value["role"]), content=str(value.get("content") or ""))


def coerce_messages(messages: Iterable[Message | Mapping[str, Any]]) -> list[Message]:
    """Accept Message objects or ``{"role", "content"}`` dicts."""
    result = [Message.from_value(m) for m in messages]
    if not any(m.role != Role.SYSTEM for m in result):
        raise ValueError("At least one user or assistant message is required")
    return result


def split_system(messages: list[Message]) -> tuple[str, list[Message]]:
    """Separate system instructions from the dialogue turns.

    Multiple system messages are joined with a blank line, in order.
    """
    system = "\n\n".join(m.content for m in messages if m.role == Role.SYSTEM and m.content)
    turns = [m for m in messages if m.role != Role.SYSTEM]
    return system, turns


# ---------------------------------------------------------------------------
# Bindings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BackendBinding:
    """Concrete (backend, model, credential) a tier or override resolves to.

    ``credential_ref`` is the name of the settings field holding the secret;
    the secret itself is read when the binding is first used.
    """

    backend: Backend
    model_id: str
    credential_ref: str
    credit_cost_per_request: int | None = None
    requires_elevated_plan: bool = False

    def access_for(self, plan: Plan) -> TierAccess:
        """Single authorization predicate for plan vs. binding."""
        if self.requires_elevated_plan:
            return TierAccess.FREE if plan.is_elevated else TierAccess.DENIED
        if plan == Plan.UNLIMITED:
            return TierAccess.FREE
        return TierAccess.METERED

    @property
    def label(self) -> str:
        return f"{self.backend.value}:{self.model_id}"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ChatResult:
    """Unified non-streaming result, same shape regardless of backend."""

    content: str = ""
    tokens_used: int | None = None
    model: str = ""
    backend: Backend | None = None
    finish_reason: str = ""
    fell_back: bool = False
    latency_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "tokens_used": self.tokens_used,
            "model": self.model,
            "backend": self.backend.value if self.backend else None,
            "finish_reason": self.finish_reason,
            "fell_back": self.fell_back,
            "latency_ms": self.latency_ms,
        }


# ---------------------------------------------------------------------------
# Backend config
# ---------------------------------------------------------------------------


@dataclass
class BackendConfig:
    """Connection and generation parameters for a backend."""

    backend: Backend
    timeout_seconds: float = 60.0
    temperature: float = 0.7
    max_tokens: int = 4096  # non-streaming
    stream_max_tokens: int = 16384
    native_streaming: bool = True  # False → buffered-then-chunked emulation


DEFAULT_BACKEND_CONFIGS: dict[Backend, BackendConfig] = {
    Backend.OPENAI: BackendConfig(backend=Backend.OPENAI, stream_max_tokens=4096),
    Backend.CLAUDE: BackendConfig(backend=Backend.CLAUDE, stream_max_tokens=4096),
    Backend.GEMINI: BackendConfig(backend=Backend.GEMINI, timeout_seconds=90),
    Backend.GROK: BackendConfig(backend=Backend.GROK, timeout_seconds=120),  # reasoning models are slow
    Backend.GROQ: BackendConfig(backend=Backend.GROQ, timeout_seconds=30),
}
