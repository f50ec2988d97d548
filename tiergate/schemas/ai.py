"""AI chat, tier catalogue, credit balance and grant schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from tiergate.gateway.types import Role
from tiergate.ledger.ledger import GrantSource


class ChatMessageIn(BaseModel):
    role: Role
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatMessageIn] = Field(..., min_length=1)
    tier: str = "fast"  # unknown values fall back to "fast"
    feature: str = Field("chat", min_length=1, max_length=64)
    estimated_words: int | None = Field(None, ge=0)
    stream: bool = False


class ChatResponse(BaseModel):
    content: str
    model: str
    backend: str
    tier: str
    finish_reason: str | None = None
    tokens_used: int | None = None
    fell_back: bool = False
    credits_charged: int
    credits_remaining: int


class TierResponse(BaseModel):
    tier: str
    name: str
    description: str
    credits: int
    requires_elevated_plan: bool


class BalanceResponse(BaseModel):
    plan: str
    allowance: int
    consumed: int
    remaining: int
    resets_at: datetime | None = None


class GrantRequest(BaseModel):
    source: GrantSource
    amount: int = Field(5, ge=1, le=50)


class GrantResponse(BaseModel):
    credited: int
    remaining: int
    source: str
