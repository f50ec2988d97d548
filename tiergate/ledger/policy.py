"""Pure credit rules: no I/O, no clock reads.

Cost formula:
  word_credits = max(3, ceil(words / 1000) * 3)
  cost         = max(tier floor, word_credits)

The daily window resets only once 24 wall-clock hours (UTC) have elapsed
since the last reset, so a client reporting a shorter interval cannot
trigger extra resets.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from tiergate.core.config import Settings
from tiergate.gateway.types import Message, Plan

WORDS_PER_UNIT = 1000
CREDITS_PER_UNIT = 3
MIN_CREDITS = 3

RESET_PERIOD = timedelta(hours=24)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC (SQLite hands them back naive)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def should_reset(now: datetime, last_reset: datetime, period: timedelta = RESET_PERIOD) -> bool:
    """True once ``period`` has fully elapsed since ``last_reset``.

    A ``last_reset`` in the future never triggers a reset.
    """
    return as_utc(now) - as_utc(last_reset) >= period


def calculate_credits(estimated_words: int, floor: int | None = None) -> int:
    units = math.ceil(max(estimated_words, 0) / WORDS_PER_UNIT)
    word_credits = max(MIN_CREDITS, units * CREDITS_PER_UNIT)
    return max(floor or 0, word_credits)


def daily_allowance_for(plan: Plan, settings: Settings) -> int:
    if plan == Plan.PRO:
        return settings.pro_daily_credits
    if plan == Plan.FREE:
        return settings.free_daily_credits
    return 0  # unlimited accounts are never checked


def estimate_words(messages: Iterable[Message]) -> int:
    return sum(len(m.content.split()) for m in messages)
