"""Application error taxonomy.

Every error carries an HTTP ``status_code`` and a stable machine ``code`` so
the API layer can render a specific message without string matching.
"""

from __future__ import annotations


class AppError(Exception):
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class MissingCredentialError(AppError):
    """A backend secret required by a binding is not configured."""

    code = "missing_credential"

    def __init__(self, credential_ref: str):
        super().__init__(f"API key not configured: {credential_ref.upper()}")
        self.credential_ref = credential_ref


# ---------------------------------------------------------------------------
# Upstream (provider) errors
# ---------------------------------------------------------------------------


class UpstreamError(AppError):
    """Base class for failures talking to an upstream language-model service."""

    status_code = 502
    code = "upstream_error"
    transient = False

    def __init__(self, message: str, backend: str = "", upstream_status: int | None = None):
        super().__init__(message)
        self.backend = backend
        self.upstream_status = upstream_status
        # Set by the stream normalizer once output reached the caller.
        self.after_first_chunk = False

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.backend:
            data["backend"] = self.backend
        return data


class UpstreamAuthError(UpstreamError):
    """Invalid or expired credential. Never retried."""

    code = "upstream_auth"


class UpstreamRateLimited(UpstreamError):
    """Throttled (429, or 403 used as a block). Retried, then failed over."""

    status_code = 503
    code = "upstream_rate_limited"
    transient = True


class UpstreamUnavailable(UpstreamError):
    """Connection failure, timeout or 5xx."""

    status_code = 503
    code = "upstream_unavailable"
    transient = True


class UpstreamProtocolError(UpstreamError):
    """The backend replied with something the adapter cannot decode."""

    code = "upstream_protocol"


class ServiceUnavailableError(UpstreamUnavailable):
    """Primary and fallback backends both failed transiently."""

    code = "service_unavailable"

    def __init__(self, primary: UpstreamError, fallback: UpstreamError):
        super().__init__(
            "AI service is temporarily unavailable, please try again shortly",
            backend=fallback.backend,
            upstream_status=fallback.upstream_status,
        )
        self.primary = primary
        self.fallback = fallback


# ---------------------------------------------------------------------------
# Credit ledger errors
# ---------------------------------------------------------------------------


class CreditError(AppError):
    code = "credit_error"


class AccountNotFound(CreditError):
    status_code = 404
    code = "account_not_found"

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


class InsufficientCredits(CreditError):
    status_code = 402
    code = "insufficient_credits"

    def __init__(self, needed: int, remaining: int):
        super().__init__("Insufficient credits")
        self.needed = needed
        self.remaining = remaining

    def to_dict(self) -> dict:
        return {**super().to_dict(), "credits_needed": self.needed, "credits_remaining": self.remaining}


class PlanRestricted(CreditError):
    status_code = 403
    code = "plan_restricted"

    def __init__(self, tier: str, plan: str):
        super().__init__(f"The {tier} model requires a Pro or Unlimited plan (current plan: {plan})")
        self.tier = tier
        self.plan = plan


class GrantRejected(CreditError):
    status_code = 400
    code = "grant_rejected"


class GrantLimitReached(CreditError):
    status_code = 429
    code = "grant_limit_reached"

    def __init__(self, limit: int):
        super().__init__(f"Daily reward limit of {limit} reached, try again tomorrow")
        self.limit = limit

    def to_dict(self) -> dict:
        return {**super().to_dict(), "limit": self.limit}
