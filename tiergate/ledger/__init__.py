"""Credit Ledger: daily allowances, admission checks, debits and grants."""

from tiergate.ledger.ledger import (
    AdmissionResult,
    Balance,
    CreditLedger,
    DebitResult,
    DenialReason,
    GrantResult,
    GrantSource,
)
from tiergate.ledger.policy import calculate_credits, should_reset
from tiergate.ledger.store import AccountSnapshot, AccountStore, SqlAccountStore

__all__ = [
    "AccountSnapshot",
    "AccountStore",
    "AdmissionResult",
    "Balance",
    "CreditLedger",
    "DebitResult",
    "DenialReason",
    "GrantResult",
    "GrantSource",
    "SqlAccountStore",
    "calculate_credits",
    "should_reset",
]
