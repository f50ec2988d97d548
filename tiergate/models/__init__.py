from tiergate.models.account import Account
from tiergate.models.usage import UsageRecord

__all__ = [
    "Account",
    "UsageRecord",
]
