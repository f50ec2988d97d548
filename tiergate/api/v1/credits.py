"""Credit balance and grant endpoints."""

from fastapi import APIRouter, Depends

from tiergate.core.dependencies import get_account_id, get_ledger
from tiergate.ledger import CreditLedger
from tiergate.schemas.ai import BalanceResponse, GrantRequest, GrantResponse

router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("", response_model=BalanceResponse)
async def get_credits(
    account_id: str = Depends(get_account_id),
    ledger: CreditLedger = Depends(get_ledger),
):
    """Current daily allowance; applies a due reset first."""
    balance = await ledger.get_balance(account_id)
    return BalanceResponse(
        plan=balance.plan.value,
        allowance=balance.allowance,
        consumed=balance.consumed,
        remaining=balance.remaining,
        resets_at=balance.resets_at,
    )


@router.post("/grant", response_model=GrantResponse)
async def grant_credits(
    body: GrantRequest,
    account_id: str = Depends(get_account_id),
    ledger: CreditLedger = Depends(get_ledger),
):
    result = await ledger.grant(account_id, body.amount, body.source)
    return GrantResponse(credited=result.credited, remaining=result.remaining, source=body.source.value)
