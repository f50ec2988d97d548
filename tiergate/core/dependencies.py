from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tiergate.core.config import settings
from tiergate.core.logging import bind_account
from tiergate.db.postgres import get_session_factory
from tiergate.gateway.gateway import AiGateway
from tiergate.ledger import CreditLedger, SqlAccountStore
from tiergate.services.ai_service import AiService


async def get_account_id(
    x_account_id: str = Header(..., min_length=1, max_length=64, description="Authenticated account id"),
) -> str:
    # Session handling happens upstream; the proxy forwards the account id.
    account_id = x_account_id.strip()
    bind_account(account_id)
    return account_id


def get_gateway(request: Request) -> AiGateway:
    """Gateway built once in the app lifespan."""
    return request.app.state.gateway


def get_ledger(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> CreditLedger:
    return CreditLedger(SqlAccountStore(session_factory), settings)


def get_ai_service(
    gateway: AiGateway = Depends(get_gateway),
    ledger: CreditLedger = Depends(get_ledger),
) -> AiService:
    return AiService(gateway, ledger)
