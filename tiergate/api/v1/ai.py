"""AI endpoints: tiered chat (blocking or streamed) and the tier catalogue."""

import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from tiergate.core.dependencies import get_account_id, get_ai_service, get_gateway
from tiergate.core.exceptions import UpstreamError
from tiergate.gateway.gateway import AiGateway
from tiergate.gateway.normalizer import encode_stream
from tiergate.gateway.types import CapabilityTier
from tiergate.schemas.ai import ChatRequest, ChatResponse, TierResponse
from tiergate.services.ai_service import AiService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai", tags=["ai"])


async def _prime(stream: AsyncIterator[str]) -> AsyncIterator[str]:
    """Pull the first chunk before headers go out.

    Failures before any output (including a failed fallback) then reach the
    client as a regular JSON error with the right status code.
    """
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        first = None

    async def body() -> AsyncIterator[str]:
        try:
            if first is not None:
                yield first
            async for chunk in stream:
                yield chunk
        except UpstreamError as e:
            # Headers are already sent; abort the chunked body so the client sees it incomplete
            logger.warning("Stream aborted after first chunk: %s (%s)", e.message, e.code)
            raise
        finally:
            await stream.aclose()

    return body()


@router.post("/chat", response_model=ChatResponse)
async def chat(
    body: ChatRequest,
    account_id: str = Depends(get_account_id),
    service: AiService = Depends(get_ai_service),
):
    """Run a chat request on a capability tier, charging the account's credits."""
    tier = CapabilityTier.parse(body.tier)
    messages = [m.model_dump() for m in body.messages]

    try:
        if body.stream:
            stream = await service.open_stream(account_id, tier, messages, body.feature, body.estimated_words)
            return StreamingResponse(
                encode_stream(await _prime(stream)),
                media_type="text/plain; charset=utf-8",
            )

        outcome = await service.chat(account_id, tier, messages, body.feature, body.estimated_words)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    result = outcome.result
    return ChatResponse(
        content=result.content,
        model=result.model,
        backend=result.backend.value if result.backend else "",
        tier=tier.value,
        finish_reason=result.finish_reason or None,
        tokens_used=result.tokens_used,
        fell_back=result.fell_back,
        credits_charged=outcome.debit.charged,
        credits_remaining=outcome.debit.remaining,
    )


@router.get("/tiers", response_model=list[TierResponse])
async def list_tiers(gateway: AiGateway = Depends(get_gateway)):
    """Tier catalogue for the model selector."""
    return [TierResponse(**info.to_dict()) for info in gateway.resolver.catalogue()]
