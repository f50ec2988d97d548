from fastapi import APIRouter

from tiergate.api.v1.ai import router as ai_router
from tiergate.api.v1.credits import router as credits_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(ai_router)
api_v1_router.include_router(credits_router)
