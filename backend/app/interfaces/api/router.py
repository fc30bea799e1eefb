from fastapi import APIRouter

from app.interfaces.api.dead_letters import router as dead_letters_router
from app.interfaces.api.health import router as health_router
from app.interfaces.api.paddle_webhooks import router as paddle_webhooks_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(paddle_webhooks_router)
api_router.include_router(dead_letters_router)
