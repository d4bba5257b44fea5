"""V1 API router aggregation."""

from fastapi import APIRouter

from chatrelay.api.v1.account import router as account_router
from chatrelay.api.v1.billing import router as billing_router
from chatrelay.api.v1.chat import router as chat_router
from chatrelay.api.v1.conversations import router as conversations_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(account_router)
v1_router.include_router(chat_router)
v1_router.include_router(conversations_router)
v1_router.include_router(billing_router)
