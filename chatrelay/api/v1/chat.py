"""Chat endpoint — the streaming, credit-metered relay entry point."""

import logging

from fastapi import APIRouter
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from chatrelay.api.deps import (
    Conversations,
    CurrentIdentity,
    Ledger,
    SessionFactory,
    Upstream,
)
from chatrelay.core.config import get_settings
from chatrelay.models.message import ImagePart
from chatrelay.services.relay import ChatRelay, ChatTurn

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chat", tags=["chat"])


# ── Request schema ────────────────────────────────────────────

class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str | None = Field(default=None, max_length=32000)
    images: list[ImagePart] = Field(default_factory=list, max_length=10)
    model: str | None = Field(default=None, max_length=200)
    chat_id: str | None = Field(
        default=None,
        alias="chatId",
        max_length=128,
        description="Client-generated conversation id; a new chat is created if unknown.",
    )


# ── Route ─────────────────────────────────────────────────────

@router.post(
    "",
    response_class=StreamingResponse,
    responses={200: {"content": {"text/event-stream": {}}}},
)
async def chat(
    body: ChatRequest,
    identity: CurrentIdentity,
    conversations: Conversations,
    ledger: Ledger,
    upstream: Upstream,
    session_factory: SessionFactory,
) -> StreamingResponse:
    """Send a turn and receive the assistant reply as Server-Sent Events.

    Authorization, quota and conversation-length failures are returned as
    plain JSON errors (403 / 402 / 413) before any upstream call. Once the
    stream has started, the body is a sequence of ``data: {"content": ...}``
    frames ending with ``data: [DONE]``, or a single ``data: {"error": ...}``
    frame if the upstream call fails.
    """
    relay = ChatRelay(
        identity=identity,
        conversations=conversations,
        upstream=upstream,
        ledger=ledger,
        settings=get_settings(),
        session_factory=session_factory,
    )
    prepared = await relay.prepare(ChatTurn(
        model=body.model,
        chat_id=body.chat_id,
        message=body.message,
        images=body.images,
    ))
    logger.debug(
        "Relaying chat %s for %s on %s",
        prepared.chat_id, identity.owner_id, prepared.model.model_id,
    )

    return StreamingResponse(
        relay.stream(prepared),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
