"""Conversation history endpoints — list, read, delete, regenerate.

Work for both users (SQL store) and guests (volatile store); the store is
already scoped to the caller by the dependency.
"""

from fastapi import APIRouter, HTTPException, Query, Response, status

from chatrelay.api.deps import Conversations
from chatrelay.core.config import get_settings
from chatrelay.models.conversation import Conversation, ConversationRead, ConversationSummary

router = APIRouter(prefix="/conversations", tags=["conversations"])

# Share of the token budget after which the UI warns the chat is nearly full
NEAR_LIMIT_RATIO = 0.8


def _is_near_limit(conversation: Conversation) -> bool:
    limit = get_settings().max_tokens_per_conversation
    return conversation.token_count > limit * NEAR_LIMIT_RATIO


def _summary(conversation: Conversation) -> ConversationSummary:
    return ConversationSummary(
        id=conversation.id,
        title=conversation.title,
        token_count=conversation.token_count,
        is_near_limit=_is_near_limit(conversation),
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
    )


def _read(conversation: Conversation) -> ConversationRead:
    return ConversationRead(
        **_summary(conversation).model_dump(),
        messages=conversation.messages,
    )


@router.get("", response_model=list[ConversationSummary])
async def list_conversations(
    conversations: Conversations,
    limit: int = Query(default=50, ge=1, le=100),
) -> list[ConversationSummary]:
    """Most recently updated conversations first."""
    return [_summary(c) for c in await conversations.list_recent(limit)]


@router.get("/{chat_id}", response_model=ConversationRead)
async def get_conversation(chat_id: str, conversations: Conversations) -> ConversationRead:
    conversation = await conversations.get(chat_id)
    if conversation is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found",
        )
    return _read(conversation)


@router.delete("/{chat_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_conversation(chat_id: str, conversations: Conversations) -> Response:
    if not await conversations.delete(chat_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{chat_id}/regenerate", response_model=ConversationRead)
async def regenerate(chat_id: str, conversations: Conversations) -> ConversationRead:
    """Drop the trailing assistant reply (edit / regenerate flow).

    No-op when the conversation does not end with an assistant message.
    """
    conversation = await conversations.drop_trailing_assistant(chat_id)
    if conversation is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conversation not found",
        )
    return _read(conversation)
