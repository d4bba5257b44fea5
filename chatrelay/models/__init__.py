"""Import all models so SQLModel.metadata picks them up."""

from chatrelay.models.conversation import (
    DEFAULT_TITLE,
    Conversation,
    ConversationRead,
    ConversationSummary,
)
from chatrelay.models.message import (
    ChatMessage,
    ImagePart,
    ImageURL,
    MessageRole,
    TextPart,
)
from chatrelay.models.usage_record import UsageRecord, UsageRecordRead
from chatrelay.models.user_balance import BalanceRead, UserBalance

__all__ = [
    "BalanceRead",
    "ChatMessage",
    "Conversation",
    "ConversationRead",
    "ConversationSummary",
    "DEFAULT_TITLE",
    "ImagePart",
    "ImageURL",
    "MessageRole",
    "TextPart",
    "UsageRecord",
    "UsageRecordRead",
    "UserBalance",
]
