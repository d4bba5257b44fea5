"""Chat message schemas — the wire and storage shape of a single turn.

Content is either plain text or a list of typed parts (OpenAI / OpenRouter
multimodal format). Messages are stored inside ``Conversation.messages`` as
JSON, so these are plain pydantic models rather than tables.
"""

from collections.abc import Iterable
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ImageURL(BaseModel):
    url: str = Field(min_length=1, description="Base64 data URI or https URL")


class ImagePart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageURL


ContentPart = Annotated[TextPart | ImagePart, Field(discriminator="type")]
MessageContent = str | list[ContentPart]


class ChatMessage(BaseModel):
    role: MessageRole
    content: MessageContent = ""

    def text(self) -> str:
        """Concatenated text of the message, ignoring image parts."""
        if isinstance(self.content, str):
            return self.content
        return " ".join(p.text for p in self.content if isinstance(p, TextPart))


_messages_adapter = TypeAdapter(list[ChatMessage])


def parse_messages(raw: Iterable[dict]) -> list[ChatMessage]:
    """Validate stored JSON messages back into ChatMessage objects."""
    return _messages_adapter.validate_python(list(raw))


def dump_messages(messages: Iterable[ChatMessage]) -> list[dict]:
    """Serialize messages for storage and for the upstream payload."""
    return [m.model_dump(mode="json") for m in messages]


def build_user_message(text: str | None, images: list[ImagePart]) -> ChatMessage:
    """Assemble the user's turn: plain text, or text + image parts."""
    if not images:
        return ChatMessage(role=MessageRole.USER, content=text or "")
    parts: list[TextPart | ImagePart] = [
        TextPart(text=text or "What's in this image?"),
    ]
    parts.extend(images)
    return ChatMessage(role=MessageRole.USER, content=parts)
