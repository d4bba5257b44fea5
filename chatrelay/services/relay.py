"""Chat relay — the credit-metered streaming pipeline behind POST /v1/chat.

Flow (one relay per request, guests and users share the same path):
  1. Validate the turn
  2. Authorize the model for the caller's tier
  3. Check the credit balance (users, paid models only)
  4. Load the conversation, enforce the token budget
  5. Stream the completion upstream and relay every delta as it arrives
  6. On the terminal marker: compute cost, debit, record usage, persist

Everything up to step 4 raises RelayError and commits nothing; a new chat is
only created once its first exchange completes. From step 5 on, failures
become a single error frame; bookkeeping failures after completion are
logged, never retried.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import StrEnum

from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.core.access import can_use, minimum_tier_for
from chatrelay.core.config import Settings, get_settings
from chatrelay.core.errors import (
    AuthorizationError,
    ConversationTooLongError,
    QuotaError,
    RelayError,
    UpstreamError,
    ValidationError,
)
from chatrelay.core.identity import AuthenticatedIdentity, Identity
from chatrelay.core.pricing import ModelInfo, cost_in_credits, cost_usd, get_model
from chatrelay.core.tokens import (
    estimate_messages,
    estimate_text_tokens,
    would_exceed_budget,
)
from chatrelay.models.conversation import Conversation
from chatrelay.models.message import (
    ChatMessage,
    ImagePart,
    MessageRole,
    build_user_message,
    parse_messages,
)
from chatrelay.models.usage_record import UsageRecord
from chatrelay.services.conversations import ConversationStore, generate_title
from chatrelay.services.ledger import BalanceLedger
from chatrelay.services.sse import DONE_FRAME, format_sse
from chatrelay.services.upstream import UpstreamClient

logger = logging.getLogger(__name__)

GENERIC_STREAM_ERROR = "An error occurred during generation."

# Finalizers outlive a disconnected caller; hold strong refs until they finish
_pending_finalizers: set[asyncio.Task] = set()


class RelayState(StrEnum):
    IDLE = "idle"
    AUTHORIZING = "authorizing"
    QUOTA_CHECKING = "quota_checking"
    CONVERSATION_ASSEMBLING = "conversation_assembling"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    ERRORED = "errored"


@dataclass
class ChatTurn:
    """One inbound chat turn, as received from the transport."""
    model: str | None
    chat_id: str | None
    message: str | None = None
    images: list[ImagePart] = field(default_factory=list)


@dataclass
class PreparedTurn:
    """A turn that passed every pre-flight gate and is ready to stream."""
    model: ModelInfo
    chat_id: str
    # None for a chat that does not exist yet
    conversation: Conversation | None
    history: list[ChatMessage]
    user_message: ChatMessage

    @property
    def request_messages(self) -> list[ChatMessage]:
        return [*self.history, self.user_message]


@dataclass
class ExchangeResult:
    """Bookkeeping outcome of a completed exchange."""
    reply: str
    input_tokens: int
    output_tokens: int
    credits_used: int
    cost_usd: float
    balance: int | None = None


class ChatRelay:
    def __init__(
        self,
        identity: Identity,
        conversations: ConversationStore,
        upstream: UpstreamClient,
        ledger: BalanceLedger | None = None,
        settings: Settings | None = None,
        session_factory: Callable[[], AsyncSession] | None = None,
    ) -> None:
        """``session_factory`` opens the session used for post-stream bookkeeping.

        The request session may be closed while a disconnected caller's
        exchange is still being finalized, so billing and persistence run on a
        session owned by the relay. Without a factory they reuse the stores'
        own sessions.
        """
        if isinstance(identity, AuthenticatedIdentity) and ledger is None:
            raise ValueError("Authenticated relays need a balance ledger")
        self.identity = identity
        self.conversations = conversations
        self.upstream = upstream
        self.ledger = ledger if not identity.is_guest else None
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.state = RelayState.IDLE
        self.result: ExchangeResult | None = None
        self.finalizer: asyncio.Task | None = None

    # ── Pre-flight ───────────────────────────────────────────

    async def prepare(self, turn: ChatTurn) -> PreparedTurn:
        """Run every gate that must pass before the upstream call."""
        self._validate(turn)
        try:
            self.state = RelayState.AUTHORIZING
            model = self._authorize(turn.model or "")
            self._check_images(turn, model)

            self.state = RelayState.QUOTA_CHECKING
            await self._check_quota(model)

            self.state = RelayState.CONVERSATION_ASSEMBLING
            return await self._assemble(turn, model)
        except RelayError:
            self.state = RelayState.ERRORED
            raise

    def _validate(self, turn: ChatTurn) -> None:
        if not turn.model or not turn.chat_id:
            raise ValidationError("Fields 'model' and 'chatId' are required")
        if not (turn.message and turn.message.strip()) and not turn.images:
            raise ValidationError("A message or at least one image is required")

    def _authorize(self, model_id: str) -> ModelInfo:
        model = get_model(model_id)
        if model is not None and can_use(self.identity.tier, model_id):
            return model

        if self.identity.is_guest:
            raise AuthorizationError(
                "Paid models require authentication. Please sign up or log in, "
                "or switch to a free model.",
                action="login",
                model=model_id,
            )
        required = minimum_tier_for(model_id)
        if required is None:
            raise AuthorizationError(f"Unknown model '{model_id}'", model=model_id)
        raise AuthorizationError(
            "This model is not available in your plan. Please upgrade to access it.",
            action="upgrade",
            model=model_id,
            current_tier=self.identity.tier.value,
            required_tier=required.value,
            upgrade_url=self.settings.upgrade_url,
        )

    def _check_images(self, turn: ChatTurn, model: ModelInfo) -> None:
        if turn.images and not model.supports_images:
            raise ValidationError(
                f"Model '{model.model_id}' does not accept images", model=model.model_id
            )

    async def _check_quota(self, model: ModelInfo) -> None:
        if self.ledger is None or model.is_free:
            return
        if not isinstance(self.identity, AuthenticatedIdentity):
            return
        required = self.settings.min_credits_to_start
        if await self.ledger.has_sufficient(self.identity.user_id, required):
            return

        balance = await self.ledger.get(self.identity.user_id)
        raise QuotaError(
            "Insufficient credits. Please upgrade your plan to continue.",
            action="upgrade",
            credit_balance=balance.credit_balance if balance else 0,
            required_credits=required,
            upgrade_url=self.settings.upgrade_url,
        )

    async def _assemble(self, turn: ChatTurn, model: ModelInfo) -> PreparedTurn:
        chat_id = turn.chat_id or ""
        # A missing chat is checked against an empty history and created at finalize
        conversation = await self.conversations.get(chat_id)
        history = parse_messages(conversation.messages) if conversation is not None else []
        user_message = build_user_message(turn.message, turn.images)
        limit = self.settings.max_tokens_per_conversation
        if would_exceed_budget(history, user_message.content, limit):
            raise ConversationTooLongError(
                "This conversation has reached its length limit. Please start a new chat.",
                action="new_chat",
                chat_id=chat_id,
                token_count=estimate_messages(history),
                limit=limit,
            )

        # User turn stays in memory until the exchange completes
        return PreparedTurn(
            model=model,
            chat_id=chat_id,
            conversation=conversation,
            history=history,
            user_message=user_message,
        )

    # ── Streaming ────────────────────────────────────────────

    async def stream(self, prepared: PreparedTurn) -> AsyncGenerator[str, None]:
        """Relay upstream deltas as SSE frames, then finalize and send [DONE]."""
        self.state = RelayState.STREAMING
        parts: list[str] = []
        completed = False
        try:
            deltas = self.upstream.stream_completion(
                prepared.model.model_id, prepared.request_messages
            )
            async with aclosing(deltas):
                async for delta in deltas:
                    parts.append(delta)
                    yield format_sse({"content": delta})
            completed = True
        except UpstreamError as exc:
            self.state = RelayState.ERRORED
            logger.warning(
                "Upstream failed for chat %s (%s): %s",
                prepared.chat_id, prepared.model.model_id, exc.message,
            )
            yield format_sse({"error": exc.message})
            return
        except Exception:
            self.state = RelayState.ERRORED
            logger.exception("Error during streaming chat %s", prepared.chat_id)
            yield format_sse({"error": GENERIC_STREAM_ERROR})
            return
        finally:
            if not completed and self.state == RelayState.STREAMING:
                # Caller went away mid-stream; nothing is billed or persisted
                self.state = RelayState.ERRORED
                logger.info("Chat %s aborted by caller", prepared.chat_id)

        self.state = RelayState.FINALIZING
        task = asyncio.ensure_future(self._finalize(prepared, "".join(parts)))
        self.finalizer = task
        _pending_finalizers.add(task)
        task.add_done_callback(_finalizer_done)
        try:
            # Shielded so a disconnect right at the end cannot skip billing
            self.result = await asyncio.shield(task)
        except Exception:
            # Already logged by _finalizer_done
            pass
        self.state = RelayState.DONE
        yield DONE_FRAME

    async def _finalize(self, prepared: PreparedTurn, reply: str) -> ExchangeResult:
        if self.session_factory is None or self.ledger is None:
            return await self._settle(prepared, reply, self.conversations, self.ledger)
        async with self.session_factory() as session:
            return await self._settle(
                prepared,
                reply,
                self.conversations.with_session(session),
                self.ledger.with_session(session),
            )

    async def _settle(
        self,
        prepared: PreparedTurn,
        reply: str,
        conversations: ConversationStore,
        ledger: BalanceLedger | None,
    ) -> ExchangeResult:
        model_id = prepared.model.model_id
        input_tokens = estimate_messages(prepared.request_messages)
        output_tokens = estimate_text_tokens(reply)
        result = ExchangeResult(
            reply=reply,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            credits_used=cost_in_credits(input_tokens + output_tokens, model_id),
            cost_usd=cost_usd(input_tokens, output_tokens, model_id),
        )
        chat_id = prepared.chat_id

        if ledger is not None and isinstance(self.identity, AuthenticatedIdentity):
            user_id = self.identity.user_id
            try:
                result.balance = await ledger.debit(
                    user_id, result.credits_used, input_tokens + output_tokens
                )
            except Exception:
                logger.exception(
                    "Debit lost for user %s chat %s: %d credits (%s), reconcile manually",
                    user_id, chat_id, result.credits_used, model_id,
                )
            try:
                await ledger.record_usage(UsageRecord(
                    user_id=user_id,
                    chat_id=chat_id,
                    model=model_id,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    credits_used=result.credits_used,
                    cost_usd=result.cost_usd,
                ))
            except Exception:
                logger.exception("Usage record lost for user %s chat %s", user_id, chat_id)

        assistant = ChatMessage(role=MessageRole.ASSISTANT, content=reply)
        title = generate_title(prepared.user_message.text()) if not prepared.history else None
        try:
            conversation = prepared.conversation
            if conversation is None:
                conversation = await conversations.create_new(
                    chat_id, prepared.user_message.text()
                )
            await conversations.append_and_persist(
                conversation, prepared.user_message, assistant, title=title
            )
        except Exception:
            logger.exception("Conversation %s not persisted after exchange", chat_id)

        return result


def _finalizer_done(task: asyncio.Task) -> None:
    _pending_finalizers.discard(task)
    if task.cancelled():
        logger.warning("Finalization cancelled before bookkeeping completed")
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Finalization failed", exc_info=exc)
