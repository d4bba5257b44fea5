"""FastAPI dependencies for identity resolution and per-request services."""

from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.core.database import async_session_factory, get_session
from chatrelay.core.errors import IdentityError
from chatrelay.core.identity import AuthenticatedIdentity, GuestIdentity, Identity
from chatrelay.core.pricing import Tier, get_plan, parse_tier
from chatrelay.core.security import decode_jwt, is_valid_guest_session
from chatrelay.services.conversations import ConversationStore, SqlConversationStore
from chatrelay.services.guest_store import GuestConversationCache, GuestConversationStore
from chatrelay.services.ledger import BalanceLedger
from chatrelay.services.upstream import UpstreamClient

bearer_scheme = HTTPBearer(auto_error=False)

Session = Annotated[AsyncSession, Depends(get_session)]


async def _resolve_user(token: str, session: AsyncSession) -> AuthenticatedIdentity:
    """Verify an identity-provider JWT and attach the user's plan tier."""
    try:
        payload = decode_jwt(token)
    except JWTError as exc:
        raise IdentityError("Invalid or expired token") from exc

    user_id = payload.get("sub")
    if not user_id:
        raise IdentityError("Malformed token payload")

    # The stored tier wins; the claim only seeds first-time provisioning
    claimed = parse_tier((payload.get("app_metadata") or {}).get("plan"))
    if claimed == Tier.GUEST:
        claimed = Tier.FREE
    balance = await BalanceLedger(session).ensure_provisioned(str(user_id), claimed)
    return AuthenticatedIdentity(
        user_id=str(user_id),
        tier=parse_tier(balance.subscription_tier),
    )


async def get_identity(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    session: Session,
    x_session_id: Annotated[str | None, Header()] = None,
) -> Identity:
    """Resolve the caller: a bearer token means a user, otherwise a guest session.

    Guests identify themselves with the ``X-Session-Id`` header obtained from
    GET /v1/session.
    """
    if credentials is not None:
        return await _resolve_user(credentials.credentials, session)

    if not x_session_id or not is_valid_guest_session(x_session_id):
        raise IdentityError("A valid guest session id is required", action="new_session")
    return GuestIdentity(session_id=x_session_id)


def get_guest_cache(request: Request) -> GuestConversationCache:
    return request.app.state.guest_cache


def get_upstream(request: Request) -> UpstreamClient:
    return request.app.state.upstream


def get_session_factory() -> Callable[[], AsyncSession]:
    """Factory for sessions that must outlive the request, e.g. post-stream billing."""
    return async_session_factory


CurrentIdentity = Annotated[Identity, Depends(get_identity)]
GuestCache = Annotated[GuestConversationCache, Depends(get_guest_cache)]


def get_conversation_store(
    identity: CurrentIdentity,
    session: Session,
    guest_cache: GuestCache,
) -> ConversationStore:
    if isinstance(identity, GuestIdentity):
        return GuestConversationStore(guest_cache, identity.session_id)
    return SqlConversationStore(
        session, identity.user_id, max_chats=get_plan(identity.tier).max_chats
    )


def get_ledger(identity: CurrentIdentity, session: Session) -> BalanceLedger | None:
    if identity.is_guest:
        return None
    return BalanceLedger(session)


# Typed shorthand for use in route signatures
Conversations = Annotated[ConversationStore, Depends(get_conversation_store)]
Ledger = Annotated[BalanceLedger | None, Depends(get_ledger)]
Upstream = Annotated[UpstreamClient, Depends(get_upstream)]
SessionFactory = Annotated[Callable[[], AsyncSession], Depends(get_session_factory)]
