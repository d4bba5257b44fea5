"""Shared test fixtures — async SQLite in-memory DB, mocked upstream, test client."""

import os

# Settings are cached on first import, so configure them before any app import
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-relay-tests")
os.environ.setdefault("BILLING_WEBHOOK_SECRET", "test-billing-secret")
os.environ.setdefault("OPENROUTER_API_KEY", "sk-or-test")

import json  # noqa: E402
from collections.abc import AsyncGenerator, Iterable  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

# Import all models so metadata is populated
import chatrelay.models  # noqa: E402, F401
from chatrelay.api.deps import get_session_factory, get_upstream  # noqa: E402
from chatrelay.core.config import get_settings  # noqa: E402
from chatrelay.core.database import get_session  # noqa: E402
from chatrelay.main import app  # noqa: E402
from chatrelay.services.guest_store import GuestConversationCache  # noqa: E402
from chatrelay.services.upstream import UpstreamClient  # noqa: E402


# ── Upstream stubs ───────────────────────────────────────────

def sse_body(deltas: Iterable[str], done: bool = True) -> bytes:
    """OpenRouter-style SSE body carrying ``deltas`` as content chunks."""
    frames = [": OPENROUTER PROCESSING\n\n"]
    for delta in deltas:
        chunk = {"choices": [{"delta": {"content": delta}}]}
        frames.append(f"data: {json.dumps(chunk)}\n\n")
    if done:
        frames.append("data: [DONE]\n\n")
    return "".join(frames).encode()


class FakeOpenRouter:
    """httpx MockTransport handler that records requests and replays a script."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.deltas: list[str] = ["Hello", " world"]
        self.done = True
        self.status_code = 200

    @property
    def calls(self) -> int:
        return len(self.requests)

    def payload(self, index: int = -1) -> dict:
        return json.loads(self.requests[index].content)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": {"message": "boom"}})
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=sse_body(self.deltas, done=self.done),
        )


# ── Database ─────────────────────────────────────────────────

@pytest.fixture(scope="session")
async def engine():
    # One shared in-memory database for request and bookkeeping sessions
    eng = create_async_engine("sqlite+aiosqlite://", echo=False, poolclass=StaticPool)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture(scope="session")
def test_session_factory(engine):
    """Session factory bound to the test SQLite engine."""
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(test_session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with test_session_factory() as sess:
        yield sess
        await sess.rollback()


# ── Upstream + client ────────────────────────────────────────

@pytest.fixture
def openrouter() -> FakeOpenRouter:
    return FakeOpenRouter()


@pytest.fixture
async def upstream(openrouter) -> AsyncGenerator[UpstreamClient, None]:
    client = UpstreamClient.from_settings(
        get_settings(), transport=httpx.MockTransport(openrouter)
    )
    yield client
    await client.aclose()


@pytest.fixture
def guest_cache() -> GuestConversationCache:
    return GuestConversationCache(max_sessions=100, session_ttl=3600, max_chats=7)


@pytest.fixture
async def client(
    session, test_session_factory, upstream, guest_cache
) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async test client with DB session and upstream overrides."""

    async def _override_session():
        yield session

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_upstream] = lambda: upstream
    app.dependency_overrides[get_session_factory] = lambda: test_session_factory
    # ASGITransport does not run the lifespan
    app.state.guest_cache = guest_cache

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    guest_cache.clear()
