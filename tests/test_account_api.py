"""Tests for guest sessions, the model catalog, balance and usage endpoints."""

import uuid

from httpx import AsyncClient

from chatrelay.core.security import GUEST_SESSION_RE, create_jwt


def _auth(user_id: str, tier: str | None = None) -> dict:
    return {"Authorization": f"Bearer {create_jwt(user_id, tier=tier)}"}


def _user() -> str:
    return f"user-{uuid.uuid4().hex[:12]}"


async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_issue_guest_session(client: AsyncClient):
    resp = await client.get("/v1/session")
    assert resp.status_code == 200
    session_id = resp.json()["session_id"]
    assert GUEST_SESSION_RE.match(session_id)

    me = await client.get("/v1/me", headers={"X-Session-Id": session_id})
    assert me.status_code == 200
    assert me.json() == {
        "is_guest": True,
        "tier": "guest",
        "credit_balance": 0,
        "total_credits_consumed": 0,
        "total_tokens_used": 0,
    }


async def test_models_annotated_for_guest(client: AsyncClient):
    resp = await client.get("/v1/models", headers={"X-Session-Id": f"guest-{uuid.uuid4()}"})
    assert resp.status_code == 200
    models = {m["id"]: m for m in resp.json()}

    assert models["moonshotai/kimi-k2:free"]["available"] is True
    assert models["moonshotai/kimi-k2:free"]["is_free"] is True
    assert models["openai/gpt-4o-mini"]["available"] is False
    assert models["openai/gpt-4o-mini"]["required_tier"] == "starter"
    assert models["x-ai/grok-4"]["credit_multiplier"] == 20


async def test_models_annotated_for_pro_user(client: AsyncClient):
    resp = await client.get("/v1/models", headers=_auth(_user(), tier="pro"))
    assert all(m["available"] for m in resp.json())


async def test_me_provisions_user(client: AsyncClient):
    resp = await client.get("/v1/me", headers=_auth(_user(), tier="business"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["is_guest"] is False
    assert body["tier"] == "business"
    assert body["credit_balance"] == 80_000


async def test_stored_tier_wins_over_token_claim(client: AsyncClient):
    user_id = _user()
    await client.get("/v1/me", headers=_auth(user_id))
    resp = await client.get("/v1/me", headers=_auth(user_id, tier="pro"))

    assert resp.json()["tier"] == "free"


async def test_usage_requires_account(client: AsyncClient):
    resp = await client.get("/v1/usage", headers={"X-Session-Id": f"guest-{uuid.uuid4()}"})
    assert resp.status_code == 403
    assert resp.json()["action"] == "login"


async def test_usage_empty_for_new_user(client: AsyncClient):
    resp = await client.get("/v1/usage", headers=_auth(_user()))
    assert resp.status_code == 200
    assert resp.json() == []
