"""Tests for the signed billing callback."""

import json
import uuid

from httpx import AsyncClient

from chatrelay.core.config import get_settings
from chatrelay.core.security import create_jwt, sign_payload


def _signed(body: dict) -> tuple[bytes, dict]:
    raw = json.dumps(body).encode()
    signature = sign_payload(raw, get_settings().billing_webhook_secret)
    return raw, {"content-type": "application/json", "X-Billing-Signature": signature}


async def test_subscription_upgrade_unlocks_models(client: AsyncClient):
    user_id = f"user-{uuid.uuid4().hex[:12]}"
    headers = {"Authorization": f"Bearer {create_jwt(user_id)}"}
    await client.get("/v1/me", headers=headers)

    raw, sig_headers = _signed({"user_id": user_id, "tier": "pro"})
    resp = await client.post("/v1/billing/subscription", content=raw, headers=sig_headers)

    assert resp.status_code == 200
    assert resp.json()["subscription_tier"] == "pro"
    assert resp.json()["credit_balance"] == 30_000

    models = (await client.get("/v1/models", headers=headers)).json()
    sonnet = next(m for m in models if m["id"] == "anthropic/claude-sonnet-4")
    assert sonnet["available"] is True


async def test_bad_signature_rejected(client: AsyncClient):
    raw, sig_headers = _signed({"user_id": "user-x", "tier": "pro"})
    sig_headers["X-Billing-Signature"] = "0" * 64

    resp = await client.post("/v1/billing/subscription", content=raw, headers=sig_headers)
    assert resp.status_code == 401


async def test_missing_signature_rejected(client: AsyncClient):
    resp = await client.post(
        "/v1/billing/subscription",
        json={"user_id": "user-x", "tier": "pro"},
    )
    assert resp.status_code == 401


async def test_guest_tier_rejected(client: AsyncClient):
    raw, sig_headers = _signed({"user_id": "user-x", "tier": "guest"})
    resp = await client.post("/v1/billing/subscription", content=raw, headers=sig_headers)
    assert resp.status_code == 400


async def test_unknown_tier_rejected(client: AsyncClient):
    raw, sig_headers = _signed({"user_id": "user-x", "tier": "platinum"})
    resp = await client.post("/v1/billing/subscription", content=raw, headers=sig_headers)
    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_request"
