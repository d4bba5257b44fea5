"""Tests for token verification, guest session ids and payload signatures."""

from datetime import timedelta

import pytest
from jose import JWTError, jwt

from chatrelay.core.config import get_settings
from chatrelay.core.security import (
    create_jwt,
    decode_jwt,
    generate_guest_session_id,
    is_valid_guest_session,
    sign_payload,
    verify_signature,
)


def test_jwt_round_trip_carries_plan_claim():
    payload = decode_jwt(create_jwt("user-1", tier="pro"))
    assert payload["sub"] == "user-1"
    assert payload["app_metadata"] == {"plan": "pro"}


def test_expired_token_rejected():
    token = create_jwt("user-1", expires_delta=timedelta(seconds=-5))
    with pytest.raises(JWTError):
        decode_jwt(token)


def test_wrong_audience_rejected():
    settings = get_settings()
    token = jwt.encode(
        {"sub": "user-1", "aud": "someone-else"},
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )
    with pytest.raises(JWTError):
        decode_jwt(token)


def test_guest_session_ids():
    assert is_valid_guest_session(generate_guest_session_id())
    assert is_valid_guest_session("guest-abcd1234")
    assert not is_valid_guest_session("guest-short")
    assert not is_valid_guest_session("user-abcd1234")
    assert not is_valid_guest_session("guest-abcd1234; drop")


def test_signatures():
    body = b'{"user_id": "u", "tier": "pro"}'
    signature = sign_payload(body, "secret")
    assert verify_signature(body, signature, "secret")
    assert not verify_signature(body + b" ", signature, "secret")
    assert not verify_signature(body, signature, "")
    assert not verify_signature(body, "", "secret")
