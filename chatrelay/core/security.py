"""Security utilities: identity token verification, guest sessions, signatures."""

import hashlib
import hmac
import re
import uuid
from datetime import datetime, timedelta, timezone

from jose import jwt

from chatrelay.core.config import get_settings

settings = get_settings()


# ── Identity tokens (JWT issued by the identity provider) ─────

def create_jwt(
    subject: str,
    tier: str | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Mint a token in the identity provider's format (tests, local tooling)."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=1))
    payload: dict = {
        "sub": subject,
        "aud": settings.jwt_audience,
        "exp": expire,
    }
    if tier:
        payload["app_metadata"] = {"plan": tier}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_jwt(token: str) -> dict:
    """Decode and verify a JWT. Raises jose.JWTError on failure."""
    if not settings.jwt_secret_key:
        raise RuntimeError("JWT_SECRET_KEY is not configured")
    return jwt.decode(
        token,
        settings.jwt_secret_key,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience,
    )


# ── Guest sessions ────────────────────────────────────────────

GUEST_SESSION_RE = re.compile(r"^guest-[A-Za-z0-9\-]{8,64}$")


def generate_guest_session_id() -> str:
    return f"guest-{uuid.uuid4()}"


def is_valid_guest_session(session_id: str) -> bool:
    return bool(GUEST_SESSION_RE.match(session_id))


# ── Billing callback signatures (HMAC-SHA256) ─────────────────

def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """Constant-time check of a hex HMAC-SHA256 signature over the raw body."""
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature)
