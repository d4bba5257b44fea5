"""Resolved caller identity, fixed for the lifetime of a request."""

from dataclasses import dataclass

from chatrelay.core.pricing import Tier


@dataclass(frozen=True)
class AuthenticatedIdentity:
    user_id: str
    tier: Tier

    is_guest = False

    @property
    def owner_id(self) -> str:
        return self.user_id


@dataclass(frozen=True)
class GuestIdentity:
    session_id: str

    is_guest = True
    tier = Tier.GUEST

    @property
    def owner_id(self) -> str:
        return self.session_id


Identity = AuthenticatedIdentity | GuestIdentity
