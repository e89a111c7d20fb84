"""
Caller identity, decided once at the HTTP boundary.

ServiceIdentity: the agent acts with its own service credential and every
paid tool call goes through the x402 payment gate.
UserIdentity: the caller brought their own bearer credential; tool calls are
charged to that account's credits upstream and the gate is bypassed.
"""

from dataclasses import dataclass, field
from typing import Optional, Union


@dataclass(frozen=True)
class ServiceIdentity:
    token: Optional[str] = field(default=None, repr=False)

    @property
    def bearer(self):
        return self.token


@dataclass(frozen=True)
class UserIdentity:
    token: str = field(repr=False)

    @property
    def bearer(self):
        return self.token


CallerIdentity = Union[ServiceIdentity, UserIdentity]


def bearer_from_header(authorization):
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def resolve_identity(service_token, authorization=None, user_token=None, mode=None):
    """
    Any bearer credential other than the fixed service token is a user
    credential. A `userToken` in the body only counts in credits mode.
    """
    candidate = bearer_from_header(authorization)
    if candidate is None and mode == "credits" and user_token:
        candidate = user_token.strip() or None
    if candidate and candidate != service_token:
        return UserIdentity(token=candidate)
    return ServiceIdentity(token=service_token)


def l402_from_header(authorization):
    """`Authorization: L402 <tx hash>` carries a payment reference."""
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.upper() != "L402" or not value.strip():
        return None
    return value.strip()
