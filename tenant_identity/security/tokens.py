"""Utilities for issuing and validating application JWTs and one-time tokens."""

from __future__ import annotations

import hashlib
import secrets
import time
import uuid
from typing import Any

import jwt

from ..config import Settings
from ..domain.account import Account, Role
from ..domain.contracts import AccessClaims

_ALGORITHM = "HS256"


class TokenError(Exception):
    """Raised when a bearer token fails signature, expiry, or shape checks."""


class TokenSigner:
    """Sign and verify the access/refresh JWT pair.

    Access and refresh tokens use separate secrets and lifetimes, so a
    refresh token can never be replayed as an access token and vice versa.
    """

    def __init__(self, settings: Settings) -> None:
        self._issuer = settings.jwt_issuer
        self._access_secret = settings.jwt_secret
        self._access_ttl = settings.access_ttl_seconds
        self._refresh_secret = settings.refresh_secret
        self._refresh_ttl = settings.refresh_ttl_seconds

    def issue_access_token(self, account: Account) -> tuple[str, int]:
        """Create a signed access token for an authenticated account.

        Parameters
        ----------
        account:
            Account whose identity, tenant, and role are embedded as claims.

        Returns
        -------
        tuple[str, int]
            The encoded JWT and its TTL in seconds.
        """
        claims = {
            "sub": account.account_id,
            "tenant_id": account.tenant_id,
            "role": account.role.value,
            "type": "access",
        }
        return self._encode(claims, self._access_secret, self._access_ttl), self._access_ttl

    def issue_refresh_token(self, account: Account) -> tuple[str, int]:
        """Create a signed refresh token carrying identity and tenant only."""
        claims = {
            "sub": account.account_id,
            "tenant_id": account.tenant_id,
            "type": "refresh",
        }
        return self._encode(claims, self._refresh_secret, self._refresh_ttl), self._refresh_ttl

    def decode_access_token(self, token: str) -> AccessClaims:
        """Verify an access token and return the identity it carries.

        Raises
        ------
        TokenError
            When the token is malformed, expired, signed with another key,
            issued by another issuer, or is not an access token.
        """
        payload = self._decode(token, self._access_secret, "access")
        try:
            role = Role(payload["role"])
        except (KeyError, ValueError) as exc:
            raise TokenError("invalid role claim") from exc
        return AccessClaims(account_id=payload["sub"], tenant_id=payload["tenant_id"], role=role)

    def decode_refresh_token(self, token: str) -> dict[str, Any]:
        """Verify a refresh token and return its payload (``sub``, ``tenant_id``)."""
        return self._decode(token, self._refresh_secret, "refresh")

    def _encode(self, claims: dict[str, Any], secret: str, ttl: int) -> str:
        now = int(time.time())
        payload: dict[str, Any] = {
            "iss": self._issuer,
            "jti": uuid.uuid4().hex,
            "iat": now,
            "exp": now + ttl,
            **claims,
        }
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    def _decode(self, token: str, secret: str, expected_type: str) -> dict[str, Any]:
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.PyJWTError as exc:
            raise TokenError(str(exc)) from exc
        if payload.get("type") != expected_type or not payload.get("tenant_id"):
            raise TokenError(f"not a {expected_type} token")
        return payload


def generate_one_time_token() -> tuple[str, str]:
    """Generate a verification/reset token string and its SHA-256 hash."""
    token = secrets.token_hex(32)
    return token, hash_token(token)


def hash_token(token: str) -> str:
    """Return the SHA-256 hex digest stored in place of a raw token string."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
