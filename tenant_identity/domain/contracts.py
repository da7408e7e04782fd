"""Domain-level request and response contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from .account import Account, Role


@dataclass(slots=True)
class RegistrationInput:
    """Inputs for creating a new tenant together with its owner account."""

    tenant_name: str
    email: str
    name: str
    password: str


@dataclass(slots=True)
class CreateMemberInput:
    """Inputs for adding an account to an existing tenant."""

    email: str
    name: str
    password: str
    role: Role = Role.member


@dataclass(slots=True)
class NewAccount:
    """Fully prepared account row handed to the repository for insertion."""

    tenant_id: str | None
    email: str
    name: str
    role: Role
    password_hash: str
    verification_token_hash: str
    verification_expires_at: datetime


@dataclass(slots=True, frozen=True)
class AccessClaims:
    """Verified identity carried by an access token."""

    account_id: str
    tenant_id: str
    role: Role


@dataclass(slots=True)
class AuthSession:
    """Account plus the access/refresh pair returned after register or login."""

    account: Account
    access_token: str
    access_expires_in: int
    refresh_token: str
    refresh_expires_in: int


@dataclass(slots=True)
class IssuedAccessToken:
    """Fresh access token minted from a refresh token."""

    access_token: str
    expires_in: int
