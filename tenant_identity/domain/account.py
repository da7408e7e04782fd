from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    owner = "owner"
    admin = "admin"
    member = "member"


@dataclass(slots=True)
class Account:
    """Aggregate root for a tenant-scoped authenticating identity."""

    account_id: str
    tenant_id: str
    email: str
    name: str
    role: Role
    email_verified_at: datetime | None
    created_at: datetime

    @property
    def verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass(slots=True)
class CredentialRecord:
    """Full store row for an account, including the security-sensitive columns.

    Only the lifecycle service reads these fields; anything leaving the
    process is built from :attr:`account`.
    """

    account: Account
    password_hash: str
    refresh_token_hash: str | None = None
    verification_token_hash: str | None = None
    verification_expires_at: datetime | None = None
    reset_token_hash: str | None = None
    reset_expires_at: datetime | None = None
