from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tenant_identity.api import routes
from tenant_identity.config import Settings
from tenant_identity.domain.account import Account, CredentialRecord
from tenant_identity.domain.contracts import NewAccount
from tenant_identity.domain.service import IdentityService
from tenant_identity.notifications import NotificationError
from tenant_identity.repository import DuplicateEmailError
from tenant_identity.security.passwords import PasswordHasher
from tenant_identity.security.rate_limiter import SlidingWindowRateLimiter
from tenant_identity.security.tokens import TokenSigner


class FakeRepository:
    """In-memory credential store mimicking the Postgres repository's semantics.

    Token consumption matches and clears in one step, like the conditional
    ``UPDATE ... RETURNING`` statements.
    """

    def __init__(self) -> None:
        self.tenants: dict[str, str] = {}
        self.records: dict[str, CredentialRecord] = {}
        self.audit_log: list[dict] = []

    def find_by_email(self, email: str):
        for record in self.records.values():
            if record.account.email == email:
                return record
        return None

    def find_by_id(self, account_id: str, tenant_id: str):
        record = self.records.get(account_id)
        if record is None or record.account.tenant_id != tenant_id:
            return None
        return record

    def create_tenant_with_owner(self, tenant_name: str, new_account: NewAccount):
        tenant_id = str(uuid.uuid4())
        record = self._insert(tenant_id, new_account)
        self.tenants[tenant_id] = tenant_name
        return record

    def create_account(self, new_account: NewAccount):
        return self._insert(new_account.tenant_id, new_account)

    def set_refresh_token(self, account_id: str, tenant_id: str, token_hash: str | None) -> None:
        record = self.find_by_id(account_id, tenant_id)
        if record is not None:
            record.refresh_token_hash = token_hash

    def set_verification_token(self, account_id, tenant_id, token_hash, expires_at) -> None:
        record = self.find_by_id(account_id, tenant_id)
        record.verification_token_hash = token_hash
        record.verification_expires_at = expires_at

    def set_reset_token(self, account_id, tenant_id, token_hash, expires_at) -> None:
        record = self.find_by_id(account_id, tenant_id)
        record.reset_token_hash = token_hash
        record.reset_expires_at = expires_at

    def consume_verification_token(self, token_hash: str, now: datetime):
        for record in self.records.values():
            if record.verification_token_hash == token_hash and record.verification_expires_at > now:
                record.account.email_verified_at = now
                record.verification_token_hash = None
                record.verification_expires_at = None
                return record
        return None

    def consume_reset_token(self, token_hash, password_hash, now, *, revoke_refresh=False):
        for record in self.records.values():
            if record.reset_token_hash == token_hash and record.reset_expires_at > now:
                record.password_hash = password_hash
                record.reset_token_hash = None
                record.reset_expires_at = None
                if revoke_refresh:
                    record.refresh_token_hash = None
                return record
        return None

    def write_audit_event(self, *, action, tenant_id, account_id, entity="account", entity_id=None, metadata=None):
        self.audit_log.append(
            {
                "action": action,
                "tenant_id": tenant_id,
                "account_id": account_id,
                "metadata": metadata or {},
            }
        )

    def actions(self) -> list[str]:
        return [entry["action"] for entry in self.audit_log]

    def _insert(self, tenant_id: str, new_account: NewAccount) -> CredentialRecord:
        if self.find_by_email(new_account.email) is not None:
            raise DuplicateEmailError(new_account.email)
        account = Account(
            account_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            email=new_account.email,
            name=new_account.name,
            role=new_account.role,
            email_verified_at=None,
            created_at=datetime.now(timezone.utc),
        )
        record = CredentialRecord(
            account=account,
            password_hash=new_account.password_hash,
            verification_token_hash=new_account.verification_token_hash,
            verification_expires_at=new_account.verification_expires_at,
        )
        self.records[account.account_id] = record
        return record


@dataclass
class SentMessage:
    kind: str
    email: str
    name: str
    token: str


@dataclass
class FakeDispatcher:
    """Captures outgoing links; set ``failing`` to simulate a provider outage."""

    sent: list[SentMessage] = field(default_factory=list)
    failing: bool = False

    def send_verification(self, email: str, name: str, token: str) -> None:
        self._send("verification", email, name, token)

    def send_reset(self, email: str, name: str, token: str) -> None:
        self._send("reset", email, name, token)

    def last(self, kind: str) -> SentMessage:
        return [message for message in self.sent if message.kind == kind][-1]

    def _send(self, kind: str, email: str, name: str, token: str) -> None:
        if self.failing:
            raise NotificationError("provider unavailable")
        self.sent.append(SentMessage(kind=kind, email=email, name=name, token=token))


class FrozenClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        bcrypt_rounds=4,
        jwt_secret="test-access-secret-0123456789abcdef",
        refresh_secret="test-refresh-secret-0123456789abcdef",
    )


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def signer(settings) -> TokenSigner:
    return TokenSigner(settings)


@pytest.fixture
def make_service(repository, dispatcher, clock, signer, settings):
    def factory(**overrides) -> IdentityService:
        effective = replace(settings, **overrides)
        return IdentityService(
            repository=repository,
            hasher=PasswordHasher(rounds=effective.bcrypt_rounds),
            signer=signer,
            dispatcher=dispatcher,
            settings=effective,
            clock=clock,
        )

    return factory


@pytest.fixture
def service(make_service) -> IdentityService:
    return make_service()


@pytest.fixture
def api_client(service, signer):
    """Provide a FastAPI test client with isolated state."""
    app = FastAPI()
    app.include_router(routes.router)
    app.state.identity_service = service
    app.state.token_signer = signer

    original_limiter = routes.rate_limiter
    routes.rate_limiter = SlidingWindowRateLimiter(max_requests=5, window_seconds=60)

    with TestClient(app) as client:
        yield client

    routes.rate_limiter = original_limiter
