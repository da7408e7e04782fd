from __future__ import annotations

import time
from dataclasses import replace
from datetime import datetime, timezone

import jwt
import pytest

from tenant_identity.domain.account import Account, Role
from tenant_identity.security.passwords import PasswordHasher
from tenant_identity.security.tokens import (
    TokenError,
    TokenSigner,
    generate_one_time_token,
    hash_token,
)


@pytest.fixture
def account() -> Account:
    return Account(
        account_id="acc-1",
        tenant_id="tenant-1",
        email="a@x.com",
        name="A",
        role=Role.admin,
        email_verified_at=None,
        created_at=datetime.now(timezone.utc),
    )


def test_access_token_carries_identity_tenant_and_role(signer, account, settings):
    token, expires_in = signer.issue_access_token(account)

    claims = signer.decode_access_token(token)
    assert claims.account_id == "acc-1"
    assert claims.tenant_id == "tenant-1"
    assert claims.role is Role.admin
    assert expires_in == settings.access_ttl_seconds


def test_refresh_token_omits_role_and_uses_own_secret(signer, account, settings):
    token, expires_in = signer.issue_refresh_token(account)

    payload = signer.decode_refresh_token(token)
    assert payload["sub"] == "acc-1"
    assert payload["tenant_id"] == "tenant-1"
    assert "role" not in payload
    assert expires_in == settings.refresh_ttl_seconds
    with pytest.raises(jwt.InvalidSignatureError):
        jwt.decode(token, settings.jwt_secret, algorithms=["HS256"], issuer=settings.jwt_issuer)


def test_token_types_are_not_interchangeable(signer, account):
    access, _ = signer.issue_access_token(account)
    refresh, _ = signer.issue_refresh_token(account)

    with pytest.raises(TokenError):
        signer.decode_refresh_token(access)
    with pytest.raises(TokenError):
        signer.decode_access_token(refresh)


def test_tokens_issued_back_to_back_differ(signer, account):
    first, _ = signer.issue_refresh_token(account)
    second, _ = signer.issue_refresh_token(account)

    assert first != second


def test_expired_refresh_token_is_rejected(settings, account):
    signer = TokenSigner(replace(settings, refresh_ttl_seconds=-1))
    token, _ = signer.issue_refresh_token(account)

    with pytest.raises(TokenError):
        signer.decode_refresh_token(token)


def test_foreign_issuer_is_rejected(settings, account):
    foreign = TokenSigner(replace(settings, jwt_issuer="someone-else"))
    token, _ = foreign.issue_access_token(account)

    with pytest.raises(TokenError):
        TokenSigner(settings).decode_access_token(token)


def test_forged_role_claim_is_rejected(settings):
    now = int(time.time())
    token = jwt.encode(
        {
            "iss": settings.jwt_issuer,
            "sub": "acc-1",
            "tenant_id": "tenant-1",
            "role": "superuser",
            "type": "access",
            "iat": now,
            "exp": now + 60,
        },
        settings.jwt_secret,
        algorithm="HS256",
    )

    with pytest.raises(TokenError):
        TokenSigner(settings).decode_access_token(token)


def test_one_time_tokens_have_256_bits_and_are_stored_hashed():
    token, token_hash = generate_one_time_token()

    assert len(token) == 64
    int(token, 16)
    assert token_hash == hash_token(token)
    assert token_hash != token
    assert generate_one_time_token()[0] != token


def test_password_hasher_round_trip():
    hasher = PasswordHasher(rounds=4)
    hashed = hasher.hash("correct horse")

    assert hashed.startswith("$2b$04$")
    assert hasher.verify("correct horse", hashed)
    assert not hasher.verify("wrong horse", hashed)
    assert hasher.hash("correct horse") != hashed


def test_password_hasher_tolerates_corrupt_hash():
    hasher = PasswordHasher(rounds=4)

    assert not hasher.verify("anything", "not-a-bcrypt-hash")
    assert not hasher.verify_against_dummy("anything")


def test_dummy_hash_is_ready_before_first_unknown_login():
    hasher = PasswordHasher(rounds=4)
    dummy = hasher._dummy_hash

    assert dummy.startswith(b"$2b$04$")
    assert not hasher.verify_against_dummy("anything")
    assert hasher._dummy_hash is dummy
