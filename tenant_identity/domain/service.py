"""Identity service owning registration, sessions, and one-time credential tokens.

Every public method returns a :class:`~tenant_identity.domain.results.Result`.
Expected failures (duplicate email, bad password, stale token) are values;
only infrastructure faults such as a lost database connection raise.
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from .account import Account, Role
from .contracts import (
    AuthSession,
    CreateMemberInput,
    IssuedAccessToken,
    NewAccount,
    RegistrationInput,
)
from .results import ErrorKind, Result
from ..config import Settings
from ..metrics import NOTIFICATION_FAILURES
from ..notifications import NotificationDispatcher, NotificationError
from ..redaction import mask_email
from ..repository import AccountRepository, DuplicateEmailError
from ..security.passwords import PasswordHasher
from ..security.tokens import TokenError, TokenSigner, generate_one_time_token, hash_token

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "invalid email or password"
UNVERIFIED_EMAIL = "email address has not been verified"
INVALID_REFRESH_TOKEN = "invalid refresh token"
INVALID_ONE_TIME_TOKEN = "invalid or expired token"
EMAIL_TAKEN = "email already registered"
VERIFICATION_UNDELIVERED = (
    "account created but the verification email could not be sent; "
    "request a new link via /v1/auth/verify-email/resend"
)


def normalize_email(email: str) -> str:
    """Emails are compared case-insensitively: strip and lower-case once, everywhere."""
    return email.strip().lower()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentityService:
    """Identity and credential lifecycle backed by an injected credential store.

    The service keeps no state between calls. It is the only writer of the
    password hash, refresh token, verification token, and reset token columns.
    """

    def __init__(
        self,
        repository: AccountRepository,
        hasher: PasswordHasher,
        signer: TokenSigner,
        dispatcher: NotificationDispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Store collaborators used to orchestrate persistence, hashing, signing, and delivery."""
        self._repository = repository
        self._hasher = hasher
        self._signer = signer
        self._dispatcher = dispatcher
        self._verification_ttl = timedelta(seconds=settings.verification_ttl_seconds)
        self._reset_ttl = timedelta(seconds=settings.reset_ttl_seconds)
        self._revoke_sessions_on_reset = settings.revoke_sessions_on_password_reset
        self._clock = clock

    def register(self, payload: RegistrationInput) -> Result[AuthSession]:
        """Create a tenant and its owner, send the verification link, and sign the owner in.

        Creation and delivery are two steps with no transaction spanning both.
        When delivery fails the tenant and account stay in place, no tokens
        are issued, and the caller gets ``notification_failed``; the owner
        recovers through :meth:`resend_verification`.
        """
        email = normalize_email(payload.email)
        if self._repository.find_by_email(email) is not None:
            return Result.failure(ErrorKind.conflict, EMAIL_TAKEN)

        token, token_hash = generate_one_time_token()
        new_account = NewAccount(
            tenant_id=None,
            email=email,
            name=payload.name.strip(),
            role=Role.owner,
            password_hash=self._hasher.hash(payload.password),
            verification_token_hash=token_hash,
            verification_expires_at=self._clock() + self._verification_ttl,
        )
        try:
            record = self._repository.create_tenant_with_owner(payload.tenant_name.strip(), new_account)
        except DuplicateEmailError:
            return Result.failure(ErrorKind.conflict, EMAIL_TAKEN)

        account = record.account
        self._audit("account.registered", account, metadata={"role": account.role.value})
        logger.info("registered tenant %s owner %s", account.tenant_id, mask_email(email))

        try:
            self._dispatcher.send_verification(account.email, account.name, token)
        except NotificationError as exc:
            NOTIFICATION_FAILURES.labels(kind="verification", surfaced="true").inc()
            logger.error("verification email failed for account %s: %s", account.account_id, exc)
            return Result.failure(ErrorKind.notification_failed, VERIFICATION_UNDELIVERED)

        return Result.success(self._start_session(account))

    def login(self, email: str, password: str) -> Result[AuthSession]:
        """Authenticate with email and password; unverified accounts are refused.

        Unknown email and wrong password produce the same error. The
        verification check runs only once the password is known to be right.
        """
        record = self._repository.find_by_email(normalize_email(email))
        if record is None:
            self._hasher.verify_against_dummy(password)
            return Result.failure(ErrorKind.invalid_credentials, INVALID_CREDENTIALS)
        if not self._hasher.verify(password, record.password_hash):
            return Result.failure(ErrorKind.invalid_credentials, INVALID_CREDENTIALS)
        if not record.account.verified:
            return Result.failure(ErrorKind.unauthorized, UNVERIFIED_EMAIL)

        session = self._start_session(record.account)
        self._audit("auth.login", record.account)
        return Result.success(session)

    def refresh(self, refresh_token: str) -> Result[IssuedAccessToken]:
        """Exchange the account's current refresh token for a new access token.

        The token must verify cryptographically *and* equal the one stored for
        the account; a superseded or logged-out token is rejected even while
        its signature is still valid. The refresh token itself is not rotated.
        """
        try:
            claims = self._signer.decode_refresh_token(refresh_token)
        except TokenError:
            return Result.failure(ErrorKind.unauthorized, INVALID_REFRESH_TOKEN)

        record = self._repository.find_by_id(claims["sub"], claims["tenant_id"])
        if record is None or record.refresh_token_hash is None:
            return Result.failure(ErrorKind.unauthorized, INVALID_REFRESH_TOKEN)
        if not hmac.compare_digest(record.refresh_token_hash, hash_token(refresh_token)):
            return Result.failure(ErrorKind.unauthorized, INVALID_REFRESH_TOKEN)

        access_token, expires_in = self._signer.issue_access_token(record.account)
        return Result.success(IssuedAccessToken(access_token=access_token, expires_in=expires_in))

    def logout(self, account_id: str, tenant_id: str) -> Result[None]:
        """Drop the stored refresh token. Safe to call repeatedly.

        Access tokens already handed out stay valid until their own expiry;
        they are short-lived and not tracked server-side.
        """
        self._repository.set_refresh_token(account_id, tenant_id, None)
        self._repository.write_audit_event(action="auth.logout", tenant_id=tenant_id, account_id=account_id)
        return Result.success(None)

    def verify_email(self, token: str) -> Result[Account]:
        """Consume a verification token and mark the account verified."""
        record = self._repository.consume_verification_token(hash_token(token), self._clock())
        if record is None:
            return Result.failure(ErrorKind.invalid_token, INVALID_ONE_TIME_TOKEN)
        self._audit("email.verified", record.account)
        return Result.success(record.account)

    def resend_verification(self, email: str) -> Result[None]:
        """Issue a fresh verification link for an unverified account.

        Returns success whether or not the address is known, already
        verified, or the provider failed.
        """
        record = self._repository.find_by_email(normalize_email(email))
        if record is None or record.account.verified:
            return Result.success(None)

        token, token_hash = generate_one_time_token()
        account = record.account
        self._repository.set_verification_token(
            account.account_id, account.tenant_id, token_hash, self._clock() + self._verification_ttl
        )
        self._audit("email.verification_resent", account)
        self._dispatch_quietly("verification", self._dispatcher.send_verification, account, token)
        return Result.success(None)

    def forgot_password(self, email: str) -> Result[None]:
        """Send a password reset link if the address belongs to an account.

        The outcome is identical for unknown addresses and for provider
        failures, so the response never reveals whether an account exists.
        """
        record = self._repository.find_by_email(normalize_email(email))
        if record is None:
            logger.info("password reset requested for unknown address %s", mask_email(email))
            return Result.success(None)

        token, token_hash = generate_one_time_token()
        account = record.account
        self._repository.set_reset_token(
            account.account_id, account.tenant_id, token_hash, self._clock() + self._reset_ttl
        )
        self._audit("password.reset_requested", account)
        self._dispatch_quietly("reset", self._dispatcher.send_reset, account, token)
        return Result.success(None)

    def reset_password(self, token: str, new_password: str) -> Result[Account]:
        """Consume a reset token and install ``new_password`` in the same update.

        Existing refresh sessions survive unless
        ``revoke_sessions_on_password_reset`` is enabled.
        """
        password_hash = self._hasher.hash(new_password)
        record = self._repository.consume_reset_token(
            hash_token(token),
            password_hash,
            self._clock(),
            revoke_refresh=self._revoke_sessions_on_reset,
        )
        if record is None:
            return Result.failure(ErrorKind.invalid_token, INVALID_ONE_TIME_TOKEN)
        self._audit(
            "password.reset",
            record.account,
            metadata={"sessions_revoked": self._revoke_sessions_on_reset},
        )
        return Result.success(record.account)

    def create_member(self, tenant_id: str, payload: CreateMemberInput) -> Result[Account]:
        """Add an unverified admin or member account to an existing tenant."""
        if payload.role == Role.owner:
            return Result.failure(ErrorKind.validation, "owners are created only by registration")
        email = normalize_email(payload.email)
        if self._repository.find_by_email(email) is not None:
            return Result.failure(ErrorKind.conflict, EMAIL_TAKEN)

        token, token_hash = generate_one_time_token()
        new_account = NewAccount(
            tenant_id=tenant_id,
            email=email,
            name=payload.name.strip(),
            role=payload.role,
            password_hash=self._hasher.hash(payload.password),
            verification_token_hash=token_hash,
            verification_expires_at=self._clock() + self._verification_ttl,
        )
        try:
            record = self._repository.create_account(new_account)
        except DuplicateEmailError:
            return Result.failure(ErrorKind.conflict, EMAIL_TAKEN)

        account = record.account
        self._audit("account.created", account, metadata={"role": account.role.value})
        try:
            self._dispatcher.send_verification(account.email, account.name, token)
        except NotificationError as exc:
            NOTIFICATION_FAILURES.labels(kind="verification", surfaced="true").inc()
            logger.error("verification email failed for account %s: %s", account.account_id, exc)
            return Result.failure(ErrorKind.notification_failed, VERIFICATION_UNDELIVERED)
        return Result.success(account)

    def get_account(self, account_id: str, tenant_id: str) -> Result[Account]:
        """Retrieve an account by identifier ensuring the tenant scope matches."""
        record = self._repository.find_by_id(account_id, tenant_id)
        if record is None:
            return Result.failure(ErrorKind.not_found, "account not found")
        return Result.success(record.account)

    def _start_session(self, account: Account) -> AuthSession:
        """Mint an access/refresh pair and make the refresh token the account's only valid one."""
        access_token, access_expires_in = self._signer.issue_access_token(account)
        refresh_token, refresh_expires_in = self._signer.issue_refresh_token(account)
        self._repository.set_refresh_token(account.account_id, account.tenant_id, hash_token(refresh_token))
        return AuthSession(
            account=account,
            access_token=access_token,
            access_expires_in=access_expires_in,
            refresh_token=refresh_token,
            refresh_expires_in=refresh_expires_in,
        )

    def _dispatch_quietly(
        self,
        kind: str,
        send: Callable[[str, str, str], None],
        account: Account,
        token: str,
    ) -> None:
        # A failure here must look like success to the caller.
        try:
            send(account.email, account.name, token)
        except NotificationError as exc:
            NOTIFICATION_FAILURES.labels(kind=kind, surfaced="false").inc()
            logger.warning("%s email failed for account %s: %s", kind, account.account_id, exc)

    def _audit(self, action: str, account: Account, metadata: dict | None = None) -> None:
        self._repository.write_audit_event(
            action=action,
            tenant_id=account.tenant_id,
            account_id=account.account_id,
            metadata=metadata,
        )

