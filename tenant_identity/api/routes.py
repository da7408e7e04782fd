"""HTTP route definitions for the identity service."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Literal, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field

from ..config import get_settings
from ..domain.account import Account, Role
from ..domain.contracts import AccessClaims, AuthSession, CreateMemberInput, RegistrationInput
from ..domain.results import ErrorKind, Result
from ..domain.service import IdentityService, normalize_email
from ..metrics import IDENTITY_OPERATIONS
from ..redaction import fingerprint
from ..security.rate_limiter import build_rate_limiter
from ..security.tokens import TokenError, TokenSigner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])
bearer = HTTPBearer(auto_error=False)

PASSWORD_MIN_LEN = 8
PASSWORD_MAX_LEN = 128

T = TypeVar("T")

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.conflict: status.HTTP_409_CONFLICT,
    ErrorKind.invalid_credentials: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.unauthorized: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.invalid_token: status.HTTP_400_BAD_REQUEST,
    ErrorKind.validation: status.HTTP_400_BAD_REQUEST,
    ErrorKind.not_found: status.HTTP_404_NOT_FOUND,
    ErrorKind.notification_failed: status.HTTP_502_BAD_GATEWAY,
}

# Same body whether or not the address exists.
RESET_REQUESTED = "if the email exists, a reset link has been sent"
VERIFICATION_REQUESTED = "if the email exists and is unverified, a verification link has been sent"


class AccountResponse(BaseModel):
    """Serialised representation of an `Account` aggregate."""

    account_id: str
    tenant_id: str
    email: EmailStr
    name: str
    role: Role
    email_verified_at: datetime | None
    created_at: datetime

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        """Build a response model from the domain aggregate."""
        return cls(
            account_id=account.account_id,
            tenant_id=account.tenant_id,
            email=account.email,
            name=account.name,
            role=account.role,
            email_verified_at=account.email_verified_at,
            created_at=account.created_at,
        )


class RegisterRequest(BaseModel):
    """Payload accepted when creating a tenant together with its owner."""

    company_name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=200)
    password: str = Field(..., min_length=PASSWORD_MIN_LEN, max_length=PASSWORD_MAX_LEN)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LEN)


class RefreshRequest(BaseModel):
    """Request body for exchanging a refresh token for a new access token."""

    refresh_token: str


class EmailRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    password: str = Field(..., min_length=PASSWORD_MIN_LEN, max_length=PASSWORD_MAX_LEN)


class CreateMemberRequest(BaseModel):
    """Payload for adding an account to the caller's tenant."""

    email: EmailStr
    name: str = Field(..., min_length=1, max_length=200)
    password: str = Field(..., min_length=PASSWORD_MIN_LEN, max_length=PASSWORD_MAX_LEN)
    role: Literal["admin", "member"] = "member"


class SessionResponse(BaseModel):
    """Account plus bearer credentials returned by register and login."""

    account: AccountResponse
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: str
    refresh_expires_in: int

    @classmethod
    def from_domain(cls, session: AuthSession) -> "SessionResponse":
        return cls(
            account=AccountResponse.from_domain(session.account),
            access_token=session.access_token,
            expires_in=session.access_expires_in,
            refresh_token=session.refresh_token,
            refresh_expires_in=session.refresh_expires_in,
        )


class AccessTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class MessageResponse(BaseModel):
    message: str


settings = get_settings()
rate_limiter = build_rate_limiter(settings)


def get_service(request: Request) -> IdentityService:
    """Resolve the `IdentityService` stored on the FastAPI application state."""
    service: IdentityService = request.app.state.identity_service
    return service


def get_signer(request: Request) -> TokenSigner:
    signer: TokenSigner = request.app.state.token_signer
    return signer


def current_claims(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    signer: TokenSigner = Depends(get_signer),
) -> AccessClaims:
    """Require a valid Bearer access token and return its claims."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return signer.decode_access_token(credentials.credentials)
    except TokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def require_tenant_admin(claims: AccessClaims = Depends(current_claims)) -> AccessClaims:
    """Allow owners and admins of the token's tenant; everyone else gets 403."""
    if claims.role not in (Role.owner, Role.admin):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin access required")
    return claims


def _enforce_rate_limit(bucket: str, key: str) -> None:
    decision = rate_limiter.hit(f"{bucket}:{key}")
    if not decision.allowed:
        logger.warning("rate limit exceeded for %s bucket", bucket)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="rate limited",
            headers={"Retry-After": str(decision.retry_after)},
        )


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _email_key(request: Request, email: str) -> str:
    return f"{_client_key(request)}:{fingerprint(normalize_email(email))}"


def _respond(operation: str, result: Result[T], render: Callable[[T], BaseModel]) -> BaseModel:
    """Map a lifecycle result to a response model or the matching HTTP error."""
    if result.error is not None:
        IDENTITY_OPERATIONS.labels(operation=operation, outcome=result.error.kind.value).inc()
        headers = None
        if result.error.kind in (ErrorKind.unauthorized, ErrorKind.invalid_credentials):
            headers = {"WWW-Authenticate": "Bearer"}
        raise HTTPException(
            status_code=_STATUS_BY_KIND[result.error.kind],
            detail=result.error.message,
            headers=headers,
        )
    IDENTITY_OPERATIONS.labels(operation=operation, outcome="ok").inc()
    return render(result.value)


@router.post("/register", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
def register(
    request: Request,
    payload: RegisterRequest,
    service: IdentityService = Depends(get_service),
) -> SessionResponse:
    """Create a company and its owner account, then sign the owner in."""
    _enforce_rate_limit("register", _client_key(request))
    result = service.register(
        RegistrationInput(
            tenant_name=payload.company_name,
            email=payload.email,
            name=payload.name,
            password=payload.password,
        )
    )
    return _respond("register", result, SessionResponse.from_domain)


@router.post("/login", response_model=SessionResponse)
def login(
    request: Request,
    payload: LoginRequest,
    service: IdentityService = Depends(get_service),
) -> SessionResponse:
    """Authenticate with email and password."""
    _enforce_rate_limit("login", _email_key(request, payload.email))
    result = service.login(payload.email, payload.password)
    return _respond("login", result, SessionResponse.from_domain)


@router.post("/refresh", response_model=AccessTokenResponse)
def refresh(
    request: Request,
    payload: RefreshRequest,
    service: IdentityService = Depends(get_service),
) -> AccessTokenResponse:
    """Mint a new access token; the refresh token stays the same."""
    _enforce_rate_limit("refresh", _client_key(request))
    result = service.refresh(payload.refresh_token)
    return _respond(
        "refresh",
        result,
        lambda issued: AccessTokenResponse(access_token=issued.access_token, expires_in=issued.expires_in),
    )


@router.post("/logout", response_model=MessageResponse)
def logout(
    claims: AccessClaims = Depends(current_claims),
    service: IdentityService = Depends(get_service),
) -> MessageResponse:
    """Revoke the caller's refresh token. The presented access token lives until it expires."""
    result = service.logout(claims.account_id, claims.tenant_id)
    return _respond("logout", result, lambda _: MessageResponse(message="logged out"))


@router.get("/me", response_model=AccountResponse)
def me(
    claims: AccessClaims = Depends(current_claims),
    service: IdentityService = Depends(get_service),
) -> AccountResponse:
    result = service.get_account(claims.account_id, claims.tenant_id)
    return _respond("me", result, AccountResponse.from_domain)


@router.get("/verify-email/{token}", response_model=MessageResponse)
def verify_email(
    request: Request,
    token: str,
    service: IdentityService = Depends(get_service),
) -> MessageResponse:
    """Consume the link sent at registration or on resend."""
    _enforce_rate_limit("verify", _client_key(request))
    result = service.verify_email(token)
    return _respond("verify_email", result, lambda _: MessageResponse(message="email verified"))


@router.post(
    "/verify-email/resend",
    response_model=MessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def resend_verification(
    request: Request,
    payload: EmailRequest,
    service: IdentityService = Depends(get_service),
) -> MessageResponse:
    """Send a new verification link; the response never reveals whether the email exists."""
    _enforce_rate_limit("resend", _email_key(request, payload.email))
    result = service.resend_verification(payload.email)
    return _respond("resend_verification", result, lambda _: MessageResponse(message=VERIFICATION_REQUESTED))


@router.post(
    "/forgot-password",
    response_model=MessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def forgot_password(
    request: Request,
    payload: EmailRequest,
    service: IdentityService = Depends(get_service),
) -> MessageResponse:
    """Request a reset link; the response never reveals whether the email exists."""
    _enforce_rate_limit("forgot", _email_key(request, payload.email))
    result = service.forgot_password(payload.email)
    return _respond("forgot_password", result, lambda _: MessageResponse(message=RESET_REQUESTED))


@router.post("/reset-password/{token}", response_model=MessageResponse)
def reset_password(
    request: Request,
    token: str,
    payload: ResetPasswordRequest,
    service: IdentityService = Depends(get_service),
) -> MessageResponse:
    """Set a new password with a reset token. Does not sign the caller in."""
    _enforce_rate_limit("reset", _client_key(request))
    result = service.reset_password(token, payload.password)
    return _respond("reset_password", result, lambda _: MessageResponse(message="password reset"))


@router.post("/members", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def create_member(
    payload: CreateMemberRequest,
    claims: AccessClaims = Depends(require_tenant_admin),
    service: IdentityService = Depends(get_service),
) -> AccountResponse:
    """Add an admin or member to the caller's tenant; they must verify before logging in."""
    result = service.create_member(
        claims.tenant_id,
        CreateMemberInput(
            email=payload.email,
            name=payload.name,
            password=payload.password,
            role=Role(payload.role),
        ),
    )
    return _respond("create_member", result, AccountResponse.from_domain)

