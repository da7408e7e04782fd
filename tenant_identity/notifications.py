"""Out-of-band delivery of verification and password reset links."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from .config import Settings
from .redaction import fingerprint, mask_email

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when a notification could not be handed to the delivery provider."""


class NotificationDispatcher(Protocol):
    def send_verification(self, email: str, name: str, token: str) -> None: ...

    def send_reset(self, email: str, name: str, token: str) -> None: ...


def verification_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/v1/auth/verify-email/{token}"


def reset_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/reset-password/{token}"


class LogDispatcher:
    """Development dispatcher: writes links to the log instead of sending mail.

    Links contain live tokens, so they are emitted at DEBUG only.
    """

    def __init__(self, public_base_url: str) -> None:
        self._base_url = public_base_url

    def send_verification(self, email: str, name: str, token: str) -> None:
        logger.info("verification link prepared for %s (token %s)", mask_email(email), fingerprint(token))
        logger.debug("verification link: %s", verification_url(self._base_url, token))

    def send_reset(self, email: str, name: str, token: str) -> None:
        logger.info("reset link prepared for %s (token %s)", mask_email(email), fingerprint(token))
        logger.debug("reset link: %s", reset_url(self._base_url, token))


class ResendDispatcher:
    """Send transactional email through the Resend HTTP API.

    Message bodies are provider templates referenced by alias; this class only
    supplies the recipient, their name, and the callback URL.
    """

    def __init__(
        self,
        *,
        api_key: str,
        sender: str,
        public_base_url: str,
        api_url: str = "https://api.resend.com",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._sender = sender
        self._base_url = public_base_url
        self._timeout = timeout
        self._client = client or httpx.Client(
            base_url=api_url,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    def send_verification(self, email: str, name: str, token: str) -> None:
        self._send(
            to=email,
            subject="Verify your email address",
            template="verify-email",
            variables={"name": name, "action_url": verification_url(self._base_url, token)},
        )

    def send_reset(self, email: str, name: str, token: str) -> None:
        self._send(
            to=email,
            subject="Reset your password",
            template="reset-password",
            variables={"name": name, "action_url": reset_url(self._base_url, token)},
        )

    def close(self) -> None:
        self._client.close()

    def _send(self, *, to: str, subject: str, template: str, variables: dict[str, str]) -> None:
        payload = {
            "from": self._sender,
            "to": [to],
            "subject": subject,
            "template": {"id": template, "variables": variables},
        }
        try:
            resp = self._client.post("/emails", json=payload, timeout=self._timeout)
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as exc:
            logger.error("email provider unreachable for %s: %s", mask_email(to), exc)
            raise NotificationError(f"email provider unreachable: {exc}") from exc
        if resp.status_code >= 400:
            detail = resp.text[:200] if resp.text else "no body"
            logger.error(
                "email provider rejected %s for %s: %s %s",
                template,
                mask_email(to),
                resp.status_code,
                detail,
            )
            raise NotificationError(f"email provider returned {resp.status_code}")
        logger.info("%s email sent to %s (message %s)", template, mask_email(to), _message_id(resp))


def _message_id(resp: httpx.Response) -> str | None:
    """Best-effort provider message id; the send already succeeded."""
    try:
        body = resp.json()
    except ValueError:
        logger.debug("email provider returned a non-JSON body with status %s", resp.status_code)
        return None
    return body.get("id") if isinstance(body, dict) else None


def build_dispatcher(settings: Settings) -> LogDispatcher | ResendDispatcher:
    """Instantiate the configured notification backend."""
    if settings.email_backend == "resend":
        if not settings.resend_api_key:
            raise RuntimeError("EMAIL_BACKEND=resend requires RESEND_API_KEY")
        logger.info("notifications using resend backend")
        return ResendDispatcher(
            api_key=settings.resend_api_key,
            sender=settings.email_from,
            public_base_url=settings.public_base_url,
            api_url=settings.resend_api_url,
            timeout=settings.email_timeout_seconds,
        )
    logger.info("notifications using log backend")
    return LogDispatcher(settings.public_base_url)
