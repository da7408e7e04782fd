"""Helpers that make identities and secrets safe to write to logs."""

from __future__ import annotations

from .security.tokens import hash_token


def mask_email(email: str) -> str:
    """Keep the first character and the domain: ``alice@x.com`` -> ``a***@x.com``."""
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def fingerprint(token: str) -> str:
    """Short, non-reversible token label for correlating log lines."""
    return hash_token(token)[:12]
