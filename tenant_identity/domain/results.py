"""Typed outcomes returned by every identity lifecycle operation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    conflict = "conflict"
    invalid_credentials = "invalid_credentials"
    unauthorized = "unauthorized"
    invalid_token = "invalid_token"
    validation = "validation"
    not_found = "not_found"
    notification_failed = "notification_failed"


@dataclass(slots=True, frozen=True)
class LifecycleError:
    """Caller-visible failure: a kind for the transport mapping plus a safe message."""

    kind: ErrorKind
    message: str


@dataclass(slots=True, frozen=True)
class Result(Generic[T]):
    """Either ``value`` (success) or ``error`` (failure), never both."""

    value: T | None = None
    error: LifecycleError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Result[T]":
        return cls(error=LifecycleError(kind=kind, message=message))
