"""Error taxonomy and the Result type returned by bank operations.

Business outcomes (bad wager, unknown user, bad token) are returned as
`Result.failure(<error>)`, never raised. The error classes still subclass
Exception so I/O code can raise them and `Result.unwrap()` can re-raise.

  ValidationError   400  malformed or missing input
  AuthError         401  bad or missing credential
  ForbiddenError    403  feature disabled for everyone
  NotFoundError     404  unknown username / payment id / linking code
  PersistenceError  500  durable write failed (logged, not surfaced)
  IntegrationError  502  identity provider or game transport failed
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


class LedgerError(Exception):
    kind = "error"
    http_status = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind}


class ValidationError(LedgerError):
    kind = "validation"
    http_status = 400


class InvalidWager(ValidationError):
    kind = "invalid_wager"

    def __init__(self, message: str = "Invalid bet amount") -> None:
        super().__init__(message)


class LinkExpiredError(ValidationError):
    kind = "link_expired"

    def __init__(self, message: str = "Linking code expired") -> None:
        super().__init__(message)


class AuthError(LedgerError):
    kind = "auth"
    http_status = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class ForbiddenError(AuthError):
    kind = "forbidden"
    http_status = 403


class NotFoundError(LedgerError):
    kind = "not_found"
    http_status = 404


class UserNotFound(NotFoundError):
    kind = "user_not_found"

    def __init__(self, username: str = "") -> None:
        self.username = username
        super().__init__("User not found")


class PersistenceError(LedgerError):
    kind = "persistence"
    http_status = 500


class IntegrationError(LedgerError):
    kind = "integration"
    http_status = 502


@dataclass
class Result:
    value: Any = None
    error: Optional[LedgerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(value=value)

    @classmethod
    def failure(cls, error: LedgerError) -> "Result":
        return cls(error=error)

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value
