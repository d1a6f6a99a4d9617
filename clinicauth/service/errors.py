from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Iterator, Optional

from clinicauth.logging import get_logger
from clinicauth.storage.errors import StoreError

logger = get_logger(__name__)


class ServiceError(Exception):
    """Base class for errors raised by the session and lockout services.

    Each class carries a stable ``error_code``. Mapping codes to transport
    responses is left to the caller:
    - unauthorized
    - token_invalid
    - account_locked
    - not_found
    - server_error
    """

    error_code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Credentials were rejected."""
    error_code = "unauthorized"


class TokenInvalidError(AuthenticationError):
    """Token unknown, revoked or expired; the three cases are indistinguishable."""
    error_code = "token_invalid"

    def __init__(self, message: str = "invalid or expired token") -> None:
        super().__init__(message)


class AccountLockedError(ServiceError):
    """Login refused while the lockout window is open."""
    error_code = "account_locked"

    def __init__(
        self,
        minutes_remaining: int,
        lock_until: Optional[datetime] = None,
    ) -> None:
        super().__init__(
            f"account temporarily locked, retry in {minutes_remaining} minute(s)",
            detail={"minutes_remaining": minutes_remaining},
        )
        self.minutes_remaining = minutes_remaining
        self.lock_until = lock_until


class AccountNotFoundError(ServiceError):
    """No account for the given key. Kept internal to the lockout guard."""
    error_code = "not_found"


class InfrastructureError(ServiceError):
    """The backing store failed or timed out."""
    error_code = "server_error"


@contextlib.contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Re-raise storage failures as InfrastructureError for ``operation``."""

    try:
        yield
    except StoreError as exc:
        logger.error(
            "store_operation_failed",
            operation=operation,
            error_type=type(exc).__name__,
            error=exc.message,
        )
        raise InfrastructureError(
            f"{operation} failed: store unavailable",
            detail={"operation": operation},
        ) from exc


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "TokenInvalidError",
    "AccountLockedError",
    "AccountNotFoundError",
    "InfrastructureError",
    "store_errors",
]
