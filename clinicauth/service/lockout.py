from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, ContextManager, Optional, Protocol, Union

from clinicauth.config import Settings
from clinicauth.logging import get_logger
from clinicauth.service.errors import AccountNotFoundError, store_errors
from clinicauth.storage.models import Account, utcnow

logger = get_logger(__name__)

# 2 ** 32 already dwarfs any sane cap
_MAX_BACKOFF_EXPONENT = 32


class CredentialStore(Protocol):
    def find_by_email(self, email: str, *, for_update: bool = False) -> Optional[Account]: ...

    def find_by_id(self, account_id: str, *, for_update: bool = False) -> Optional[Account]: ...

    def save(self, account: Account) -> None: ...

    def transaction(self) -> ContextManager[Any]: ...


@dataclass(frozen=True)
class FailedAttemptResult:
    locked: bool
    attempts_remaining: int
    lock_until: Optional[datetime] = None


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    lock_until: Optional[datetime] = None
    minutes_remaining: Optional[int] = None


@dataclass(frozen=True)
class AccountSecurityStatus:
    failed_attempts: int
    is_locked: bool
    lock_until: Optional[datetime]
    attempts_remaining: int


@dataclass(frozen=True)
class Known:
    account: Account


@dataclass(frozen=True)
class Unknown:
    email: str


AccountLookup = Union[Known, Unknown]

_NOT_LOCKED = LockStatus(locked=False)


class LockoutGuard:
    """Failed-login accounting and temporary account lockout.

    Per account the guard moves between ``Open(n)`` and ``Locked(until)``:
    each failure increments ``n``; reaching ``max_failed_attempts`` locks the
    account for ``lockout_minutes``. The lock clears itself the first time it
    is observed after expiry, on a verified login, or by admin unlock.

    Unknown emails never raise and never touch the store beyond the lookup;
    callers receive the same result shapes as for a real account.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.max_attempts = settings.max_failed_attempts
        self.lockout_window = settings.lockout_window
        self._clock = clock or utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def _lookup(self, email: str, *, for_update: bool = False) -> AccountLookup:
        account = self.store.find_by_email(email, for_update=for_update)
        if account is None:
            return Unknown(email)
        return Known(account)

    def record_failed_attempt(self, email: str) -> FailedAttemptResult:
        with store_errors("record_failed_attempt"), self.store.transaction():
            lookup = self._lookup(email, for_update=True)
            if isinstance(lookup, Unknown):
                return FailedAttemptResult(locked=False, attempts_remaining=0)

            account = lookup.account
            account.failed_attempts += 1
            if account.failed_attempts >= self.max_attempts:
                account.locked_until = self._now() + self.lockout_window
                self.store.save(account)
                self.logger.warning(
                    "account_locked",
                    account_id=account.id,
                    attempts=account.failed_attempts,
                    locked_until=account.locked_until.isoformat(),
                )
                return FailedAttemptResult(
                    locked=True, attempts_remaining=0, lock_until=account.locked_until
                )

            self.store.save(account)
            remaining = self.max_attempts - account.failed_attempts
            self.logger.info(
                "failed_login_recorded",
                account_id=account.id,
                attempts=account.failed_attempts,
                remaining=remaining,
            )
            return FailedAttemptResult(locked=False, attempts_remaining=remaining)

    def reset_failed_attempts(self, account_id: str) -> None:
        """Clear the counter and any lock after a verified login."""

        try:
            with store_errors("reset_failed_attempts"), self.store.transaction():
                account = self._account_for_update(account_id)
                if account.failed_attempts == 0 and account.locked_until is None:
                    return
                account.failed_attempts = 0
                account.locked_until = None
                self.store.save(account)
        except AccountNotFoundError:
            self.logger.debug("reset_failed_attempts_unknown_account", account_id=account_id)

    def _account_for_update(self, account_id: str) -> Account:
        account = self.store.find_by_id(account_id, for_update=True)
        if account is None:
            raise AccountNotFoundError(
                "account not found", detail={"account_id": account_id}
            )
        return account

    def is_account_locked(self, email: str) -> LockStatus:
        with store_errors("is_account_locked"):
            lookup = self._lookup(email)
            if isinstance(lookup, Unknown) or lookup.account.locked_until is None:
                return _NOT_LOCKED

            now = self._now()
            locked_until = lookup.account.locked_until
            if locked_until <= now:
                self._clear_expired_lock(lookup.account.id, now)
                return _NOT_LOCKED

        seconds_left = (locked_until - now).total_seconds()
        return LockStatus(
            locked=True,
            lock_until=locked_until,
            minutes_remaining=math.ceil(seconds_left / 60),
        )

    def _clear_expired_lock(self, account_id: str, now: datetime) -> None:
        with self.store.transaction():
            account = self.store.find_by_id(account_id, for_update=True)
            # a concurrent failure may have re-locked the account meanwhile
            if account is None or account.locked_until is None or account.locked_until > now:
                return
            account.failed_attempts = 0
            account.locked_until = None
            self.store.save(account)
        self.logger.info("lock_expired_cleared", account_id=account_id)

    def calculate_backoff_delay(self, failed_attempts: int) -> float:
        """Seconds a client should wait before retrying.

        Doubles from ``backoff_base_seconds`` with each failure and is capped
        at ``backoff_max_seconds``.
        """

        exponent = min(max(failed_attempts, 1) - 1, _MAX_BACKOFF_EXPONENT)
        delay = self.settings.backoff_base_seconds * (2 ** exponent)
        return min(delay, self.settings.backoff_max_seconds)

    def unlock_account(self, account_id: str) -> bool:
        try:
            with store_errors("unlock_account"), self.store.transaction():
                account = self._account_for_update(account_id)
                account.failed_attempts = 0
                account.locked_until = None
                self.store.save(account)
        except AccountNotFoundError:
            return False
        self.logger.info("account_unlocked", account_id=account_id)
        return True

    def get_account_security_status(self, email: str) -> AccountSecurityStatus:
        lock = self.is_account_locked(email)
        with store_errors("get_account_security_status"):
            lookup = self._lookup(email)
        if isinstance(lookup, Unknown):
            return AccountSecurityStatus(
                failed_attempts=0, is_locked=False, lock_until=None, attempts_remaining=0
            )
        failed = lookup.account.failed_attempts
        return AccountSecurityStatus(
            failed_attempts=failed,
            is_locked=lock.locked,
            lock_until=lock.lock_until,
            attempts_remaining=max(0, self.max_attempts - failed),
        )
