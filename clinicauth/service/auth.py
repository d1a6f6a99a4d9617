from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

import structlog
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from clinicauth.config import Settings
from clinicauth.logging import get_logger, log_context
from clinicauth.service.errors import (
    AccountLockedError,
    AuthenticationError,
    TokenInvalidError,
    store_errors,
)
from clinicauth.service.lockout import CredentialStore, LockoutGuard
from clinicauth.service.sessions import (
    RefreshedAccessToken,
    SessionManager,
    TokenPair,
    TokenStore,
)
from clinicauth.storage.models import Account, TokenRecord

logger = get_logger(__name__)


class AuthStore(CredentialStore, TokenStore, Protocol):
    def set_password_hash(self, account_id: str, password_hash: str) -> None: ...


@dataclass(frozen=True)
class LoginResult:
    account: Account
    tokens: TokenPair


class AuthService:
    """Password login on top of the lockout guard and the session manager."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        lockout: Optional[LockoutGuard] = None,
        sessions: Optional[SessionManager] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.lockout = lockout or LockoutGuard(store, settings, clock=clock)
        self.sessions = sessions or SessionManager(store, settings, clock=clock)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def set_password(self, account_id: str, password: str) -> None:
        """Hash and store a new password for an account."""
        with store_errors("set_password"):
            self.store.set_password_hash(account_id, self.hash_password(password))

    def verify_password(self, account: Account, password: str) -> bool:
        if not account.password_hash:
            self.logger.warning("password_record_missing", account_id=account.id)
            self._verify_dummy(password)
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable", account_id=account.id)
            return False

    def _verify_dummy(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass

    def login(
        self, email: str, password: str, *, remember_me: bool = False
    ) -> LoginResult:
        with log_context(email=email):
            lock = self.lockout.is_account_locked(email)
            if lock.locked:
                self.logger.info("login_refused_locked", minutes_remaining=lock.minutes_remaining)
                raise AccountLockedError(lock.minutes_remaining, lock.lock_until)

            with store_errors("login"):
                account = self.store.find_by_email(email)
            if account is None:
                # same Argon2 cost as a wrong password for a real account
                self._verify_dummy(password)
                verified = False
            else:
                verified = self.verify_password(account, password)

            if not verified:
                attempt = self.lockout.record_failed_attempt(email)
                self.logger.info("login_failed", locked=attempt.locked)
                if attempt.locked:
                    raise AccountLockedError(
                        self.settings.lockout_minutes, attempt.lock_until
                    )
                raise AuthenticationError(
                    "invalid credentials",
                    detail={"attempts_remaining": attempt.attempts_remaining},
                )

            with log_context(account_id=account.id):
                self.lockout.reset_failed_attempts(account.id)
                tokens = self.sessions.create_token_pair(account, remember_me)
                self.logger.info("login_succeeded", remember_me=remember_me)
            return LoginResult(account=account, tokens=tokens)

    def refresh(self, refresh_token: str) -> RefreshedAccessToken:
        return self.sessions.refresh_access_token(refresh_token)

    def logout(self, access_token: str) -> bool:
        return self.sessions.revoke_token(access_token)

    def logout_everywhere(
        self, account_id: str, except_token: Optional[str] = None
    ) -> int:
        return self.sessions.revoke_all_user_tokens(account_id, except_token)

    def authenticate(self, authorization: Optional[str]) -> TokenRecord:
        token = self._extract_bearer(authorization)
        if not token:
            raise TokenInvalidError()
        record = self.sessions.require_valid_token(token)
        # later events of the caller's request carry the account; callers
        # clear contextvars when a request starts
        structlog.contextvars.bind_contextvars(account_id=record.owner_id)
        return record

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
