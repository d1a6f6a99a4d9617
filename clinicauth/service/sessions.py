from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, ContextManager, Dict, List, Optional, Protocol

from clinicauth.config import Settings
from clinicauth.logging import get_logger
from clinicauth.service.errors import InfrastructureError, TokenInvalidError, store_errors
from clinicauth.storage.models import Account, TokenFilter, TokenRecord, utcnow

logger = get_logger(__name__)


class TokenStore(Protocol):
    def create_token(self, record: TokenRecord) -> TokenRecord: ...

    def find_by_access_token(self, token: str) -> Optional[TokenRecord]: ...

    def find_by_refresh_token(self, token: str) -> Optional[TokenRecord]: ...

    def query_active(self, account_id: str, now: datetime) -> List[TokenRecord]: ...

    def update_many(self, flt: TokenFilter, patch: Dict[str, Any]) -> int: ...

    def count_tokens(self, flt: TokenFilter) -> int: ...

    def delete_tokens(self, flt: TokenFilter) -> int: ...

    def find_by_id(self, account_id: str, *, for_update: bool = False) -> Optional[Account]: ...

    def transaction(self) -> ContextManager[Any]: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass(frozen=True)
class RefreshedAccessToken:
    access_token: str
    access_expires_at: datetime


class SessionManager:
    """Issue, rotate, revoke and validate opaque token pairs.

    Each account holds at most one active pair: creating a pair revokes
    every outstanding pair of the account inside the same transaction that
    inserts the new one.
    """

    def __init__(
        self,
        store: TokenStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def generate_access_token() -> str:
        # 128 bits, URL-safe base64 (22 chars)
        return secrets.token_urlsafe(16)

    @staticmethod
    def generate_refresh_token() -> str:
        # 256 bits, hex (64 chars)
        return secrets.token_hex(32)

    def create_token_pair(self, account: Account, remember_me: bool = False) -> TokenPair:
        now = self._now()
        access_expires_at = now + self.settings.access_token_ttl
        refresh_expires_at = now + self.settings.refresh_token_ttl(remember_me)

        try:
            self.cleanup_expired_tokens(account.id)
        except InfrastructureError as exc:
            self.logger.warning(
                "token_cleanup_failed", account_id=account.id, error=exc.message
            )

        record = TokenRecord.new(
            account.id,
            self.generate_access_token(),
            self.generate_refresh_token(),
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )
        with store_errors("create_token_pair"), self.store.transaction():
            # serialises concurrent logins for the same account
            self.store.find_by_id(account.id, for_update=True)
            revoked = self.store.update_many(
                TokenFilter(owner_id=account.id, live_at=now), {"revoked": True}
            )
            self.store.create_token(record)

        self.logger.info(
            "token_pair_created",
            account_id=account.id,
            remember_me=remember_me,
            revoked_sessions=revoked,
        )
        return TokenPair(
            access_token=record.access_token,
            refresh_token=record.refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    def refresh_access_token(self, refresh_token: str) -> RefreshedAccessToken:
        if not refresh_token:
            raise TokenInvalidError()
        now = self._now()
        new_access_token = self.generate_access_token()
        access_expires_at = now + self.settings.access_token_ttl
        with store_errors("refresh_access_token"):
            updated = self.store.update_many(
                TokenFilter(refresh_token=refresh_token, refresh_valid_at=now),
                {"access_token": new_access_token, "access_expires_at": access_expires_at},
            )
        if not updated:
            raise TokenInvalidError()
        self.logger.info("access_token_refreshed")
        return RefreshedAccessToken(
            access_token=new_access_token, access_expires_at=access_expires_at
        )

    def revoke_token(self, access_token: str) -> bool:
        if not access_token:
            return False
        with store_errors("revoke_token"):
            updated = self.store.update_many(
                TokenFilter(access_token=access_token), {"revoked": True}
            )
        if updated:
            self.logger.info("token_revoked")
        return bool(updated)

    def revoke_all_user_tokens(
        self, account_id: str, except_token: Optional[str] = None
    ) -> int:
        """Revoke every active pair of an account.

        Args:
            account_id: The account whose sessions to revoke
            except_token: Optional access token to keep active (e.g. the caller's own)

        Returns:
            Number of sessions revoked
        """
        flt = TokenFilter(
            owner_id=account_id,
            active_at=self._now(),
            exclude_access_token=except_token,
        )
        with store_errors("revoke_all_user_tokens"):
            count = self.store.update_many(flt, {"revoked": True})
        if count:
            self.logger.info("user_tokens_revoked", account_id=account_id, count=count)
        return count

    def cleanup_expired_tokens(self, account_id: str) -> int:
        """Hard-delete revoked or expired rows of an account; returns the count."""

        with store_errors("cleanup_expired_tokens"):
            return self.store.delete_tokens(
                TokenFilter(owner_id=account_id, stale_at=self._now())
            )

    def count_all_expired_tokens(self) -> int:
        with store_errors("count_all_expired_tokens"):
            return self.store.count_tokens(TokenFilter(dead_at=self._now()))

    def cleanup_all_expired_tokens(self) -> int:
        """Store-wide sweep of rows that can no longer be used.

        Login only cleans up the account logging in; accounts that never come
        back are reclaimed here. Unlike the per-account cleanup it keeps rows
        whose refresh token is still valid, so a scheduled run does not end
        remember-me sessions. Meant to run periodically
        (``scripts/cleanup_tokens.py``).
        """

        with store_errors("cleanup_all_expired_tokens"):
            deleted = self.store.delete_tokens(TokenFilter(dead_at=self._now()))
        self.logger.info("expired_tokens_cleaned_up", deleted=deleted)
        return deleted

    def validate_token(self, access_token: str) -> Optional[TokenRecord]:
        if not access_token:
            return None
        with store_errors("validate_token"):
            record = self.store.find_by_access_token(access_token)
        if record is None or not record.is_active(self._now()):
            return None
        return record

    def require_valid_token(self, access_token: str) -> TokenRecord:
        record = self.validate_token(access_token)
        if record is None:
            raise TokenInvalidError()
        return record

    def list_active_tokens(self, account_id: str) -> List[TokenRecord]:
        with store_errors("list_active_tokens"):
            return self.store.query_active(account_id, self._now())
