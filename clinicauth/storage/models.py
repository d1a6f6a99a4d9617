from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    password_hash: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, password_hash: str | None = None) -> "Account":
        return cls(id=str(uuid.uuid4()), email=email, password_hash=password_hash)


@dataclass
class TokenRecord:
    id: str
    owner_id: str
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        owner_id: str,
        access_token: str,
        refresh_token: str,
        *,
        access_expires_at: datetime,
        refresh_expires_at: datetime,
    ) -> "TokenRecord":
        return cls(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and self.access_expires_at > now


# Columns a TokenStore may patch through update_many
TOKEN_PATCHABLE_FIELDS = frozenset({"revoked", "access_token", "access_expires_at"})


@dataclass(frozen=True)
class TokenFilter:
    """Declarative predicate over token rows.

    Every populated field narrows the match (logical AND):

    - ``active_at``: not revoked and access token unexpired at that instant
    - ``live_at``: not revoked and either token unexpired at that instant
    - ``refresh_valid_at``: not revoked and refresh token unexpired
    - ``stale_at``: revoked, or either token expired at that instant
    - ``dead_at``: revoked, or both tokens expired (no longer usable at all)
    """

    owner_id: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    exclude_access_token: Optional[str] = None
    active_at: Optional[datetime] = None
    live_at: Optional[datetime] = None
    refresh_valid_at: Optional[datetime] = None
    stale_at: Optional[datetime] = None
    dead_at: Optional[datetime] = None

    def matches(self, record: TokenRecord) -> bool:
        if self.owner_id is not None and record.owner_id != self.owner_id:
            return False
        if self.access_token is not None and record.access_token != self.access_token:
            return False
        if self.refresh_token is not None and record.refresh_token != self.refresh_token:
            return False
        if (
            self.exclude_access_token is not None
            and record.access_token == self.exclude_access_token
        ):
            return False
        if self.active_at is not None and not record.is_active(self.active_at):
            return False
        if self.live_at is not None and (
            record.revoked
            or (
                record.access_expires_at <= self.live_at
                and record.refresh_expires_at <= self.live_at
            )
        ):
            return False
        if self.refresh_valid_at is not None and (
            record.revoked or record.refresh_expires_at <= self.refresh_valid_at
        ):
            return False
        if self.stale_at is not None and not (
            record.revoked
            or record.access_expires_at <= self.stale_at
            or record.refresh_expires_at <= self.stale_at
        ):
            return False
        if self.dead_at is not None and not (
            record.revoked
            or (
                record.access_expires_at <= self.dead_at
                and record.refresh_expires_at <= self.dead_at
            )
        ):
            return False
        return True
