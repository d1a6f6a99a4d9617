from __future__ import annotations

import contextlib
import json
import os
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from clinicauth.logging import get_logger
from clinicauth.storage.errors import ConstraintViolation, StoreError, StoreUnavailable
from clinicauth.storage.models import (
    TOKEN_PATCHABLE_FIELDS,
    Account,
    TokenFilter,
    TokenRecord,
)

# (table, key, row before the write or None if the key did not exist)
_UndoEntry = Tuple[Dict[str, Any], str, Optional[Any]]


class MemoryStore:
    """In-process credential and token store.

    Used for tests and single-process deployments. All operations serialise
    on one re-entrant lock. Every write runs inside ``transaction()``, which
    records the previous version of each row it touches and puts them back
    if the block raises or the snapshot on disk cannot be written.
    """

    def __init__(
        self, fs_root: str | None = None, *, lock_timeout: float = 5.0
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.tokens: Dict[str, TokenRecord] = {}
        self.lock_timeout = lock_timeout
        # RLock so transaction() can wrap the regular store methods
        self._data_lock = threading.RLock()
        self._journals: List[List[_UndoEntry]] = []
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @contextlib.contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._data_lock.acquire(timeout=self.lock_timeout):
            raise StoreUnavailable(
                "memory store lock not acquired in time",
                {"timeout_seconds": self.lock_timeout},
            )
        try:
            yield
        finally:
            self._data_lock.release()

    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._locked():
            journal: List[_UndoEntry] = []
            self._journals.append(journal)
            try:
                yield self
                if len(self._journals) == 1:
                    self._persist_state()
            except BaseException:
                self._journals.pop()
                self._undo(journal)
                raise
            self._journals.pop()
            if self._journals:
                # the enclosing transaction may still roll these writes back
                self._journals[-1].extend(journal)

    def _remember(self, table: Dict[str, Any], key: str) -> None:
        previous = table.get(key)
        self._journals[-1].append(
            (table, key, replace(previous) if previous is not None else None)
        )

    @staticmethod
    def _undo(journal: List[_UndoEntry]) -> None:
        for table, key, previous in reversed(journal):
            if previous is None:
                table.pop(key, None)
            else:
                table[key] = previous

    # accounts
    def create_account(self, email: str, password_hash: str | None = None) -> Account:
        with self.transaction():
            if any(acc.email == email for acc in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account.new(email, password_hash=password_hash)
            self._remember(self.accounts, account.id)
            self.accounts[account.id] = account
            return replace(account)

    def find_by_email(self, email: str, *, for_update: bool = False) -> Optional[Account]:
        with self._locked():
            for account in self.accounts.values():
                if account.email == email:
                    return replace(account)
            return None

    def find_by_id(self, account_id: str, *, for_update: bool = False) -> Optional[Account]:
        with self._locked():
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def save(self, account: Account) -> None:
        with self.transaction():
            if account.id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account.id})
            self._remember(self.accounts, account.id)
            self.accounts[account.id] = replace(account)

    def set_password_hash(self, account_id: str, password_hash: str) -> None:
        with self.transaction():
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            self._remember(self.accounts, account_id)
            self.accounts[account_id] = replace(
                self.accounts[account_id], password_hash=password_hash
            )

    # tokens
    def create_token(self, record: TokenRecord) -> TokenRecord:
        with self.transaction():
            if record.owner_id not in self.accounts:
                raise ConstraintViolation("token owner missing", {"owner_id": record.owner_id})
            for existing in self.tokens.values():
                if (
                    existing.access_token == record.access_token
                    or existing.refresh_token == record.refresh_token
                ):
                    raise ConstraintViolation("token already exists", {"id": existing.id})
            self._remember(self.tokens, record.id)
            self.tokens[record.id] = replace(record)
            return replace(record)

    def find_by_access_token(self, token: str) -> Optional[TokenRecord]:
        with self._locked():
            for record in self.tokens.values():
                if record.access_token == token:
                    return replace(record)
            return None

    def find_by_refresh_token(self, token: str) -> Optional[TokenRecord]:
        with self._locked():
            for record in self.tokens.values():
                if record.refresh_token == token:
                    return replace(record)
            return None

    def query_active(self, account_id: str, now: datetime) -> List[TokenRecord]:
        flt = TokenFilter(owner_id=account_id, active_at=now)
        with self._locked():
            rows = [replace(r) for r in self.tokens.values() if flt.matches(r)]
        return sorted(rows, key=lambda r: r.created_at)

    def count_tokens(self, flt: TokenFilter) -> int:
        with self._locked():
            return sum(1 for r in self.tokens.values() if flt.matches(r))

    def update_many(self, flt: TokenFilter, patch: Dict[str, Any]) -> int:
        unknown = set(patch) - TOKEN_PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported token fields: {sorted(unknown)}")
        with self.transaction():
            matched = [tid for tid, r in self.tokens.items() if flt.matches(r)]
            for tid in matched:
                self._remember(self.tokens, tid)
                self.tokens[tid] = replace(self.tokens[tid], **patch)
            return len(matched)

    def delete_tokens(self, flt: TokenFilter) -> int:
        with self.transaction():
            stale = [tid for tid, r in self.tokens.items() if flt.matches(r)]
            for tid in stale:
                self._remember(self.tokens, tid)
                del self.tokens[tid]
            return len(stale)

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StoreError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.tokens = {t["id"]: self._deserialize_token(t) for t in data.get("tokens", [])}
        self.logger.info(
            "memory_store_state_loaded",
            accounts=len(self.accounts),
            tokens=len(self.tokens),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "failed_attempts": account.failed_attempts,
            "locked_until": self._serialize_datetime(account.locked_until),
            "password_hash": account.password_hash,
            "created_at": self._serialize_datetime(account.created_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            failed_attempts=int(data.get("failed_attempts", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            password_hash=data.get("password_hash"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_token(self, record: TokenRecord) -> dict:
        return {
            "id": record.id,
            "owner_id": record.owner_id,
            "access_token": record.access_token,
            "refresh_token": record.refresh_token,
            "revoked": record.revoked,
            "access_expires_at": self._serialize_datetime(record.access_expires_at),
            "refresh_expires_at": self._serialize_datetime(record.refresh_expires_at),
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_token(self, data: dict) -> TokenRecord:
        return TokenRecord(
            id=str(data["id"]),
            owner_id=str(data["owner_id"]),
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            revoked=bool(data.get("revoked", False)),
            access_expires_at=self._deserialize_datetime(data["access_expires_at"]),
            refresh_expires_at=self._deserialize_datetime(data["refresh_expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
