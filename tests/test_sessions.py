"""Unit tests for the session manager.

Tests for:
- Token generation
- Token pair issuance and the single active session rule
- Access token refresh
- Revocation and cleanup
- Validation
"""

import copy
import string
from datetime import timedelta

import pytest

from clinicauth.service.errors import InfrastructureError, TokenInvalidError
from clinicauth.service.sessions import SessionManager
from clinicauth.storage.errors import StoreUnavailable
from clinicauth.storage.memory import MemoryStore
from clinicauth.storage.models import TokenRecord


def _active_rows(store, account_id, now):
    return [r for r in store.tokens.values() if r.owner_id == account_id and r.is_active(now)]


def _insert_token(store, account, now, *, access_minutes=15, refresh_days=1, revoked=False):
    record = TokenRecord.new(
        account.id,
        SessionManager.generate_access_token(),
        SessionManager.generate_refresh_token(),
        access_expires_at=now + timedelta(minutes=access_minutes),
        refresh_expires_at=now + timedelta(days=refresh_days),
    )
    record.revoked = revoked
    return store.create_token(record)


class TestTokenGeneration:
    """Tests for opaque token generation."""

    def test_access_token_is_urlsafe_128_bit(self):
        token = SessionManager.generate_access_token()

        assert len(token) == 22
        assert set(token) <= set(string.ascii_letters + string.digits + "-_")

    def test_refresh_token_is_hex_256_bit(self):
        token = SessionManager.generate_refresh_token()

        assert len(token) == 64
        assert set(token) <= set(string.hexdigits.lower())

    def test_tokens_are_unique(self):
        tokens = {SessionManager.generate_access_token() for _ in range(200)}

        assert len(tokens) == 200


class TestCreateTokenPair:
    """Tests for token pair issuance."""

    def test_expiries_without_remember_me(self, sessions, account, clock):
        pair = sessions.create_token_pair(account)

        assert pair.access_expires_at == clock.now + timedelta(minutes=15)
        assert pair.refresh_expires_at == clock.now + timedelta(days=1)

    def test_expiries_with_remember_me(self, sessions, account, clock):
        pair = sessions.create_token_pair(account, remember_me=True)

        assert pair.access_expires_at == clock.now + timedelta(minutes=15)
        assert pair.refresh_expires_at == clock.now + timedelta(days=30)

    def test_pair_is_persisted(self, sessions, account, memory_store):
        pair = sessions.create_token_pair(account)

        record = memory_store.find_by_access_token(pair.access_token)
        assert record.owner_id == account.id
        assert record.refresh_token == pair.refresh_token
        assert record.revoked is False

    def test_second_login_leaves_single_active_session(
        self, sessions, account, memory_store, clock
    ):
        first = sessions.create_token_pair(account)
        second = sessions.create_token_pair(account)

        active = _active_rows(memory_store, account.id, clock.now)
        assert [r.access_token for r in active] == [second.access_token]
        assert sessions.validate_token(first.access_token) is None
        assert sessions.validate_token(second.access_token) is not None

    def test_other_accounts_untouched(self, sessions, account, memory_store, clock):
        other = memory_store.create_account("b@x.com")
        other_pair = sessions.create_token_pair(other)

        sessions.create_token_pair(account)

        assert sessions.validate_token(other_pair.access_token) is not None

    def test_stale_rows_are_cleaned_up(self, sessions, account, memory_store, clock):
        _insert_token(memory_store, account, clock.now, revoked=True)
        _insert_token(memory_store, account, clock.now, access_minutes=-1, refresh_days=-1)

        sessions.create_token_pair(account)

        assert len([r for r in memory_store.tokens.values() if r.owner_id == account.id]) == 1

    def test_previous_refresh_token_dies_with_new_login(self, sessions, account, clock):
        """An access-expired pair must not be refreshable into a second session."""
        first = sessions.create_token_pair(account)
        clock.advance(minutes=20)

        sessions.create_token_pair(account)

        with pytest.raises(TokenInvalidError):
            sessions.refresh_access_token(first.refresh_token)

    def test_cleanup_failure_does_not_block_login(self, settings, clock):
        class FlakyCleanupStore(MemoryStore):
            def delete_tokens(self, flt):
                raise StoreUnavailable("delete timed out")

        store = FlakyCleanupStore()
        acc = store.create_account("a@x.com")
        manager = SessionManager(store, settings, clock=clock)

        manager.create_token_pair(acc)
        pair = manager.create_token_pair(acc)

        assert [r.access_token for r in _active_rows(store, acc.id, clock.now)] == [
            pair.access_token
        ]


class TestRefreshAccessToken:
    """Tests for access token rotation."""

    def test_refresh_issues_new_access_token(self, sessions, account, memory_store, clock):
        pair = sessions.create_token_pair(account)
        clock.advance(minutes=5)

        refreshed = sessions.refresh_access_token(pair.refresh_token)

        assert refreshed.access_token != pair.access_token
        assert refreshed.access_expires_at == clock.now + timedelta(minutes=15)
        record = memory_store.find_by_access_token(refreshed.access_token)
        assert record.refresh_token == pair.refresh_token
        assert record.refresh_expires_at == pair.refresh_expires_at

    def test_old_access_token_stops_working(self, sessions, account):
        pair = sessions.create_token_pair(account)

        refreshed = sessions.refresh_access_token(pair.refresh_token)

        assert sessions.validate_token(pair.access_token) is None
        assert sessions.validate_token(refreshed.access_token) is not None

    def test_refresh_after_access_expiry(self, sessions, account, clock):
        pair = sessions.create_token_pair(account)
        clock.advance(minutes=30)
        assert sessions.validate_token(pair.access_token) is None

        refreshed = sessions.refresh_access_token(pair.refresh_token)

        assert sessions.validate_token(refreshed.access_token) is not None

    def test_revoked_refresh_token_fails(self, sessions, account):
        pair = sessions.create_token_pair(account)
        sessions.revoke_token(pair.access_token)

        with pytest.raises(TokenInvalidError):
            sessions.refresh_access_token(pair.refresh_token)

    def test_expired_refresh_token_fails(self, sessions, account, clock):
        pair = sessions.create_token_pair(account)
        clock.advance(days=1, seconds=1)

        with pytest.raises(TokenInvalidError):
            sessions.refresh_access_token(pair.refresh_token)

    @pytest.mark.parametrize("token", ["", "not-a-real-token"])
    def test_unknown_refresh_token_fails(self, sessions, token):
        with pytest.raises(TokenInvalidError):
            sessions.refresh_access_token(token)


class TestRevocation:
    """Tests for revoking tokens."""

    def test_revoke_token(self, sessions, account):
        pair = sessions.create_token_pair(account)

        assert sessions.revoke_token(pair.access_token) is True
        assert sessions.validate_token(pair.access_token) is None

    def test_revoke_is_idempotent(self, sessions, account):
        pair = sessions.create_token_pair(account)
        sessions.revoke_token(pair.access_token)

        sessions.revoke_token(pair.access_token)

        assert sessions.validate_token(pair.access_token) is None

    def test_revoke_unknown_token_is_not_an_error(self, sessions):
        assert sessions.revoke_token("unknown") is False

    def test_revoke_all_user_tokens(self, sessions, account, memory_store, clock):
        for _ in range(3):
            _insert_token(memory_store, account, clock.now)

        assert sessions.revoke_all_user_tokens(account.id) == 3
        assert _active_rows(memory_store, account.id, clock.now) == []

    def test_revoke_all_keeps_excepted_token(self, sessions, account, memory_store, clock):
        keep = _insert_token(memory_store, account, clock.now)
        _insert_token(memory_store, account, clock.now)

        count = sessions.revoke_all_user_tokens(account.id, except_token=keep.access_token)

        assert count == 1
        assert sessions.validate_token(keep.access_token) is not None

    def test_revoke_all_skips_expired_rows(self, sessions, account, memory_store, clock):
        _insert_token(memory_store, account, clock.now, access_minutes=-5)

        assert sessions.revoke_all_user_tokens(account.id) == 0


class TestCleanup:
    """Tests for hard deletion of stale rows."""

    def test_cleanup_deletes_revoked_and_expired(self, sessions, account, memory_store, clock):
        live = _insert_token(memory_store, account, clock.now)
        _insert_token(memory_store, account, clock.now, revoked=True)
        _insert_token(memory_store, account, clock.now, access_minutes=-1)
        _insert_token(memory_store, account, clock.now, refresh_days=-1)

        assert sessions.cleanup_expired_tokens(account.id) == 3
        assert list(memory_store.tokens) == [live.id]

    def test_cleanup_nothing_to_do(self, sessions, account):
        sessions.create_token_pair(account)

        assert sessions.cleanup_expired_tokens(account.id) == 0


class TestValidateToken:
    """Tests for per-request validation."""

    def test_valid_token_returns_record(self, sessions, account):
        pair = sessions.create_token_pair(account)

        record = sessions.validate_token(pair.access_token)

        assert record.owner_id == account.id

    def test_expired_access_token(self, sessions, account, clock):
        pair = sessions.create_token_pair(account)
        clock.advance(minutes=15)

        assert sessions.validate_token(pair.access_token) is None

    @pytest.mark.parametrize("token", ["", "unknown"])
    def test_unknown_tokens(self, sessions, token):
        assert sessions.validate_token(token) is None

    def test_validate_does_not_write(self, sessions, account, memory_store):
        pair = sessions.create_token_pair(account)
        before = copy.deepcopy(memory_store.tokens)

        sessions.validate_token(pair.access_token)

        assert memory_store.tokens == before

    def test_require_valid_token_uniform_error(self, sessions, account, clock):
        revoked = sessions.create_token_pair(account)
        sessions.revoke_token(revoked.access_token)
        other = sessions.create_token_pair(account)
        clock.advance(minutes=16)

        messages = set()
        for token in ("missing", revoked.access_token, other.access_token):
            with pytest.raises(TokenInvalidError) as exc_info:
                sessions.require_valid_token(token)
            messages.add(str(exc_info.value))

        assert len(messages) == 1

    def test_store_failure_is_not_a_valid_token(self, settings, clock):
        class DownStore(MemoryStore):
            def find_by_access_token(self, token):
                raise StoreUnavailable("database unavailable")

        manager = SessionManager(DownStore(), settings, clock=clock)

        with pytest.raises(InfrastructureError):
            manager.validate_token("anything")

    def test_list_active_tokens(self, sessions, account):
        pair = sessions.create_token_pair(account)

        assert [r.access_token for r in sessions.list_active_tokens(account.id)] == [
            pair.access_token
        ]


class TestStoreWideCleanup:
    """Sweep of stale rows across every account."""

    def test_rows_of_absent_accounts_are_purged(self, sessions, account, memory_store, clock):
        dormant = memory_store.create_account("dormant@x.com")
        revoked = sessions.create_token_pair(dormant)
        sessions.revoke_token(revoked.access_token)
        sessions.create_token_pair(account)
        clock.advance(days=400)
        fresh = sessions.create_token_pair(memory_store.create_account("c@x.com"))

        assert sessions.count_all_expired_tokens() == 2
        assert sessions.cleanup_all_expired_tokens() == 2

        assert [r.access_token for r in memory_store.tokens.values()] == [fresh.access_token]

    def test_count_does_not_delete(self, sessions, account, memory_store, clock):
        _insert_token(memory_store, account, clock.now, revoked=True)

        assert sessions.count_all_expired_tokens() == 1
        assert len(memory_store.tokens) == 1

    def test_nothing_stale(self, sessions, account):
        sessions.create_token_pair(account)

        assert sessions.cleanup_all_expired_tokens() == 0

    def test_refreshable_session_survives(self, sessions, account, clock):
        tokens = sessions.create_token_pair(account, remember_me=True)
        clock.advance(days=3)

        assert sessions.cleanup_all_expired_tokens() == 0
        assert sessions.refresh_access_token(tokens.refresh_token).access_token

    def test_sweep_outage_surfaces(self, settings, clock):
        class DownStore(MemoryStore):
            def delete_tokens(self, flt):
                raise StoreUnavailable("database unavailable")

        manager = SessionManager(DownStore(), settings, clock=clock)

        with pytest.raises(InfrastructureError):
            manager.cleanup_all_expired_tokens()
