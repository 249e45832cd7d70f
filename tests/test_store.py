"""
tests/test_store.py -- Unit tests for the SQLAlchemy Core repository (auth/store.py).

Covers:
  - email normalization and the unique-email constraint
  - secret history push and trim
  - token_version increments
  - compare-and-swap writes: lockout revisions, fingerprint swaps,
    invitation consumption, reset-token and verification-challenge consumption
  - datetime round-trip keeps tzinfo
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.errors import ConflictError, StoreUnavailableError, ValidationError
from auth.models import Account, AccountStatus, EmailVerification, Invitation, LockoutRecord, Session
from auth.permissions import Role
from auth.store import AuthStore, normalize_email


def _account(email: str = "user@example.com", **kwargs) -> Account:
    return Account(email=email, hashed_secret="$2b$04$placeholder", **kwargs)


class TestAccounts:
    def test_create_assigns_id_and_normalizes_email(self, store) -> None:
        account = store.create_account(_account("  Mixed@Example.COM "))
        assert account.id
        assert account.email == "mixed@example.com"
        assert store.get_by_email("MIXED@example.com").id == account.id

    def test_duplicate_email_conflicts(self, store) -> None:
        store.create_account(_account("dup@example.com"))
        with pytest.raises(ConflictError):
            store.create_account(_account("DUP@example.com"))

    def test_has_accounts(self, store) -> None:
        assert store.has_accounts() is False
        store.create_account(_account())
        assert store.has_accounts() is True

    def test_round_trip_preserves_fields(self, store, clock) -> None:
        created = store.create_account(_account(role=Role.ADVOCATE, status=AccountStatus.PENDING_VERIFICATION), now=clock())
        loaded = store.get_by_id(created.id)
        assert loaded.role is Role.ADVOCATE
        assert loaded.status is AccountStatus.PENDING_VERIFICATION
        assert loaded.created_at == clock()
        assert loaded.created_at.tzinfo is not None

    def test_list_accounts_ordered_by_email(self, store) -> None:
        for email in ("c@example.com", "a@example.com", "b@example.com"):
            store.create_account(_account(email))
        assert [a.email for a in store.list_accounts()] == ["a@example.com", "b@example.com", "c@example.com"]

    def test_count_active_with_role(self, store) -> None:
        store.create_account(_account("a@example.com", role=Role.SUPER_ADMIN))
        store.create_account(_account("b@example.com", role=Role.SUPER_ADMIN, status=AccountStatus.DEACTIVATED))
        store.create_account(_account("c@example.com", role=Role.ADMIN))
        assert store.count_active_with_role(Role.SUPER_ADMIN) == 1

    def test_token_version_increments(self, store) -> None:
        account = store.create_account(_account())
        assert store.update_token_version(account.id) == 1
        assert store.update_token_version(account.id) == 2
        assert store.update_token_version("missing") is None

    def test_update_status_records_approver(self, store) -> None:
        account = store.create_account(_account(status=AccountStatus.PENDING_VERIFICATION))
        assert store.update_status(account.id, AccountStatus.ACTIVE, approved_by="admin-id") is True
        loaded = store.get_by_id(account.id)
        assert loaded.status is AccountStatus.ACTIVE
        assert loaded.created_by == "admin-id"

    def test_update_role(self, store) -> None:
        account = store.create_account(_account())
        store.update_role(account.id, Role.STAFF)
        assert store.get_by_id(account.id).role is Role.STAFF

    def test_writes_use_the_given_timestamp(self, store, clock) -> None:
        account = store.create_account(_account(), now=clock())
        later = clock() + timedelta(days=3)
        store.update_token_version(account.id, later)
        assert store.get_by_id(account.id).updated_at == later
        store.update_status(account.id, AccountStatus.DEACTIVATED, now=later + timedelta(hours=1))
        assert store.get_by_id(account.id).updated_at == later + timedelta(hours=1)

    def test_normalize_email(self) -> None:
        assert normalize_email("  A@B.Co ") == "a@b.co"


class TestSecretHistory:
    def test_old_hash_is_pushed(self, store) -> None:
        account = store.create_account(_account())
        assert store.update_secret(account.id, "hash-2", history_limit=5) is True
        assert store.get_by_id(account.id).hashed_secret == "hash-2"
        assert store.get_secret_history(account.id) == ["$2b$04$placeholder"]

    def test_history_is_trimmed_newest_first(self, store) -> None:
        account = store.create_account(_account())
        for i in range(2, 6):
            store.update_secret(account.id, f"hash-{i}", history_limit=2)
        assert store.get_secret_history(account.id) == ["hash-4", "hash-3"]

    def test_zero_limit_keeps_no_history(self, store) -> None:
        account = store.create_account(_account())
        store.update_secret(account.id, "hash-2", history_limit=0)
        assert store.get_secret_history(account.id) == []

    def test_unknown_account(self, store) -> None:
        assert store.update_secret("missing", "h", history_limit=5) is False

    def test_set_secret_hash_skips_history(self, store) -> None:
        account = store.create_account(_account())
        store.set_secret_hash(account.id, "rehashed")
        assert store.get_secret_history(account.id) == []


class TestLockoutRecords:
    def test_missing_record_is_zero(self, store) -> None:
        record = store.get_lockout("acct")
        assert record == LockoutRecord(account_id="acct")

    def test_cas_write(self, store, clock) -> None:
        record = LockoutRecord(account_id="acct", failed_attempts=1)
        assert store.save_lockout(record, expected_revision=0) is True
        assert record.revision == 1

        record.failed_attempts = 2
        record.locked_until = clock() + timedelta(minutes=5)
        assert store.save_lockout(record, expected_revision=1) is True
        loaded = store.get_lockout("acct")
        assert loaded.failed_attempts == 2
        assert loaded.locked_until == clock() + timedelta(minutes=5)
        assert loaded.revision == 2

    def test_stale_revision_loses(self, store) -> None:
        store.save_lockout(LockoutRecord(account_id="acct", failed_attempts=1), 0)
        assert store.save_lockout(LockoutRecord(account_id="acct", failed_attempts=9), 0) is False
        assert store.save_lockout(LockoutRecord(account_id="acct", failed_attempts=9), 5) is False
        assert store.get_lockout("acct").failed_attempts == 1


class TestSessions:
    def _session(self, clock, session_id: str = "s1", account_id: str = "acct", fingerprint: str = "fp") -> Session:
        now = clock()
        return Session(
            id=session_id,
            account_id=account_id,
            fingerprint=fingerprint,
            issued_at=now,
            expires_at=now + timedelta(hours=1),
            last_used_at=now,
            metadata="curl/8.0",
        )

    def test_round_trip(self, store, clock) -> None:
        store.insert_session(self._session(clock))
        loaded = store.get_session("s1")
        assert loaded == self._session(clock)

    def test_swap_fingerprint_requires_expected(self, store, clock) -> None:
        store.insert_session(self._session(clock))
        assert store.swap_fingerprint("s1", "wrong", "new", clock()) is False
        assert store.swap_fingerprint("s1", "fp", "new", clock()) is True
        assert store.swap_fingerprint("s1", "fp", "newer", clock()) is False
        assert store.get_session("s1").fingerprint == "new"

    def test_delete_account_sessions_can_spare_one(self, store, clock) -> None:
        for sid in ("s1", "s2", "s3"):
            store.insert_session(self._session(clock, sid))
        store.insert_session(self._session(clock, "other", account_id="someone"))
        assert store.delete_account_sessions("acct", except_session_id="s2") == 2
        assert [s.id for s in store.list_sessions("acct")] == ["s2"]
        assert store.get_session("other") is not None

    def test_delete_expired(self, store, clock) -> None:
        store.insert_session(self._session(clock, "s1"))
        assert store.delete_expired_sessions(clock() + timedelta(minutes=59)) == 0
        assert store.delete_expired_sessions(clock() + timedelta(hours=1)) == 1

    def test_delete_sessions_empty_list(self, store) -> None:
        assert store.delete_sessions([]) == 0


class TestInvitations:
    def _invitation(self, clock, **kwargs) -> Invitation:
        values = dict(
            email="Invitee@Example.com",
            role=Role.STAFF,
            code_hash="c" * 64,
            created_by="admin",
            created_at=clock(),
            expires_at=clock() + timedelta(days=1),
        )
        values.update(kwargs)
        return Invitation(**values)

    def test_create_and_lookup(self, store, clock) -> None:
        invitation = store.create_invitation(self._invitation(clock))
        assert invitation.email == "invitee@example.com"
        assert store.get_invitation_by_code_hash("c" * 64).id == invitation.id

    def test_consumed_once(self, store, clock) -> None:
        invitation = store.create_invitation(self._invitation(clock))
        store.create_account(_account("invitee@example.com"), consume_invitation=invitation.id, now=clock())
        with pytest.raises(ValidationError):
            store.create_account(_account("second@example.com"), consume_invitation=invitation.id, now=clock())
        assert store.get_by_email("second@example.com") is None
        used = store.get_invitation(invitation.id)
        assert used.used_at == clock()
        assert used.used_by == store.get_by_email("invitee@example.com").id

    def test_expired_invitation_not_consumed(self, store, clock) -> None:
        invitation = store.create_invitation(self._invitation(clock))
        with pytest.raises(ValidationError):
            store.create_account(
                _account("invitee@example.com"), consume_invitation=invitation.id, now=clock() + timedelta(days=2)
            )

    def test_revoke(self, store, clock) -> None:
        invitation = store.create_invitation(self._invitation(clock))
        assert store.revoke_invitation(invitation.id, clock()) is True
        assert store.revoke_invitation(invitation.id, clock()) is False
        assert store.get_invitation(invitation.id).is_pending(clock()) is False


class TestResetTokens:
    def test_consumed_once(self, store, clock) -> None:
        store.create_reset_token("h1", "acct", clock() + timedelta(minutes=10), clock())
        assert store.find_reset_token("h1", clock()) == "acct"
        assert store.consume_reset_token("h1", clock()) == "acct"
        assert store.consume_reset_token("h1", clock()) is None
        assert store.find_reset_token("h1", clock()) is None

    def test_expired(self, store, clock) -> None:
        store.create_reset_token("h1", "acct", clock() + timedelta(minutes=10), clock())
        assert store.consume_reset_token("h1", clock() + timedelta(minutes=10)) is None

    def test_new_token_retires_older(self, store, clock) -> None:
        store.create_reset_token("h1", "acct", clock() + timedelta(minutes=10), clock())
        store.create_reset_token("h2", "acct", clock() + timedelta(minutes=10), clock())
        assert store.find_reset_token("h1", clock()) is None
        assert store.find_reset_token("h2", clock()) == "acct"


class TestEmailVerifications:
    def _challenge(self, clock, account_id: str = "acct", token_hash: str = "t1") -> EmailVerification:
        return EmailVerification(
            account_id=account_id,
            token_hash=token_hash,
            code_hash="c1",
            sent_at=clock(),
            expires_at=clock() + timedelta(hours=1),
        )

    def test_link_consumed_once(self, store, clock) -> None:
        store.save_email_verification(self._challenge(clock))
        assert store.consume_email_verification("t1", clock()) == "acct"
        assert store.consume_email_verification("t1", clock()) is None
        assert store.get_email_verification("acct").used_at == clock()

    def test_expired_link(self, store, clock) -> None:
        store.save_email_verification(self._challenge(clock))
        assert store.consume_email_verification("t1", clock() + timedelta(hours=1)) is None

    def test_new_challenge_replaces_older(self, store, clock) -> None:
        store.save_email_verification(self._challenge(clock, token_hash="t1"))
        store.save_email_verification(self._challenge(clock, token_hash="t2"))
        assert store.consume_email_verification("t1", clock()) is None
        assert store.get_email_verification("acct").token_hash == "t2"

    def test_code_misses_are_counted_until_retired(self, store, clock) -> None:
        store.save_email_verification(self._challenge(clock))
        assert store.consume_email_verification_code("acct", "wrong", clock(), max_attempts=2) is False
        assert store.get_email_verification("acct").attempts == 1
        assert store.consume_email_verification_code("acct", "wrong", clock(), max_attempts=2) is False
        assert store.consume_email_verification_code("acct", "c1", clock(), max_attempts=2) is False

    def test_code_consumed_once(self, store, clock) -> None:
        store.save_email_verification(self._challenge(clock))
        assert store.consume_email_verification_code("acct", "c1", clock(), max_attempts=5) is True
        assert store.consume_email_verification_code("acct", "c1", clock(), max_attempts=5) is False

    def test_mark_verified_activates_only_pending(self, store, clock) -> None:
        pending = store.create_account(_account("p@example.com", status=AccountStatus.PENDING_VERIFICATION))
        disabled = store.create_account(_account("d@example.com", status=AccountStatus.DEACTIVATED))

        assert store.mark_email_verified(pending.id, clock(), activate=True) is True
        assert store.mark_email_verified(disabled.id, clock(), activate=True) is True

        assert store.get_by_id(pending.id).status is AccountStatus.ACTIVE
        assert store.get_by_id(pending.id).email_verified_at == clock()
        assert store.get_by_id(disabled.id).status is AccountStatus.DEACTIVATED
        assert store.mark_email_verified("missing", clock(), activate=True) is False

    def test_mark_verified_without_activation(self, store, clock) -> None:
        pending = store.create_account(_account(status=AccountStatus.PENDING_VERIFICATION))
        store.mark_email_verified(pending.id, clock(), activate=False)
        loaded = store.get_by_id(pending.id)
        assert loaded.email_verified
        assert loaded.status is AccountStatus.PENDING_VERIFICATION


class TestAvailability:
    def test_ping(self, store) -> None:
        assert store.ping() is True

    def test_unreachable_database_raises_store_unavailable(self, tmp_path) -> None:
        with pytest.raises(StoreUnavailableError):
            AuthStore(f"sqlite:///{tmp_path / 'missing-dir' / 'auth.db'}")
