from datetime import timedelta

import pytest
from psycopg import errors

from warden.storage.errors import ConstraintViolation, StoreUnavailable
from warden.storage.models import (
    AuditCategory,
    AuditQuery,
    BackupCode,
    MFAEnrollment,
    MFAMethod,
    TokenKind,
    utcnow,
)
from warden.storage.postgres import REQUIRED_TABLES, PostgresStore


class StubCursor:
    def __init__(self, rows, rowcount):
        self.rows = rows
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class StubConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=()):
        self.pool.statements.append((" ".join(sql.split()), tuple(params)))
        if self.pool.raises is not None:
            raise self.pool.raises
        rows = self.pool.responses.pop(0) if self.pool.responses else []
        return StubCursor(rows, len(rows))


class StubPool:
    """Connection pool stand-in that records SQL and replays queued result rows."""

    def __init__(self, *responses, raises=None):
        self.responses = list(responses)
        self.statements = []
        self.raises = raises
        self.opened = 0

    def connection(self):
        self.opened += 1
        return StubConnection(self)


def _store(*responses, raises=None):
    store = PostgresStore("postgresql://unused", pool=StubPool(*responses, raises=raises), verify_schema=False)
    return store, store.pool


class TestSchemaCheck:
    def test_missing_tables_are_reported(self):
        present = [[{"oid": "x"}]] * (len(REQUIRED_TABLES) - 1)
        pool = StubPool(*present, [{"oid": None}])

        with pytest.raises(RuntimeError, match=REQUIRED_TABLES[-1]):
            PostgresStore("postgresql://unused", pool=pool)

    def test_unreachable_database(self):
        with pytest.raises(StoreUnavailable):
            PostgresStore("postgresql://unused", pool=StubPool(raises=errors.OperationalError("down")))


class TestIdentities:
    def test_duplicate_email_becomes_constraint_violation(self):
        store, _ = _store(raises=errors.UniqueViolation("duplicate key"))

        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_identity("alice@example.com", "hash")

        assert excinfo.value.detail == {"field": "email"}

    def test_rows_hydrate_and_ignore_extra_columns(self):
        store, _ = _store([{"id": "id-1", "email": "alice@example.com", "legacy_column": 1}])

        identity = store.get_identity("id-1")

        assert identity.id == "id-1"
        assert identity.email == "alice@example.com"
        assert store.get_identity("missing") is None

    def test_update_rejects_unknown_columns(self):
        store, pool = _store()

        with pytest.raises(ValueError):
            store.update_identity("id-1", email_verified=True, is_admin=True)
        assert pool.statements == []

    def test_update_builds_assignments_from_fields(self):
        store, pool = _store([{"id": "id-1", "email": "a@example.com", "is_locked": False}])

        store.update_identity("id-1", is_locked=False)

        sql, params = pool.statements[0]
        assert sql.startswith("UPDATE app_identity SET is_locked = %s, updated_at = %s WHERE id = %s")
        assert params[0] is False
        assert params[-1] == "id-1"


class TestConditionalUpdates:
    def test_revoke_token_only_wins_once(self):
        store, pool = _store([{"id": "tok-1"}], [])
        now = utcnow()

        assert store.revoke_token("tok-1", now, replaced_by="tok-2") is True
        assert store.revoke_token("tok-1", now) is False
        assert "AND NOT revoked" in pool.statements[0][0]

    def test_challenge_attempt_claim_is_guarded(self):
        store, pool = _store([])

        assert store.claim_challenge_attempt("ch-1") is False
        assert "attempts_remaining > 0" in pool.statements[0][0]

    def test_redeem_stops_when_invitation_is_taken(self):
        store, pool = _store([])

        assert store.redeem_invitation("inv-1", "id-1", utcnow()) is None
        assert len(pool.statements) == 1

    def test_expired_tokens_are_counted_by_kind(self):
        store, _ = _store([{"kind": "refresh"}, {"kind": "refresh"}, {"kind": "remember_me"}])

        assert store.delete_expired_tokens(utcnow()) == {"refresh": 2, "remember_me": 1}

    def test_token_kind_is_hydrated_as_enum(self):
        now = utcnow()
        store, _ = _store(
            [
                {
                    "id": "tok-1",
                    "identity_id": "id-1",
                    "token_digest": "d",
                    "expires_at": now + timedelta(days=1),
                    "kind": "remember_me",
                }
            ]
        )

        assert store.get_token("tok-1").kind is TokenKind.REMEMBER_ME


class TestAuditQueries:
    def test_filters_become_parameters(self):
        store, pool = _store([])
        start = utcnow()

        store.query_audit_events(
            AuditQuery(identity_id="id-1", category=AuditCategory.SECURITY, start=start, limit=10, offset=5)
        )

        sql, params = pool.statements[0]
        assert sql == (
            "SELECT * FROM audit_event WHERE identity_id = %s AND category = %s AND created_at >= %s "
            "ORDER BY created_at DESC LIMIT %s OFFSET %s"
        )
        assert params == ("id-1", "security", start, 10, 5)


class TestMFA:
    def test_totp_enrollment_and_codes_share_one_connection(self):
        store, pool = _store()
        now = utcnow()
        enrollment = MFAEnrollment(
            id="enr-1", identity_id="id-1", method=MFAMethod.TOTP, secret="sealed", created_at=now
        )
        codes = [
            BackupCode(id=f"bc-{i}", identity_id="id-1", code_hash=f"h{i}", created_at=now)
            for i in range(2)
        ]

        store.begin_totp_enrollment(enrollment, codes)

        assert pool.opened == 1
        assert [sql.split(" (")[0] for sql, _ in pool.statements] == [
            "DELETE FROM mfa_enrollment WHERE identity_id = %s AND method = %s",
            "INSERT INTO mfa_enrollment",
            "DELETE FROM mfa_backup_code WHERE identity_id = %s",
            "INSERT INTO mfa_backup_code",
            "INSERT INTO mfa_backup_code",
        ]

    def test_clear_mfa_stamps_the_given_time(self):
        store, pool = _store()
        now = utcnow() - timedelta(days=3)

        store.clear_mfa("id-1", now)

        sql, params = pool.statements[-1]
        assert sql == "UPDATE app_identity SET mfa_enabled = FALSE, updated_at = %s WHERE id = %s"
        assert params == (now, "id-1")


class TestFailedLogins:
    def test_counter_update_uses_the_given_time(self):
        store, pool = _store([{"id": "id-1", "email": "a@example.com", "failed_login_attempts": 1}])
        now = utcnow() - timedelta(hours=1)
        locked_until = now + timedelta(minutes=30)

        identity = store.record_failed_login("id-1", now, threshold=5, locked_until=locked_until)

        sql, params = pool.statements[0]
        assert "now()" not in sql
        assert params == (5, 5, locked_until, now, "id-1")
        assert identity.failed_login_attempts == 1
