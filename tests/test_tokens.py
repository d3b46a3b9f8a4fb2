"""Unit tests for the token service.

Tests for:
- Access token issuance and stateless verification
- Refresh token rotation and reuse
- Remember-me tokens
- Bulk revocation and cleanup
"""

import base64
import json

from warden.service.errors import ErrorKind
from warden.storage.models import TokenKind


def _tamper_payload(token: str, **changes) -> str:
    header, payload, signature = token.split(".")
    padded = payload + "=" * (-len(payload) % 4)
    data = json.loads(base64.urlsafe_b64decode(padded))
    data.update(changes)
    forged = base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")
    return f"{header}.{forged}.{signature}"


class TestAccessTokens:
    """Tests for signed access tokens."""

    def test_issue_and_verify(self, tokens, identity):
        token = tokens.issue_access_token(identity, session_id="s-1")
        result = tokens.verify_access_token(token)

        assert result.ok
        assert result.value.subject == identity.id
        assert result.value.email == identity.email
        assert result.value.session_id == "s-1"
        assert result.value.token_id

    def test_expired_token_reports_expiry(self, tokens, identity, clock):
        token = tokens.issue_access_token(identity)
        clock.advance(minutes=16)

        result = tokens.verify_access_token(token)

        assert result.kind is ErrorKind.TOKEN_EXPIRED

    def test_tampered_payload_is_invalid(self, tokens, identity):
        token = tokens.issue_access_token(identity)
        forged = _tamper_payload(token, sub="someone-else")

        assert tokens.verify_access_token(forged).kind is ErrorKind.TOKEN_INVALID

    def test_alg_none_is_rejected(self, tokens, identity):
        token = tokens.issue_access_token(identity)
        _, payload, _ = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")

        assert tokens.verify_access_token(f"{header}.{payload}.").kind is ErrorKind.TOKEN_INVALID

    def test_garbage_is_invalid(self, tokens):
        assert tokens.verify_access_token("not-a-jwt").kind is ErrorKind.TOKEN_INVALID
        assert tokens.verify_access_token("").kind is ErrorKind.TOKEN_INVALID

    def test_wrong_audience_is_invalid(self, tokens, identity, settings):
        token = tokens.issue_access_token(identity)
        settings.jwt_audience = "another-app"

        assert tokens.verify_access_token(token).kind is ErrorKind.TOKEN_INVALID


class TestRefreshTokens:
    """Tests for opaque refresh tokens."""

    def test_store_keeps_only_digest(self, tokens, identity, store):
        issued = tokens.issue_refresh_token(identity.id)
        record = store.get_token(issued.record.id)

        assert record.token_digest != issued.value
        assert record.token_digest == tokens.digest(issued.value)

    def test_verify_live_token(self, tokens, identity):
        issued = tokens.issue_refresh_token(identity.id, user_agent="pytest", ip_address="10.0.0.1")
        result = tokens.verify_refresh_token(issued.value)

        assert result.ok
        assert result.value.identity_id == identity.id
        assert result.value.kind is TokenKind.REFRESH

    def test_unknown_token_is_invalid(self, tokens):
        assert tokens.verify_refresh_token("deadbeef").kind is ErrorKind.TOKEN_INVALID

    def test_expired_token_never_verifies(self, tokens, identity, clock):
        issued = tokens.issue_refresh_token(identity.id)
        clock.advance(days=8)

        assert tokens.verify_refresh_token(issued.value).kind is ErrorKind.TOKEN_EXPIRED

    def test_rotation_revokes_old_token(self, tokens, identity, store):
        issued = tokens.issue_refresh_token(identity.id)

        rotated = tokens.rotate_refresh_token(issued.value)

        assert rotated.ok
        assert rotated.value.value != issued.value
        assert tokens.verify_refresh_token(issued.value).kind is ErrorKind.TOKEN_REVOKED
        assert tokens.verify_refresh_token(rotated.value.value).ok
        assert store.get_token(issued.record.id).replaced_by == rotated.value.record.id

    def test_second_rotation_of_same_token_fails(self, tokens, identity):
        issued = tokens.issue_refresh_token(identity.id)
        assert tokens.rotate_refresh_token(issued.value).ok

        again = tokens.rotate_refresh_token(issued.value)

        assert again.kind is ErrorKind.TOKEN_REVOKED

    def test_revoke_is_idempotent(self, tokens, identity):
        issued = tokens.issue_refresh_token(identity.id)

        assert tokens.revoke_refresh_token(issued.value) is True
        assert tokens.revoke_refresh_token(issued.value) is False
        assert tokens.verify_refresh_token(issued.value).kind is ErrorKind.TOKEN_REVOKED

    def test_revoke_all_includes_remember_me(self, tokens, identity):
        refresh = tokens.issue_refresh_token(identity.id)
        remember = tokens.issue_remember_me_token(identity.id)

        assert tokens.revoke_all(identity.id) == 2
        assert not tokens.verify_refresh_token(refresh.value).ok
        assert not tokens.verify_remember_me_token(remember.value).ok

    def test_revoke_all_can_keep_remember_me(self, tokens, identity):
        tokens.issue_refresh_token(identity.id)
        remember = tokens.issue_remember_me_token(identity.id)

        tokens.revoke_all(identity.id, include_remember_me=False)

        assert tokens.verify_remember_me_token(remember.value).ok

    def test_list_active_refresh_tokens(self, tokens, identity):
        kept = tokens.issue_refresh_token(identity.id)
        dropped = tokens.issue_refresh_token(identity.id)
        tokens.revoke_refresh_token(dropped.value)

        active = tokens.list_active_refresh_tokens(identity.id)

        assert [t.id for t in active] == [kept.record.id]


class TestRememberMeTokens:
    def test_remember_me_outlives_refresh(self, tokens, identity, clock):
        refresh = tokens.issue_refresh_token(identity.id)
        remember = tokens.issue_remember_me_token(identity.id)
        clock.advance(days=10)

        assert not tokens.verify_refresh_token(refresh.value).ok
        assert tokens.verify_remember_me_token(remember.value).ok

    def test_remember_me_is_not_a_refresh_token(self, tokens, identity):
        remember = tokens.issue_remember_me_token(identity.id)

        assert tokens.verify_refresh_token(remember.value).kind is ErrorKind.TOKEN_INVALID

    def test_revoke_all_remember_me(self, tokens, identity):
        tokens.issue_remember_me_token(identity.id)
        tokens.issue_remember_me_token(identity.id)

        assert tokens.revoke_all_remember_me(identity.id) == 2


class TestCleanup:
    def test_cleanup_counts_per_kind(self, tokens, identity, clock):
        tokens.issue_refresh_token(identity.id)
        tokens.issue_remember_me_token(identity.id)
        clock.advance(days=8)

        counts = tokens.cleanup_expired()

        assert counts == {"refresh": 1, "remember_me": 0}
