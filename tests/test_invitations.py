"""Tests for organization invitations."""

import threading
from urllib.parse import parse_qs, urlparse

import pytest

from warden.service.errors import ErrorKind
from warden.storage.models import OrganizationRole


@pytest.fixture
def invitee(store):
    return store.create_identity("bob@example.com", None, email_verified=True)


@pytest.fixture
def issued(invitations, organization):
    org, owner = organization
    return invitations.create_invitation("Bob@Example.com", org.id, invited_by=owner.id).unwrap()


class TestCreate:
    def test_link_carries_token(self, issued, outbox):
        parsed = urlparse(issued.url)

        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == "https://app.example.com/invitations/accept"
        assert parse_qs(parsed.query)["token"] == [issued.token]
        assert outbox.last["to"] == "bob@example.com"
        assert issued.url in outbox.last["text"]
        assert outbox.last["subject"] == "You're invited to join Acme"

    def test_storage_never_holds_the_raw_token(self, issued, store):
        stored = store.get_invitation(issued.invitation.id)

        assert issued.token not in (stored.lookup_digest, stored.token_hash, stored.sealed_token)
        assert stored.email == "bob@example.com"

    def test_second_live_invitation_conflicts(self, issued, invitations, organization):
        org, _ = organization

        result = invitations.create_invitation("bob@example.com", org.id)

        assert result.kind is ErrorKind.INVITATION_CONFLICT

    def test_existing_member_conflicts(self, invitations, organization):
        org, owner = organization

        result = invitations.create_invitation(owner.email, org.id)

        assert result.failure.message == "User is already a member of this organization"

    def test_reinvite_after_expiry(self, issued, invitations, organization, clock, settings):
        org, _ = organization
        clock.advance(minutes=settings.invitation_ttl_minutes)

        assert invitations.create_invitation("bob@example.com", org.id).ok

    def test_validation(self, invitations, organization):
        org, _ = organization

        assert invitations.create_invitation("not-an-email", org.id).kind is ErrorKind.VALIDATION_ERROR
        assert invitations.create_invitation("x@example.com", org.id, "admin").kind is ErrorKind.VALIDATION_ERROR
        assert invitations.create_invitation("x@example.com", "missing").kind is ErrorKind.NOT_FOUND


class TestRedeem:
    def test_redeem_adds_membership(self, issued, invitations, invitee, policy, organization):
        org, _ = organization

        result = invitations.redeem(issued.token, invitee)

        assert result.ok
        assert result.value.role is OrganizationRole.EMPLOYEE
        assert policy.is_organization_member(invitee.id, org.id)

    def test_owner_invitation(self, invitations, organization, invitee, policy):
        org, _ = organization
        issued = invitations.create_invitation("bob@example.com", org.id, "owner").unwrap()

        invitations.redeem(issued.token, invitee).unwrap()

        assert policy.is_organization_owner(invitee.id, org.id)

    def test_redeem_is_single_use(self, issued, invitations, invitee):
        invitations.redeem(issued.token, invitee).unwrap()

        assert invitations.redeem(issued.token, invitee).kind is ErrorKind.INVITATION_ALREADY_USED

    def test_concurrent_redeem_has_one_winner(self, issued, invitations, invitee, store, organization):
        org, _ = organization
        barrier = threading.Barrier(8)
        outcomes = []
        lock = threading.Lock()

        def redeem():
            barrier.wait()
            result = invitations.redeem(issued.token, invitee)
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=redeem) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(outcomes) == 8
        assert sum(1 for r in outcomes if r.ok) == 1
        assert {r.kind for r in outcomes if not r.ok} == {ErrorKind.INVITATION_ALREADY_USED}
        assert store.get_invitation(issued.invitation.id).is_used
        assert [m.organization_id for m in store.list_memberships(invitee.id)] == [org.id]

    def test_expired(self, issued, invitations, invitee, clock, settings):
        clock.advance(minutes=settings.invitation_ttl_minutes)

        assert invitations.redeem(issued.token, invitee).kind is ErrorKind.INVITATION_EXPIRED

    def test_unknown_token(self, invitations, invitee):
        assert invitations.redeem("0" * 64, invitee).kind is ErrorKind.INVITATION_INVALID
        assert invitations.redeem("", invitee).kind is ErrorKind.INVITATION_INVALID

    def test_email_must_match(self, issued, invitations, identity):
        result = invitations.redeem(issued.token, identity)

        assert result.kind is ErrorKind.INVITATION_INVALID
        assert result.failure.message == "Invitation was issued to a different email address"


class TestInspect:
    def test_preview(self, issued, invitations):
        preview = invitations.inspect(issued.token).unwrap()

        assert preview.organization_name == "Acme"
        assert preview.email == "bob@example.com"

    def test_unusable_tokens_look_alike(self, issued, invitations, invitee, clock):
        invitations.redeem(issued.token, invitee).unwrap()

        used = invitations.inspect(issued.token)
        unknown = invitations.inspect("f" * 64)

        assert used.kind is unknown.kind is ErrorKind.INVITATION_INVALID
        assert used.failure.message == unknown.failure.message


class TestManagement:
    def test_revoke(self, issued, invitations, invitee):
        assert invitations.revoke(issued.invitation.id).ok
        assert invitations.revoke(issued.invitation.id).kind is ErrorKind.INVITATION_ALREADY_USED
        assert not invitations.redeem(issued.token, invitee).ok
        assert invitations.revoke("missing").kind is ErrorKind.NOT_FOUND

    def test_resend_reuses_the_link(self, issued, invitations, outbox):
        before = len(outbox.to("bob@example.com"))

        assert invitations.resend(issued.invitation.id).ok

        messages = outbox.to("bob@example.com")
        assert len(messages) == before + 1
        assert issued.url in messages[-1]["text"]

    def test_resend_expired(self, issued, invitations, clock, settings):
        clock.advance(minutes=settings.invitation_ttl_minutes + 1)

        assert invitations.resend(issued.invitation.id).kind is ErrorKind.INVITATION_EXPIRED

    def test_list_pending_and_cleanup(self, issued, invitations, organization, clock, settings):
        org, _ = organization
        assert [i.id for i in invitations.list_pending(org.id)] == [issued.invitation.id]

        clock.advance(minutes=settings.invitation_ttl_minutes + 1)

        assert invitations.list_pending(org.id) == []
        assert invitations.cleanup_expired() == 1
