from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Protocol
from urllib.parse import urlencode

from warden.config import Settings
from warden.logging import email_digest, get_logger
from warden.service.clock import ClockSource, SystemClock
from warden.service.email import EmailSender, render_invitation
from warden.service.errors import ErrorKind
from warden.service.hashing import SecretBox, generate_token, hash_code, lookup_digest, verify_code
from warden.service.rate_limit import normalize_email
from warden.service.results import Result
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    Identity,
    InvitationToken,
    Organization,
    OrganizationMember,
    OrganizationRole,
    new_id,
)

_INVALID_MESSAGE = "Invitation is invalid or has expired"


class InvitationStore(Protocol):
    def get_organization(self, organization_id: str) -> Optional[Organization]:
        ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        ...

    def get_member(self, organization_id: str, identity_id: str) -> Optional[OrganizationMember]:
        ...

    def create_invitation(self, invitation: InvitationToken) -> InvitationToken:
        ...

    def get_invitation(self, invitation_id: str) -> Optional[InvitationToken]:
        ...

    def get_invitation_by_digest(self, digest: str) -> Optional[InvitationToken]:
        ...

    def find_live_invitation(
        self, email: str, organization_id: str, now: datetime
    ) -> Optional[InvitationToken]:
        ...

    def redeem_invitation(
        self, invitation_id: str, identity_id: str, now: datetime
    ) -> Optional[OrganizationMember]:
        ...

    def revoke_invitation(self, invitation_id: str, now: datetime) -> bool:
        ...

    def list_pending_invitations(self, organization_id: str, now: datetime) -> List[InvitationToken]:
        ...

    def delete_expired_invitations(self, now: datetime) -> int:
        ...


@dataclass(frozen=True)
class IssuedInvitation:
    token: str
    url: str
    invitation: InvitationToken


@dataclass(frozen=True)
class InvitationPreview:
    invitation_id: str
    email: str
    organization_id: str
    organization_name: Optional[str]
    role: OrganizationRole
    expires_at: datetime


class InvitationService:
    """Single-use, time-boxed organization invitations.

    The raw token only ever leaves the process inside the invitation link.
    Storage keeps an HMAC lookup digest for O(1) lookup, an argon2 hash that is
    verified after lookup, and a Fernet-sealed copy so ``resend`` can rebuild
    the same link without rotating the token.
    """

    def __init__(
        self,
        store: InvitationStore,
        settings: Settings,
        *,
        clock: Optional[ClockSource] = None,
        email_sender: Optional[EmailSender] = None,
        secret_box: Optional[SecretBox] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.email_sender = email_sender
        self.secret_box = secret_box or SecretBox(settings.sealing_material)
        self.logger = get_logger(__name__)

    def create_invitation(
        self,
        email: str,
        organization_id: str,
        role: OrganizationRole | str = OrganizationRole.EMPLOYEE,
        *,
        invited_by: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[IssuedInvitation]:
        email = normalize_email(email)
        if "@" not in email:
            return Result.fail(ErrorKind.VALIDATION_ERROR, "A valid email address is required")
        try:
            role = OrganizationRole(role)
        except ValueError:
            return Result.fail(ErrorKind.VALIDATION_ERROR, "Unknown organization role", role=str(role))
        organization = self.store.get_organization(organization_id)
        if organization is None or not organization.is_active:
            return Result.fail(ErrorKind.NOT_FOUND, "Organization not found")

        now = self.clock.now()
        existing = self.store.get_identity_by_email(email)
        if existing is not None:
            member = self.store.get_member(organization_id, existing.id)
            if member is not None and member.is_active:
                return Result.fail(
                    ErrorKind.INVITATION_CONFLICT,
                    "User is already a member of this organization",
                    organization_id=organization_id,
                )
        if self.store.find_live_invitation(email, organization_id, now) is not None:
            return Result.fail(
                ErrorKind.INVITATION_CONFLICT,
                "An invitation for this email is already pending",
                organization_id=organization_id,
            )

        token = generate_token()
        try:
            invitation = self.store.create_invitation(
                InvitationToken(
                    id=new_id(),
                    email=email,
                    organization_id=organization_id,
                    role=role,
                    lookup_digest=lookup_digest(self.settings.lookup_key, token),
                    token_hash=hash_code(token),
                    sealed_token=self.secret_box.seal(token),
                    expires_at=now + timedelta(minutes=self.settings.invitation_ttl_minutes),
                    invited_by=invited_by,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    created_at=now,
                )
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent invite for the same (email, organization)
            self.logger.info("invitation_create_conflict", detail=exc.detail)
            return Result.fail(
                ErrorKind.INVITATION_CONFLICT,
                "An invitation for this email is already pending",
                organization_id=organization_id,
            )

        url = self._accept_url(token)
        self.logger.info(
            "invitation_created",
            invitation_id=invitation.id,
            organization_id=organization_id,
            email_hash=email_digest(email),
            role=role.value,
        )
        self._deliver(invitation, organization, url)
        return Result.success(IssuedInvitation(token=token, url=url, invitation=invitation))

    def inspect(self, token: str) -> Result[InvitationPreview]:
        """Describe a live invitation; every unusable token fails the same way."""
        invitation = self._lookup(token)
        if invitation is None or not invitation.is_live(self.clock.now()):
            return Result.fail(ErrorKind.INVITATION_INVALID, _INVALID_MESSAGE)
        organization = self.store.get_organization(invitation.organization_id)
        return Result.success(
            InvitationPreview(
                invitation_id=invitation.id,
                email=invitation.email,
                organization_id=invitation.organization_id,
                organization_name=organization.name if organization else None,
                role=invitation.role,
                expires_at=invitation.expires_at,
            )
        )

    def redeem(self, token: str, identity: Identity) -> Result[OrganizationMember]:
        invitation = self._lookup(token)
        if invitation is None:
            return Result.fail(ErrorKind.INVITATION_INVALID, _INVALID_MESSAGE)
        now = self.clock.now()
        if invitation.is_used:
            return Result.fail(ErrorKind.INVITATION_ALREADY_USED, "Invitation has already been used")
        if invitation.expires_at <= now:
            return Result.fail(ErrorKind.INVITATION_EXPIRED, "Invitation has expired")
        if normalize_email(identity.email) != invitation.email:
            self.logger.warning(
                "invitation_email_mismatch", invitation_id=invitation.id, identity_id=identity.id
            )
            return Result.fail(
                ErrorKind.INVITATION_INVALID, "Invitation was issued to a different email address"
            )

        member = self.store.redeem_invitation(invitation.id, identity.id, now)
        if member is None:
            # The conditional update lost: someone else redeemed or revoked it first
            current = self.store.get_invitation(invitation.id)
            if current is not None and current.is_used:
                return Result.fail(
                    ErrorKind.INVITATION_ALREADY_USED, "Invitation has already been used"
                )
            return Result.fail(ErrorKind.INVITATION_EXPIRED, "Invitation has expired")
        self.logger.info(
            "invitation_redeemed",
            invitation_id=invitation.id,
            organization_id=invitation.organization_id,
            identity_id=identity.id,
            role=invitation.role.value,
        )
        return Result.success(member)

    def revoke(self, invitation_id: str) -> Result[None]:
        invitation = self.store.get_invitation(invitation_id)
        if invitation is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Invitation not found")
        if not self.store.revoke_invitation(invitation_id, self.clock.now()):
            return Result.fail(ErrorKind.INVITATION_ALREADY_USED, "Invitation has already been used")
        self.logger.info(
            "invitation_revoked",
            invitation_id=invitation_id,
            organization_id=invitation.organization_id,
        )
        return Result.success(None)

    def resend(self, invitation_id: str) -> Result[InvitationToken]:
        invitation = self.store.get_invitation(invitation_id)
        if invitation is None:
            return Result.fail(ErrorKind.NOT_FOUND, "Invitation not found")
        if invitation.is_used:
            return Result.fail(ErrorKind.INVITATION_ALREADY_USED, "Invitation has already been used")
        if invitation.expires_at <= self.clock.now():
            return Result.fail(ErrorKind.INVITATION_EXPIRED, "Invitation has expired")
        token = self.secret_box.unseal(invitation.sealed_token)
        if token is None:
            self.logger.error("invitation_token_unreadable", invitation_id=invitation_id)
            return Result.fail(ErrorKind.INTERNAL_ERROR, "Invitation could not be resent")
        organization = self.store.get_organization(invitation.organization_id)
        self._deliver(invitation, organization, self._accept_url(token))
        self.logger.info("invitation_resent", invitation_id=invitation_id)
        return Result.success(invitation)

    def list_pending(self, organization_id: str) -> List[InvitationToken]:
        return self.store.list_pending_invitations(organization_id, self.clock.now())

    def cleanup_expired(self) -> int:
        removed = self.store.delete_expired_invitations(self.clock.now())
        self.logger.info("invitations_pruned", count=removed)
        return removed

    def _lookup(self, token: str) -> Optional[InvitationToken]:
        if not token:
            return None
        invitation = self.store.get_invitation_by_digest(
            lookup_digest(self.settings.lookup_key, token)
        )
        if invitation is None or not verify_code(invitation.token_hash, token):
            return None
        return invitation

    def _accept_url(self, token: str) -> str:
        base = self.settings.frontend_url.rstrip("/")
        return f"{base}/invitations/accept?{urlencode({'token': token})}"

    def _deliver(
        self, invitation: InvitationToken, organization: Optional[Organization], url: str
    ) -> None:
        if self.email_sender is None:
            self.logger.warning("invitation_email_sender_missing", invitation_id=invitation.id)
            return
        message = render_invitation(
            self.settings.email_from_name,
            organization.name if organization else "your organization",
            invitation.role.value,
            url,
            self.settings.invitation_ttl_minutes,
        )
        try:
            delivered = self.email_sender.send(
                invitation.email, message.subject, message.html_body, message.text_body
            )
        except Exception as exc:
            self.logger.error(
                "invitation_email_failed", invitation_id=invitation.id, error=str(exc)
            )
            return
        if not delivered:
            self.logger.warning("invitation_email_failed", invitation_id=invitation.id)


__all__ = ["InvitationPreview", "InvitationService", "InvitationStore", "IssuedInvitation"]
