"""Tests for the FastAPI dependencies and the error envelope."""

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from pydantic import ValidationError

from warden.api.dependencies import (
    ORGANIZATION_HEADER,
    get_principal,
    require_module_access,
    require_organization_role,
    require_permission,
)
from warden.api.schemas import ErrorBody, PrincipalResponse
from warden.app import create_app
from warden.service.errors import RateLimitedError
from warden.storage.errors import ConstraintViolation
from warden.storage.models import AuditQuery, AuditResult

PASSWORD = "CorrectHorse9"


@pytest.fixture
def app(runtime):
    app = create_app(runtime)

    @app.get("/me", response_model=PrincipalResponse)
    def me(principal=Depends(get_principal)):
        return PrincipalResponse(
            identity_id=principal.identity_id, email=principal.email, session_id=principal.session_id
        )

    @app.get("/users")
    def list_users(principal=Depends(require_permission("users", "read"))):
        return {"status": "ok"}

    @app.get("/organizations/{organization_id}/settings")
    def org_settings(organization_id: str, principal=Depends(require_organization_role("company_owner"))):
        return {"status": "ok", "organization_id": organization_id}

    @app.get("/invoices")
    def invoices(principal=Depends(require_module_access("invoices", "write"))):
        return {"status": "ok"}

    @app.get("/throttled")
    def throttled():
        raise RateLimitedError("Too many requests", detail={"retry_after": 42})

    @app.get("/duplicate")
    def duplicate():
        raise ConstraintViolation("email already exists", {"field": "email"})

    return app


@pytest.fixture
def client(app):
    return TestClient(app)


def _bearer(auth, email):
    grant = auth.login(email, PASSWORD).unwrap()
    return {"Authorization": f"Bearer {grant.access_token}"}


class TestEnvelope:
    def test_missing_token_is_401(self, client):
        response = client.get("/me", headers={"X-Request-ID": "req-1"})

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "token_invalid"
        assert body["error"]["message"] == "Missing bearer token"
        assert body["request_id"] == "req-1"
        assert response.headers["X-Request-ID"] == "req-1"

    def test_malformed_scheme(self, client):
        response = client.get("/me", headers={"Authorization": "Basic abc"})

        assert response.status_code == 401

    def test_expired_token_code(self, client, auth, identity, clock):
        headers = _bearer(auth, identity.email)
        clock.advance(minutes=16)

        response = client.get("/me", headers=headers)

        assert response.json()["error"]["code"] == "token_expired"

    def test_rate_limited_sets_retry_after(self, client):
        response = client.get("/throttled")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.json()["error"]["details"] == {"retry_after": 42}

    def test_constraint_violation_is_conflict(self, client):
        response = client.get("/duplicate")

        assert response.status_code == 409
        assert response.json()["error"] == {
            "code": "conflict",
            "message": "email already exists",
            "details": {"field": "email"},
        }

    def test_error_body_rejects_unknown_codes(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_health(self, client):
        response = client.get("/healthz")

        assert response.json()["status"] == "ok"
        assert response.json()["checks"] == {}


class TestPrincipal:
    def test_me(self, client, auth, identity):
        response = client.get("/me", headers=_bearer(auth, identity.email))

        assert response.status_code == 200
        assert response.json()["identity_id"] == identity.id
        assert response.json()["session_id"]

    def test_logged_out_session_is_rejected(self, client, auth, identity):
        grant = auth.login(identity.email, PASSWORD).unwrap()
        auth.logout(grant.refresh_token)

        response = client.get("/me", headers={"Authorization": f"Bearer {grant.access_token}"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_revoked"


class TestPermissionGates:
    def test_employee_denied_and_audited(self, client, auth, identity, audit):
        response = client.get("/users", headers=_bearer(auth, identity.email))

        assert response.status_code == 403
        body = response.json()
        assert body["error"]["code"] == "permission_denied"
        assert body["error"]["details"] == {"resource": "users", "action": "read"}
        denials = audit.query(AuditQuery(identity_id=identity.id, result=AuditResult.FAILURE))
        assert [e.event_type for e in denials] == ["permission_denied"]

    def test_super_admin_allowed(self, client, auth, admin):
        assert client.get("/users", headers=_bearer(auth, admin.email)).status_code == 200

    def test_owner_permission_within_organization(self, client, auth, identity, policy, organization):
        org, _ = organization
        policy.add_member(org.id, identity.id, "owner")
        headers = {**_bearer(auth, identity.email), ORGANIZATION_HEADER: org.id}

        assert client.get("/users", headers=headers).status_code == 200


class TestOrganizationGates:
    def test_owner_route(self, client, auth, identity, policy, organization):
        org, _ = organization
        path = f"/organizations/{org.id}/settings"
        headers = _bearer(auth, identity.email)

        outsider = client.get(path, headers=headers)
        policy.add_member(org.id, identity.id)
        member = client.get(path, headers=headers)
        policy.add_member(org.id, identity.id, "owner")
        owner = client.get(path, headers=headers)

        assert outsider.json()["error"]["message"] == "Not a member of this organization"
        assert member.json()["error"]["message"] == "Organization owner access required"
        assert owner.status_code == 200

    def test_module_access(self, client, auth, identity, policy, organization):
        org, _ = organization
        policy.add_member(org.id, identity.id)
        headers = {**_bearer(auth, identity.email), ORGANIZATION_HEADER: org.id}

        assert client.get("/invoices", headers=headers).json()["error"]["message"] == "No access to this module"

        policy.grant_module_access(org.id, identity.id, "invoices")
        read_only = client.get("/invoices", headers=headers)
        policy.grant_module_access(org.id, identity.id, "invoices", can_write=True)
        writable = client.get("/invoices", headers=headers)

        assert read_only.json()["error"]["message"] == "No write access to this module"
        assert writable.status_code == 200

    def test_module_access_needs_organization(self, client, auth, identity):
        response = client.get("/invoices", headers=_bearer(auth, identity.email))

        assert response.json()["error"]["message"] == "Organization context required"
