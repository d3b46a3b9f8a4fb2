from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Header, Request

from warden.service.auth import Principal
from warden.service.errors import AuthenticationError, ErrorKind, PermissionDeniedError
from warden.service.policy import PrivilegeTier
from warden.service.rbac import PermissionCheck
from warden.service.results import Failure
from warden.service.runtime import Runtime

ORGANIZATION_HEADER = "X-Organization-ID"


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("app.state.runtime is not configured")
    return runtime


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_principal(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> Principal:
    """Resolve the bearer access token into the calling identity; any failure is a 401."""
    token = _bearer_token(authorization)
    if token is None:
        raise AuthenticationError("Missing bearer token")
    result = runtime.auth.authenticate(token)
    if not result.ok:
        raise AuthenticationError(result.failure.message, error_code=result.failure.kind.value)
    return result.value


def _organization_scope(request: Request) -> Optional[str]:
    return request.path_params.get("organization_id") or request.headers.get(ORGANIZATION_HEADER)


def _deny(
    runtime: Runtime,
    request: Request,
    principal: Principal,
    resource: str,
    action: str,
    failure: Failure,
    organization_id: Optional[str],
) -> PermissionDeniedError:
    runtime.audit.log_authorization(
        principal.identity_id,
        resource,
        action,
        granted=False,
        failure_reason=failure.message,
        session_id=principal.session_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        metadata={"organization_id": organization_id} if organization_id else None,
    )
    detail = {"resource": resource, "action": action}
    return PermissionDeniedError(failure.message, detail=detail)


def require_permission(resource: str, action: str) -> Callable[..., Principal]:
    """Dependency factory gating a route on ``resource.action``.

    The organization scope comes from an ``organization_id`` path parameter or
    the ``X-Organization-ID`` header; a ``resource_id`` path parameter narrows
    resource-scoped grants.
    """

    def dependency(
        request: Request,
        principal: Principal = Depends(get_principal),
        runtime: Runtime = Depends(get_runtime),
    ) -> Principal:
        organization_id = _organization_scope(request)
        check = PermissionCheck(
            resource=resource,
            action=action,
            organization_id=organization_id,
            resource_id=request.path_params.get("resource_id"),
        )
        decision = runtime.policy.check_permission(principal.identity_id, check)
        if not decision.ok:
            raise _deny(runtime, request, principal, resource, action, decision.failure, organization_id)
        return principal

    return dependency


def require_organization_role(role: PrivilegeTier | str) -> Callable[..., Principal]:
    tier = PrivilegeTier(role)

    def dependency(
        request: Request,
        principal: Principal = Depends(get_principal),
        runtime: Runtime = Depends(get_runtime),
    ) -> Principal:
        organization_id = _organization_scope(request)
        decision = runtime.policy.authorize(principal.identity_id, tier, organization_id)
        if not decision.ok:
            raise _deny(
                runtime, request, principal, "organization", tier.value, decision.failure, organization_id
            )
        return principal

    return dependency


def require_module_access(module: str, access: str = "read") -> Callable[..., Principal]:
    def dependency(
        request: Request,
        principal: Principal = Depends(get_principal),
        runtime: Runtime = Depends(get_runtime),
    ) -> Principal:
        organization_id = _organization_scope(request)
        if not organization_id:
            failure = Failure(ErrorKind.PERMISSION_DENIED, "Organization context required")
            raise _deny(runtime, request, principal, module, access, failure, None)
        decision = runtime.policy.check_module_access(
            principal.identity_id, organization_id, module, access
        )
        if not decision.ok:
            raise _deny(runtime, request, principal, module, access, decision.failure, organization_id)
        return principal

    return dependency


__all__ = [
    "ORGANIZATION_HEADER",
    "get_principal",
    "get_runtime",
    "require_module_access",
    "require_organization_role",
    "require_permission",
]
