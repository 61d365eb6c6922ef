"""
Principal resolution and org-scoped access control.

Every queue operation is authorized here, in the service layer, before it
touches the database: service-role callers (workers, external dispatchers)
may act on any org, org admins may manage their own org's jobs, and org
members may read them.
"""

import secrets
from dataclasses import dataclass, field
from typing import Annotated
from uuid import NAMESPACE_DNS, UUID, uuid5

from fastapi import Depends, Header, HTTPException, status

from api.config.settings import AuthMode, settings
from api.v1.core.exceptions import ForbiddenError, UnauthorizedError

SERVICE_ROLE = "service_role"
ADMIN_ROLE = "admin"
MEMBER_ROLE = "member"

KNOWN_ROLES = frozenset({SERVICE_ROLE, ADMIN_ROLE, MEMBER_ROLE})


def string_to_uuid(text: str) -> UUID:
    """Convert a string to a deterministic UUID using namespace DNS."""
    try:
        return UUID(text)
    except ValueError:
        return uuid5(NAMESPACE_DNS, text)


@dataclass
class Principal:
    """Represents the current authenticated user/context."""

    user_id: str
    org_id: str
    roles: list[str] = field(default_factory=list)
    email: str | None = None

    @property
    def user_uuid(self) -> UUID:
        """Get the user ID as a UUID for database operations."""
        return string_to_uuid(self.user_id)

    @property
    def org_uuid(self) -> UUID:
        """Get the org ID as a UUID for database operations."""
        return string_to_uuid(self.org_id)


def service_principal() -> Principal:
    """Principal used by workers and trusted dispatchers."""
    return Principal(user_id="service", org_id="service", roles=[SERVICE_ROLE])


def is_service_role(principal: Principal) -> bool:
    return SERVICE_ROLE in principal.roles


def can_access_org_data(principal: Principal, org_id: UUID) -> bool:
    """Service role, or any member of the org."""
    return is_service_role(principal) or principal.org_uuid == org_id


def can_admin_org(principal: Principal, org_id: UUID) -> bool:
    """Service role, or an admin of the org."""
    if is_service_role(principal):
        return True
    return principal.org_uuid == org_id and ADMIN_ROLE in principal.roles


def require_service_role(principal: Principal) -> None:
    if not is_service_role(principal):
        raise ForbiddenError(
            "Service role required", details={"user_id": principal.user_id}
        )


def require_org_access(principal: Principal, org_id: UUID) -> None:
    if not can_access_org_data(principal, org_id):
        raise ForbiddenError(
            "Access to organization denied", details={"org_id": str(org_id)}
        )


def require_org_admin(principal: Principal, org_id: UUID) -> None:
    if not can_admin_org(principal, org_id):
        raise ForbiddenError(
            "Organization admin role required", details={"org_id": str(org_id)}
        )


def resolve_org_id(principal: Principal, requested_org_id: UUID | None) -> UUID:
    """
    Pick the org a request acts on.

    Service-role callers must name the org explicitly; everyone else is pinned
    to their own org and may only repeat it.
    """
    if requested_org_id is None:
        if is_service_role(principal):
            raise ForbiddenError("Service role requests must specify org_id")
        return principal.org_uuid

    require_org_access(principal, requested_org_id)
    return requested_org_id


async def get_principal(
    x_user_id: Annotated[str | None, Header(alias="X-User-ID")] = None,
    x_org_id: Annotated[str | None, Header(alias="X-Org-ID")] = None,
    x_role: Annotated[str | None, Header(alias="X-Role")] = None,
    x_service_token: Annotated[str | None, Header(alias="X-Service-Token")] = None,
) -> Principal:
    """
    Dependency injection function to get the current principal.

    A valid X-Service-Token always yields the service role. Otherwise the
    behavior follows AUTH_MODE:
    - none: Returns dev defaults with the configured dev role
    - dev: Extract identity and role from headers
    - oidc: Not implemented yet
    """
    if x_service_token is not None and settings.service_token:
        if not secrets.compare_digest(x_service_token, settings.service_token):
            raise UnauthorizedError("Invalid service token")
        return service_principal()

    if settings.auth_mode == AuthMode.NONE:
        return Principal(
            user_id=settings.dev_user_id,
            org_id=settings.dev_org_id,
            roles=[settings.dev_role],
        )
    elif settings.auth_mode == AuthMode.DEV:
        if not x_user_id or not x_org_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="X-User-ID and X-Org-ID headers are required in dev auth mode",
            )

        role = x_role or MEMBER_ROLE
        if role not in KNOWN_ROLES or role == SERVICE_ROLE:
            # The service role is only reachable through the service token
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unsupported role: {role}",
            )

        return Principal(user_id=x_user_id, org_id=x_org_id, roles=[role])
    elif settings.auth_mode == AuthMode.OIDC:
        raise NotImplementedError("OIDC auth mode not implemented yet")
    else:
        raise ValueError(f"Unknown auth mode: {settings.auth_mode}")


# Convenience type alias for dependency injection
PrincipalDep = Depends(get_principal)
