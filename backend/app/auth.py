from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.app.settings import Settings

ROLE_ADMIN = "admin"
ROLE_OWNER = "owner"
ROLE_SERVICE = "service"
KNOWN_ROLES = frozenset({ROLE_ADMIN, ROLE_OWNER, ROLE_SERVICE})
PRIVILEGED_ROLES = frozenset({ROLE_ADMIN, ROLE_SERVICE})

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    """Caller identity: the token subject and the roles it carries."""

    user_id: str
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_privileged(self) -> bool:
        return not self.roles.isdisjoint(PRIVILEGED_ROLES)

    def can_act_for(self, user_id: str) -> bool:
        return self.is_privileged or self.user_id == user_id


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _context_from_claims(payload: dict[str, Any]) -> AuthContext:
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        raise _unauthorized("token missing subject")
    roles = payload.get("roles", [])
    if not isinstance(roles, list):
        raise _unauthorized("token roles must be a list")
    # Unknown roles are dropped rather than rejected.
    role_set = frozenset(
        str(role).strip() for role in roles if str(role).strip() in KNOWN_ROLES
    )
    if not role_set:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="token has no recognised roles",
        )
    return AuthContext(user_id=subject.strip(), roles=role_set)


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    settings = get_settings(request)
    if not settings.auth_enabled:
        return AuthContext(user_id="dev-local", roles=KNOWN_ROLES)

    if not credentials or credentials.scheme.lower() != "bearer":
        raise _unauthorized("missing bearer token")
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.InvalidTokenError as exc:
        raise _unauthorized("invalid auth token") from exc
    return _context_from_claims(payload)


def require_roles(*required_roles: str) -> Callable[[AuthContext], AuthContext]:
    required = {role.strip() for role in required_roles if role.strip()}

    def dependency(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if required and context.roles.isdisjoint(required):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"insufficient role. required any of: {sorted(required)}",
            )
        return context

    return dependency


def ensure_owner_access(context: AuthContext, user_id: str) -> None:
    """Owners may only touch their own campaigns and minutes; admin and service see all."""
    if not context.can_act_for(user_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="not the owner of this resource",
        )
