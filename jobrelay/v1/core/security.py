from dataclasses import dataclass, field

from fastapi import Depends, Header, HTTPException, status

from jobrelay.config.settings import AuthMode, Settings, get_settings
from jobrelay.v1.core.exceptions import AuthenticationError


@dataclass
class Principal:
    """The already-authenticated caller on whose behalf jobs are managed."""

    user_id: str
    roles: list[str] = field(default_factory=list)
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles

    def owner_scope(self) -> str | None:
        """Owner filter for single-job lookups; admins see every job."""
        return None if self.is_admin else self.user_id


def _parse_roles(x_roles: str | None) -> list[str]:
    return [r.strip() for r in (x_roles or "").split(",") if r.strip()]


async def get_principal(
    x_user_id: str | None = Header(None, alias="X-User-ID"),
    x_roles: str | None = Header(None, alias="X-Roles"),
    settings: Settings = Depends(get_settings),
) -> Principal:
    """
    Dependency injection function to get the current principal.

    Behavior based on AUTH_MODE:
    - none: Returns the dev user with admin role
    - dev: Trusts the X-User-ID / X-Roles headers
    - oidc: The fronting gateway verifies the token and forwards the
      subject and roles in the same headers; a request without them was
      not authenticated
    """
    if settings.auth_mode == AuthMode.NONE:
        return Principal(user_id=settings.dev_user_id, roles=["admin"])
    elif settings.auth_mode == AuthMode.DEV:
        if not x_user_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="X-User-ID header is required in dev auth mode",
            )

        return Principal(user_id=x_user_id, roles=_parse_roles(x_roles))
    elif settings.auth_mode == AuthMode.OIDC:
        if not x_user_id:
            raise AuthenticationError(
                "No authenticated identity forwarded by the gateway",
                {"header": "X-User-ID"},
            )

        return Principal(user_id=x_user_id, roles=_parse_roles(x_roles))
    else:
        raise ValueError(f"Unknown auth mode: {settings.auth_mode}")


# Convenience type alias for dependency injection
PrincipalDep = Depends(get_principal)
