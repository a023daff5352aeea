import pytest
from fastapi import HTTPException

from jobrelay.config.settings import AuthMode, Settings
from jobrelay.v1.core.exceptions import AuthenticationError
from jobrelay.v1.core.security import Principal, get_principal


@pytest.mark.asyncio
async def test_auth_mode_none_returns_dev_admin():
    """Test that AUTH_MODE=none returns the dev user with admin role."""
    settings = Settings(auth_mode=AuthMode.NONE, dev_user_id="local-dev")

    principal = await get_principal(x_user_id=None, x_roles=None, settings=settings)

    assert principal.user_id == "local-dev"
    assert principal.is_admin
    assert principal.owner_scope() is None


@pytest.mark.asyncio
async def test_auth_mode_none_ignores_headers():
    """Test that AUTH_MODE=none does not trust caller headers."""
    settings = Settings(auth_mode=AuthMode.NONE)

    principal = await get_principal(
        x_user_id="someone-else", x_roles="viewer", settings=settings
    )

    assert principal.user_id == settings.dev_user_id


@pytest.mark.asyncio
async def test_auth_mode_dev_uses_headers():
    """Test that AUTH_MODE=dev builds the principal from headers."""
    settings = Settings(auth_mode=AuthMode.DEV)

    principal = await get_principal(
        x_user_id="alice", x_roles="editor, admin ,", settings=settings
    )

    assert principal.user_id == "alice"
    assert principal.roles == ["editor", "admin"]
    assert principal.is_admin


@pytest.mark.asyncio
async def test_auth_mode_dev_without_roles_scopes_to_owner():
    """Test that a non-admin principal is scoped to its own jobs."""
    settings = Settings(auth_mode=AuthMode.DEV)

    principal = await get_principal(x_user_id="bob", x_roles=None, settings=settings)

    assert principal.roles == []
    assert not principal.is_admin
    assert principal.owner_scope() == "bob"


@pytest.mark.asyncio
async def test_auth_mode_dev_requires_user_header():
    """Test that AUTH_MODE=dev rejects requests without X-User-ID."""
    settings = Settings(auth_mode=AuthMode.DEV)

    with pytest.raises(HTTPException) as exc_info:
        await get_principal(x_user_id=None, x_roles=None, settings=settings)

    assert exc_info.value.status_code == 400
    assert "X-User-ID" in exc_info.value.detail


@pytest.mark.asyncio
async def test_auth_mode_oidc_uses_gateway_identity():
    """Test that AUTH_MODE=oidc takes the identity the gateway forwards."""
    settings = Settings(auth_mode=AuthMode.OIDC)

    principal = await get_principal(
        x_user_id="alice", x_roles="admin", settings=settings
    )

    assert principal.user_id == "alice"
    assert principal.is_admin


@pytest.mark.asyncio
async def test_auth_mode_oidc_without_identity_is_unauthenticated():
    """Test that AUTH_MODE=oidc rejects requests the gateway did not authenticate."""
    settings = Settings(auth_mode=AuthMode.OIDC)

    with pytest.raises(AuthenticationError) as exc_info:
        await get_principal(x_user_id=None, x_roles="admin", settings=settings)

    assert exc_info.value.status_code == 401
    assert exc_info.value.code == "UNAUTHENTICATED"


def test_principal_defaults():
    principal = Principal(user_id="carol")

    assert principal.roles == []
    assert principal.email is None
    assert principal.owner_scope() == "carol"
