from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Query

from otpgate.api.schemas import (
    AccessTokenResponse,
    Envelope,
    IdentityResponse,
    LoginRequest,
    LoginResponse,
    RoleUpdateRequest,
    TokenRefreshRequest,
    VerifyRequest,
    VerifyResponse,
)
from otpgate.logging import get_logger
from otpgate.service.auth import AuthContext, parse_role
from otpgate.service.errors import MissingInputError, NotFoundError
from otpgate.service.runtime import get_runtime
from otpgate.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _ok(message: str, data: Any = None) -> Envelope:
    if hasattr(data, "model_dump"):
        data = data.model_dump(by_alias=True, mode="json")
    return Envelope(status="ok", message=message, data=data)


async def get_identity(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


def require_roles(*roles: Role):
    """Dependency factory admitting only the given roles (403 otherwise)."""

    async def _dependency(principal: AuthContext = Depends(get_identity)) -> AuthContext:
        return get_runtime().auth.require_roles(principal, roles)

    return _dependency


get_admin_identity = require_roles(Role.ADMIN, Role.SUPERADMIN)
get_superadmin_identity = require_roles(Role.SUPERADMIN)


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest):
    """Start a login, or a sign-up for an unknown address, by mailing a code."""
    runtime = get_runtime()
    result = await runtime.auth.start_login_or_signup(body.email, body.name, body.role)
    return _ok(result.message, LoginResponse(email=result.email))


@router.post("/verify", response_model=Envelope)
async def verify(body: VerifyRequest):
    runtime = get_runtime()
    result = await runtime.auth.verify_and_complete(body.email, body.otp)
    return _ok(
        result.message,
        VerifyResponse(
            **result.identity.public_view(),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
        ),
    )


@router.post("/refresh", response_model=Envelope)
async def refresh(body: TokenRefreshRequest):
    runtime = get_runtime()
    access_token = await runtime.auth.refresh_access_token(body.refresh_token)
    return _ok(
        "Access token refreshed successfully",
        AccessTokenResponse(access_token=access_token),
    )


@router.post("/logout", response_model=Envelope)
async def logout(principal: AuthContext = Depends(get_identity)):
    runtime = get_runtime()
    await runtime.auth.logout(principal)
    return _ok("Logged out successfully", {})


@router.get("/me", response_model=Envelope)
async def me(principal: AuthContext = Depends(get_identity)):
    runtime = get_runtime()
    identity = await runtime.auth.get_current_identity(principal)
    return _ok("User fetched successfully", IdentityResponse.from_identity(identity))


@router.get("/identities", response_model=Envelope)
async def list_identities(
    limit: int = Query(50, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_identity),
):
    runtime = get_runtime()
    identities = runtime.store.list_identities(limit=limit)
    return _ok(
        "Users fetched successfully",
        {
            "items": [
                IdentityResponse.from_identity(i).model_dump(by_alias=True, mode="json")
                for i in identities
            ]
        },
    )


@router.get("/identities/{identity_id}", response_model=Envelope)
async def get_identity_by_id(
    identity_id: str, principal: AuthContext = Depends(get_identity)
):
    runtime = get_runtime()
    runtime.auth.ensure_owner_or_admin(principal, identity_id)
    identity = runtime.store.get_identity(identity_id)
    if identity is None:
        raise NotFoundError("User not found")
    return _ok("User fetched successfully", IdentityResponse.from_identity(identity))


@router.patch("/identities/{identity_id}/role", response_model=Envelope)
async def set_identity_role(
    identity_id: str,
    body: RoleUpdateRequest,
    principal: AuthContext = Depends(get_superadmin_identity),
):
    runtime = get_runtime()
    role = parse_role(body.role)
    if role is None:
        raise MissingInputError("Role is required", detail={"field": "role"})
    identity = runtime.store.update_profile(identity_id, role=role)
    if identity is None:
        raise NotFoundError("User not found")
    # outstanding refresh tokens still carry the old role
    runtime.store.set_refresh_token(identity_id, None)
    logger.info(
        "identity_role_changed",
        identity_id=identity_id,
        role=role.value,
        changed_by=principal.identity_id,
    )
    return _ok("Role updated successfully", IdentityResponse.from_identity(identity))
