from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol

from otpgate.config import Settings
from otpgate.logging import get_logger, redact_email
from otpgate.service.errors import (
    ForbiddenError,
    InvalidTokenError,
    MissingInputError,
    NotFoundError,
    ServiceError,
    UnauthenticatedError,
    ValidationError,
)
from otpgate.service.otp import ChallengeStore, OtpChallengeManager
from otpgate.service.tokens import TokenCodec
from otpgate.storage.errors import ConstraintViolation
from otpgate.storage.models import ELEVATED_ROLES, Identity, Role

logger = get_logger(__name__)


class IdentityStore(ChallengeStore, Protocol):
    def create_identity(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: Role = Role.CUSTOMER,
        is_verified: bool = False,
    ) -> Identity: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_identity_by_email(self, email: str) -> Optional[Identity]: ...

    def list_identities(self, limit: int = 100) -> List[Identity]: ...

    def update_profile(
        self,
        identity_id: str,
        *,
        name: Optional[str] = None,
        role: Optional[Role] = None,
    ) -> Optional[Identity]: ...

    def mark_verified(self, identity_id: str) -> Optional[Identity]: ...

    def set_refresh_token(self, identity_id: str, refresh_token: Optional[str]) -> bool: ...


@dataclass
class AuthContext:
    identity_id: str
    role: Role


@dataclass
class StartResult:
    message: str
    email: str
    identity: Identity


@dataclass
class VerifyResult:
    message: str
    identity: Identity
    access_token: str
    refresh_token: str
    first_verification: bool


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def parse_role(role: Optional[str | Role]) -> Optional[Role]:
    if role is None or role == "":
        return None
    try:
        return Role(str(role).strip().upper())
    except ValueError:
        raise ValidationError(
            "Invalid role",
            detail={"field": "role", "allowed": [r.value for r in Role]},
        )


class AuthService:
    """Passwordless sign-up/login over emailed one-time codes.

    ``start_login_or_signup`` and ``verify_and_complete`` make up the two-step
    flow; ``refresh_access_token``, ``logout`` and ``authenticate`` handle the
    resulting token pair.
    """

    def __init__(
        self,
        store: IdentityStore,
        otp: OtpChallengeManager,
        tokens: TokenCodec,
        settings: Settings,
    ) -> None:
        self.store: IdentityStore = store
        self.otp = otp
        self.tokens = tokens
        self.settings = settings
        self.logger = logger

    async def start_login_or_signup(
        self,
        email: Optional[str],
        name: Optional[str] = None,
        role: Optional[str | Role] = None,
    ) -> StartResult:
        email = normalize_email(email)
        if not email:
            raise MissingInputError("Email is required", detail={"field": "email"})
        requested_role = parse_role(role)
        name = name.strip() if name and name.strip() else None

        identity = self.store.get_identity_by_email(email)
        if identity is None:
            try:
                identity = self.store.create_identity(
                    email, name, role=requested_role or Role.CUSTOMER
                )
            except ConstraintViolation:
                # lost a race with a concurrent start for the same address
                identity = self.store.get_identity_by_email(email)
                if identity is None:
                    raise
            else:
                self.logger.info(
                    "identity_created",
                    identity_id=identity.id,
                    email=redact_email(email),
                    role=identity.role.value,
                )
                await self.otp.issue_challenge(email)
                return StartResult(
                    message=f"New user record created. Verification OTP sent to {email}.",
                    email=email,
                    identity=identity,
                )

        if identity.is_verified:
            await self.otp.issue_challenge(email)
            return StartResult(
                message=f"Login OTP sent to your email {email}",
                email=email,
                identity=identity,
            )

        if (name and name != identity.name) or (
            requested_role and requested_role != identity.role
        ):
            updated = self.store.update_profile(
                identity.id, name=name, role=requested_role
            )
            identity = updated or identity
        await self.otp.issue_challenge(email)
        return StartResult(
            message=f"Verification OTP resent to your email {email}. Please complete sign-up.",
            email=email,
            identity=identity,
        )

    async def verify_and_complete(
        self, email: Optional[str], otp: Optional[str]
    ) -> VerifyResult:
        email = normalize_email(email)
        code = (otp or "").strip()
        if not email or not code:
            raise MissingInputError(
                "Email and OTP are required",
                detail={"fields": [f for f, v in (("email", email), ("otp", code)) if not v]},
            )
        identity = self.store.get_identity_by_email(email)
        if identity is None:
            # same status as a bad code so the endpoint does not reveal accounts
            raise NotFoundError("User not found", status_code=400)

        self.otp.verify_and_consume(email, code)

        first_verification = not identity.is_verified
        if first_verification:
            identity = self.store.mark_verified(identity.id) or identity
            self.logger.info("identity_verified", identity_id=identity.id)

        access_token = self.tokens.issue_access_token(identity.id, identity.role)
        refresh_token = self.tokens.issue_refresh_token(identity.id, identity.role)
        if not self.store.set_refresh_token(identity.id, refresh_token):
            raise NotFoundError("User not found")
        self.logger.info(
            "login_completed",
            identity_id=identity.id,
            role=identity.role.value,
            first_verification=first_verification,
        )
        message = (
            "User verified and logged in successfully"
            if first_verification
            else "Logged in successfully"
        )
        return VerifyResult(
            message=message,
            identity=identity,
            access_token=access_token,
            refresh_token=refresh_token,
            first_verification=first_verification,
        )

    async def refresh_access_token(self, refresh_token: Optional[str]) -> str:
        if not refresh_token:
            raise MissingInputError(
                "Refresh token is required", detail={"field": "refreshToken"}
            )
        claims = self.tokens.verify_refresh_token(refresh_token)
        identity = self.store.get_identity(claims.identity_id)
        if identity is None:
            raise NotFoundError("User not found")
        if identity.refresh_token != refresh_token:
            self.logger.warning("refresh_token_mismatch", identity_id=identity.id)
            raise InvalidTokenError("Invalid refresh token")
        return self.tokens.issue_access_token(claims.identity_id, claims.role)

    async def logout(self, ctx: Optional[AuthContext]) -> None:
        if ctx is None:
            raise UnauthenticatedError("Authentication required")
        self.store.set_refresh_token(ctx.identity_id, None)
        self.logger.info("logout", identity_id=ctx.identity_id)

    async def get_current_identity(self, ctx: Optional[AuthContext]) -> Identity:
        if ctx is None:
            raise UnauthenticatedError("Authentication required")
        identity = self.store.get_identity(ctx.identity_id)
        if identity is None:
            raise NotFoundError("User not found")
        return identity

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise UnauthenticatedError("Access token is required")
        try:
            claims = self.tokens.verify_access_token(token)
        except ServiceError as exc:
            self.logger.info("access_token_rejected", error_code=exc.error_code)
            raise
        return AuthContext(identity_id=claims.identity_id, role=claims.role)

    def require_roles(self, ctx: AuthContext, roles: Iterable[Role]) -> AuthContext:
        allowed = [Role(r) for r in roles]
        if not self._role_allows(ctx.role, allowed):
            raise ForbiddenError(
                f"Access denied. Required role: {' or '.join(r.value for r in allowed)}"
            )
        return ctx

    def ensure_owner_or_admin(self, ctx: AuthContext, resource_identity_id: str) -> AuthContext:
        if ctx.role in ELEVATED_ROLES or ctx.identity_id == resource_identity_id:
            return ctx
        raise ForbiddenError("Access denied. You can only access your own resources")

    def _role_allows(self, role: Role, allowed: Iterable[Role]) -> bool:
        return role in set(allowed)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        return token.strip() or None
