"""Unit tests for the auth service.

Tests for:
- Login/sign-up start for new, unverified and verified identities
- OTP verification completing sign-up or login
- Access token refresh against the stored refresh token
- Logout and current-identity lookup
- Bearer authentication and role gating
"""

import pytest

from otpgate.config import Settings
from otpgate.service.auth import AuthContext, AuthService
from otpgate.service.errors import (
    ForbiddenError,
    InvalidCodeError,
    InvalidTokenError,
    MissingInputError,
    NotFoundError,
    TokenExpiredError,
    UnauthenticatedError,
    ValidationError,
)
from otpgate.service.otp import OtpChallengeManager
from otpgate.service.tokens import ACCESS, TokenCodec
from otpgate.storage.memory import MemoryStore
from otpgate.storage.models import Role


class RecordingEmail:
    def __init__(self):
        self.sent = []

    def send_otp(self, to_email, code, ttl_minutes):
        self.sent.append((to_email, code))
        return True

    def last_code(self, to_email):
        return [code for email, code in self.sent if email == to_email][-1]


@pytest.fixture
def settings():
    return Settings(
        jwt_access_secret="access-secret-for-auth-tests",
        jwt_refresh_secret="refresh-secret-for-auth-tests",
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def auth_service(memory_store, email, settings):
    tokens = TokenCodec(settings)
    otp = OtpChallengeManager(memory_store, email, settings)
    return AuthService(memory_store, otp, tokens, settings)


async def _login(auth_service, email, address, **kwargs):
    await auth_service.start_login_or_signup(address, **kwargs)
    return await auth_service.verify_and_complete(address, email.last_code(address))


class TestStartLoginOrSignup:
    async def test_unknown_email_creates_unverified_identity(self, auth_service, memory_store, email):
        result = await auth_service.start_login_or_signup("new@example.com", name="New")

        assert result.message == "New user record created. Verification OTP sent to new@example.com."
        identity = memory_store.get_identity_by_email("new@example.com")
        assert identity.is_verified is False
        assert identity.role is Role.CUSTOMER
        assert identity.name == "New"
        assert len(email.sent) == 1

    async def test_email_is_normalized(self, auth_service, memory_store):
        result = await auth_service.start_login_or_signup("  Mixed@Example.COM ")

        assert result.email == "mixed@example.com"
        assert memory_store.get_identity_by_email("mixed@example.com") is not None

    async def test_unverified_identity_gets_resend_and_profile_patch(self, auth_service, memory_store, email):
        await auth_service.start_login_or_signup("pending@example.com")
        result = await auth_service.start_login_or_signup(
            "pending@example.com", name="Pat", role="ADMIN"
        )

        assert result.message == (
            "Verification OTP resent to your email pending@example.com. Please complete sign-up."
        )
        identity = memory_store.get_identity_by_email("pending@example.com")
        assert identity.name == "Pat"
        assert identity.role is Role.ADMIN
        assert len(email.sent) == 2

    async def test_verified_identity_is_not_mutated(self, auth_service, memory_store, email):
        await _login(auth_service, email, "done@example.com", name="Dana")
        before = memory_store.get_identity_by_email("done@example.com")

        result = await auth_service.start_login_or_signup(
            "done@example.com", name="Other", role="SUPERADMIN"
        )

        assert result.message == "Login OTP sent to your email done@example.com"
        after = memory_store.get_identity_by_email("done@example.com")
        assert after.name == "Dana"
        assert after.role is Role.CUSTOMER
        assert after.refresh_token == before.refresh_token

    @pytest.mark.parametrize("address", [None, "", "   "])
    async def test_missing_email(self, auth_service, email, address):
        with pytest.raises(MissingInputError):
            await auth_service.start_login_or_signup(address)
        assert email.sent == []

    async def test_unknown_role_is_rejected(self, auth_service, memory_store):
        with pytest.raises(ValidationError):
            await auth_service.start_login_or_signup("role@example.com", role="ROOT")
        assert memory_store.get_identity_by_email("role@example.com") is None

    async def test_lost_creation_race_falls_back_to_existing(self, settings, email):
        class RacingStore(MemoryStore):
            """Hides the identity from the first lookup, as a concurrent creator would."""

            def __init__(self):
                super().__init__()
                self.hidden = True

            def get_identity_by_email(self, address):
                if self.hidden:
                    self.hidden = False
                    return None
                return super().get_identity_by_email(address)

        store = RacingStore()
        store.create_identity("race@example.com")
        service = AuthService(
            store, OtpChallengeManager(store, email, settings), TokenCodec(settings), settings
        )

        result = await service.start_login_or_signup("race@example.com")

        assert result.message.startswith("Verification OTP resent")
        assert len(store.list_identities()) == 1


class TestVerifyAndComplete:
    async def test_first_verification(self, auth_service, memory_store, email):
        result = await _login(auth_service, email, "first@example.com")

        assert result.message == "User verified and logged in successfully"
        assert result.first_verification is True
        identity = memory_store.get_identity_by_email("first@example.com")
        assert identity.is_verified is True
        assert identity.refresh_token == result.refresh_token
        assert identity.otp_challenge is None

    async def test_repeat_login(self, auth_service, email):
        first = await _login(auth_service, email, "again@example.com")
        second = await _login(auth_service, email, "again@example.com")

        assert second.message == "Logged in successfully"
        assert second.identity.is_verified is True
        assert second.refresh_token != first.refresh_token

    async def test_tokens_carry_identity_and_role(self, auth_service, email):
        result = await _login(auth_service, email, "claims@example.com", role="ADMIN")
        claims = auth_service.tokens.verify_access_token(result.access_token)

        assert claims.identity_id == result.identity.id
        assert claims.role is Role.ADMIN

    async def test_unknown_email(self, auth_service):
        with pytest.raises(NotFoundError) as excinfo:
            await auth_service.verify_and_complete("ghost@example.com", "123456")

        assert excinfo.value.status_code == 400

    @pytest.mark.parametrize("address,code", [(None, "123456"), ("a@example.com", None), ("", "")])
    async def test_missing_fields(self, auth_service, address, code):
        with pytest.raises(MissingInputError):
            await auth_service.verify_and_complete(address, code)

    async def test_wrong_code_keeps_identity_unverified(self, auth_service, memory_store, email):
        await auth_service.start_login_or_signup("wrong@example.com")
        good = email.last_code("wrong@example.com")
        bad = "000000" if good != "000000" else "111111"

        with pytest.raises(InvalidCodeError):
            await auth_service.verify_and_complete("wrong@example.com", bad)

        identity = memory_store.get_identity_by_email("wrong@example.com")
        assert identity.is_verified is False
        assert identity.refresh_token is None


class TestRefreshAccessToken:
    async def test_refresh_issues_new_access_token(self, auth_service, email):
        result = await _login(auth_service, email, "refresh@example.com")

        access = await auth_service.refresh_access_token(result.refresh_token)

        claims = auth_service.tokens.verify_access_token(access)
        assert claims.identity_id == result.identity.id

    async def test_missing_token(self, auth_service):
        with pytest.raises(MissingInputError):
            await auth_service.refresh_access_token(None)

    async def test_rotated_token_is_rejected(self, auth_service, email):
        first = await _login(auth_service, email, "rotate@example.com")
        await _login(auth_service, email, "rotate@example.com")

        with pytest.raises(InvalidTokenError):
            await auth_service.refresh_access_token(first.refresh_token)

    async def test_access_token_cannot_refresh(self, auth_service, email):
        result = await _login(auth_service, email, "mixup@example.com")

        with pytest.raises(InvalidTokenError):
            await auth_service.refresh_access_token(result.access_token)

    async def test_deleted_identity(self, auth_service, memory_store, email):
        result = await _login(auth_service, email, "gone@example.com")
        memory_store.identities.pop(result.identity.id)

        with pytest.raises(NotFoundError):
            await auth_service.refresh_access_token(result.refresh_token)

    async def test_expired_refresh_token(self, auth_service, memory_store, email):
        result = await _login(auth_service, email, "stale@example.com")
        codec = auth_service.tokens
        payload = codec._decode_jwt(result.refresh_token, codec._secrets["refresh"])
        payload["exp"] = payload["iat"] - 1
        expired = codec._encode_jwt(payload, codec._secrets["refresh"])
        memory_store.set_refresh_token(result.identity.id, expired)

        with pytest.raises(TokenExpiredError):
            await auth_service.refresh_access_token(expired)


class TestLogoutAndCurrentIdentity:
    async def test_logout_clears_refresh_token(self, auth_service, memory_store, email):
        result = await _login(auth_service, email, "bye@example.com")
        ctx = await auth_service.authenticate(f"Bearer {result.access_token}")

        await auth_service.logout(ctx)

        assert memory_store.get_identity(result.identity.id).refresh_token is None
        with pytest.raises(InvalidTokenError):
            await auth_service.refresh_access_token(result.refresh_token)

    async def test_logout_requires_context(self, auth_service):
        with pytest.raises(UnauthenticatedError):
            await auth_service.logout(None)

    async def test_current_identity(self, auth_service, email):
        result = await _login(auth_service, email, "me@example.com")
        ctx = AuthContext(identity_id=result.identity.id, role=Role.CUSTOMER)

        identity = await auth_service.get_current_identity(ctx)

        assert identity.email == "me@example.com"

    async def test_current_identity_missing(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.get_current_identity(
                AuthContext(identity_id="missing", role=Role.CUSTOMER)
            )


class TestAuthenticate:
    async def test_valid_bearer(self, auth_service):
        token = auth_service.tokens.issue_access_token("id-1", Role.ADMIN)

        ctx = await auth_service.authenticate(f"Bearer {token}")

        assert ctx == AuthContext(identity_id="id-1", role=Role.ADMIN)

    async def test_scheme_is_case_insensitive(self, auth_service):
        token = auth_service.tokens.issue_access_token("id-1", Role.CUSTOMER)
        ctx = await auth_service.authenticate(f"bearer {token}")
        assert ctx.identity_id == "id-1"

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Bearer   ", "Basic abc"])
    async def test_missing_or_malformed_header(self, auth_service, header):
        with pytest.raises(UnauthenticatedError) as exc:
            await auth_service.authenticate(header)
        assert exc.value.message == "Access token is required"

    async def test_invalid_token(self, auth_service):
        with pytest.raises(InvalidTokenError) as exc:
            await auth_service.authenticate("Bearer nope")
        assert exc.value.message == "Invalid access token"

    async def test_expired_token(self, auth_service):
        codec = auth_service.tokens
        token = codec.issue_access_token("id-1", Role.CUSTOMER)
        payload = codec._decode_jwt(token, codec._secrets[ACCESS])
        payload["exp"] = payload["iat"] - 1
        expired = codec._encode_jwt(payload, codec._secrets[ACCESS])

        with pytest.raises(TokenExpiredError) as exc:
            await auth_service.authenticate(f"Bearer {expired}")
        assert exc.value.message == "Access token expired"


class TestRoleGating:
    def test_require_roles_allows_listed_role(self, auth_service):
        ctx = AuthContext(identity_id="id", role=Role.ADMIN)
        assert auth_service.require_roles(ctx, [Role.ADMIN, Role.SUPERADMIN]) is ctx

    def test_require_roles_forbids_other_roles(self, auth_service):
        ctx = AuthContext(identity_id="id", role=Role.CUSTOMER)
        with pytest.raises(ForbiddenError) as exc:
            auth_service.require_roles(ctx, [Role.SUPERADMIN])
        assert exc.value.status_code == 403
        assert "SUPERADMIN" in exc.value.message

    def test_owner_may_access_own_resource(self, auth_service):
        ctx = AuthContext(identity_id="me", role=Role.CUSTOMER)
        assert auth_service.ensure_owner_or_admin(ctx, "me") is ctx

    @pytest.mark.parametrize("role", [Role.ADMIN, Role.SUPERADMIN])
    def test_admins_may_access_any_resource(self, auth_service, role):
        ctx = AuthContext(identity_id="me", role=role)
        assert auth_service.ensure_owner_or_admin(ctx, "someone-else") is ctx

    def test_customer_may_not_access_others(self, auth_service):
        ctx = AuthContext(identity_id="me", role=Role.CUSTOMER)
        with pytest.raises(ForbiddenError):
            auth_service.ensure_owner_or_admin(ctx, "someone-else")
