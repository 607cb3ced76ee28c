from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from otpgate.config import Settings
from otpgate.logging import get_logger
from otpgate.service.errors import InvalidTokenError, TokenExpiredError
from otpgate.storage.models import Role

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_EXPIRED_MESSAGES = {
    ACCESS: "Access token expired",
    REFRESH: "Refresh token expired. Please login again",
}


@dataclass(frozen=True)
class TokenClaims:
    identity_id: str
    role: Role
    token_type: str
    jti: str
    issued_at: int
    expires_at: int


class TokenCodec:
    """Issue and verify HS256 access/refresh tokens.

    Each token kind is signed with its own secret and carries a ``token_type``
    claim; a token presented to the wrong verifier fails as invalid.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._secrets = {
            ACCESS: settings.jwt_access_secret.encode(),
            REFRESH: settings.jwt_refresh_secret.encode(),
        }

    def refresh_ttl_minutes(self, role: Role) -> int:
        if Role(role).is_elevated:
            return self.settings.elevated_refresh_token_ttl_minutes
        return self.settings.refresh_token_ttl_minutes

    def issue_access_token(self, identity_id: str, role: Role) -> str:
        return self._issue(
            ACCESS, identity_id, role, self.settings.access_token_ttl_minutes
        )

    def issue_refresh_token(self, identity_id: str, role: Role) -> str:
        return self._issue(
            REFRESH, identity_id, role, self.refresh_ttl_minutes(role)
        )

    def verify_access_token(self, token: str) -> TokenClaims:
        return self._verify(ACCESS, token)

    def verify_refresh_token(self, token: str) -> TokenClaims:
        return self._verify(REFRESH, token)

    def _issue(self, token_type: str, identity_id: str, role: Role, ttl_minutes: int) -> str:
        now = int(time.time())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": identity_id,
            "role": Role(role).value,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl_minutes * 60,
        }
        return self._encode_jwt(payload, self._secrets[token_type])

    def _verify(self, token_type: str, token: str) -> TokenClaims:
        payload = self._decode_jwt(token, self._secrets[token_type])
        if payload is None or payload.get("token_type") != token_type:
            raise InvalidTokenError(f"Invalid {token_type} token")
        exp = payload["exp"]
        if exp <= time.time() - self.settings.token_leeway_seconds:
            raise TokenExpiredError(_EXPIRED_MESSAGES[token_type])
        try:
            role = Role(payload.get("role"))
        except ValueError:
            raise InvalidTokenError(f"Invalid {token_type} token")
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            raise InvalidTokenError(f"Invalid {token_type} token")
        return TokenClaims(
            identity_id=sub,
            role=role,
            token_type=token_type,
            jti=str(payload.get("jti", "")),
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(exp),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: bytes) -> str:
        return self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(self, token: str, secret: bytes) -> Optional[dict[str, Any]]:
        """Return the payload of an authentic token, or None.

        Expiry is left to the caller: a tampered token is reported as invalid,
        never as expired.
        """
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # reject anything but HS256 to avoid algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        return payload
