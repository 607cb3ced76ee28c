from __future__ import annotations

import asyncio
import hmac
import secrets
import time
from typing import Optional, Protocol, Tuple

from otpgate.config import Settings
from otpgate.logging import get_logger, redact_email
from otpgate.service.email import EmailService
from otpgate.service.errors import (
    InternalError,
    InvalidCodeError,
    NoChallengeError,
    NotFoundError,
    OtpExpiredError,
)

logger = get_logger(__name__)


class ChallengeStore(Protocol):
    def set_otp_challenge(self, email: str, challenge: str) -> bool: ...

    def get_otp_challenge(self, email: str) -> Optional[str]: ...

    def clear_otp_challenge(self, email: str) -> None: ...

    def consume_otp_challenge(self, email: str, expected: str) -> bool: ...


def encode_challenge(code: str, expires_at_ms: int) -> str:
    return f"{code}:{expires_at_ms}"


def decode_challenge(value: str) -> Optional[Tuple[str, int]]:
    """Split ``<code>:<expiry-epoch-millis>``; None when the value is malformed."""
    code, sep, expiry = value.partition(":")
    if not sep or not code or not expiry.isdigit():
        return None
    return code, int(expiry)


class OtpChallengeManager:
    """Issue, deliver and consume the single live one-time code per identity."""

    def __init__(
        self, store: ChallengeStore, email_service: EmailService, settings: Settings
    ) -> None:
        self.store = store
        self.email_service = email_service
        self.settings = settings

    def _now_ms(self) -> int:
        return int(time.time() * 1000)

    def _generate_code(self) -> str:
        digits = self.settings.otp_length
        return str(secrets.randbelow(10**digits)).zfill(digits)

    async def issue_challenge(self, email: str) -> str:
        """Store a fresh code for ``email``, overwriting any prior one, and mail it."""
        code = self._generate_code()
        ttl_minutes = self.settings.otp_ttl_minutes
        expires_at_ms = self._now_ms() + ttl_minutes * 60 * 1000
        if not self.store.set_otp_challenge(email, encode_challenge(code, expires_at_ms)):
            raise NotFoundError("User not found")
        logger.info("otp_issued", email=redact_email(email), ttl_minutes=ttl_minutes)

        sent = await asyncio.to_thread(
            self.email_service.send_otp, email, code, ttl_minutes
        )
        if not sent:
            logger.error("otp_delivery_failed", email=redact_email(email))
            raise InternalError("Failed to send OTP email")
        return code

    def verify_and_consume(self, email: str, submitted_code: str) -> None:
        stored = self.store.get_otp_challenge(email)
        if not stored:
            raise NoChallengeError("OTP not found or expired. Please request a new one.")

        decoded = decode_challenge(stored)
        if decoded is None:
            logger.warning("otp_challenge_malformed", email=redact_email(email))
            self.store.clear_otp_challenge(email)
            raise NoChallengeError("OTP not found or expired. Please request a new one.")
        code, expires_at_ms = decoded

        if self._now_ms() > expires_at_ms:
            self.store.clear_otp_challenge(email)
            logger.info("otp_expired", email=redact_email(email))
            raise OtpExpiredError("OTP expired")

        if not hmac.compare_digest(code.encode(), str(submitted_code).encode()):
            # a wrong guess leaves the challenge in place
            logger.info("otp_mismatch", email=redact_email(email))
            raise InvalidCodeError("Invalid OTP")

        if not self.store.consume_otp_challenge(email, stored):
            # a concurrent verification or a fresh send got there first
            raise NoChallengeError("OTP not found or expired. Please request a new one.")
        logger.info("otp_consumed", email=redact_email(email))
