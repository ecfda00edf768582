from __future__ import annotations

import hmac
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from accountgate.logging import get_logger
from accountgate.service.errors import InvalidOrExpiredChallengeError, NotFoundError
from accountgate.storage.models import (
    Challenge,
    ChallengePurpose,
    PendingRegistration,
    Role,
)
from accountgate.storage.pending import PendingRegistrationStore

OTP_DIGITS = 6


class IdentityChallengeIssuer:
    """Issue and check time-boxed one-time passcodes bound to an identity and a purpose.

    Registration and password reset share this issuer, the same store and the
    same ``check`` path; only the purpose in the record key differs.
    """

    def __init__(
        self,
        pending: PendingRegistrationStore,
        *,
        ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.pending = pending
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    @staticmethod
    def generate_code() -> str:
        low = 10 ** (OTP_DIGITS - 1)
        return str(low + secrets.randbelow(9 * low))

    def new_challenge(self, purpose: ChallengePurpose) -> Challenge:
        now = self._now()
        return Challenge(
            code=self.generate_code(),
            purpose=ChallengePurpose(purpose),
            issued_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )

    async def issue(
        self,
        role: Role,
        email: str,
        payload: Dict[str, Any],
        *,
        password_hash: str,
        password_algo: str,
    ) -> Challenge:
        """Create or overwrite the pending registration for ``email``."""
        challenge = self.new_challenge(ChallengePurpose.REGISTRATION)
        record = PendingRegistration(
            role=Role(role),
            email=email,
            challenge=challenge,
            profile=dict(payload),
            password_hash=password_hash,
            password_algo=password_algo,
            created_at=challenge.issued_at,
        )
        await self.pending.put(record)
        self.logger.info("challenge_issued", role=Role(role).value, purpose=challenge.purpose.value)
        return challenge

    async def reissue(self, role: Role, email: str) -> Challenge:
        """Replace the challenge on an existing pending registration, keeping its payload."""
        record = await self.pending.get(role, email)
        if record is None:
            raise NotFoundError("no pending registration for this email")
        record.challenge = self.new_challenge(ChallengePurpose.REGISTRATION)
        await self.pending.put(record)
        self.logger.info("challenge_reissued", role=Role(role).value, purpose="registration")
        return record.challenge

    async def issue_reset(self, role: Role, email: str, account_id: str) -> Challenge:
        challenge = self.new_challenge(ChallengePurpose.PASSWORD_RESET)
        await self.pending.put(
            PendingRegistration(
                role=Role(role),
                email=email,
                challenge=challenge,
                account_id=account_id,
                created_at=challenge.issued_at,
            )
        )
        self.logger.info("challenge_issued", role=Role(role).value, purpose=challenge.purpose.value)
        return challenge

    async def load(
        self, role: Role, email: str, purpose: ChallengePurpose
    ) -> PendingRegistration:
        record = await self.pending.get(role, email, purpose=purpose)
        if record is None:
            if purpose == ChallengePurpose.REGISTRATION:
                raise NotFoundError("no pending registration for this email")
            raise NotFoundError("no password reset requested for this email")
        return record

    def check(self, record: PendingRegistration, submitted: Optional[Any]) -> None:
        """Raise InvalidOrExpiredChallengeError unless ``submitted`` matches and is live.

        A wrong code and an expired code produce the same error.
        """
        candidate = "" if submitted is None else str(submitted).strip()
        matches = hmac.compare_digest(
            candidate.encode("utf-8"), record.challenge.code.encode("utf-8")
        )
        expired = record.challenge.is_expired(self._now())
        if not matches or expired:
            self.logger.info(
                "challenge_rejected",
                role=record.role.value,
                purpose=record.purpose.value,
                reason="expired" if matches else "mismatch",
            )
            raise InvalidOrExpiredChallengeError("invalid or expired OTP")
