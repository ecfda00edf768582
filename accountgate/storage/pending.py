from __future__ import annotations

from typing import Optional

from accountgate.logging import get_logger
from accountgate.storage.ephemeral import EphemeralStore
from accountgate.storage.models import ChallengePurpose, PendingRegistration, Role

logger = get_logger(__name__)


class PendingRegistrationStore:
    """Challenge records keyed by (purpose, role, email).

    Registration entries hold the unverified profile and credential hash until the
    passcode is confirmed; password-reset entries live in the same keyspace under
    their own purpose. Records are JSON in the backing TTL store and are not
    expected to survive a restart of a process-local backend.
    """

    def __init__(self, backend: EphemeralStore, *, ttl_seconds: int) -> None:
        self.backend = backend
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(purpose: ChallengePurpose, role: Role, email: str) -> str:
        return f"auth:challenge:{ChallengePurpose(purpose).value}:{Role(role).value}:{email}"

    async def put(self, record: PendingRegistration) -> None:
        # The record outlives its challenge so a resend can reuse the payload
        ttl = max(
            self.ttl_seconds,
            int((record.challenge.expires_at - record.challenge.issued_at).total_seconds()),
        )
        await self.backend.set_value(
            self._key(record.purpose, record.role, record.email), record.to_json(), ttl
        )

    async def get(
        self, role: Role, email: str, *, purpose: ChallengePurpose = ChallengePurpose.REGISTRATION
    ) -> Optional[PendingRegistration]:
        raw = await self.backend.get_value(self._key(purpose, role, email))
        if raw is None:
            return None
        try:
            return PendingRegistration.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("pending_record_corrupt", role=Role(role).value, error=str(exc))
            await self.backend.delete_value(self._key(purpose, role, email))
            return None

    async def delete(
        self, role: Role, email: str, *, purpose: ChallengePurpose = ChallengePurpose.REGISTRATION
    ) -> bool:
        return await self.backend.delete_value(self._key(purpose, role, email))


__all__ = ["PendingRegistrationStore"]
