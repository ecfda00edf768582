from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
from typing import Callable, Optional

from accountgate.logging import get_logger
from accountgate.storage.ephemeral import EphemeralStore
from accountgate.storage.models import Role

logger = get_logger(__name__)


class RevocationRegistry:
    """Denylist of tokens that must be rejected even though their signature is valid.

    Each entry lives only as long as the token it blocks would have, so the
    registry never grows past the set of unexpired revoked tokens.
    """

    def __init__(
        self, backend: EphemeralStore, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.backend = backend
        self._clock = clock

    @staticmethod
    def _key(token: str) -> str:
        return f"auth:revoked:{hashlib.sha256(token.encode('utf-8')).hexdigest()}"

    def _ttl(self, expires_at: float) -> int:
        return max(1, int(expires_at - self._clock()))

    async def add(self, token: str, expires_at: float) -> bool:
        """Revoke ``token``; return False if it was already revoked.

        The check and the insert are one atomic step in the backend, which is what
        makes a refresh token single use under concurrent rotation.
        """
        if expires_at <= self._clock():
            # Already dead; nothing to block
            return False
        return await self.backend.set_value_if_absent(
            self._key(token), "1", self._ttl(expires_at)
        )

    async def contains(self, token: str) -> bool:
        try:
            return await self.backend.exists(self._key(token))
        except Exception as exc:
            # Treat an unreachable registry as "revoked" rather than accept a possibly dead token
            logger.warning("revocation_check_failed_defaulting_to_revoked", error=str(exc))
            return True


class CSRFTokenStore:
    """One live anti-forgery token per (role, account).

    Generating a token replaces any previous one. A token verifies once.
    """

    def __init__(
        self,
        backend: EphemeralStore,
        *,
        ttl_seconds: int = 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @staticmethod
    def _key(role: Role, account_id: str) -> str:
        return f"auth:csrf:{Role(role).value}:{account_id}"

    async def generate(self, role: Role, account_id: str) -> str:
        token = secrets.token_hex(32)
        entry = json.dumps({"token": token, "issued_at": self._clock()})
        await self.backend.set_value(self._key(role, account_id), entry, self.ttl_seconds)
        return token

    async def verify(self, role: Role, account_id: str, token: Optional[str]) -> bool:
        if not token:
            return False
        key = self._key(role, account_id)
        raw = await self.backend.get_value(key)
        if raw is None:
            return False
        try:
            entry = json.loads(raw)
            stored = str(entry["token"])
            issued_at = float(entry["issued_at"])
        except (ValueError, KeyError, TypeError):
            await self.backend.delete_value(key)
            return False
        if self._clock() - issued_at >= self.ttl_seconds:
            await self.backend.delete_value(key)
            return False
        if not hmac.compare_digest(stored.encode("utf-8"), token.encode("utf-8")):
            return False
        await self.backend.delete_value(key)
        return True


__all__ = ["RevocationRegistry", "CSRFTokenStore"]
