from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from accountgate.config import Settings
from accountgate.logging import get_logger
from accountgate.service.errors import InvalidOrRevokedTokenError
from accountgate.service.revocation import CSRFTokenStore, RevocationRegistry
from accountgate.storage.models import Account, Role

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class AccountLookup(Protocol):
    def get_account(self, role: Role, account_id: str) -> Optional[Account]: ...


@dataclass
class TokenClaims:
    id: str
    email: str
    role: Role
    type: str
    iat: int
    exp: int
    jti: Optional[str] = None


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: str
    csrf_token: str
    access_expires_at: int
    refresh_expires_at: int
    token_type: str = "bearer"

    def to_response(self) -> dict[str, Any]:
        return {
            "token": self.access_token,
            "refresh_token": self.refresh_token,
            "csrf_token": self.csrf_token,
            "token_type": self.token_type,
            "expires_at": datetime.fromtimestamp(
                self.access_expires_at, tz=timezone.utc
            ).isoformat(),
        }


class TokenCodec:
    """HS256 signing and verification of session tokens."""

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, enforce_expiry: bool = True) -> Optional[dict[str, Any]]:
        """Return the payload of a correctly signed token, or None.

        With ``enforce_expiry`` the token is refused once fewer than
        ``token_expiry_buffer_seconds`` remain before ``exp``.
        """
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "replace")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if enforce_expiry and self._clock() >= exp_ts - self.settings.token_expiry_buffer_seconds:
            return None
        return payload

    @staticmethod
    def to_claims(payload: dict[str, Any]) -> Optional[TokenClaims]:
        try:
            return TokenClaims(
                id=str(payload["id"]),
                email=str(payload["email"]),
                role=Role(payload["role"]),
                type=str(payload["type"]),
                iat=int(payload["iat"]),
                exp=int(payload["exp"]),
                jti=payload.get("jti"),
            )
        except (KeyError, TypeError, ValueError):
            return None


class TokenIssuer:
    """Mint access/refresh/CSRF token triples for an account."""

    def __init__(
        self,
        codec: TokenCodec,
        csrf: CSRFTokenStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.codec = codec
        self.csrf = csrf
        self.settings = settings
        self._clock = clock

    def _claims(self, account_id: str, email: str, role: Role, token_type: str, iat: int, exp: int) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "id": account_id,
            "email": email,
            "role": Role(role).value,
            "type": token_type,
            "iat": iat,
            "exp": exp,
            # 16 random bytes keep tokens minted in the same second distinct
            "jti": secrets.token_hex(16),
        }

    async def issue(self, account_id: str, email: str, role: Role) -> TokenBundle:
        role = Role(role)
        now = int(self._clock())
        access_exp = now + self.settings.access_token_ttl_minutes(role.value) * 60
        refresh_exp = now + self.settings.refresh_token_ttl_minutes * 60
        access_token = self.codec.encode(
            self._claims(account_id, email, role, ACCESS, now, access_exp)
        )
        refresh_token = self.codec.encode(
            self._claims(account_id, email, role, REFRESH, now, refresh_exp)
        )
        csrf_token = await self.csrf.generate(role, account_id)
        return TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            csrf_token=csrf_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )


class TokenRotator:
    """Exchange a refresh token for a new pair, consuming the old one."""

    def __init__(
        self,
        codec: TokenCodec,
        issuer: TokenIssuer,
        revocations: RevocationRegistry,
        store: AccountLookup,
    ) -> None:
        self.codec = codec
        self.issuer = issuer
        self.revocations = revocations
        self.store = store

    async def rotate(self, refresh_token: str) -> tuple[TokenBundle, Account]:
        payload = self.codec.decode(refresh_token)
        claims = self.codec.to_claims(payload) if payload else None
        if not claims or claims.type != REFRESH:
            raise InvalidOrRevokedTokenError("invalid or revoked refresh token")
        # Revoke before issuing: a concurrent or later replay finds the key taken
        if not await self.revocations.add(refresh_token, claims.exp):
            logger.warning("refresh_token_replayed", account_id=claims.id, role=claims.role.value)
            raise InvalidOrRevokedTokenError("invalid or revoked refresh token")
        account = self.store.get_account(claims.role, claims.id)
        if not account or not account.is_active:
            raise InvalidOrRevokedTokenError("invalid or revoked refresh token")
        bundle = await self.issuer.issue(account.id, account.email, account.role)
        logger.info("refresh_token_rotated", account_id=account.id, role=account.role.value)
        return bundle, account


__all__ = [
    "ACCESS",
    "REFRESH",
    "TokenBundle",
    "TokenClaims",
    "TokenCodec",
    "TokenIssuer",
    "TokenRotator",
]
