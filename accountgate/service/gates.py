from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from accountgate.logging import get_logger
from accountgate.service.errors import (
    ForbiddenError,
    InvalidOrRevokedTokenError,
    NotApprovedError,
)
from accountgate.service.revocation import RevocationRegistry
from accountgate.service.tokens import ACCESS, AccountLookup, TokenClaims, TokenCodec
from accountgate.storage.models import Account, Role

logger = get_logger(__name__)

ALL_ROLES = frozenset(Role)


@dataclass
class AuthContext:
    account: Account
    claims: TokenClaims
    token: str

    @property
    def account_id(self) -> str:
        return self.account.id

    @property
    def role(self) -> Role:
        return self.account.role


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class RoleGate:
    """Verify a bearer token, then authorize its role against an allowed set."""

    def __init__(
        self,
        codec: TokenCodec,
        revocations: RevocationRegistry,
        store: AccountLookup,
    ) -> None:
        self.codec = codec
        self.revocations = revocations
        self.store = store

    async def verify(self, token: str, *, expected_type: str = ACCESS) -> TokenClaims:
        payload = self.codec.decode(token)
        claims = self.codec.to_claims(payload) if payload else None
        if not claims or claims.type != expected_type:
            raise InvalidOrRevokedTokenError("invalid or expired token")
        if await self.revocations.contains(token):
            raise InvalidOrRevokedTokenError("token has been revoked")
        return claims

    async def authorize(
        self,
        authorization: Optional[str],
        allowed_roles: Optional[Iterable[Role]] = None,
    ) -> AuthContext:
        token = extract_bearer(authorization)
        if not token:
            raise InvalidOrRevokedTokenError("missing bearer token")
        claims = await self.verify(token)
        allowed = ALL_ROLES if allowed_roles is None else frozenset(Role(r) for r in allowed_roles)
        if claims.role not in allowed:
            logger.info(
                "role_gate_denied",
                role=claims.role.value,
                allowed=sorted(r.value for r in allowed),
            )
            raise ForbiddenError("access denied for this role")
        account = self.store.get_account(claims.role, claims.id)
        if not account or not account.is_active:
            raise InvalidOrRevokedTokenError("account no longer exists")
        return AuthContext(account=account, claims=claims, token=token)

    def require_approved_vendor(self, ctx: AuthContext) -> Account:
        if ctx.role != Role.VENDOR:
            raise ForbiddenError("vendor access only")
        if ctx.account.is_approved is not True:
            raise NotApprovedError("vendor account is pending admin approval")
        return ctx.account
