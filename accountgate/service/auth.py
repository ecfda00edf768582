from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from accountgate.config import Settings
from accountgate.logging import get_logger
from accountgate.service.background import TaskTracker
from accountgate.service.challenges import IdentityChallengeIssuer
from accountgate.service.credentials import CredentialVerifier, hash_password_async
from accountgate.service.email import EmailService
from accountgate.service.errors import (
    DuplicateIdentityError,
    EmailDeliveryError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
)
from accountgate.service.gates import AuthContext, RoleGate, extract_bearer
from accountgate.service.registration import AccountMaterializer, RegistrationService
from accountgate.service.revocation import CSRFTokenStore, RevocationRegistry
from accountgate.service.tokens import TokenBundle, TokenCodec, TokenIssuer, TokenRotator
from accountgate.storage.ephemeral import EphemeralStore
from accountgate.storage.errors import UniqueViolation
from accountgate.storage.models import Account, ChallengePurpose, LoginEvent, Role
from accountgate.storage.pending import PendingRegistrationStore

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_account(
        self,
        role: Role,
        email: str,
        *,
        is_verified: bool = False,
        profile: Optional[Dict[str, Any]] = None,
        is_approved: Optional[bool] = None,
    ) -> Account: ...

    def get_account(self, role: Role, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, role: Role, email: str) -> Optional[Account]: ...

    def list_accounts(
        self, role: Role, *, is_approved: Optional[bool] = None, limit: int = 100
    ) -> List[Account]: ...

    def update_account(self, role: Role, account_id: str, **fields: Any) -> Optional[Account]: ...

    def delete_account(self, role: Role, account_id: str) -> bool: ...

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]: ...

    def record_login_event(self, event: LoginEvent) -> None: ...


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthService:
    """Identity provisioning and session-token lifecycle for users, vendors and admins.

    Wires the challenge issuer, materializer, credential verifier, token
    issuer/rotator and role gate over one account store and one TTL store, and
    exposes the flows the HTTP layer calls.
    """

    def __init__(
        self,
        store: AuthStore,
        ephemeral: EphemeralStore,
        settings: Settings,
        email: EmailService,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.email = email
        self.logger = logger
        self.tasks = TaskTracker()

        pending = PendingRegistrationStore(
            ephemeral, ttl_seconds=settings.pending_registration_ttl_seconds
        )
        self.challenges = IdentityChallengeIssuer(
            pending, ttl_seconds=settings.otp_ttl_seconds, clock=clock
        )
        self.materializer = AccountMaterializer(store, self.challenges)
        self.registration = RegistrationService(
            store, self.challenges, self.materializer, email, self.tasks
        )
        self.credentials = CredentialVerifier(store, self.tasks, clock=clock)
        self.revocations = RevocationRegistry(ephemeral, clock=clock)
        self.csrf = CSRFTokenStore(
            ephemeral, ttl_seconds=settings.csrf_token_ttl_seconds, clock=clock
        )
        self.codec = TokenCodec(settings, clock=clock)
        self.issuer = TokenIssuer(self.codec, self.csrf, settings, clock=clock)
        self.rotator = TokenRotator(self.codec, self.issuer, self.revocations, store)
        self.gate = RoleGate(self.codec, self.revocations, store)

    # registration
    async def register(
        self, role: Role, email: str, password: str, profile: Dict[str, Any]
    ) -> str:
        email = normalize_email(email)
        await self.registration.register(role, email, password, profile)
        return email

    async def resend_otp(self, role: Role, email: str) -> None:
        await self.registration.resend(role, normalize_email(email))

    async def verify_otp(
        self, role: Role, email: str, code: Any
    ) -> tuple[Account, TokenBundle]:
        account = await self.registration.verify(role, normalize_email(email), code)
        tokens = await self.issuer.issue(account.id, account.email, account.role)
        return account, tokens

    # sessions
    async def login(
        self,
        role: Role,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[Account, TokenBundle]:
        account = await self.credentials.authenticate(
            role, normalize_email(email), password, ip=ip, user_agent=user_agent
        )
        tokens = await self.issuer.issue(account.id, account.email, account.role)
        return account, tokens

    async def refresh(self, refresh_token: str) -> tuple[Account, TokenBundle]:
        tokens, account = await self.rotator.rotate(refresh_token)
        return account, tokens

    async def logout(
        self, authorization: Optional[str], refresh_token: Optional[str] = None
    ) -> int:
        """Revoke every presented token that is still worth blocking.

        Tokens that fail signature checks are skipped: they are already unusable.
        Returns how many tokens were newly revoked.
        """
        revoked = 0
        for token in (extract_bearer(authorization), refresh_token):
            if not token:
                continue
            payload = self.codec.decode(token, enforce_expiry=False)
            if not payload:
                continue
            if await self.revocations.add(token, float(payload["exp"])):
                revoked += 1
        self.logger.info("logout_completed", revoked=revoked)
        return revoked

    async def authorize(
        self, authorization: Optional[str], allowed_roles: Optional[Iterable[Role]] = None
    ) -> AuthContext:
        return await self.gate.authorize(authorization, allowed_roles)

    def require_approved_vendor(self, ctx: AuthContext) -> Account:
        return self.gate.require_approved_vendor(ctx)

    async def rotate_csrf(self, ctx: AuthContext, presented: Optional[str]) -> str:
        """Consume ``presented`` and hand back a fresh CSRF token for the next write."""
        if not await self.csrf.verify(ctx.role, ctx.account_id, presented):
            raise ForbiddenError("invalid CSRF token", error_code="csrf_invalid")
        return await self.csrf.generate(ctx.role, ctx.account_id)

    # password reset
    async def request_password_reset(self, role: Role, email: str) -> None:
        role = Role(role)
        email = normalize_email(email)
        account = self.store.get_account_by_email(role, email)
        if not account:
            raise NotFoundError(f"{role.value} not found")
        challenge = await self.challenges.issue_reset(role, email, account.id)
        sent = await asyncio.to_thread(self.email.send_password_reset_otp, email, challenge.code)
        if not sent:
            await self.challenges.pending.delete(
                role, email, purpose=ChallengePurpose.PASSWORD_RESET
            )
            raise EmailDeliveryError("could not send password reset email")
        self.logger.info("password_reset_requested", role=role.value, account_id=account.id)

    async def verify_password_reset(self, role: Role, email: str, code: Any) -> None:
        record = await self.challenges.load(
            role, normalize_email(email), ChallengePurpose.PASSWORD_RESET
        )
        self.challenges.check(record, code)

    async def reset_password(
        self, role: Role, email: str, code: Any, new_password: str
    ) -> Account:
        role = Role(role)
        email = normalize_email(email)
        record = await self.challenges.load(role, email, ChallengePurpose.PASSWORD_RESET)
        self.challenges.check(record, code)
        account = self.store.get_account_by_email(role, email)
        if not account or account.id != record.account_id:
            await self.challenges.pending.delete(
                role, email, purpose=ChallengePurpose.PASSWORD_RESET
            )
            raise NotFoundError(f"{role.value} not found")
        password_hash, algo = await hash_password_async(new_password)
        self.store.save_password(account.id, password_hash, algo)
        await self.challenges.pending.delete(
            role, email, purpose=ChallengePurpose.PASSWORD_RESET
        )
        self.logger.info("password_reset_completed", role=role.value, account_id=account.id)
        return account

    async def change_password(
        self, ctx: AuthContext, current_password: str, new_password: str
    ) -> Account:
        """Replace the password of an authenticated account after re-checking the old one."""
        account = ctx.account
        if not await self.credentials.check_password(account, current_password):
            self.logger.info(
                "password_change_rejected", role=account.role.value, account_id=account.id
            )
            raise InvalidCredentialsError("current password is incorrect")
        password_hash, algo = await hash_password_async(new_password)
        self.store.save_password(account.id, password_hash, algo)
        self.logger.info("password_changed", role=account.role.value, account_id=account.id)
        return account

    # administration
    async def provision_account(
        self,
        role: Role,
        email: str,
        password: str,
        profile: Optional[Dict[str, Any]] = None,
        *,
        approved: Optional[bool] = None,
    ) -> Account:
        """Create a verified account directly, skipping the passcode challenge."""
        role = Role(role)
        email = normalize_email(email)
        password_hash, algo = await hash_password_async(password)
        try:
            account = self.store.create_account(
                role,
                email,
                is_verified=True,
                profile=profile or {},
                is_approved=bool(approved) if role == Role.VENDOR else None,
            )
        except UniqueViolation:
            raise DuplicateIdentityError(f"{role.value} already exists")
        self.store.save_password(account.id, password_hash, algo)
        self.logger.info("account_provisioned", role=role.value, account_id=account.id)
        return account

    def get_account(self, role: Role, account_id: str) -> Account:
        account = self.store.get_account(Role(role), account_id)
        if not account:
            raise NotFoundError(f"{Role(role).value} not found")
        return account

    def list_pending_vendors(self, limit: int = 100) -> List[Account]:
        return self.store.list_accounts(Role.VENDOR, is_approved=False, limit=limit)

    async def set_vendor_approval(self, vendor_id: str, approved: bool) -> Account:
        vendor = self.store.update_account(Role.VENDOR, vendor_id, is_approved=approved)
        if not vendor:
            raise NotFoundError("vendor not found")
        self.logger.info("vendor_approval_changed", account_id=vendor.id, approved=approved)
        self.tasks.spawn(
            asyncio.to_thread(self._notify_approval, vendor.email, approved, vendor.profile.get("business_name")),
            name=f"approval-email:{vendor.id}",
        )
        return vendor

    def _notify_approval(self, email: str, approved: bool, business_name: Optional[str]) -> None:
        if not self.email.send_vendor_approval_status(
            email, approved=approved, business_name=business_name
        ):
            self.logger.warning("approval_email_failed", email=email, approved=approved)

    def delete_account(self, role: Role, account_id: str) -> None:
        if not self.store.delete_account(Role(role), account_id):
            raise NotFoundError(f"{Role(role).value} not found")
        self.logger.info("account_deleted", role=Role(role).value, account_id=account_id)

    async def close(self) -> None:
        await self.tasks.drain()
