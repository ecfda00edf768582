from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Protocol

from accountgate.logging import get_logger
from accountgate.service.background import TaskTracker
from accountgate.service.challenges import IdentityChallengeIssuer
from accountgate.service.credentials import hash_password_async
from accountgate.service.email import EmailService
from accountgate.service.errors import (
    AlreadyVerifiedError,
    DuplicateIdentityError,
    EmailDeliveryError,
)
from accountgate.storage.errors import UniqueViolation
from accountgate.storage.models import Account, Challenge, ChallengePurpose, Role

logger = get_logger(__name__)


class AccountStore(Protocol):
    def create_account(
        self,
        role: Role,
        email: str,
        *,
        is_verified: bool = False,
        profile: Optional[Dict[str, Any]] = None,
        is_approved: Optional[bool] = None,
    ) -> Account: ...

    def get_account_by_email(self, role: Role, email: str) -> Optional[Account]: ...

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None: ...


def display_name(profile: Dict[str, Any]) -> Optional[str]:
    return profile.get("name") or profile.get("contact_name") or profile.get("business_name")


class AccountMaterializer:
    """Turn a confirmed pending registration into a durable, verified account.

    The steps (lookup, code check, account write, credential write, pending
    delete) are not one transaction. If the process dies after the account write
    the pending entry lingers; a later verify then finds the account and clears it.
    """

    def __init__(self, store: AccountStore, challenges: IdentityChallengeIssuer) -> None:
        self.store = store
        self.challenges = challenges

    async def verify(self, role: Role, email: str, submitted_code: Any) -> Account:
        role = Role(role)
        record = await self.challenges.load(role, email, ChallengePurpose.REGISTRATION)
        self.challenges.check(record, submitted_code)
        try:
            account = self.store.create_account(
                role,
                email,
                is_verified=True,
                profile=record.profile,
                is_approved=False if role == Role.VENDOR else None,
            )
        except UniqueViolation:
            await self.challenges.pending.delete(role, email)
            logger.warning("stale_pending_registration_cleared", role=role.value)
            raise DuplicateIdentityError(f"{role.value} already exists")
        self.store.save_password(
            account.id, record.password_hash or "", record.password_algo or ""
        )
        await self.challenges.pending.delete(role, email)
        logger.info("account_materialized", role=role.value, account_id=account.id)
        return account


class RegistrationService:
    """register → resend* → verify for all three actor kinds."""

    def __init__(
        self,
        store: AccountStore,
        challenges: IdentityChallengeIssuer,
        materializer: AccountMaterializer,
        email: EmailService,
        tasks: TaskTracker,
    ) -> None:
        self.store = store
        self.challenges = challenges
        self.materializer = materializer
        self.email = email
        self.tasks = tasks

    async def register(
        self, role: Role, email: str, password: str, profile: Dict[str, Any]
    ) -> Challenge:
        role = Role(role)
        if self.store.get_account_by_email(role, email):
            raise DuplicateIdentityError(f"{role.value} already exists")
        password_hash, algo = await hash_password_async(password)
        challenge = await self.challenges.issue(
            role, email, profile, password_hash=password_hash, password_algo=algo
        )
        sent = await asyncio.to_thread(
            self.email.send_registration_otp, email, challenge.code, name=display_name(profile)
        )
        if not sent:
            # Nobody can confirm a code they never received; drop the pending entry
            await self.challenges.pending.delete(role, email)
            raise EmailDeliveryError("could not send verification email")
        logger.info("registration_pending", role=role.value)
        return challenge

    async def resend(self, role: Role, email: str) -> Challenge:
        role = Role(role)
        if self.store.get_account_by_email(role, email):
            raise AlreadyVerifiedError(f"{role.value} is already verified")
        challenge = await self.challenges.reissue(role, email)
        record = await self.challenges.pending.get(role, email)
        name = display_name(record.profile) if record else None
        sent = await asyncio.to_thread(
            self.email.send_registration_otp, email, challenge.code, name=name
        )
        if not sent:
            raise EmailDeliveryError("could not send verification email")
        return challenge

    async def verify(self, role: Role, email: str, submitted_code: Any) -> Account:
        account = await self.materializer.verify(role, email, submitted_code)
        self.tasks.spawn(
            asyncio.to_thread(
                self._send_welcome, account.email, display_name(account.profile)
            ),
            name=f"welcome-email:{account.id}",
        )
        return account

    def _send_welcome(self, email: str, name: Optional[str]) -> None:
        if not self.email.send_welcome(email, name=name):
            logger.warning("welcome_email_failed", email=email)
