from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from accountgate.logging import get_logger
from accountgate.service.background import TaskTracker
from accountgate.service.errors import (
    InvalidCredentialsError,
    NotFoundError,
    NotVerifiedError,
)
from accountgate.storage.models import VENDOR_ACTIVE, Account, LoginEvent, Role

PASSWORD_ALGO = "argon2id"

_pwd_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> Tuple[str, str]:
    return _pwd_hasher.hash(password), PASSWORD_ALGO


def verify_password(stored_hash: str, password: str) -> bool:
    try:
        return _pwd_hasher.verify(stored_hash, password)
    except (InvalidHash, VerifyMismatchError, VerificationError):
        return False


async def hash_password_async(password: str) -> Tuple[str, str]:
    """Hash off the event loop; argon2 is deliberately slow."""
    return await asyncio.to_thread(hash_password, password)


class CredentialStore(Protocol):
    def get_account_by_email(self, role: Role, email: str) -> Optional[Account]: ...

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]: ...

    def update_account(self, role: Role, account_id: str, **fields: Any) -> Optional[Account]: ...

    def record_login_event(self, event: LoginEvent) -> None: ...


@dataclass(frozen=True)
class LoginPolicy:
    """What a successful login does for one actor kind."""

    require_verified: bool = True
    activate_on_login: bool = False
    record_login_event: bool = True


LOGIN_POLICIES: Dict[Role, LoginPolicy] = {
    Role.USER: LoginPolicy(),
    Role.VENDOR: LoginPolicy(activate_on_login=True, record_login_event=False),
    # Admin logins used to skip the verified check; admins now need it like everyone else
    Role.ADMIN: LoginPolicy(),
}


class CredentialVerifier:
    """Authenticate an email/password pair against the account store.

    Checks run in a fixed order: account exists, password matches, account is
    verified. Only then do the per-role side effects in :data:`LOGIN_POLICIES` run.
    """

    def __init__(
        self,
        store: CredentialStore,
        tasks: TaskTracker,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.tasks = tasks
        self._clock = clock
        self.logger = get_logger(__name__)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def check_password(self, account: Account, password: str) -> bool:
        record = self.store.get_password_record(account.id)
        if not record:
            self.logger.warning("password_record_missing", account_id=account.id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", account_id=account.id, algo=algo)
            return False
        return await asyncio.to_thread(verify_password, stored_hash, password)

    async def authenticate(
        self,
        role: Role,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        role = Role(role)
        policy = LOGIN_POLICIES[role]
        account = self.store.get_account_by_email(role, email)
        if not account:
            raise NotFoundError(f"{role.value} not found")
        if not await self.check_password(account, password):
            self.logger.info("login_rejected", role=role.value, account_id=account.id, reason="password")
            raise InvalidCredentialsError("invalid credentials")
        if policy.require_verified and not account.is_verified:
            self.logger.info("login_rejected", role=role.value, account_id=account.id, reason="unverified")
            raise NotVerifiedError("account email is not verified")

        updates: Dict[str, Any] = {"last_login_at": self._now()}
        if policy.activate_on_login:
            updates["status"] = VENDOR_ACTIVE
        account = self.store.update_account(role, account.id, **updates) or account

        if policy.record_login_event:
            event = LoginEvent(
                account_id=account.id,
                role=role,
                email=account.email,
                occurred_at=self._now(),
                ip=ip,
                user_agent=user_agent,
            )
            self.tasks.spawn(self._record_login(event), name=f"login-audit:{account.id}")
        self.logger.info("login_succeeded", role=role.value, account_id=account.id)
        return account

    async def _record_login(self, event: LoginEvent) -> None:
        try:
            await asyncio.to_thread(self.store.record_login_event, event)
        except Exception as exc:
            # Audit must never decide whether a login succeeds
            self.logger.warning(
                "login_audit_failed", account_id=event.account_id, error=str(exc)
            )
