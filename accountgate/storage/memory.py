from __future__ import annotations

import dataclasses
import json
import os
import tempfile
import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Set

from accountgate.logging import get_logger
from accountgate.storage.errors import ConstraintViolation, UniqueViolation
from accountgate.storage.models import (
    VENDOR_INACTIVE,
    Account,
    LoginEvent,
    PasswordRecord,
    Role,
)

_MAX_LOGIN_EVENTS = 10_000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process account store with one collection per role.

    When ``fs_root`` is given, accounts and credentials are written to
    ``<fs_root>/state/accounts.json`` after every mutation and reloaded on start.
    Each write first merges what other stores sharing the file have written, and a
    lookup that misses checks the file before giving up.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[Role, Dict[str, Account]] = {role: {} for role in Role}
        self.credentials: Dict[str, PasswordRecord] = {}
        self.login_events: Deque[LoginEvent] = deque(maxlen=_MAX_LOGIN_EVENTS)
        self._deleted: Set[str] = set()
        # RLock so helpers can be called while a write holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    # accounts
    def create_account(
        self,
        role: Role,
        email: str,
        *,
        is_verified: bool = False,
        profile: Optional[Dict[str, Any]] = None,
        is_approved: Optional[bool] = None,
    ) -> Account:
        role = Role(role)
        with self._data_lock:
            self._merge_from_disk()
            collection = self.accounts[role]
            if any(existing.email == email for existing in collection.values()):
                raise UniqueViolation(role.value, "email", email)
            account = Account(
                id=str(uuid.uuid4()),
                email=email,
                role=role,
                is_verified=is_verified,
                profile=dict(profile or {}),
            )
            if role == Role.VENDOR:
                account.is_approved = bool(is_approved)
                account.status = VENDOR_INACTIVE
            collection[account.id] = account
            self._persist_state()
            return account

    def get_account(self, role: Role, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts[Role(role)].get(account_id)
            if account is None and self._merge_from_disk():
                account = self.accounts[Role(role)].get(account_id)
            return account

    def _find_by_email(self, role: Role, email: str) -> Optional[Account]:
        return next(
            (a for a in self.accounts[Role(role)].values() if a.email == email),
            None,
        )

    def get_account_by_email(self, role: Role, email: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_by_email(role, email)
            if account is None and self._merge_from_disk():
                account = self._find_by_email(role, email)
            return account

    def list_accounts(
        self,
        role: Role,
        *,
        is_approved: Optional[bool] = None,
        limit: int = 100,
    ) -> List[Account]:
        with self._data_lock:
            results = [
                a
                for a in self.accounts[Role(role)].values()
                if is_approved is None or bool(a.is_approved) == is_approved
            ]
            return sorted(results, key=lambda a: a.created_at, reverse=True)[:limit]

    def update_account(self, role: Role, account_id: str, **fields: Any) -> Optional[Account]:
        allowed = {"is_verified", "is_approved", "status", "is_active", "profile", "last_login_at"}
        unknown = set(fields) - allowed
        if unknown:
            raise ConstraintViolation(
                "unsupported account fields", {"fields": sorted(unknown)}
            )
        with self._data_lock:
            account = self.accounts[Role(role)].get(account_id)
            if not account:
                return None
            for name, value in fields.items():
                setattr(account, name, value)
            account.updated_at = _utcnow()
            self._persist_state()
            return account

    def delete_account(self, role: Role, account_id: str) -> bool:
        with self._data_lock:
            if self.accounts[Role(role)].pop(account_id, None) is None:
                return False
            self.credentials.pop(account_id, None)
            self._deleted.add(account_id)
            self._persist_state()
            return True

    # credentials
    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if not any(account_id in coll for coll in self.accounts.values()):
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            self.credentials[account_id] = PasswordRecord(
                account_id=account_id,
                password_hash=password_hash,
                password_algo=password_algo,
            )
            self._persist_state()

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            record = self.credentials.get(account_id)
            if record is None:
                return None
            return record.password_hash, record.password_algo

    # audit
    def record_login_event(self, event: LoginEvent) -> None:
        with self._data_lock:
            self.login_events.append(event)

    def list_login_events(self, account_id: Optional[str] = None) -> List[LoginEvent]:
        with self._data_lock:
            return [
                e for e in self.login_events if account_id is None or e.account_id == account_id
            ]

    # persistence
    def _read_state(self, path: Path) -> Optional[dict]:
        try:
            return json.loads(path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"failed to read account state: {exc}") from exc

    def _merge_from_disk(self) -> int:
        """Adopt accounts and credentials another process wrote to the state file.

        Several stores may share one ``fs_root`` (the server and
        ``scripts/bootstrap_admin.py``). Records this store does not know are
        adopted, newer copies of known records replace older ones, and ids deleted
        by any store sharing the file stay deleted. Returns the number of adopted
        accounts.
        """
        if self.fs_root is None:
            return 0
        data = self._read_state(self._state_path())
        if not data:
            return 0
        adopted = 0
        with self._data_lock:
            for account_id in data.get("deleted", []):
                if account_id in self._deleted:
                    continue
                self._deleted.add(account_id)
                for collection in self.accounts.values():
                    collection.pop(account_id, None)
                self.credentials.pop(account_id, None)
            for raw in data.get("accounts", []):
                incoming = self._deserialize_account(raw)
                if incoming.id in self._deleted:
                    continue
                collection = self.accounts[incoming.role]
                current = collection.get(incoming.id)
                if current is None:
                    if any(a.email == incoming.email for a in collection.values()):
                        self.logger.warning(
                            "account_state_email_conflict",
                            role=incoming.role.value,
                            account_id=incoming.id,
                        )
                        continue
                    collection[incoming.id] = incoming
                    adopted += 1
                elif incoming.updated_at > current.updated_at:
                    # Update in place; callers may hold the Account object
                    for f in dataclasses.fields(Account):
                        setattr(current, f.name, getattr(incoming, f.name))
            for raw in data.get("credentials", []):
                record = PasswordRecord(
                    account_id=raw["account_id"],
                    password_hash=raw["password_hash"],
                    password_algo=raw.get("password_algo", ""),
                    last_updated_at=datetime.fromisoformat(raw["last_updated_at"]),
                )
                if record.account_id in self._deleted:
                    continue
                current_record = self.credentials.get(record.account_id)
                if current_record is None or record.last_updated_at > current_record.last_updated_at:
                    self.credentials[record.account_id] = record
        return adopted

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        self._merge_from_disk()
        state = {
            "accounts": [
                self._serialize_account(a)
                for collection in self.accounts.values()
                for a in collection.values()
            ],
            "credentials": [
                {
                    "account_id": rec.account_id,
                    "password_hash": rec.password_hash,
                    "password_algo": rec.password_algo,
                    "last_updated_at": rec.last_updated_at.isoformat(),
                }
                for rec in self.credentials.values()
            ],
            "deleted": sorted(self._deleted),
        }
        path = self._state_path()
        # Readers only ever see a complete file
        fd, tmp_name = tempfile.mkstemp(prefix=".accounts-", suffix=".json", dir=path.parent)
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_name, path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise RuntimeError(f"failed to persist account state: {exc}") from exc

    def _load_state(self) -> bool:
        adopted = self._merge_from_disk()
        if adopted:
            self.logger.info(
                "account_state_loaded", accounts=adopted, path=str(self._state_path())
            )
        return adopted > 0

    @staticmethod
    def _serialize_account(account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "role": account.role.value,
            "is_verified": account.is_verified,
            "is_approved": account.is_approved,
            "status": account.status,
            "is_active": account.is_active,
            "profile": account.profile,
            "created_at": account.created_at.isoformat(),
            "updated_at": account.updated_at.isoformat(),
            "last_login_at": account.last_login_at.isoformat() if account.last_login_at else None,
        }

    @staticmethod
    def _deserialize_account(data: dict) -> Account:
        last_login = data.get("last_login_at")
        return Account(
            id=data["id"],
            email=data["email"],
            role=Role(data["role"]),
            is_verified=bool(data.get("is_verified")),
            is_approved=data.get("is_approved"),
            status=data.get("status"),
            is_active=data.get("is_active", True),
            profile=data.get("profile") or {},
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            last_login_at=datetime.fromisoformat(last_login) if last_login else None,
        )
