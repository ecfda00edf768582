from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Actor kinds. Each one is stored in its own account collection."""

    USER = "user"
    VENDOR = "vendor"
    ADMIN = "admin"


class ChallengePurpose(str, Enum):
    REGISTRATION = "registration"
    PASSWORD_RESET = "password_reset"


VENDOR_ACTIVE = "Active"
VENDOR_INACTIVE = "InActive"


@dataclass
class Account:
    id: str
    email: str
    role: Role
    is_verified: bool = False
    # Vendor-only fields; None for users and admins
    is_approved: Optional[bool] = None
    status: Optional[str] = None
    is_active: bool = True
    profile: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None

    def to_public(self) -> Dict[str, Any]:
        # Profile first so stored extras can never shadow the account fields
        data: Dict[str, Any] = {
            **self.profile,
            "id": self.id,
            "email": self.email,
            "role": self.role.value,
            "is_verified": self.is_verified,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if self.role == Role.VENDOR:
            data["is_approved"] = bool(self.is_approved)
            data["status"] = self.status
        if self.last_login_at:
            data["last_login_at"] = self.last_login_at.isoformat()
        return data


@dataclass
class PasswordRecord:
    account_id: str
    password_hash: str
    password_algo: str = "argon2id"
    last_updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class Challenge:
    code: str
    purpose: ChallengePurpose
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class PendingRegistration:
    """A challenge bound to (purpose, role, email).

    Registration records carry the profile payload and the already-hashed
    credential; password-reset records carry only the account id.
    """

    role: Role
    email: str
    challenge: Challenge
    profile: Dict[str, Any] = field(default_factory=dict)
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    account_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def purpose(self) -> ChallengePurpose:
        return self.challenge.purpose

    def to_json(self) -> str:
        data = asdict(self)
        data["role"] = self.role.value
        data["created_at"] = self.created_at.isoformat()
        data["challenge"] = {
            "code": self.challenge.code,
            "purpose": self.challenge.purpose.value,
            "issued_at": self.challenge.issued_at.isoformat(),
            "expires_at": self.challenge.expires_at.isoformat(),
        }
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> "PendingRegistration":
        data = json.loads(raw)
        challenge = data.pop("challenge")
        return cls(
            role=Role(data["role"]),
            email=data["email"],
            challenge=Challenge(
                code=challenge["code"],
                purpose=ChallengePurpose(challenge["purpose"]),
                issued_at=datetime.fromisoformat(challenge["issued_at"]),
                expires_at=datetime.fromisoformat(challenge["expires_at"]),
            ),
            profile=data.get("profile") or {},
            password_hash=data.get("password_hash"),
            password_algo=data.get("password_algo"),
            account_id=data.get("account_id"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class LoginEvent:
    account_id: str
    role: Role
    email: str
    occurred_at: datetime = field(default_factory=_utcnow)
    ip: Optional[str] = None
    user_agent: Optional[str] = None
