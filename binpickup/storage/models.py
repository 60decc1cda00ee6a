from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

ROLES = ("admin", "employee", "customer")
PICKUP_STATUSES = ("pending", "assigned", "completed", "cancelled")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RefreshTokenRecord:
    token: str
    issued_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class LoginHistoryEntry:
    timestamp: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool = True


@dataclass
class Account:
    """Persisted account document including credential and lockout state."""

    id: str
    email: str
    name: str
    password_hash: str
    password_algo: str = "argon2id"
    role: str = "customer"
    phone: Optional[str] = None
    address: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    failed_attempts: int = 0
    locked: bool = False
    lock_until: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    refresh_tokens: List[RefreshTokenRecord] = field(default_factory=list)
    last_login: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    login_history: List[LoginHistoryEntry] = field(default_factory=list)

    @classmethod
    def new(
        cls,
        *,
        email: str,
        name: str,
        password_hash: str,
        role: str = "customer",
        phone: Optional[str] = None,
        address: Optional[str] = None,
        password_algo: str = "argon2id",
    ) -> "Account":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            name=name,
            password_hash=password_hash,
            password_algo=password_algo,
            role=role,
            phone=phone,
            address=address,
            created_at=now,
            updated_at=now,
        )


@dataclass
class PickupRequest:
    id: str
    phone: str
    address: str
    name: Optional[str] = None
    customer_id: Optional[str] = None
    status: str = "pending"
    assigned_to: Optional[str] = None
    requested_at: datetime = field(default_factory=utcnow)
    picked_up_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        *,
        phone: str,
        address: str,
        name: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> "PickupRequest":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            phone=phone,
            address=address,
            customer_id=customer_id,
            requested_at=now,
            created_at=now,
            updated_at=now,
        )
