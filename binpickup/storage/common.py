"""Document conversion shared between the memory and postgres stores.

Both backends persist accounts and pickups as JSON documents, so the mapping
between dataclasses and plain dicts lives here to keep them in step.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from binpickup.storage.models import (
    Account,
    LoginHistoryEntry,
    PickupRequest,
    RefreshTokenRecord,
)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat()


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_email(email: str) -> str:
    return email.strip().lower()


def account_to_document(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "email": account.email,
        "name": account.name,
        "role": account.role,
        "phone": account.phone,
        "address": account.address,
        "is_active": account.is_active,
        "created_at": serialize_datetime(account.created_at),
        "updated_at": serialize_datetime(account.updated_at),
        "password_hash": account.password_hash,
        "password_algo": account.password_algo,
        "failed_attempts": account.failed_attempts,
        "locked": account.locked,
        "lock_until": serialize_datetime(account.lock_until),
        "password_changed_at": serialize_datetime(account.password_changed_at),
        "refresh_tokens": [
            {
                "token": r.token,
                "issued_at": serialize_datetime(r.issued_at),
                "expires_at": serialize_datetime(r.expires_at),
                "user_agent": r.user_agent,
                "ip_address": r.ip_address,
            }
            for r in account.refresh_tokens
        ],
        "last_login": serialize_datetime(account.last_login),
        "last_login_ip": account.last_login_ip,
        "login_history": [
            {
                "timestamp": serialize_datetime(h.timestamp),
                "ip_address": h.ip_address,
                "user_agent": h.user_agent,
                "success": h.success,
            }
            for h in account.login_history
        ],
    }


def account_from_document(data: Dict[str, Any]) -> Account:
    return Account(
        id=data["id"],
        email=data["email"],
        name=data.get("name", ""),
        role=data.get("role", "customer"),
        phone=data.get("phone"),
        address=data.get("address"),
        is_active=data.get("is_active", True),
        created_at=deserialize_datetime(data.get("created_at")) or datetime.now(timezone.utc),
        updated_at=deserialize_datetime(data.get("updated_at")) or datetime.now(timezone.utc),
        password_hash=data["password_hash"],
        password_algo=data.get("password_algo", "argon2id"),
        failed_attempts=int(data.get("failed_attempts", 0)),
        locked=bool(data.get("locked", False)),
        lock_until=deserialize_datetime(data.get("lock_until")),
        password_changed_at=deserialize_datetime(data.get("password_changed_at")),
        refresh_tokens=[
            RefreshTokenRecord(
                token=r["token"],
                issued_at=deserialize_datetime(r["issued_at"]),
                expires_at=deserialize_datetime(r["expires_at"]),
                user_agent=r.get("user_agent"),
                ip_address=r.get("ip_address"),
            )
            for r in data.get("refresh_tokens", [])
        ],
        last_login=deserialize_datetime(data.get("last_login")),
        last_login_ip=data.get("last_login_ip"),
        login_history=[
            LoginHistoryEntry(
                timestamp=deserialize_datetime(h["timestamp"]),
                ip_address=h.get("ip_address"),
                user_agent=h.get("user_agent"),
                success=bool(h.get("success", True)),
            )
            for h in data.get("login_history", [])
        ],
    )


def pickup_to_document(pickup: PickupRequest) -> Dict[str, Any]:
    return {
        "id": pickup.id,
        "customer_id": pickup.customer_id,
        "name": pickup.name,
        "phone": pickup.phone,
        "address": pickup.address,
        "status": pickup.status,
        "assigned_to": pickup.assigned_to,
        "requested_at": serialize_datetime(pickup.requested_at),
        "picked_up_at": serialize_datetime(pickup.picked_up_at),
        "created_at": serialize_datetime(pickup.created_at),
        "updated_at": serialize_datetime(pickup.updated_at),
    }


def pickup_from_document(data: Dict[str, Any]) -> PickupRequest:
    now = datetime.now(timezone.utc)
    return PickupRequest(
        id=data["id"],
        customer_id=data.get("customer_id"),
        name=data.get("name"),
        phone=data["phone"],
        address=data["address"],
        status=data.get("status", "pending"),
        assigned_to=data.get("assigned_to"),
        requested_at=deserialize_datetime(data.get("requested_at")) or now,
        picked_up_at=deserialize_datetime(data.get("picked_up_at")),
        created_at=deserialize_datetime(data.get("created_at")) or now,
        updated_at=deserialize_datetime(data.get("updated_at")) or now,
    )
