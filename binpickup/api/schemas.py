from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from binpickup.service.tokens import TokenPair
from binpickup.storage.models import Account, PickupRequest


# Zero-width characters and bidi overrides used to spoof look-alike values
_INVISIBLE = dict.fromkeys(
    [0x200B, 0x200C, 0x200D, 0xFEFF, *range(0x202A, 0x202F), *range(0x2066, 0x206A)]
)


def _normalize_unicode(value: str) -> str:
    return unicodedata.normalize("NFKC", value.translate(_INVISIBLE))


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FieldProblem(BaseModel):
    field: str
    message: str


class Envelope(BaseModel):
    """Uniform response body for every endpoint."""

    status: Literal["success", "error"]
    message: str
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    data: Optional[Any] = None
    errors: Optional[List[FieldProblem]] = None

    def render(self) -> dict:
        return self.model_dump(exclude_none=True, mode="json")


def ok(message: str, data: Any = None) -> dict:
    return Envelope(status="success", message=message, data=data).render()


_EMAIL_PATTERN = re.compile(
    r"^(?P<local>[a-z0-9.!#$%&'*+/=?^_`{|}~-]{1,64})"
    r"@(?P<domain>(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+"
    r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)$"
)


def _validate_email(value: str) -> str:
    """Lower-case, strip and normalise an address, then check its shape."""
    if not isinstance(value, str):
        raise ValueError("email is required")
    email = _normalize_unicode(value.strip().lower())
    if len(email) > 254 or not _EMAIL_PATTERN.match(email):
        raise ValueError("please provide a valid email")
    return email


_PASSWORD_CLASSES = (
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"\d"), "a number"),
    (re.compile(r"[^A-Za-z\d]"), "a special character"),
)


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    missing = [label for pattern, label in _PASSWORD_CLASSES if not pattern.search(value)]
    if missing:
        raise ValueError("password must contain " + ", ".join(missing))
    return value


_NAME_PATTERN = re.compile(r"^[^\W\d_]+(?:[ '\-][^\W\d_]+)*$")


def _validate_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = _normalize_unicode(value).strip()
    if not 1 <= len(value) <= 100:
        raise ValueError("name must be between 1 and 100 characters")
    if not _NAME_PATTERN.match(value):
        raise ValueError("name can only contain letters and spaces")
    return value


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return _normalize_unicode(value).strip()


class RegisterRequest(_CamelModel):
    email: str
    password: str
    name: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=32)
    address: Optional[str] = Field(default=None, max_length=500)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)

    @field_validator("phone", "address")
    @classmethod
    def _clean(cls, value: Optional[str]) -> Optional[str]:
        return _clean_text(value)


class LoginRequest(_CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(_CamelModel):
    # optional so a missing token is reported by the service, not the schema
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class LogoutRequest(_CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)
    logout_all: bool = False


class PasswordChangeRequest(_CamelModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PickupCreateRequest(_CamelModel):
    phone: str = Field(..., min_length=5, max_length=32)
    address: str = Field(..., min_length=5, max_length=500)
    name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("phone", "address", "name")
    @classmethod
    def _clean(cls, value: Optional[str]) -> Optional[str]:
        return _clean_text(value)


class PickupAssignRequest(_CamelModel):
    pickup_id: str = Field(..., min_length=1, max_length=64)
    employee_id: str = Field(..., min_length=1, max_length=64)


class PickupUpdateRequest(_CamelModel):
    name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, min_length=5, max_length=32)
    address: Optional[str] = Field(default=None, min_length=5, max_length=500)
    status: Optional[Literal["pending", "assigned", "completed", "cancelled"]] = None
    assigned_to: Optional[str] = Field(default=None, max_length=64)


class AdminCreateUserRequest(_CamelModel):
    name: str
    email: str
    password: str
    role: Literal["admin", "employee", "customer"]
    phone: Optional[str] = Field(default=None, max_length=32)
    address: Optional[str] = Field(default=None, max_length=500)

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _validate_admin_name(cls, value: str) -> str:
        return _validate_name(value)


class AdminUpdateUserRequest(_CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = Field(default=None, max_length=32)
    address: Optional[str] = Field(default=None, max_length=500)

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("name")
    @classmethod
    def _validate_update_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value)


class RoleChangeRequest(_CamelModel):
    role: Literal["admin", "employee", "customer"]


class UserResponse(_CamelModel):
    id: str
    email: str
    name: str
    role: str
    phone: Optional[str] = None
    address: Optional[str] = None
    is_active: bool = True
    created_at: datetime
    last_login: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "UserResponse":
        return cls(
            id=account.id,
            email=account.email,
            name=account.name,
            role=account.role,
            phone=account.phone,
            address=account.address,
            is_active=account.is_active,
            created_at=account.created_at,
            last_login=account.last_login,
        )

    def render(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class TokenResponse(_CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            access_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )

    def render(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class PickupResponse(_CamelModel):
    id: str
    customer_id: Optional[str] = None
    name: Optional[str] = None
    phone: str
    address: str
    status: str
    assigned_to: Optional[str] = None
    requested_at: datetime
    picked_up_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_pickup(cls, pickup: PickupRequest) -> "PickupResponse":
        return cls(
            id=pickup.id,
            customer_id=pickup.customer_id,
            name=pickup.name,
            phone=pickup.phone,
            address=pickup.address,
            status=pickup.status,
            assigned_to=pickup.assigned_to,
            requested_at=pickup.requested_at,
            picked_up_at=pickup.picked_up_at,
            created_at=pickup.created_at,
            updated_at=pickup.updated_at,
        )

    def render(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")
