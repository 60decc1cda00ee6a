from __future__ import annotations

from typing import List, Optional

from binpickup.logging import get_logger
from binpickup.service.errors import ConflictError, NotFoundError, ValidationError
from binpickup.storage.errors import ConstraintViolation
from binpickup.storage.models import ROLES, Account

logger = get_logger(__name__)


class UserAdminService:
    """Admin-side account management. Account creation goes through AuthService."""

    def __init__(self, store) -> None:
        self.store = store

    async def _require(self, account_id: str) -> Account:
        account = await self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("User not found")
        return account

    async def list_users(self, limit: int = 500) -> List[Account]:
        return await self.store.list_accounts(limit=limit)

    async def update_user(
        self,
        account_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
    ) -> Account:
        account = await self._require(account_id)
        if name is not None:
            account.name = name
        if email is not None:
            account.email = email
        if phone is not None:
            account.phone = phone
        if address is not None:
            account.address = address
        try:
            return await self.store.save_account(account)
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                raise ConflictError("Email already exists")
            raise NotFoundError("User not found")

    async def change_role(self, account_id: str, role: str) -> Account:
        if role not in ROLES:
            raise ValidationError("invalid role", detail={"field": "role", "allowed": list(ROLES)})
        account = await self._require(account_id)
        previous = account.role
        account.role = role
        account = await self.store.save_account(account)
        logger.info("user_role_changed", account_id=account_id, previous=previous, role=role)
        return account

    async def delete_user(self, account_id: str, *, acting_id: Optional[str] = None) -> None:
        if acting_id == account_id:
            raise ValidationError("cannot delete your own account")
        if not await self.store.delete_account(account_id):
            raise NotFoundError("User not found")
        logger.info("user_deleted", account_id=account_id, deleted_by=acting_id)
