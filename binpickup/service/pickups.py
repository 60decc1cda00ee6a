from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from binpickup.logging import get_logger
from binpickup.service.auth import AuthContext
from binpickup.service.errors import ForbiddenError, NotFoundError, ValidationError
from binpickup.storage.models import PICKUP_STATUSES, Account, PickupRequest, utcnow

logger = get_logger(__name__)

_EDITABLE_FIELDS = ("name", "phone", "address", "assigned_to", "status")


class PickupStore(Protocol):
    async def create_pickup(self, pickup: PickupRequest) -> PickupRequest: ...

    async def get_pickup(self, pickup_id: str) -> Optional[PickupRequest]: ...

    async def save_pickup(self, pickup: PickupRequest) -> PickupRequest: ...

    async def delete_pickup(self, pickup_id: str) -> bool: ...

    async def list_pickups(
        self,
        *,
        customer_id: Optional[str] = None,
        assigned_to: Optional[str] = None,
    ) -> List[PickupRequest]: ...

    async def get_account(self, account_id: str) -> Optional[Account]: ...


class PickupService:
    """Pickup lifecycle: pending -> assigned -> completed (or cancelled)."""

    def __init__(
        self, store: PickupStore, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self._clock = clock

    async def _require(self, pickup_id: str) -> PickupRequest:
        pickup = await self.store.get_pickup(pickup_id)
        if pickup is None:
            raise NotFoundError("Pickup not found")
        return pickup

    def _mark_status(self, pickup: PickupRequest, status: str) -> None:
        if status not in PICKUP_STATUSES:
            raise ValidationError(
                "invalid status", detail={"field": "status", "allowed": list(PICKUP_STATUSES)}
            )
        pickup.status = status
        if status == "completed" and pickup.picked_up_at is None:
            pickup.picked_up_at = self._clock()

    async def create(
        self,
        *,
        phone: str,
        address: str,
        name: Optional[str] = None,
        ctx: Optional[AuthContext] = None,
    ) -> PickupRequest:
        pickup = PickupRequest.new(
            name=name,
            phone=phone,
            address=address,
            customer_id=ctx.account_id if ctx else None,
        )
        pickup = await self.store.create_pickup(pickup)
        logger.info(
            "pickup_created", pickup_id=pickup.id, anonymous=ctx is None
        )
        return pickup

    async def list_for(self, ctx: AuthContext) -> List[PickupRequest]:
        if ctx.role == "admin":
            return await self.store.list_pickups()
        if ctx.role == "employee":
            return await self.store.list_pickups(assigned_to=ctx.account_id)
        return await self.store.list_pickups(customer_id=ctx.account_id)

    async def list_all(self) -> List[PickupRequest]:
        return await self.store.list_pickups()

    async def assign(self, pickup_id: str, employee_id: str) -> PickupRequest:
        pickup = await self._require(pickup_id)
        employee = await self.store.get_account(employee_id)
        if employee is None or employee.role != "employee" or not employee.is_active:
            raise NotFoundError("Employee not found")
        pickup.assigned_to = employee.id
        self._mark_status(pickup, "assigned")
        pickup = await self.store.save_pickup(pickup)
        logger.info("pickup_assigned", pickup_id=pickup.id, employee_id=employee.id)
        return pickup

    async def complete(self, pickup_id: str, ctx: AuthContext) -> PickupRequest:
        pickup = await self._require(pickup_id)
        if ctx.role == "employee" and pickup.assigned_to != ctx.account_id:
            raise ForbiddenError("Not authorized to complete")
        self._mark_status(pickup, "completed")
        pickup = await self.store.save_pickup(pickup)
        logger.info("pickup_completed", pickup_id=pickup.id, completed_by=ctx.account_id)
        return pickup

    async def admin_update(self, pickup_id: str, changes: Dict[str, Any]) -> PickupRequest:
        pickup = await self._require(pickup_id)
        for field_name in _EDITABLE_FIELDS:
            value = changes.get(field_name)
            if value is None:
                continue
            if field_name == "status":
                self._mark_status(pickup, value)
            else:
                setattr(pickup, field_name, value)
        return await self.store.save_pickup(pickup)

    async def delete(self, pickup_id: str) -> None:
        if not await self.store.delete_pickup(pickup_id):
            raise NotFoundError("Pickup not found")
        logger.info("pickup_deleted", pickup_id=pickup_id)
