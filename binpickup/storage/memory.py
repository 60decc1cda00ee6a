from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from binpickup.logging import get_logger
from binpickup.storage.common import (
    account_from_document,
    account_to_document,
    normalize_email,
    pickup_from_document,
    pickup_to_document,
)
from binpickup.storage.errors import ConstraintViolation
from binpickup.storage.models import Account, PickupRequest, utcnow


class MemoryStore:
    """In-process document store persisted to a JSON file under ``fs_root``.

    Documents are kept as plain dicts and converted on every read so callers
    never share mutable state with the store; a change only lands on ``save``.
    """

    def __init__(self, fs_root: str = "/tmp/binpickup") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.pickups: Dict[str, Dict[str, Any]] = {}
        # Guards document writes; no awaits happen while it is held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    async def verify_connection(self) -> None:
        if not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

    # accounts
    def _email_taken(self, email: str, *, exclude_id: Optional[str] = None) -> bool:
        return any(
            doc["email"] == email and doc["id"] != exclude_id
            for doc in self.accounts.values()
        )

    async def create_account(self, account: Account) -> Account:
        account.email = normalize_email(account.email)
        with self._data_lock:
            if self._email_taken(account.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.accounts[account.id] = account_to_document(account)
            self._persist_state()
        return account_from_document(self.accounts[account.id])

    async def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            doc = self.accounts.get(account_id)
            return account_from_document(doc) if doc else None

    async def get_account_by_email(self, email: str) -> Optional[Account]:
        email = normalize_email(email)
        with self._data_lock:
            doc = next((d for d in self.accounts.values() if d["email"] == email), None)
            return account_from_document(doc) if doc else None

    async def save_account(self, account: Account) -> Account:
        account.email = normalize_email(account.email)
        account.updated_at = utcnow()
        with self._data_lock:
            if account.id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"field": "id"})
            if self._email_taken(account.email, exclude_id=account.id):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.accounts[account.id] = account_to_document(account)
            self._persist_state()
        return account

    async def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            removed = self.accounts.pop(account_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    async def list_accounts(self, limit: Optional[int] = 100) -> List[Account]:
        with self._data_lock:
            docs = sorted(
                self.accounts.values(), key=lambda d: d["created_at"], reverse=True
            )
            if limit is not None:
                docs = docs[:limit]
            return [account_from_document(d) for d in docs]

    # pickups
    async def create_pickup(self, pickup: PickupRequest) -> PickupRequest:
        with self._data_lock:
            self.pickups[pickup.id] = pickup_to_document(pickup)
            self._persist_state()
        return pickup

    async def get_pickup(self, pickup_id: str) -> Optional[PickupRequest]:
        with self._data_lock:
            doc = self.pickups.get(pickup_id)
            return pickup_from_document(doc) if doc else None

    async def save_pickup(self, pickup: PickupRequest) -> PickupRequest:
        pickup.updated_at = utcnow()
        with self._data_lock:
            if pickup.id not in self.pickups:
                raise ConstraintViolation("pickup does not exist", {"field": "id"})
            self.pickups[pickup.id] = pickup_to_document(pickup)
            self._persist_state()
        return pickup

    async def delete_pickup(self, pickup_id: str) -> bool:
        with self._data_lock:
            removed = self.pickups.pop(pickup_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    async def list_pickups(
        self,
        *,
        customer_id: Optional[str] = None,
        assigned_to: Optional[str] = None,
    ) -> List[PickupRequest]:
        with self._data_lock:
            docs = [
                d
                for d in self.pickups.values()
                if (customer_id is None or d.get("customer_id") == customer_id)
                and (assigned_to is None or d.get("assigned_to") == assigned_to)
            ]
            docs.sort(key=lambda d: d["created_at"], reverse=True)
            return [pickup_from_document(d) for d in docs]

    def _persist_state(self) -> None:
        state = {
            "accounts": list(self.accounts.values()),
            "pickups": list(self.pickups.values()),
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {d["id"]: d for d in data.get("accounts", [])}
        self.pickups = {d["id"]: d for d in data.get("pickups", [])}
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            pickups=len(self.pickups),
        )
        return True
