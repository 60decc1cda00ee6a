from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from binpickup.logging import get_logger
from binpickup.storage.common import (
    account_from_document,
    account_to_document,
    normalize_email,
    pickup_from_document,
    pickup_to_document,
)
from binpickup.storage.errors import ConstraintViolation, StoreUnavailable
from binpickup.storage.models import Account, PickupRequest, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        doc JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pickup_request (
        id TEXT PRIMARY KEY,
        customer_id TEXT,
        assigned_to TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        doc JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS pickup_request_customer_idx ON pickup_request (customer_id)",
    "CREATE INDEX IF NOT EXISTS pickup_request_assigned_idx ON pickup_request (assigned_to)",
)


class PostgresStore:
    """Postgres-backed document store; each row carries the full JSONB document.

    ``email``/``customer_id``/``assigned_to`` are mirrored into columns so
    uniqueness and filtering happen in the database.
    """

    def __init__(self, dsn: str, fs_root: str, *, timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": True},
            open=False,
        )

    async def open(self) -> None:
        await self.pool.open()
        async with self._connect() as conn:
            for statement in _SCHEMA:
                await conn.execute(statement)

    async def close(self) -> None:
        await self.pool.close()

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator:
        try:
            async with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, errors.OperationalError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable", cause=exc) from exc

    async def verify_connection(self) -> None:
        async with self._connect() as conn:
            await conn.execute("SELECT 1")

    # accounts
    async def create_account(self, account: Account) -> Account:
        account.email = normalize_email(account.email)
        try:
            async with self._connect() as conn:
                await conn.execute(
                    "INSERT INTO account (id, email, created_at, doc) VALUES (%s, %s, %s, %s)",
                    (
                        account.id,
                        account.email,
                        account.created_at,
                        Jsonb(account_to_document(account)),
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT doc FROM account WHERE id = %s", (account_id,))
            row = await cur.fetchone()
        return account_from_document(row["doc"]) if row else None

    async def get_account_by_email(self, email: str) -> Optional[Account]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT doc FROM account WHERE email = %s", (normalize_email(email),)
            )
            row = await cur.fetchone()
        return account_from_document(row["doc"]) if row else None

    async def save_account(self, account: Account) -> Account:
        account.email = normalize_email(account.email)
        account.updated_at = utcnow()
        try:
            async with self._connect() as conn:
                cur = await conn.execute(
                    "UPDATE account SET email = %s, doc = %s WHERE id = %s",
                    (account.email, Jsonb(account_to_document(account)), account.id),
                )
                updated = cur.rowcount
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if not updated:
            raise ConstraintViolation("account does not exist", {"field": "id"})
        return account

    async def delete_account(self, account_id: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
            return cur.rowcount > 0

    async def list_accounts(self, limit: Optional[int] = 100) -> List[Account]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT doc FROM account ORDER BY created_at DESC LIMIT %s", (limit,)
            )
            rows = await cur.fetchall()
        return [account_from_document(row["doc"]) for row in rows]

    # pickups
    async def create_pickup(self, pickup: PickupRequest) -> PickupRequest:
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO pickup_request (id, customer_id, assigned_to, created_at, doc)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    pickup.id,
                    pickup.customer_id,
                    pickup.assigned_to,
                    pickup.created_at,
                    Jsonb(pickup_to_document(pickup)),
                ),
            )
        return pickup

    async def get_pickup(self, pickup_id: str) -> Optional[PickupRequest]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT doc FROM pickup_request WHERE id = %s", (pickup_id,)
            )
            row = await cur.fetchone()
        return pickup_from_document(row["doc"]) if row else None

    async def save_pickup(self, pickup: PickupRequest) -> PickupRequest:
        pickup.updated_at = utcnow()
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE pickup_request SET customer_id = %s, assigned_to = %s, doc = %s
                WHERE id = %s
                """,
                (
                    pickup.customer_id,
                    pickup.assigned_to,
                    Jsonb(pickup_to_document(pickup)),
                    pickup.id,
                ),
            )
            if not cur.rowcount:
                raise ConstraintViolation("pickup does not exist", {"field": "id"})
        return pickup

    async def delete_pickup(self, pickup_id: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM pickup_request WHERE id = %s", (pickup_id,)
            )
            return cur.rowcount > 0

    async def list_pickups(
        self,
        *,
        customer_id: Optional[str] = None,
        assigned_to: Optional[str] = None,
    ) -> List[PickupRequest]:
        clauses = []
        params: list = []
        if customer_id is not None:
            clauses.append("customer_id = %s")
            params.append(customer_id)
        if assigned_to is not None:
            clauses.append("assigned_to = %s")
            params.append(assigned_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._connect() as conn:
            cur = await conn.execute(
                f"SELECT doc FROM pickup_request {where} ORDER BY created_at DESC",
                params,
            )
            rows = await cur.fetchall()
        return [pickup_from_document(row["doc"]) for row in rows]
