"""Tests for the in-memory document store and its JSON persistence."""

from datetime import datetime, timedelta, timezone

import pytest

from binpickup.storage.errors import ConstraintViolation
from binpickup.storage.memory import MemoryStore
from binpickup.storage.models import Account, PickupRequest, RefreshTokenRecord


def _account(email="store@example.com") -> Account:
    return Account.new(email=email, name="Store", password_hash="hash")


class TestAccounts:
    async def test_email_lookup_is_case_insensitive(self, memory_store):
        created = await memory_store.create_account(_account("Mixed@Example.COM"))

        found = await memory_store.get_account_by_email("mixed@example.com")

        assert found.id == created.id
        assert found.email == "mixed@example.com"

    async def test_duplicate_email(self, memory_store):
        await memory_store.create_account(_account())

        with pytest.raises(ConstraintViolation) as exc:
            await memory_store.create_account(_account("STORE@example.com"))
        assert exc.value.detail == {"field": "email"}

    async def test_reads_are_copies(self, memory_store):
        created = await memory_store.create_account(_account())

        fetched = await memory_store.get_account(created.id)
        fetched.failed_attempts = 4

        assert (await memory_store.get_account(created.id)).failed_attempts == 0

    async def test_save_unknown_account(self, memory_store):
        with pytest.raises(ConstraintViolation):
            await memory_store.save_account(_account())

    async def test_save_to_taken_email(self, memory_store):
        await memory_store.create_account(_account("one@example.com"))
        other = await memory_store.create_account(_account("two@example.com"))

        other.email = "one@example.com"
        with pytest.raises(ConstraintViolation):
            await memory_store.save_account(other)

    async def test_delete(self, memory_store):
        created = await memory_store.create_account(_account())

        assert await memory_store.delete_account(created.id) is True
        assert await memory_store.delete_account(created.id) is False
        assert await memory_store.get_account(created.id) is None

    async def test_list_newest_first_with_limit(self, memory_store):
        for i in range(3):
            account = _account(f"user{i}@example.com")
            account.created_at = datetime(2025, 1, 1 + i, tzinfo=timezone.utc)
            await memory_store.create_account(account)

        listed = await memory_store.list_accounts(limit=2)

        assert [a.email for a in listed] == ["user2@example.com", "user1@example.com"]
        assert len(await memory_store.list_accounts(limit=None)) == 3


class TestPersistence:
    async def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        account = await store.create_account(_account())
        issued = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
        account.refresh_tokens.append(
            RefreshTokenRecord(
                token="r1", issued_at=issued, expires_at=issued + timedelta(days=7)
            )
        )
        account.locked = True
        account.lock_until = issued + timedelta(minutes=15)
        await store.save_account(account)
        pickup = await store.create_pickup(
            PickupRequest.new(phone="555-0100", address="1 Main Street", customer_id=account.id)
        )

        reloaded = MemoryStore(fs_root=str(tmp_path))

        restored = await reloaded.get_account(account.id)
        assert restored.refresh_tokens[0].token == "r1"
        assert restored.refresh_tokens[0].expires_at == issued + timedelta(days=7)
        assert restored.lock_until == issued + timedelta(minutes=15)
        assert (await reloaded.get_pickup(pickup.id)).customer_id == account.id


class TestPickups:
    async def test_filters(self, memory_store):
        first = await memory_store.create_pickup(
            PickupRequest.new(phone="555-0100", address="1 Main Street", customer_id="c1")
        )
        second = await memory_store.create_pickup(
            PickupRequest.new(phone="555-0101", address="2 Main Street")
        )
        second.assigned_to = "e1"
        await memory_store.save_pickup(second)

        assert [p.id for p in await memory_store.list_pickups(customer_id="c1")] == [first.id]
        assert [p.id for p in await memory_store.list_pickups(assigned_to="e1")] == [second.id]
        assert len(await memory_store.list_pickups()) == 2

    async def test_save_unknown_pickup(self, memory_store):
        with pytest.raises(ConstraintViolation):
            await memory_store.save_pickup(PickupRequest.new(phone="555-0100", address="x"))
