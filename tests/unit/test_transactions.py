"""Tests for transaction scoping through the manager and repositories."""

from unittest.mock import AsyncMock

import pytest

from dualstore.core.exceptions import NotInitializedError, TransactionError
from dualstore.manager import DatabaseManager


class TestWithTransaction:
    async def test_commit_keeps_writes(self, manager, adapter):
        users = manager.get_repository("user")
        balances = manager.get_repository("balance")

        async def signup(tx):
            user = await users.create({"email": "a@b.c", "username": "ann"})
            await balances.update_balance(user["id"], 100)
            return user

        user = await manager.with_transaction(signup)

        assert adapter.transaction_log == ["start", "commit"]
        assert (await balances.find_by_user_id(user["id"]))["tokenCredits"] == 100

    async def test_error_rolls_back_every_write(self, manager, adapter):
        users = manager.get_repository("user")
        await users.create({"email": "keep@b.c", "username": "keep"})

        async def failing(tx):
            await users.create({"email": "a@b.c", "username": "ann"})
            await manager.get_repository("balance").update_balance("u1", 5)
            raise RuntimeError("payment provider down")

        with pytest.raises(RuntimeError, match="payment provider down"):
            await manager.with_transaction(failing)

        assert adapter.transaction_log == ["start", "rollback"]
        assert await users.count() == 1
        assert await manager.get_repository("balance").count() == 0

    async def test_handle_is_bound_only_inside_body(self, manager, adapter):
        seen = []

        async def body(tx):
            seen.append(adapter.current_transaction() is tx)

        await manager.with_transaction(body)
        assert seen == [True]
        assert adapter.current_transaction() is None

    async def test_failed_rollback_does_not_mask_body_error(self, manager, adapter):
        adapter.rollback_transaction = AsyncMock(side_effect=TransactionError("rollback failed"))

        async def body(tx):
            raise ValueError("original")

        with pytest.raises(ValueError, match="original"):
            await manager.with_transaction(body)
        adapter.rollback_transaction.assert_awaited_once()

    async def test_requires_initialized_manager(self, settings, adapter):
        async def body(tx):
            return None

        with pytest.raises(NotInitializedError):
            await DatabaseManager(settings, adapter=adapter).with_transaction(body)
