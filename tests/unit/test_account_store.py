# -*- coding: utf-8 -*-

"""
Unit tests for AccountStore.
"""

import pytest

from mssql_identity.account_store import AccountStore
from mssql_identity.exceptions import StorageUnavailableError
from mssql_identity.models import AuthType, Tenant


class TestAccountStore:
    """Tests for account persistence."""

    @pytest.mark.asyncio
    async def test_add_then_get_returns_equal_account(self, account_store, sample_account):
        """
        What it does: Verifies an account survives a store round trip.
        Purpose: Ensure tenants, auth type and stale flag are persisted.
        """
        account = sample_account(
            auth_type=AuthType.DEVICE_CODE,
            tenants=[Tenant(id="t1", display_name="One", tenant_category="Home"), Tenant(id="t2")],
        )

        await account_store.add_account(account)
        result = await account_store.get_account(account.key)

        print(f"Comparing account: Expected {account}, Got {result}")
        assert result == account

    @pytest.mark.asyncio
    async def test_get_unknown_returns_none(self, account_store):
        """
        What it does: Verifies an unknown key is None.
        Purpose: Ensure the controller can detect unknown accounts.
        """
        assert await account_store.get_account("nobody") is None

    @pytest.mark.asyncio
    async def test_add_replaces_and_moves_to_end(self, account_store, sample_account):
        """
        What it does: Verifies upsert replaces the record and updates order.
        Purpose: Ensure the listing shows the most recently updated account last.
        """
        await account_store.add_account(sample_account("a"))
        await account_store.add_account(sample_account("b"))
        await account_store.add_account(sample_account("a", is_stale=True))

        accounts = await account_store.get_accounts()

        assert [account.key for account in accounts] == ["b", "a"]
        assert accounts[1].is_stale is True

    @pytest.mark.asyncio
    async def test_remove_and_clear(self, account_store, sample_account):
        """
        What it does: Verifies removal of one and of all accounts.
        Purpose: Ensure sign-out removes the record.
        """
        for key in ("a", "b", "c"):
            await account_store.add_account(sample_account(key))

        assert await account_store.remove_account("a") is True
        assert await account_store.remove_account("a") is False
        assert await account_store.clear_accounts() == 2
        assert await account_store.get_accounts() == []

    @pytest.mark.asyncio
    async def test_accounts_survive_reopen(self, tmp_path, sample_account):
        """
        What it does: Verifies accounts persist across store instances.
        Purpose: Ensure accounts are stored on disk.
        """
        store = AccountStore(tmp_path)
        await store.init()
        await store.add_account(sample_account())
        await store.close()

        reopened = AccountStore(tmp_path)
        await reopened.init()
        accounts = await reopened.get_accounts()
        await reopened.close()

        assert [account.key for account in accounts] == ["account-1"]

    @pytest.mark.asyncio
    async def test_unavailable_storage(self):
        """
        What it does: Verifies a store without path refuses operations.
        Purpose: Ensure StorageUnavailableError is raised on use.
        """
        store = AccountStore(None)

        assert await store.init() is False
        with pytest.raises(StorageUnavailableError):
            await store.get_accounts()
