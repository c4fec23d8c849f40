"""
Account store for known Azure identities.

Persisted in its own metadata file so that accounts survive a reset of the
token cache. Upserts replace the whole record and move it to the end of the
listing order.
"""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from loguru import logger
from sqlalchemy import delete as sa_delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from mssql_identity.config import ACCOUNT_STORE_FILE
from mssql_identity.database import AccountRecord, Database, sqlite_url
from mssql_identity.exceptions import StorageUnavailableError
from mssql_identity.models import (
    Account,
    AccountDisplayInfo,
    AccountProperties,
    AuthType,
    Tenant,
)


class AccountStore:
    """Registry of signed-in accounts keyed by account key."""

    def __init__(self, storage_path: Optional[Path], file_name: str = ACCOUNT_STORE_FILE):
        """
        Initialize account store.

        Args:
            storage_path: Directory of the metadata file (None if storage is unavailable)
            file_name: Metadata file name
        """
        self.storage_path = storage_path
        self.file_name = file_name
        self.db: Optional[Database] = None
        self.lock = asyncio.Lock()

    async def init(self) -> bool:
        """
        Opens or creates the account metadata file.

        Returns:
            True if the store is usable
        """
        async with self.lock:
            if self.db is not None:
                return True
            if self.storage_path is None:
                logger.error("Account store storage path is not available")
                return False

            db_file = Path(self.storage_path) / self.file_name
            db = Database(sqlite_url(db_file))
            try:
                await db.init_db(tables=[AccountRecord.__table__])
            except SQLAlchemyError as e:
                logger.error(f"Cannot open account store {db_file}: {e}")
                await db.close()
                return False

            self.db = db
            logger.info(f"Account store initialized: {db_file}")
            return True

    def _require_db(self) -> Database:
        if self.db is None:
            raise StorageUnavailableError("Account store is not initialized")
        return self.db

    async def add_account(self, account: Account) -> None:
        """
        Insert or replace an account.

        Args:
            account: Account to store; any previous record with the same key is replaced entirely
        """
        db = self._require_db()

        async with self.lock:
            async with db.SessionLocal() as session:
                result = await session.execute(select(func.coalesce(func.max(AccountRecord.sequence), 0)))
                next_sequence = result.scalar_one() + 1
                values = {
                    "key": account.key,
                    "email": account.display_info.email,
                    "display_name": account.display_info.display_name,
                    "user_id": account.display_info.user_id,
                    "auth_type": account.properties.auth_type.value,
                    "tenants": json.dumps([tenant.to_dict() for tenant in account.properties.tenants]),
                    "is_stale": account.is_stale,
                    "sequence": next_sequence,
                    "updated_at": datetime.utcnow(),
                }
                stmt = sqlite_insert(AccountRecord).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[AccountRecord.key],
                    set_={name: value for name, value in values.items() if name != "key"},
                )
                await session.execute(stmt)
                await session.commit()

        logger.debug(f"Stored account {account.key} ({account.display_info.email}, stale={account.is_stale})")

    async def get_account(self, key: str) -> Optional[Account]:
        """
        Get account by key.

        Returns:
            Account, or None if not found
        """
        db = self._require_db()

        async with db.SessionLocal() as session:
            record = await session.get(AccountRecord, key)
            return self._to_account(record) if record else None

    async def get_accounts(self) -> List[Account]:
        """
        List all accounts in insertion/update order.

        Returns:
            List of accounts
        """
        db = self._require_db()

        async with db.SessionLocal() as session:
            stmt = select(AccountRecord).order_by(AccountRecord.sequence)
            result = await session.execute(stmt)
            return [self._to_account(record) for record in result.scalars().all()]

    async def remove_account(self, key: str) -> bool:
        """
        Permanently delete an account.

        Returns:
            True if deleted, False if not found
        """
        db = self._require_db()

        async with self.lock:
            async with db.SessionLocal() as session:
                stmt = sa_delete(AccountRecord).where(AccountRecord.key == key)
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount > 0

    async def clear_accounts(self) -> int:
        """
        Delete all accounts.

        Returns:
            Number of deleted accounts
        """
        db = self._require_db()

        async with self.lock:
            async with db.SessionLocal() as session:
                result = await session.execute(sa_delete(AccountRecord))
                await session.commit()
                return result.rowcount

    @staticmethod
    def _to_account(record: AccountRecord) -> Account:
        return Account(
            key=record.key,
            display_info=AccountDisplayInfo(
                email=record.email,
                display_name=record.display_name,
                user_id=record.user_id,
            ),
            properties=AccountProperties(
                auth_type=AuthType.parse(record.auth_type),
                tenants=[Tenant.from_dict(item) for item in json.loads(record.tenants)],
            ),
            is_stale=record.is_stale,
        )

    async def close(self):
        """Close the metadata file."""
        if self.db is not None:
            await self.db.close()
            self.db = None
