# -*- coding: utf-8 -*-

# MSSQL Identity
# Copyright (C) 2026 MSSQL Identity contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""
Token cache split between an SQLite metadata file and the OS keychain.

Each cached token has two halves:
- metadata row in <storage>/<service>.db: cache key fields, token type, expiry
- secret in the credential store: access token and refresh token (JSON)

A row without its secret is treated as absent. Writes update the row inside
a transaction that is committed only after the secret was stored, so a
credential store failure never leaves a half-written entry.
"""

import asyncio
import hashlib
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from mssql_identity.credential_store import CredentialStore
from mssql_identity.database import CachedTokenRecord, Database, sqlite_url
from mssql_identity.exceptions import CredentialStoreError, StorageUnavailableError
from mssql_identity.models import AccessToken, CacheKey, CachedToken


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class TokenCache:
    """
    Persists CachedToken entries by cache key.

    Attributes:
        service_name: Name of the metadata file and prefix of credential keys
        storage_path: Directory of the metadata file (None if storage is unavailable)
        encrypt: Encrypt metadata columns with a Fernet key kept in the credential store

    Example:
        >>> cache = TokenCache("aad", storage_path, True, CredentialStore("vscode-mssql"))
        >>> await cache.init()
        >>> await cache.save_token(key, token)
        >>> await cache.get_token(key)
    """

    def __init__(
        self,
        service_name: str,
        storage_path: Optional[Path],
        encrypt: bool,
        credential_store: CredentialStore,
    ):
        self.service_name = service_name
        self.storage_path = storage_path
        self.encrypt = encrypt
        self._credential_store = credential_store
        self._db: Optional[Database] = None
        self._initialized: Optional[bool] = None
        self._lock = asyncio.Lock()

    @property
    def db(self) -> Optional[Database]:
        return self._db

    @property
    def _encryption_key_name(self) -> str:
        return f"{self.service_name}:metadata-encryption-key"

    async def init(self) -> bool:
        """
        Opens or creates the metadata file.

        Fails soft: storage or credential store problems are logged and
        reported as False, identity features are then unavailable.

        Returns:
            True if the cache is usable
        """
        async with self._lock:
            if self._initialized is not None:
                return self._initialized

            self._initialized = await self._open()
            return self._initialized

    async def _open(self) -> bool:
        if self.storage_path is None:
            logger.error("Token cache storage path is not available, Azure accounts are disabled")
            return False

        encryption_key = None
        key_created = False
        if self.encrypt:
            try:
                encryption_key, key_created = await self._load_or_create_encryption_key()
            except CredentialStoreError as e:
                logger.error(f"Cannot load token cache encryption key: {e}")
                return False

        db_file = Path(self.storage_path) / f"{self.service_name}.db"
        db = Database(sqlite_url(db_file), encryption_key)
        try:
            await db.init_db(tables=[CachedTokenRecord.__table__])
            if key_created:
                await self._purge_rows(db)
        except SQLAlchemyError as e:
            logger.error(f"Cannot open token cache metadata file {db_file}: {e}")
            await db.close()
            return False

        self._db = db
        logger.info(f"Token cache initialized: {db_file} (encrypted={self.encrypt})")
        return True

    async def _load_or_create_encryption_key(self) -> Tuple[str, bool]:
        key = await self._credential_store.get(self._encryption_key_name)
        if key:
            return key, False

        key = Fernet.generate_key().decode()
        await self._credential_store.set(self._encryption_key_name, key)
        logger.info("Generated new token cache encryption key")
        return key, True

    @staticmethod
    async def _purge_rows(db: Database) -> None:
        """Drops metadata rows written under a previous encryption key."""
        async with db.SessionLocal() as session:
            result = await session.execute(delete(CachedTokenRecord))
            await session.commit()
        if result.rowcount:
            logger.warning(f"Encryption key was replaced, dropped {result.rowcount} unreadable token entries")

    def _require_db(self) -> Database:
        if self._db is None:
            raise StorageUnavailableError("Token cache is not initialized")
        return self._db

    @staticmethod
    def _record_id(key: CacheKey) -> str:
        return hashlib.sha256(str(key).encode()).hexdigest()

    def _secret_key(self, key: CacheKey) -> str:
        return f"{self.service_name}:{self._record_id(key)}"

    async def get_token(self, key: CacheKey) -> Optional[CachedToken]:
        """
        Looks up a cached token.

        Expired tokens are returned as well; the caller decides whether to refresh.

        Args:
            key: Cache key

        Returns:
            Cached token, or None if either half is missing

        Raises:
            CredentialStoreUnavailableError: If the credential store is broken
            StorageUnavailableError: If the cache was not initialized
        """
        db = self._require_db()

        async with db.SessionLocal() as session:
            record = await session.get(CachedTokenRecord, self._record_id(key))

        if record is None:
            return None

        secret = await self._credential_store.get(self._secret_key(key))
        if secret is None:
            logger.debug(f"Token metadata without secret for account {key.account_key}, treating as absent")
            return None

        try:
            data = json.loads(secret)
            access_token = data["access_token"]
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Unreadable token secret for account {key.account_key}, treating as absent")
            return None

        return CachedToken(
            key=key,
            access_token=AccessToken(
                token=access_token,
                expires_on=record.expires_on.replace(tzinfo=timezone.utc),
                token_type=record.token_type,
            ),
            refresh_token=data.get("refresh_token"),
        )

    async def save_token(self, key: CacheKey, token: CachedToken) -> None:
        """
        Inserts or replaces a cached token.

        Raises:
            CredentialStoreError: If the secret could not be stored; the
                metadata change is rolled back
            SQLAlchemyError: If the metadata commit failed; the previous
                secret is restored
        """
        db = self._require_db()
        record_id = self._record_id(key)
        secret_key = self._secret_key(key)
        secret = json.dumps({
            "access_token": token.access_token.token,
            "refresh_token": token.refresh_token,
        })

        values = {
            "id": record_id,
            "account_key": db.encrypt(key.account_key),
            "resource": db.encrypt(key.resource),
            "tenant_id": db.encrypt(key.tenant_id),
            "token_type": token.access_token.token_type,
            "expires_on": _to_naive_utc(token.access_token.expires_on),
            "updated_at": datetime.utcnow(),
        }
        stmt = sqlite_insert(CachedTokenRecord).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[CachedTokenRecord.id],
            set_={name: value for name, value in values.items() if name != "id"},
        )

        async with self._lock:
            previous_secret = await self._credential_store.get(secret_key)
            secret_written = False
            try:
                async with db.SessionLocal() as session:
                    async with session.begin():
                        await session.execute(stmt)
                        try:
                            await self._credential_store.set(secret_key, secret)
                        except CredentialStoreError:
                            logger.error(f"Failed to store token secret for account {key.account_key}, rolling back")
                            raise
                        secret_written = True
            except SQLAlchemyError:
                if secret_written:
                    await self._restore_secret(secret_key, previous_secret)
                raise

        logger.debug(f"Token cached for account {key.account_key}, expires: {token.access_token.expires_on.isoformat()}")

    async def _restore_secret(self, secret_key: str, previous_secret: Optional[str]) -> None:
        logger.warning("Token metadata commit failed, restoring previous secret")
        if previous_secret is None:
            await self._credential_store.delete(secret_key)
        else:
            await self._credential_store.set(secret_key, previous_secret)

    async def remove_token(self, key: CacheKey) -> bool:
        """
        Removes both halves of a cached token.

        Returns:
            True if anything was removed; missing halves are not an error
        """
        db = self._require_db()

        async with self._lock:
            async with db.SessionLocal() as session:
                result = await session.execute(
                    delete(CachedTokenRecord).where(CachedTokenRecord.id == self._record_id(key))
                )
                await session.commit()
                row_removed = result.rowcount > 0

            secret_removed = await self._credential_store.delete(self._secret_key(key))

        return row_removed or secret_removed

    async def list_keys(self) -> List[CacheKey]:
        """
        Returns the cache keys of all metadata rows.

        Rows that cannot be decrypted with the current key are deleted.
        """
        db = self._require_db()

        async with db.SessionLocal() as session:
            result = await session.execute(select(CachedTokenRecord).order_by(CachedTokenRecord.updated_at))
            records = result.scalars().all()

        keys = []
        unreadable = []
        for record in records:
            try:
                keys.append(
                    CacheKey(
                        account_key=db.decrypt(record.account_key),
                        resource=db.decrypt(record.resource),
                        tenant_id=db.decrypt(record.tenant_id),
                    )
                )
            except InvalidToken:
                unreadable.append(record.id)

        if unreadable:
            logger.warning(f"Dropping {len(unreadable)} token entries that cannot be decrypted")
            async with self._lock:
                async with db.SessionLocal() as session:
                    await session.execute(delete(CachedTokenRecord).where(CachedTokenRecord.id.in_(unreadable)))
                    await session.commit()

        return keys

    async def remove_account_tokens(self, account_key: str) -> int:
        """
        Removes every cached token of an account.

        Returns:
            Number of removed entries
        """
        removed = 0
        for key in await self.list_keys():
            if key.account_key == account_key and await self.remove_token(key):
                removed += 1
        if removed:
            logger.info(f"Removed {removed} cached token(s) of account {account_key}")
        return removed

    async def close(self) -> None:
        """Closes the metadata file."""
        if self._db is not None:
            await self._db.close()
            self._db = None
        self._initialized = None
