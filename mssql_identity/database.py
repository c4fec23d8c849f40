"""
Database layer with SQLAlchemy models and encryption utilities.

The token cache and the account store each own one SQLite file; both use
the Database manager below and create only their own table.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

from cryptography.fernet import Fernet
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Table, Text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


class CachedTokenRecord(Base):
    """Non-secret half of a cached token. Secrets live in the credential store."""

    __tablename__ = "cached_tokens"

    id = Column(String(64), primary_key=True)  # sha256 of the cache key
    account_key = Column(Text, nullable=False)
    resource = Column(Text, nullable=False)
    tenant_id = Column(Text, nullable=False)
    token_type = Column(String(32), default="Bearer", nullable=False)
    expires_on = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AccountRecord(Base):
    """Known identity accounts."""

    __tablename__ = "accounts"

    key = Column(String(255), primary_key=True)
    email = Column(String(255))
    display_name = Column(String(255))
    user_id = Column(String(255))
    auth_type = Column(String(50), nullable=False)  # 'AuthCodeGrant' or 'DeviceCode'
    tenants = Column(Text, nullable=False)  # JSON list of tenant dicts
    is_stale = Column(Boolean, default=False, nullable=False)
    sequence = Column(Integer, nullable=False, index=True)  # listing order
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


def sqlite_url(path: Path) -> str:
    """Builds an aiosqlite URL for a database file."""
    return f"sqlite+aiosqlite:///{path}"


class Database:
    """Database manager with optional encryption utilities."""

    def __init__(self, database_url: str, encryption_key: Optional[str] = None):
        """
        Initialize database manager.

        Args:
            database_url: SQLAlchemy database URL (e.g., sqlite+aiosqlite:///./aad.db)
            encryption_key: Fernet key for metadata columns; None stores them as-is
        """
        self.database_url = database_url
        self.engine = create_async_engine(
            database_url,
            echo=False,
            future=True,
        )
        self.SessionLocal = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        self.cipher = Fernet(encryption_key.encode()) if encryption_key else None

    async def init_db(self, tables: Optional[Sequence[Table]] = None):
        """
        Create tables if they don't exist.

        Args:
            tables: Tables owned by this file (default: all tables)
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all, tables=tables)

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """
        Encrypt a metadata value.

        Args:
            plaintext: Data to encrypt

        Returns:
            Encrypted data as base64 string, the input unchanged if encryption
            is disabled, or None if input is None
        """
        if plaintext is None or self.cipher is None:
            return plaintext
        return self.cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        """
        Decrypt a metadata value.

        Args:
            ciphertext: Encrypted data as base64 string

        Returns:
            Decrypted plaintext, the input unchanged if encryption is
            disabled, or None if input is None
        """
        if ciphertext is None or self.cipher is None:
            return ciphertext
        return self.cipher.decrypt(ciphertext.encode()).decode()

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()
