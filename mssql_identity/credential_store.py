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
Secure credential store backed by the OS keychain.

Uses the keyring library (macOS Keychain, Windows Credential Manager,
Secret Service on Linux). Entries are addressed by opaque string keys under
one product service name. Several processes may share the keychain; the
last writer wins.
"""

import asyncio
from typing import Callable, Optional, TypeVar

import keyring
from keyring.backend import KeyringBackend
from keyring.errors import (
    InitError,
    KeyringError,
    KeyringLocked,
    NoKeyringError,
    PasswordDeleteError,
)
from loguru import logger

from mssql_identity.exceptions import (
    CredentialPermissionDeniedError,
    CredentialStoreError,
    CredentialStoreUnavailableError,
)

T = TypeVar("T")


class CredentialStore:
    """
    Async facade over a keyring backend.

    Not-found is a value (None / False), a broken store is an exception, so
    the token cache can tell "no token" from "store broken".

    Example:
        >>> store = CredentialStore("vscode-mssql")
        >>> await store.set("aad:key", "secret")
        >>> await store.get("aad:key")
        'secret'
    """

    def __init__(self, service_name: str, backend: Optional[KeyringBackend] = None):
        """
        Args:
            service_name: Product scope of all keys
            backend: Keyring backend (default: the platform keyring)
        """
        self.service_name = service_name
        self._backend = backend

    def _get_backend(self) -> KeyringBackend:
        if self._backend is None:
            self._backend = keyring.get_keyring()
        return self._backend

    async def _call(self, operation: str, func: Callable[..., T], *args) -> T:
        """
        Runs a blocking keyring call in a worker thread and maps its errors.

        Raises:
            CredentialStoreUnavailableError: No backend or keychain locked
            CredentialPermissionDeniedError: Access refused by the OS
            CredentialStoreError: Any other backend failure
        """
        try:
            return await asyncio.to_thread(func, *args)
        except (NoKeyringError, KeyringLocked, InitError) as e:
            logger.warning(f"Credential store unavailable during {operation}: {e}")
            raise CredentialStoreUnavailableError(f"Credential store unavailable: {e}") from e
        except PermissionError as e:
            logger.error(f"Credential store denied {operation}: {e}")
            raise CredentialPermissionDeniedError(f"Permission denied: {e}") from e
        except KeyringError as e:
            logger.error(f"Credential store {operation} failed: {e}")
            raise CredentialStoreError(f"Credential store {operation} failed: {e}") from e

    async def set(self, key: str, secret: str) -> None:
        """Stores a secret, replacing any previous value."""
        backend = self._get_backend()
        await self._call("set", backend.set_password, self.service_name, key, secret)

    async def get(self, key: str) -> Optional[str]:
        """
        Reads a secret.

        Returns:
            The secret, or None if no entry exists
        """
        backend = self._get_backend()
        return await self._call("get", backend.get_password, self.service_name, key)

    async def delete(self, key: str) -> bool:
        """
        Deletes a secret.

        Returns:
            True if an entry was deleted, False if none existed
        """
        backend = self._get_backend()

        def _delete() -> bool:
            try:
                backend.delete_password(self.service_name, key)
            except PasswordDeleteError:
                return False
            return True

        return await self._call("delete", _delete)
