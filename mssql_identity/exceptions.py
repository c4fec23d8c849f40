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
Error taxonomy of the identity subsystem.

Initialization failures (platform, storage, credential store) disable
identity features without crashing the host. Everything else propagates
to the caller of the controller as one of these types.
"""

from typing import Optional


class IdentityError(Exception):
    """Base class for all identity subsystem errors."""


class PlatformUnsupportedError(IdentityError):
    """The host operating system has no known app-data location."""

    def __init__(self, platform: str):
        super().__init__(f"Platform not supported: {platform}")
        self.platform = platform


class StorageUnavailableError(IdentityError):
    """Storage directory or metadata file could not be created; Azure accounts are disabled."""


class CredentialStoreError(IdentityError):
    """The OS credential store failed to complete an operation."""


class CredentialStoreUnavailableError(CredentialStoreError):
    """No keychain backend, or the keychain is locked."""


class CredentialPermissionDeniedError(CredentialStoreError):
    """The OS refused access to the keychain entry."""


class AccountNotFoundError(IdentityError):
    """The account id is not present in the account store."""

    def __init__(self, account_key: str):
        super().__init__(f"Account not found: {account_key}")
        self.account_key = account_key


class ReauthenticationRequiredError(IdentityError):
    """
    Refresh material is revoked, expired or missing.

    The account has been marked stale; only an interactive login recovers it.
    """

    def __init__(self, message: str, account_key: Optional[str] = None):
        super().__init__(message)
        self.account_key = account_key


class LoginTimedOutError(IdentityError):
    """The user did not finish the interactive login in time."""


class LoginCancelledError(IdentityError):
    """The interactive login was cancelled or declined."""


class LoginFailedError(IdentityError):
    """The provider reported an error during an interactive login."""


class ExchangeFailedError(IdentityError):
    """
    Token exchange with the provider failed.

    Attributes:
        retryable: True for transient failures (network, 429, 5xx) that were
            still failing after the bounded retries
        status_code: HTTP status of the last response, if any
    """

    def __init__(self, message: str, retryable: bool = True, status_code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
