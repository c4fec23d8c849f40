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
Azure controller.

Owns the token cache, the account store and the login strategies, and turns
connection profiles into profiles carrying a database access token.

Usage:
    controller = AzureController.from_config()
    await controller.init()
    profile = await controller.get_tokens(ConnectionProfile(server="srv.database.windows.net"))
    ...
    await controller.close()
"""

import asyncio
import sys
from typing import Dict, List, Optional, Union

from loguru import logger

from mssql_identity.account_store import AccountStore
from mssql_identity.auth_code_grant import AuthCodeGrant
from mssql_identity.azure_auth import AzureAuth
from mssql_identity.callback_server import AuthCallbackServer
from mssql_identity.config import (
    AZURE_AUTH_TYPE,
    CREDENTIAL_SERVICE_NAME,
    ENCRYPT_TOKEN_CACHE,
    TOKEN_CACHE_SERVICE,
    ProviderSettings,
    get_provider_settings,
)
from mssql_identity.credential_store import CredentialStore
from mssql_identity.exceptions import (
    AccountNotFoundError,
    PlatformUnsupportedError,
    StorageUnavailableError,
)
from mssql_identity.device_code import DeviceCode
from mssql_identity.identity_client import AzureIdentityClient
from mssql_identity.models import Account, AuthType, ConnectionProfile
from mssql_identity.storage import find_or_make_storage_path
from mssql_identity.token_cache import TokenCache
from mssql_identity.user_interaction import ConsoleUserInteraction, UserInteraction

STRATEGIES = {
    AuthType.AUTH_CODE_GRANT: AuthCodeGrant,
    AuthType.DEVICE_CODE: DeviceCode,
}


class AzureController:
    """
    Orchestrates login and refresh for database connections.

    The configured auth type only selects the flow of new logins. Refreshes
    always use the flow recorded on the account.
    """

    def __init__(
        self,
        token_cache: TokenCache,
        account_store: AccountStore,
        identity_client: AzureIdentityClient,
        user_interaction: UserInteraction,
        callback_server: AuthCallbackServer,
        settings: ProviderSettings,
        configured_auth_type: Union[AuthType, str, int] = AuthType.AUTH_CODE_GRANT,
    ):
        self.token_cache = token_cache
        self.account_store = account_store
        self.identity_client = identity_client
        self.user_interaction = user_interaction
        self.callback_server = callback_server
        self.settings = settings
        self.configured_auth_type = AuthType.parse(configured_auth_type)

        self._strategies: Dict[AuthType, AzureAuth] = {}
        self._refreshes: Dict[str, asyncio.Task] = {}
        self._init_lock = asyncio.Lock()
        self._initialized: Optional[bool] = None

    @classmethod
    def from_config(
        cls,
        user_interaction: Optional[UserInteraction] = None,
        platform: Optional[str] = None,
    ) -> "AzureController":
        """Builds a controller with the default dependencies from configuration."""
        settings = get_provider_settings()
        try:
            storage_path = find_or_make_storage_path(platform or sys.platform)
        except PlatformUnsupportedError as e:
            logger.error(f"Azure accounts are not supported here: {e}")
            storage_path = None
        credential_store = CredentialStore(CREDENTIAL_SERVICE_NAME)
        return cls(
            token_cache=TokenCache(TOKEN_CACHE_SERVICE, storage_path, ENCRYPT_TOKEN_CACHE, credential_store),
            account_store=AccountStore(storage_path),
            identity_client=AzureIdentityClient(settings),
            user_interaction=user_interaction or ConsoleUserInteraction(),
            callback_server=AuthCallbackServer(),
            settings=settings,
            configured_auth_type=AZURE_AUTH_TYPE,
        )

    async def init(self) -> bool:
        """
        Opens the token cache and the account store once.

        Returns:
            True if identity features are available
        """
        async with self._init_lock:
            if self._initialized is not None:
                return self._initialized

            cache_ready = await self.token_cache.init()
            accounts_ready = await self.account_store.init()
            self._initialized = cache_ready and accounts_ready
            if not self._initialized:
                logger.error("Azure identity storage is unavailable, sign-in is disabled")
                self.user_interaction.show_error(
                    "Azure sign-in is unavailable: the token cache could not be initialized."
                )
            return self._initialized

    async def _require_init(self) -> None:
        if not await self.init():
            raise StorageUnavailableError("Azure identity storage is unavailable")

    def _get_strategy(self, auth_type: AuthType) -> AzureAuth:
        strategy = self._strategies.get(auth_type)
        if strategy is None:
            common = dict(
                settings=self.settings,
                token_cache=self.token_cache,
                account_store=self.account_store,
                identity_client=self.identity_client,
                user_interaction=self.user_interaction,
            )
            if auth_type is AuthType.AUTH_CODE_GRANT:
                common["callback_server"] = self.callback_server
            strategy = STRATEGIES[auth_type](**common)
            self._strategies[auth_type] = strategy
        return strategy

    # ----------------------------------------------------------------------------------------------
    # Tokens
    # ----------------------------------------------------------------------------------------------

    async def get_tokens(self, profile: ConnectionProfile) -> ConnectionProfile:
        """
        Signs in with the configured flow and fills the profile.

        Returns:
            Copy of the profile with account id, email and database token
        """
        await self._require_init()

        strategy = self._get_strategy(self.configured_auth_type)
        account = await strategy.start_login()
        home_tenant = strategy.get_home_tenant(account)
        token = await strategy.get_account_security_token(
            account, home_tenant.id, self.settings.database_resource
        )
        return self._fill_profile(profile, account, token.token)

    async def refresh_token(self, account: Union[Account, str]) -> str:
        """
        Returns a fresh database access token for a known account.

        Concurrent calls for the same account share one refresh.

        Raises:
            AccountNotFoundError: Account is not in the account store
            ReauthenticationRequiredError: Account must sign in again
            ExchangeFailedError: Provider or network failure
        """
        await self._require_init()

        account_key = account if isinstance(account, str) else account.key
        task = self._refreshes.get(account_key)
        if task is None:
            task = asyncio.create_task(self._refresh(account_key))
            self._refreshes[account_key] = task
            task.add_done_callback(lambda done: self._refresh_done(account_key, done))
        return await asyncio.shield(task)

    def _refresh_done(self, account_key: str, task: asyncio.Task) -> None:
        self._refreshes.pop(account_key, None)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Refresh of account {account_key} failed: {task.exception()}")

    async def _refresh(self, account_key: str) -> str:
        stored = await self.account_store.get_account(account_key)
        if stored is None:
            raise AccountNotFoundError(account_key)

        strategy = self._get_strategy(stored.properties.auth_type)
        logger.debug(f"Refreshing account {account_key} with {stored.properties.auth_type.value}")
        refreshed = await strategy.refresh_access(stored)
        home_tenant = strategy.get_home_tenant(refreshed)
        token = await strategy.get_account_security_token(
            refreshed, home_tenant.id, self.settings.database_resource
        )
        return token.token

    async def refresh_token_wrapper(self, profile: ConnectionProfile, account_key: str) -> ConnectionProfile:
        """
        Refreshes a previously chosen account and fills the profile.

        Raises:
            AccountNotFoundError: Account is not in the account store
        """
        token = await self.refresh_token(account_key)
        account = await self.account_store.get_account(account_key)
        if account is None:
            raise AccountNotFoundError(account_key)
        return self._fill_profile(profile, account, token)

    @staticmethod
    def _fill_profile(profile: ConnectionProfile, account: Account, token: str) -> ConnectionProfile:
        profile.account_id = account.key
        profile.email = account.display_info.email
        profile.azure_account_token = token
        return profile

    # ----------------------------------------------------------------------------------------------
    # Accounts
    # ----------------------------------------------------------------------------------------------

    async def get_accounts(self) -> List[Account]:
        await self._require_init()
        return await self.account_store.get_accounts()

    async def remove_account(self, account_key: str) -> bool:
        """
        Signs an account out: deletes the account and all its cached tokens.

        Returns:
            True if the account existed
        """
        await self._require_init()
        removed_tokens = await self.token_cache.remove_account_tokens(account_key)
        removed = await self.account_store.remove_account(account_key)
        logger.info(f"Removed account {account_key} ({removed_tokens} cached tokens)")
        return removed

    async def close(self) -> None:
        """Stops the callback listener and releases storage and HTTP resources."""
        tasks = list(self._refreshes.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.callback_server.stop()
        await self.identity_client.aclose()
        await self.token_cache.close()
        await self.account_store.close()
        self._initialized = None
