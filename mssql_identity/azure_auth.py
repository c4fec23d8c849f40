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
Common base of the Azure login flows.

Manages the lifecycle of an Azure account:
- Interactive login (implemented by the subclasses)
- Account and tenant discovery from the first token
- Silent refresh with the refresh token from the token cache
- Resource scoped tokens for database connections

Login state machine:
    IDLE -> AWAITING_USER_ACTION -> EXCHANGING -> AUTHENTICATED
                                 |             -> FAILED
                                 -> TIMED_OUT / FAILED
Terminal states go back to IDLE when the next login starts.
"""

import asyncio
from dataclasses import replace
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from loguru import logger

from mssql_identity.account_store import AccountStore
from mssql_identity.config import REFRESH_TIMEOUT, TOKEN_REFRESH_THRESHOLD, ProviderSettings
from mssql_identity.exceptions import (
    ExchangeFailedError,
    IdentityError,
    LoginTimedOutError,
    ReauthenticationRequiredError,
)
from mssql_identity.identity_client import AzureIdentityClient, TokenResponse
from mssql_identity.models import (
    HOME_TENANT_CATEGORY,
    AccessToken,
    Account,
    AccountDisplayInfo,
    AccountProperties,
    AuthType,
    CacheKey,
    CachedToken,
    Tenant,
)
from mssql_identity.token_cache import TokenCache
from mssql_identity.user_interaction import UserInteraction


class FlowState(str, Enum):
    """States of an interactive login."""
    IDLE = "idle"
    AWAITING_USER_ACTION = "awaiting_user_action"
    EXCHANGING = "exchanging"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


TERMINAL_STATES: FrozenSet[FlowState] = frozenset(
    {FlowState.AUTHENTICATED, FlowState.FAILED, FlowState.TIMED_OUT}
)

_TRANSITIONS: Dict[FlowState, FrozenSet[FlowState]] = {
    FlowState.IDLE: frozenset({FlowState.AWAITING_USER_ACTION, FlowState.FAILED}),
    FlowState.AWAITING_USER_ACTION: frozenset({FlowState.EXCHANGING, FlowState.FAILED, FlowState.TIMED_OUT}),
    FlowState.EXCHANGING: frozenset({FlowState.AUTHENTICATED, FlowState.FAILED, FlowState.TIMED_OUT}),
    FlowState.AUTHENTICATED: frozenset({FlowState.IDLE}),
    FlowState.FAILED: frozenset({FlowState.IDLE}),
    FlowState.TIMED_OUT: frozenset({FlowState.IDLE}),
}


def mark_home_tenant(tenants: List[Tenant], home_tenant_id: Optional[str]) -> List[Tenant]:
    """
    Marks exactly one tenant as home tenant.

    The id-token tenant wins; without it the first tenant is used.
    """
    if not tenants:
        return tenants
    known_ids = {tenant.id for tenant in tenants}
    home_id = home_tenant_id if home_tenant_id in known_ids else tenants[0].id
    for tenant in tenants:
        if tenant.id == home_id:
            tenant.tenant_category = HOME_TENANT_CATEGORY
        elif tenant.is_home:
            tenant.tenant_category = None
    return tenants


class AzureAuth:
    """
    Base class of the login flows.

    Subclasses implement _login(), which drives the interactive part and
    returns the tokens of the first grant. Everything after that (account
    creation, persistence, refresh) is shared.

    Attributes:
        auth_type: Flow recorded on accounts created by this strategy
        state: Current login state
    """

    auth_type: AuthType

    def __init__(
        self,
        settings: ProviderSettings,
        token_cache: TokenCache,
        account_store: AccountStore,
        identity_client: AzureIdentityClient,
        user_interaction: UserInteraction,
        refresh_timeout: float = REFRESH_TIMEOUT,
        refresh_threshold: int = TOKEN_REFRESH_THRESHOLD,
    ):
        self.settings = settings
        self.token_cache = token_cache
        self.account_store = account_store
        self.identity_client = identity_client
        self.user_interaction = user_interaction
        self.refresh_timeout = refresh_timeout
        self.refresh_threshold = refresh_threshold
        self.state = FlowState.IDLE
        self._login_lock = asyncio.Lock()

    def _transition(self, new_state: FlowState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal login state transition: {self.state.value} -> {new_state.value}")
        logger.debug(f"{type(self).__name__} login state: {self.state.value} -> {new_state.value}")
        self.state = new_state

    async def _login(self) -> TokenResponse:
        raise NotImplementedError

    # ----------------------------------------------------------------------------------------------
    # Login
    # ----------------------------------------------------------------------------------------------

    async def start_login(self) -> Account:
        """
        Runs the interactive login and persists the resulting account.

        Returns:
            Newly signed-in account

        Raises:
            LoginTimedOutError: User did not finish in time
            LoginCancelledError: User cancelled or declined
            IdentityError: Any other login failure
        """
        async with self._login_lock:
            if self.state in TERMINAL_STATES:
                self._transition(FlowState.IDLE)

            try:
                tokens = await self._login()
                account = await self._complete_login(tokens)
            except LoginTimedOutError:
                self._fail(FlowState.TIMED_OUT)
                raise
            except BaseException:
                self._fail(FlowState.FAILED)
                raise

            self._transition(FlowState.AUTHENTICATED)
            logger.info(f"Signed in as {account.display_info.email} ({self.auth_type.value})")
            return account

    def _fail(self, terminal: FlowState) -> None:
        if self.state in TERMINAL_STATES:
            return
        if self.state is FlowState.IDLE and terminal is FlowState.TIMED_OUT:
            terminal = FlowState.FAILED
        self._transition(terminal)

    async def _complete_login(self, tokens: TokenResponse) -> Account:
        """
        Builds the account from the first grant and stores it with its token.

        The account is stored before the token, so no refresh material ever
        exists without its account.
        """
        claims = tokens.id_token_claims
        account_key = claims.get("oid") or claims.get("sub")
        if not account_key:
            raise ExchangeFailedError("Token response has no account identifier", retryable=False)

        home_tenant_id = claims.get("tid")
        tenants = await self._discover_tenants(tokens.access_token, home_tenant_id)
        email = claims.get("email") or claims.get("upn") or claims.get("unique_name") or ""

        account = Account(
            key=account_key,
            display_info=AccountDisplayInfo(
                email=email,
                display_name=claims.get("name", email),
                user_id=account_key,
            ),
            properties=AccountProperties(auth_type=self.auth_type, tenants=tenants),
        )
        await self.account_store.add_account(account)

        home_tenant = self.get_home_tenant(account)
        await self._cache_tokens(
            CacheKey(account.key, self.settings.management_resource, home_tenant.id), tokens
        )
        return account

    async def _discover_tenants(self, access_token: str, home_tenant_id: Optional[str]) -> List[Tenant]:
        tenants = await self.identity_client.list_tenants(access_token)
        if not tenants and home_tenant_id:
            tenants = [Tenant(id=home_tenant_id)]
        if not tenants:
            raise ExchangeFailedError("No tenants found for the account", retryable=False)
        return mark_home_tenant(tenants, home_tenant_id)

    async def _cache_tokens(self, key: CacheKey, tokens: TokenResponse) -> None:
        await self.token_cache.save_token(
            key,
            CachedToken(key=key, access_token=tokens.to_access_token(), refresh_token=tokens.refresh_token),
        )

    # ----------------------------------------------------------------------------------------------
    # Refresh
    # ----------------------------------------------------------------------------------------------

    def get_home_tenant(self, account: Account) -> Tenant:
        """
        Returns the home tenant of an account (first tenant if none is marked).

        Raises:
            IdentityError: If the account has no tenants
        """
        tenants = account.properties.tenants
        if not tenants:
            raise IdentityError(f"Account {account.key} has no tenants")
        for tenant in tenants:
            if tenant.is_home:
                return tenant
        return tenants[0]

    async def _mark_stale(self, account: Account, reason: str) -> None:
        logger.warning(f"Account {account.key} needs to sign in again: {reason}")
        stale = replace(account, is_stale=True)
        await self.account_store.add_account(stale)
        account.is_stale = True

    async def _redeem(self, account: Account, refresh_token: str, tenant_id: str, resource: str) -> TokenResponse:
        """
        Redeems refresh material with a bounded wait.

        Revocation marks the account stale and is not retried.
        """
        try:
            return await asyncio.wait_for(
                self.identity_client.refresh(refresh_token, tenant_id, resource),
                self.refresh_timeout,
            )
        except asyncio.TimeoutError:
            raise ExchangeFailedError(f"Token refresh timed out after {self.refresh_timeout:.0f} seconds")
        except ReauthenticationRequiredError as e:
            await self._mark_stale(account, str(e))
            raise ReauthenticationRequiredError(str(e), account_key=account.key) from e

    async def refresh_access(self, account: Account) -> Account:
        """
        Refreshes an account without user interaction.

        Returns:
            Updated account (rotated refresh token cached, tenants updated, not stale)

        Raises:
            ReauthenticationRequiredError: Refresh token revoked or missing;
                the account is marked stale and persisted
            ExchangeFailedError: Provider or network failure
        """
        home_tenant = self.get_home_tenant(account)
        key = CacheKey(account.key, self.settings.management_resource, home_tenant.id)
        cached = await self.token_cache.get_token(key)
        if cached is None or not cached.refresh_token:
            await self._mark_stale(account, "no refresh token cached")
            raise ReauthenticationRequiredError(
                f"No refresh token for account {account.key}", account_key=account.key
            )

        tokens = await self._redeem(account, cached.refresh_token, home_tenant.id, self.settings.management_resource)

        try:
            tenants = await self._discover_tenants(tokens.access_token, home_tenant.id)
        except ExchangeFailedError as e:
            logger.warning(f"Tenant discovery failed during refresh, keeping known tenants: {e}")
            tenants = account.properties.tenants

        refreshed = replace(
            account,
            properties=replace(account.properties, tenants=tenants),
            is_stale=False,
        )
        await self.account_store.add_account(refreshed)
        await self._cache_tokens(key, tokens)
        logger.info(f"Refreshed account {account.key}")
        return refreshed

    async def get_account_security_token(self, account: Account, tenant_id: str, resource: str) -> AccessToken:
        """
        Returns an access token for a resource in a tenant.

        Uses the cached token while it is not about to expire; otherwise
        redeems the best refresh material available for the tenant.

        Args:
            account: Signed-in account
            tenant_id: Tenant of the token
            resource: Resource of the token (e.g. the database resource)

        Returns:
            Access token

        Raises:
            ReauthenticationRequiredError: Account is stale or has no refresh material
            ExchangeFailedError: Provider or network failure
        """
        if account.is_stale:
            raise ReauthenticationRequiredError(
                f"Account {account.key} must sign in again", account_key=account.key
            )

        key = CacheKey(account.key, resource, tenant_id)
        cached = await self.token_cache.get_token(key)
        if cached is not None and not cached.access_token.is_expiring_soon(self.refresh_threshold):
            return cached.access_token

        refresh_token = await self._find_refresh_token(account, cached, tenant_id)
        if not refresh_token:
            await self._mark_stale(account, "no refresh token cached")
            raise ReauthenticationRequiredError(
                f"No refresh token for account {account.key}", account_key=account.key
            )

        tokens = await self._redeem(account, refresh_token, tenant_id, resource)
        await self._cache_tokens(key, tokens)
        return tokens.to_access_token()

    async def _find_refresh_token(
        self, account: Account, cached: Optional[CachedToken], tenant_id: str
    ) -> Optional[str]:
        if cached is not None and cached.refresh_token:
            return cached.refresh_token

        candidates = [CacheKey(account.key, self.settings.management_resource, tenant_id)]
        home_tenant = self.get_home_tenant(account)
        if home_tenant.id != tenant_id:
            candidates.append(CacheKey(account.key, self.settings.management_resource, home_tenant.id))

        for candidate in candidates:
            entry = await self.token_cache.get_token(candidate)
            if entry is not None and entry.refresh_token:
                return entry.refresh_token
        return None


__all__ = [
    "AzureAuth",
    "FlowState",
    "mark_home_tenant",
]
