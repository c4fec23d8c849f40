# -*- coding: utf-8 -*-

"""
Common fixtures and utilities for testing MSSQL Identity.

Provides test isolation from external services and global state.
All tests MUST be completely isolated from the network and from the real
OS keychain.
"""

import base64
import json
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from keyring.backend import KeyringBackend
from keyring.errors import KeyringLocked, PasswordDeleteError, PasswordSetError

from mssql_identity.account_store import AccountStore
from mssql_identity.config import ProviderSettings
from mssql_identity.credential_store import CredentialStore
from mssql_identity.identity_client import TokenResponse
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


# =============================================================================
# Credential Store Fixtures
# =============================================================================

class InMemoryKeyring(KeyringBackend):
    """
    Keyring backend kept in a dict.

    Attributes:
        locked: Every call raises KeyringLocked
        fail_on_set: set_password raises PasswordSetError
    """

    # Lower than the fail backend, never selected by keyring.get_keyring()
    priority = -1

    def __init__(self):
        super().__init__()
        self.passwords: Dict[Tuple[str, str], str] = {}
        self.locked = False
        self.fail_on_set = False

    def _check_locked(self):
        if self.locked:
            raise KeyringLocked("Keychain is locked")

    def get_password(self, service: str, username: str) -> Optional[str]:
        self._check_locked()
        return self.passwords.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self._check_locked()
        if self.fail_on_set:
            raise PasswordSetError("Refusing to store password")
        self.passwords[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        self._check_locked()
        if (service, username) not in self.passwords:
            raise PasswordDeleteError("Password not found")
        del self.passwords[(service, username)]


@pytest.fixture
def keyring_backend():
    """Returns an empty in-memory keyring."""
    return InMemoryKeyring()


@pytest.fixture
def credential_store(keyring_backend):
    """Returns a credential store over the in-memory keyring."""
    return CredentialStore("vscode-mssql-test", backend=keyring_backend)


# =============================================================================
# Provider Fixtures
# =============================================================================

@pytest.fixture
def provider_settings():
    """Returns provider settings pointing at test hosts."""
    return ProviderSettings(
        authority_endpoint="https://login.test",
        client_id="test-client-id",
        redirect_uri="http://127.0.0.1/callback",
        management_resource="https://management.test/",
        management_endpoint="https://management.test/",
        database_resource="https://database.test/",
        scopes=[],
    )


@pytest.fixture
def make_id_token():
    """Factory for unsigned id tokens carrying the given claims."""
    def _encode(data: dict) -> str:
        return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")

    def _create(claims: dict) -> str:
        return f"{_encode({'alg': 'none'})}.{_encode(claims)}.c2lnbmF0dXJl"
    return _create


@pytest.fixture
def id_token_claims():
    """Returns the id token claims of the test user."""
    return {
        "oid": "account-1",
        "tid": "tenant-home",
        "upn": "user@contoso.test",
        "name": "Test User",
    }


@pytest.fixture
def make_token_response(id_token_claims):
    """
    Factory for TokenResponse objects returned by the identity client.
    """
    def _create(
        access_token: str = "access-token-1",
        refresh_token: Optional[str] = "refresh-token-1",
        expires_in: int = 3600,
        claims: Optional[dict] = None,
    ) -> TokenResponse:
        return TokenResponse(
            access_token=access_token,
            expires_on=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            refresh_token=refresh_token,
            id_token_claims=dict(id_token_claims if claims is None else claims),
        )
    return _create


@pytest.fixture
def mock_identity_client(make_token_response):
    """
    Mocked AzureIdentityClient.

    Defaults: every grant succeeds, the account has one home tenant.
    """
    client = MagicMock()
    client.build_authorization_url = MagicMock(return_value="https://login.test/common/oauth2/authorize?x=1")
    client.exchange_code = AsyncMock(return_value=make_token_response())
    client.request_device_code = AsyncMock()
    client.poll_device_code = AsyncMock(return_value=make_token_response())
    client.refresh = AsyncMock(
        return_value=make_token_response(access_token="refreshed-access", refresh_token="refresh-token-2")
    )
    client.list_tenants = AsyncMock(return_value=[Tenant(id="tenant-home", display_name="Contoso")])
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def mock_user_interaction():
    """Records notifications instead of printing them."""
    interaction = MagicMock()
    interaction.open_url = MagicMock()
    interaction.show_device_code_message = MagicMock()
    interaction.show_error = MagicMock()
    interaction.show_info = MagicMock()
    return interaction


# =============================================================================
# Storage Fixtures
# =============================================================================

@pytest.fixture
async def token_cache(tmp_path, credential_store):
    """
    Initialized encrypted token cache in a temporary directory.
    """
    cache = TokenCache("aad", tmp_path, True, credential_store)
    assert await cache.init() is True
    yield cache
    await cache.close()


@pytest.fixture
async def account_store(tmp_path):
    """
    Initialized account store in a temporary directory.
    """
    store = AccountStore(tmp_path)
    assert await store.init() is True
    yield store
    await store.close()


@pytest.fixture
def sample_account():
    """
    Factory for accounts with a home tenant.
    """
    def _create(
        key: str = "account-1",
        auth_type: AuthType = AuthType.AUTH_CODE_GRANT,
        tenants: Optional[list] = None,
        is_stale: bool = False,
    ) -> Account:
        if tenants is None:
            tenants = [Tenant(id="tenant-home", display_name="Contoso", tenant_category=HOME_TENANT_CATEGORY)]
        return Account(
            key=key,
            display_info=AccountDisplayInfo(email=f"{key}@contoso.test", display_name=key, user_id=key),
            properties=AccountProperties(auth_type=auth_type, tenants=tenants),
            is_stale=is_stale,
        )
    return _create


@pytest.fixture
def sample_cached_token():
    """
    Factory for cached tokens.
    """
    def _create(
        key: CacheKey,
        access_token: str = "access-token-1",
        refresh_token: Optional[str] = "refresh-token-1",
        expires_in: int = 3600,
    ) -> CachedToken:
        return CachedToken(
            key=key,
            access_token=AccessToken(
                token=access_token,
                expires_on=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            ),
            refresh_token=refresh_token,
        )
    return _create


# =============================================================================
# Global Network Blocking
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def block_all_network_calls():
    """
    CRITICAL FIXTURE: Globally blocks ALL network calls.

    Real httpx transports refuse to send; tests provide httpx.MockTransport
    or httpx.ASGITransport instead.
    """

    async def network_call_error(*args, **kwargs):
        raise RuntimeError(
            "CRITICAL ERROR: Real network request attempt detected! "
            "Test did not provide a mock transport for httpx.AsyncClient. "
            "All HTTP calls must be explicitly mocked."
        )

    patcher = patch.object(httpx.AsyncHTTPTransport, "handle_async_request", new=network_call_error)
    patcher.start()
    print("GLOBAL NETWORK BLOCKING ACTIVATED")

    yield

    patcher.stop()
    print("GLOBAL NETWORK BLOCKING DEACTIVATED")
