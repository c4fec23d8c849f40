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
OAuth wire exchange with Azure Active Directory.

Talks to the v1 endpoints of the authority:
- GET  {authority}/{tenant}/oauth2/authorize   (browser, authorization code + PKCE)
- POST {authority}/{tenant}/oauth2/token       (code, device code and refresh grants)
- POST {authority}/{tenant}/oauth2/devicecode  (device code request)
- GET  {management}/tenants                    (tenant discovery)

Transient failures (network, 429, 5xx) are retried with exponential backoff
up to MAX_RETRIES attempts. OAuth error codes are mapped to typed errors.
"""

import asyncio
import base64
import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwt
from loguru import logger

from mssql_identity.config import (
    BASE_RETRY_DELAY,
    HTTP_TIMEOUT,
    MAX_RETRIES,
    ProviderSettings,
)
from mssql_identity.exceptions import (
    ExchangeFailedError,
    LoginCancelledError,
    LoginTimedOutError,
    ReauthenticationRequiredError,
)
from mssql_identity.models import AccessToken, Tenant


# OAuth error codes meaning the refresh material can no longer be used
REAUTHENTICATION_ERRORS = ("invalid_grant", "interaction_required")

# Device code polling errors
PENDING_ERRORS = ("authorization_pending", "slow_down")
DECLINED_ERRORS = ("authorization_declined", "access_denied")
EXPIRED_ERRORS = ("expired_token", "code_expired")

TENANTS_API_VERSION = "2019-11-01"


class DeviceCodePending(Exception):
    """
    The user has not completed the device code login yet.

    Attributes:
        slow_down: Provider asked to increase the polling interval
    """

    def __init__(self, slow_down: bool = False):
        super().__init__("slow_down" if slow_down else "authorization_pending")
        self.slow_down = slow_down


@dataclass
class DeviceCodeInfo:
    """Device code issued by the provider."""
    device_code: str
    user_code: str
    verification_url: str
    expires_in: int
    interval: int
    message: str = ""


@dataclass
class TokenResponse:
    """Tokens returned by a successful grant."""
    access_token: str
    expires_on: datetime
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    resource: Optional[str] = None
    id_token_claims: Dict[str, Any] = field(default_factory=dict)

    def to_access_token(self) -> AccessToken:
        return AccessToken(token=self.access_token, expires_on=self.expires_on, token_type=self.token_type)


def generate_pkce_pair() -> tuple[str, str]:
    """
    Generate PKCE code_verifier and code_challenge.

    Returns:
        Tuple of (code_verifier, code_challenge)
    """
    # Generate code_verifier: 43-128 character random string
    code_verifier = secrets.token_urlsafe(32)

    # Generate code_challenge: SHA256(code_verifier) base64url-encoded
    code_challenge_bytes = hashlib.sha256(code_verifier.encode()).digest()
    code_challenge = base64.urlsafe_b64encode(code_challenge_bytes).decode().rstrip("=")

    return code_verifier, code_challenge


def decode_id_token(id_token: Optional[str]) -> Dict[str, Any]:
    """
    Reads the claims of an id token without verifying its signature.

    Claims are only used for display and account keys.

    Returns:
        Claims dict, empty if the token is missing or malformed
    """
    if not id_token:
        return {}
    try:
        return jwt.get_unverified_claims(id_token)
    except JWTError as e:
        logger.warning(f"Failed to decode id token claims: {e}")
        return {}


def _parse_expires_on(data: Dict[str, Any]) -> datetime:
    if data.get("expires_on"):
        return datetime.fromtimestamp(int(data["expires_on"]), tz=timezone.utc)
    expires_in = int(data.get("expires_in", 3600))
    return datetime.now(timezone.utc) + timedelta(seconds=expires_in)


class AzureIdentityClient:
    """
    Azure AD client for the authorization code, device code and refresh grants.

    Attributes:
        settings: Provider settings (authority, client id, resources)

    Example:
        >>> client = AzureIdentityClient(get_provider_settings())
        >>> tokens = await client.refresh(refresh_token, tenant_id, resource)
        >>> await client.aclose()
    """

    def __init__(
        self,
        settings: ProviderSettings,
        http_client: Optional[httpx.AsyncClient] = None,
        max_retries: int = MAX_RETRIES,
        base_retry_delay: float = BASE_RETRY_DELAY,
    ):
        """
        Args:
            settings: Provider settings
            http_client: Optional shared httpx.AsyncClient. A shared client is
                not closed by aclose().
            max_retries: Attempts for transient failures
            base_retry_delay: Base delay of the exponential backoff (seconds)
        """
        self.settings = settings
        self._owns_client = http_client is None
        self._client: Optional[httpx.AsyncClient] = http_client
        self._max_retries = max(1, max_retries)
        self._base_retry_delay = base_retry_delay

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout=HTTP_TIMEOUT))
        return self._client

    async def aclose(self) -> None:
        """Closes the HTTP client if this instance owns it."""
        if not self._owns_client:
            return
        if self._client and not self._client.is_closed:
            try:
                await self._client.aclose()
            except Exception as e:
                logger.warning(f"Error closing identity HTTP client: {e}")

    def _endpoint(self, tenant: str, name: str) -> str:
        return f"{self.settings.authority_endpoint}/{tenant}/oauth2/{name}"

    def build_authorization_url(
        self,
        redirect_uri: str,
        state: str,
        code_challenge: str,
        tenant: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> str:
        """
        Builds the browser URL of the authorization code flow.

        Args:
            redirect_uri: Callback URI of the local listener
            state: CSRF state echoed back to the callback
            code_challenge: PKCE S256 challenge
            tenant: Tenant to sign in to (default: common)
            resource: Resource of the first token (default: management)

        Returns:
            Authorization URL
        """
        params = {
            "response_type": "code",
            "response_mode": "query",
            "client_id": self.settings.client_id,
            "redirect_uri": redirect_uri,
            "resource": resource or self.settings.management_resource,
            "state": state,
            "prompt": "select_account",
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        if self.settings.scopes:
            params["scope"] = " ".join(self.settings.scopes)
        return f"{self._endpoint(tenant or self.settings.common_tenant, 'authorize')}?{urlencode(params)}"

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: str,
        resource: Optional[str] = None,
        tenant: Optional[str] = None,
    ) -> TokenResponse:
        """
        Exchanges an authorization code for tokens.

        Raises:
            ReauthenticationRequiredError: Code already redeemed or expired
            ExchangeFailedError: Provider or network failure
        """
        data = {
            "grant_type": "authorization_code",
            "client_id": self.settings.client_id,
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
            "resource": resource or self.settings.management_resource,
        }
        payload = await self._post_form(self._endpoint(tenant or self.settings.common_tenant, "token"), data)
        logger.info("Successfully exchanged authorization code for tokens")
        return self._to_token_response(payload)

    async def request_device_code(
        self,
        resource: Optional[str] = None,
        tenant: Optional[str] = None,
    ) -> DeviceCodeInfo:
        """Requests a device code and user code."""
        data = {
            "client_id": self.settings.client_id,
            "resource": resource or self.settings.management_resource,
        }
        if self.settings.scopes:
            data["scope"] = " ".join(self.settings.scopes)
        payload = await self._post_form(self._endpoint(tenant or self.settings.common_tenant, "devicecode"), data)
        return DeviceCodeInfo(
            device_code=payload["device_code"],
            user_code=payload["user_code"],
            verification_url=payload.get("verification_url") or payload.get("verification_uri", ""),
            expires_in=int(payload.get("expires_in", 900)),
            interval=int(payload.get("interval", 5)),
            message=payload.get("message", ""),
        )

    async def poll_device_code(
        self,
        device_code: str,
        resource: Optional[str] = None,
        tenant: Optional[str] = None,
    ) -> TokenResponse:
        """
        Polls the token endpoint once for a device code.

        Raises:
            DeviceCodePending: The user has not finished yet
            LoginCancelledError: The user declined
            LoginTimedOutError: The device code expired
        """
        data = {
            "grant_type": "device_code",
            "client_id": self.settings.client_id,
            "resource": resource or self.settings.management_resource,
            "code": device_code,
        }
        payload = await self._post_form(self._endpoint(tenant or self.settings.common_tenant, "token"), data)
        logger.info("Device code login approved")
        return self._to_token_response(payload)

    async def refresh(self, refresh_token: str, tenant_id: str, resource: str) -> TokenResponse:
        """
        Redeems a refresh token for a new access/refresh pair.

        Args:
            refresh_token: Refresh token from the credential store
            tenant_id: Tenant of the new token
            resource: Resource of the new token

        Raises:
            ReauthenticationRequiredError: Refresh token revoked or expired
            ExchangeFailedError: Provider or network failure after retries
        """
        if not refresh_token:
            raise ReauthenticationRequiredError("Refresh token is not set")

        logger.info(f"Refreshing token for tenant {tenant_id}, resource {resource}")
        data = {
            "grant_type": "refresh_token",
            "client_id": self.settings.client_id,
            "refresh_token": refresh_token,
            "resource": resource,
        }
        payload = await self._post_form(self._endpoint(tenant_id, "token"), data)
        tokens = self._to_token_response(payload)
        if not tokens.refresh_token:
            # Provider did not rotate, keep using the old one
            tokens.refresh_token = refresh_token
        logger.info(f"Token refreshed, expires: {tokens.expires_on.isoformat()}")
        return tokens

    async def list_tenants(self, access_token: str) -> List[Tenant]:
        """
        Lists the tenants visible to a management token.

        Raises:
            ExchangeFailedError: Provider or network failure after retries
        """
        url = f"{self.settings.management_endpoint.rstrip('/')}/tenants"
        headers = {"Authorization": f"Bearer {access_token}"}
        payload = await self._request_with_retry(
            "GET", url, headers=headers, params={"api-version": TENANTS_API_VERSION}
        )
        tenants = []
        for item in payload.get("value", []):
            tenant_id = item.get("tenantId")
            if not tenant_id:
                continue
            tenants.append(
                Tenant(
                    id=tenant_id,
                    display_name=item.get("displayName", ""),
                    tenant_category=item.get("tenantCategory"),
                )
            )
        logger.debug(f"Discovered {len(tenants)} tenant(s)")
        return tenants

    def _to_token_response(self, payload: Dict[str, Any]) -> TokenResponse:
        access_token = payload.get("access_token")
        if not access_token:
            raise ExchangeFailedError("Response does not contain access_token", retryable=False)
        return TokenResponse(
            access_token=access_token,
            expires_on=_parse_expires_on(payload),
            refresh_token=payload.get("refresh_token"),
            token_type=payload.get("token_type", "Bearer"),
            resource=payload.get("resource"),
            id_token_claims=decode_id_token(payload.get("id_token")),
        )

    async def _post_form(self, url: str, data: Dict[str, str]) -> Dict[str, Any]:
        return await self._request_with_retry("POST", url, data=data)

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> Dict[str, Any]:
        """
        Executes a provider request with retry logic.

        - network errors, timeouts, 429 and 5xx: exponential backoff
        - OAuth errors (4xx with an error code): mapped to typed errors, no retry

        Raises:
            ExchangeFailedError: After all attempts, or for unknown 4xx errors
        """
        client = self._get_client()
        last_error: Optional[str] = None
        last_status: Optional[int] = None

        for attempt in range(self._max_retries):
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.RequestError as e:
                last_error = f"{type(e).__name__}: {e}"
                last_status = None
            else:
                if response.status_code == 200:
                    return self._json_body(response)

                last_status = response.status_code
                if response.status_code != 429 and response.status_code < 500:
                    raise self._oauth_error(response)
                last_error = f"HTTP {response.status_code}"

            if attempt < self._max_retries - 1:
                delay = self._base_retry_delay * (2 ** attempt)
                logger.warning(f"{last_error} from identity provider - waiting {delay}s (attempt {attempt + 1}/{self._max_retries})")
                await asyncio.sleep(delay)

        logger.error(f"{last_error} from identity provider - no more retries ({self._max_retries} attempts)")
        raise ExchangeFailedError(
            f"Token exchange failed after {self._max_retries} attempts: {last_error}",
            retryable=True,
            status_code=last_status,
        )

    @staticmethod
    def _json_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            content_type = response.headers.get("content-type", "unknown")
            logger.error(f"Identity provider returned a non-JSON body (content-type: {content_type})")
            raise ExchangeFailedError(
                f"Unexpected response from identity provider: {response.text[:300]}",
                retryable=False,
                status_code=response.status_code,
            )
        return body

    @staticmethod
    def _oauth_error(response: httpx.Response) -> Exception:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        error_code = body.get("error", "unknown")
        description = body.get("error_description", response.text[:300])

        if error_code in PENDING_ERRORS:
            return DeviceCodePending(slow_down=error_code == "slow_down")

        logger.error(f"Identity provider error: status={response.status_code}, error={error_code}")
        if error_code in REAUTHENTICATION_ERRORS:
            return ReauthenticationRequiredError(f"Reauthentication required: {description}")
        if error_code in DECLINED_ERRORS:
            return LoginCancelledError(f"Login declined: {description}")
        if error_code in EXPIRED_ERRORS:
            return LoginTimedOutError(f"Device code expired: {description}")
        return ExchangeFailedError(
            f"Token exchange failed: {error_code}: {description}",
            retryable=False,
            status_code=response.status_code,
        )
