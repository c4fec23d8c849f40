# -*- coding: utf-8 -*-

"""
Unit tests for AzureIdentityClient.
Uses httpx.MockTransport, no request leaves the process.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from mssql_identity.exceptions import (
    ExchangeFailedError,
    LoginCancelledError,
    LoginTimedOutError,
    ReauthenticationRequiredError,
)
from mssql_identity.identity_client import (
    AzureIdentityClient,
    DeviceCodePending,
    decode_id_token,
    generate_pkce_pair,
)


def make_client(provider_settings, handler, max_retries: int = 3) -> AzureIdentityClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AzureIdentityClient(provider_settings, http_client=http_client, max_retries=max_retries, base_retry_delay=0)


def token_payload(**overrides) -> dict:
    payload = {
        "access_token": "new-access",
        "refresh_token": "new-refresh",
        "token_type": "Bearer",
        "expires_in": "3599",
    }
    payload.update(overrides)
    return payload


class TestHelpers:
    """Tests for PKCE and id token helpers."""

    def test_pkce_pair_is_s256(self):
        """
        What it does: Verifies the challenge is the unpadded SHA256 of the verifier.
        Purpose: Ensure PKCE S256 is computed correctly.
        """
        import base64
        import hashlib

        verifier, challenge = generate_pkce_pair()

        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
        assert challenge == expected
        assert 43 <= len(verifier) <= 128

    def test_decode_id_token_reads_claims(self, make_id_token):
        """
        What it does: Verifies id token claims are decoded.
        Purpose: Ensure account key and email come from the id token.
        """
        claims = decode_id_token(make_id_token({"oid": "abc", "tid": "t1"}))

        assert claims == {"oid": "abc", "tid": "t1"}

    def test_decode_malformed_id_token_is_empty(self):
        """
        What it does: Verifies malformed tokens yield no claims.
        Purpose: Ensure decoding never raises.
        """
        assert decode_id_token(None) == {}
        assert decode_id_token("not-a-jwt") == {}
        assert decode_id_token("a.!!!.c") == {}


class TestAuthorizationUrl:
    """Tests for build_authorization_url()."""

    def test_url_carries_pkce_and_state(self, provider_settings):
        """
        What it does: Verifies the authorize URL parameters.
        Purpose: Ensure the callback can be matched and the code redeemed.
        """
        client = AzureIdentityClient(provider_settings)

        url = client.build_authorization_url("http://127.0.0.1:5000/callback", "state-1", "challenge-1")

        parsed = urlparse(url)
        params = parse_qs(parsed.query)
        assert parsed.path == "/common/oauth2/authorize"
        assert params["state"] == ["state-1"]
        assert params["code_challenge"] == ["challenge-1"]
        assert params["code_challenge_method"] == ["S256"]
        assert params["client_id"] == ["test-client-id"]
        assert params["resource"] == ["https://management.test/"]
        assert params["redirect_uri"] == ["http://127.0.0.1:5000/callback"]


class TestRefresh:
    """Tests for refresh()."""

    @pytest.mark.asyncio
    async def test_refresh_posts_to_tenant_endpoint(self, provider_settings):
        """
        What it does: Verifies the refresh grant request.
        Purpose: Ensure tenant, resource and refresh token are sent.
        """
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=token_payload())

        client = make_client(provider_settings, handler)

        tokens = await client.refresh("old-refresh", "tenant-1", "https://database.test/")

        form = parse_qs(requests[0].content.decode())
        assert requests[0].url.path == "/tenant-1/oauth2/token"
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["old-refresh"]
        assert form["resource"] == ["https://database.test/"]
        assert tokens.access_token == "new-access"
        assert tokens.refresh_token == "new-refresh"

    @pytest.mark.asyncio
    async def test_refresh_keeps_old_refresh_token_when_not_rotated(self, provider_settings):
        """
        What it does: Verifies the old refresh token is kept.
        Purpose: Ensure refresh material is not lost when the provider does not rotate.
        """
        def handler(request):
            return httpx.Response(200, json=token_payload(refresh_token=None))

        client = make_client(provider_settings, handler)

        tokens = await client.refresh("old-refresh", "tenant-1", "https://database.test/")

        assert tokens.refresh_token == "old-refresh"

    @pytest.mark.asyncio
    async def test_invalid_grant_requires_reauthentication(self, provider_settings):
        """
        What it does: Verifies invalid_grant maps to ReauthenticationRequiredError.
        Purpose: Ensure revoked refresh tokens are not retried.
        """
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "AADSTS70008"})

        client = make_client(provider_settings, handler)

        with pytest.raises(ReauthenticationRequiredError):
            await client.refresh("old-refresh", "tenant-1", "https://database.test/")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_empty_refresh_token_is_rejected_without_request(self, provider_settings):
        """
        What it does: Verifies an empty refresh token is rejected locally.
        Purpose: Ensure no request is sent without refresh material.
        """
        def handler(request):
            raise AssertionError("No request expected")

        client = make_client(provider_settings, handler)

        with pytest.raises(ReauthenticationRequiredError):
            await client.refresh("", "tenant-1", "https://database.test/")


class TestRetry:
    """Tests for transient failure handling."""

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self, provider_settings):
        """
        What it does: Verifies 5xx responses are retried.
        Purpose: Ensure transient provider errors recover.
        """
        responses = [httpx.Response(503), httpx.Response(200, json=token_payload())]

        def handler(request):
            return responses.pop(0)

        client = make_client(provider_settings, handler)

        tokens = await client.refresh("rt", "tenant-1", "https://database.test/")

        assert tokens.access_token == "new-access"
        assert responses == []

    @pytest.mark.asyncio
    async def test_network_error_exhausts_retries(self, provider_settings):
        """
        What it does: Verifies capped attempts end in a retryable ExchangeFailedError.
        Purpose: Ensure every failure path is bounded and typed.
        """
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(provider_settings, handler, max_retries=3)

        with pytest.raises(ExchangeFailedError) as exc_info:
            await client.refresh("rt", "tenant-1", "https://database.test/")

        assert exc_info.value.retryable is True
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_unknown_client_error_is_not_retried(self, provider_settings):
        """
        What it does: Verifies unknown 4xx errors fail immediately.
        Purpose: Ensure non-transient errors are reported as non-retryable.
        """
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": "invalid_client"})

        client = make_client(provider_settings, handler)

        with pytest.raises(ExchangeFailedError) as exc_info:
            await client.refresh("rt", "tenant-1", "https://database.test/")

        assert exc_info.value.retryable is False
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_non_json_success_body_is_typed_error(self, provider_settings):
        """
        What it does: Verifies an HTML page served with status 200 fails as ExchangeFailedError.
        Purpose: Ensure proxy or captive portal pages never leak a JSON decoding error.
        """
        def handler(request):
            return httpx.Response(200, text="<html>captive portal</html>", headers={"content-type": "text/html"})

        client = make_client(provider_settings, handler)

        with pytest.raises(ExchangeFailedError) as exc_info:
            await client.refresh("rt", "tenant-1", "https://database.test/")

        print(f"Error: {exc_info.value}")
        assert exc_info.value.retryable is False
        assert exc_info.value.status_code == 200

    @pytest.mark.asyncio
    async def test_non_object_error_body_is_typed_error(self, provider_settings):
        """
        What it does: Verifies a 4xx body that is JSON but not an object is handled.
        Purpose: Ensure error mapping never fails on unexpected payload shapes.
        """
        def handler(request):
            return httpx.Response(400, json=["unexpected"])

        client = make_client(provider_settings, handler)

        with pytest.raises(ExchangeFailedError) as exc_info:
            await client.refresh("rt", "tenant-1", "https://database.test/")

        assert exc_info.value.status_code == 400


class TestDeviceCode:
    """Tests for the device code endpoints."""

    @pytest.mark.asyncio
    async def test_request_device_code(self, provider_settings):
        """
        What it does: Verifies the device code response is parsed.
        Purpose: Ensure user code, URL and interval reach the flow.
        """
        def handler(request):
            assert request.url.path == "/common/oauth2/devicecode"
            return httpx.Response(200, json={
                "device_code": "dc",
                "user_code": "ABCD-EFGH",
                "verification_url": "https://microsoft.com/devicelogin",
                "expires_in": "900",
                "interval": "5",
                "message": "To sign in...",
            })

        client = make_client(provider_settings, handler)

        info = await client.request_device_code()

        assert info.user_code == "ABCD-EFGH"
        assert info.verification_url == "https://microsoft.com/devicelogin"
        assert info.expires_in == 900
        assert info.interval == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error, expected", [
        ("authorization_pending", DeviceCodePending),
        ("authorization_declined", LoginCancelledError),
        ("expired_token", LoginTimedOutError),
    ])
    async def test_poll_errors_are_mapped(self, provider_settings, error, expected):
        """
        What it does: Verifies polling error codes map to typed outcomes.
        Purpose: Ensure the flow can keep polling, cancel or time out.
        """
        def handler(request):
            return httpx.Response(400, json={"error": error})

        client = make_client(provider_settings, handler)

        with pytest.raises(expected):
            await client.poll_device_code("dc")

    @pytest.mark.asyncio
    async def test_slow_down_is_flagged(self, provider_settings):
        """
        What it does: Verifies slow_down is distinguished from pending.
        Purpose: Ensure the flow increases its polling interval.
        """
        def handler(request):
            return httpx.Response(400, json={"error": "slow_down"})

        client = make_client(provider_settings, handler)

        with pytest.raises(DeviceCodePending) as exc_info:
            await client.poll_device_code("dc")

        assert exc_info.value.slow_down is True


class TestListTenants:
    """Tests for list_tenants()."""

    @pytest.mark.asyncio
    async def test_list_tenants(self, provider_settings):
        """
        What it does: Verifies tenants are read from the management API.
        Purpose: Ensure tenant discovery sends the bearer token.
        """
        def handler(request):
            assert request.headers["Authorization"] == "Bearer mgmt-token"
            assert request.url.params["api-version"] == "2019-11-01"
            return httpx.Response(200, json={"value": [
                {"tenantId": "t1", "displayName": "Contoso"},
                {"tenantId": "t2", "displayName": "Fabrikam", "tenantCategory": "ProjectedBy"},
                {"displayName": "no id"},
            ]})

        client = make_client(provider_settings, handler)

        tenants = await client.list_tenants("mgmt-token")

        assert [tenant.id for tenant in tenants] == ["t1", "t2"]
        assert tenants[0].display_name == "Contoso"
