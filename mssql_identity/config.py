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
MSSQL Identity Configuration.

Centralized storage for all settings and constants of the identity subsystem.
Loads environment variables and provides typed access to them.
"""

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _get_bool_env(var_name: str, default: bool) -> bool:
    """
    Reads a boolean flag from the environment.

    Accepts "1", "true", "yes", "on" (case-insensitive) as True.

    Args:
        var_name: Environment variable name
        default: Value used when the variable is not set

    Returns:
        Parsed flag value
    """
    raw = os.getenv(var_name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ==================================================================================================
# Product Settings
# ==================================================================================================

# Product directory created under the platform app-data location
PRODUCT_NAME: str = "vscode-mssql"

# Subdirectory holding the persisted identity state
AAD_DIRECTORY_NAME: str = "AAD"

# Service name of the token cache (metadata file is <storage>/<service>.db)
TOKEN_CACHE_SERVICE: str = "aad"

# Metadata file of the account store
ACCOUNT_STORE_FILE: str = "accounts.db"

# Service name under which secrets are stored in the OS keychain
CREDENTIAL_SERVICE_NAME: str = os.getenv("MSSQL_CREDENTIAL_SERVICE", PRODUCT_NAME)

# Encrypt metadata columns of the token cache with a Fernet key kept in the keychain
ENCRYPT_TOKEN_CACHE: bool = _get_bool_env("MSSQL_ENCRYPT_TOKEN_CACHE", True)

# ==================================================================================================
# Authentication Settings
# ==================================================================================================

# Flow used for new logins: "AuthCodeGrant" or "DeviceCode"
# Existing accounts are always refreshed with the flow they were created with.
AZURE_AUTH_TYPE: str = os.getenv("MSSQL_AZURE_AUTH_TYPE", "AuthCodeGrant")

# Azure AD authority (v1 endpoints: /{tenant}/oauth2/authorize, /token, /devicecode)
AZURE_AUTHORITY_URL: str = os.getenv("AZURE_AUTHORITY_URL", "https://login.microsoftonline.com")

# Public client id of the database tooling application
AZURE_CLIENT_ID: str = os.getenv("AZURE_CLIENT_ID", "a69788c6-1d43-44ed-9ca3-b83e194da255")

# Base redirect URI, the callback listener replaces the port and path
AZURE_REDIRECT_URI: str = os.getenv("AZURE_REDIRECT_URI", "http://localhost")

# Scopes requested together with the resource
AZURE_SCOPES: List[str] = os.getenv("AZURE_SCOPES", "openid offline_access").split()

# Resource used for login and tenant discovery (Azure Resource Manager)
AZURE_MANAGEMENT_RESOURCE: str = os.getenv(
    "AZURE_MANAGEMENT_RESOURCE", "https://management.core.windows.net/"
)
AZURE_MANAGEMENT_ENDPOINT: str = os.getenv("AZURE_MANAGEMENT_ENDPOINT", "https://management.azure.com/")

# Resource of the tokens handed to database connections
AZURE_DATABASE_RESOURCE: str = os.getenv("AZURE_DATABASE_RESOURCE", "https://database.windows.net/")

# Tenant used before the user's home tenant is known
AZURE_COMMON_TENANT: str = "common"

# ==================================================================================================
# Local Callback Listener
# ==================================================================================================

# Loopback interface for the authorization code redirect (port is ephemeral)
CALLBACK_HOST: str = os.getenv("MSSQL_CALLBACK_HOST", "127.0.0.1")

# Path of the redirect handler
CALLBACK_PATH: str = "/callback"

# Maximum wait for the listener to accept connections (in seconds)
CALLBACK_STARTUP_TIMEOUT: float = float(os.getenv("CALLBACK_STARTUP_TIMEOUT", "5"))

# ==================================================================================================
# Token Settings
# ==================================================================================================

# Time before token expiration when refresh is needed (in seconds)
# Default 5 minutes - a connection attempt must not race the expiry
TOKEN_REFRESH_THRESHOLD: int = int(os.getenv("TOKEN_REFRESH_THRESHOLD", "300"))

# ==================================================================================================
# Timeouts and Retries
# ==================================================================================================

# Maximum time the user has to finish an interactive login (seconds)
LOGIN_TIMEOUT: float = float(os.getenv("LOGIN_TIMEOUT", "300"))

# Maximum time for a whole refresh exchange, including retries (seconds)
REFRESH_TIMEOUT: float = float(os.getenv("REFRESH_TIMEOUT", "60"))

# Timeout of a single HTTP request to the identity provider (seconds)
HTTP_TIMEOUT: float = float(os.getenv("HTTP_TIMEOUT", "30"))

# Maximum number of attempts for transient provider errors (network, 429, 5xx)
MAX_RETRIES: int = int(os.getenv("MAX_RETRIES", "3"))

# Base delay between attempts (seconds)
# Uses exponential backoff: delay * (2 ** attempt)
BASE_RETRY_DELAY: float = float(os.getenv("BASE_RETRY_DELAY", "1.0"))

# ==================================================================================================
# Logging Settings
# ==================================================================================================

# Log level for the application
# Available levels: TRACE, DEBUG, INFO, WARNING, ERROR, CRITICAL
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()


# ==================================================================================================
# Provider Settings
# ==================================================================================================

@dataclass(frozen=True)
class ProviderSettings:
    """
    Read-only description of the identity provider consumed by both flows.

    Attributes:
        authority_endpoint: Authority base URL
        client_id: Public client id
        redirect_uri: Base redirect URI
        scopes: Scopes requested with every token
        management_resource: Resource used for login and tenant discovery
        management_endpoint: Base URL of the management API
        database_resource: Resource of database access tokens
        common_tenant: Tenant used before the home tenant is known
    """
    authority_endpoint: str
    client_id: str
    redirect_uri: str
    management_resource: str
    management_endpoint: str
    database_resource: str
    scopes: List[str] = field(default_factory=list)
    common_tenant: str = AZURE_COMMON_TENANT


def get_provider_settings() -> ProviderSettings:
    """Builds provider settings from the loaded configuration."""
    return ProviderSettings(
        authority_endpoint=AZURE_AUTHORITY_URL.rstrip("/"),
        client_id=AZURE_CLIENT_ID,
        redirect_uri=AZURE_REDIRECT_URI,
        management_resource=AZURE_MANAGEMENT_RESOURCE,
        management_endpoint=AZURE_MANAGEMENT_ENDPOINT,
        database_resource=AZURE_DATABASE_RESOURCE,
        scopes=list(AZURE_SCOPES),
    )
