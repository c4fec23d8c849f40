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
Data model of the identity subsystem: accounts, tenants and cached tokens.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Union


HOME_TENANT_CATEGORY = "Home"


class AuthType(Enum):
    """
    Interactive flow an account was created with.

    AUTH_CODE_GRANT: browser redirect to a local callback listener
    DEVICE_CODE: user code entered on a secondary device while the client polls
    """
    AUTH_CODE_GRANT = "AuthCodeGrant"
    DEVICE_CODE = "DeviceCode"

    @classmethod
    def parse(cls, value: Union["AuthType", str, int]) -> "AuthType":
        """
        Parses an auth type from a setting or a persisted record.

        Accepts enum members, their string values and the legacy numeric
        codes (0 = AuthCodeGrant, 1 = DeviceCode).

        Raises:
            ValueError: If the value names no known flow
        """
        if isinstance(value, cls):
            return value
        legacy_codes = {0: cls.AUTH_CODE_GRANT, 1: cls.DEVICE_CODE}
        if isinstance(value, int):
            if value in legacy_codes:
                return legacy_codes[value]
            raise ValueError(f"Unknown auth type code: {value}")
        text = str(value).strip()
        if text.isdigit():
            return cls.parse(int(text))
        for member in cls:
            if member.value.lower() == text.lower():
                return member
        raise ValueError(f"Unknown auth type: {value}")


@dataclass
class Tenant:
    """One Azure AD tenant an account has access to."""
    id: str
    display_name: str = ""
    user_id: Optional[str] = None
    tenant_category: Optional[str] = None

    @property
    def is_home(self) -> bool:
        return self.tenant_category == HOME_TENANT_CATEGORY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "userId": self.user_id,
            "tenantCategory": self.tenant_category,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Tenant":
        return cls(
            id=data["id"],
            display_name=data.get("displayName", ""),
            user_id=data.get("userId"),
            tenant_category=data.get("tenantCategory"),
        )


@dataclass
class AccountDisplayInfo:
    """Human readable account fields."""
    email: str
    display_name: str
    user_id: Optional[str] = None


@dataclass
class AccountProperties:
    auth_type: AuthType
    tenants: List[Tenant] = field(default_factory=list)


@dataclass
class Account:
    """
    One signed-in identity.

    Attributes:
        key: Stable unique identifier, primary key of the account store
        display_info: Email and display name
        properties: Auth type the account was created with and its tenants
        is_stale: True when the refresh material is known to be invalid
    """
    key: str
    display_info: AccountDisplayInfo
    properties: AccountProperties
    is_stale: bool = False


@dataclass(frozen=True)
class CacheKey:
    """Addresses one cached token: (account, resource, tenant)."""
    account_key: str
    resource: str
    tenant_id: str

    def __str__(self) -> str:
        return f"{self.account_key}|{self.resource}|{self.tenant_id}"


@dataclass
class AccessToken:
    """Short-lived bearer token."""
    token: str
    expires_on: datetime
    token_type: str = "Bearer"

    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_on

    def is_expiring_soon(self, threshold: int) -> bool:
        """
        Checks if the token expires within threshold seconds.

        Args:
            threshold: Safety margin in seconds

        Returns:
            True if the token is expired or expires within the margin
        """
        return datetime.now(timezone.utc) + timedelta(seconds=threshold) >= self.expires_on


@dataclass
class CachedToken:
    """Access/refresh token pair for one cache key."""
    key: CacheKey
    access_token: AccessToken
    refresh_token: Optional[str] = None


@dataclass
class ConnectionProfile:
    """
    Connection profile handed over by the database connection layer.

    The identity subsystem only fills account_id, email and azure_account_token.
    """
    server: str = ""
    database: str = ""
    user: str = ""
    authentication_type: str = "AzureMFA"
    account_id: Optional[str] = None
    email: Optional[str] = None
    azure_account_token: Optional[str] = None
