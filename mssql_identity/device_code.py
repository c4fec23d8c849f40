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
Device code flow.

Shows a user code, then polls the token endpoint until the user approves
the login on another device, declines it, or the code expires.
"""

import asyncio
from typing import Optional

from loguru import logger

from mssql_identity.azure_auth import AzureAuth, FlowState
from mssql_identity.config import LOGIN_TIMEOUT
from mssql_identity.exceptions import LoginCancelledError, LoginTimedOutError
from mssql_identity.identity_client import DeviceCodeInfo, DeviceCodePending, TokenResponse
from mssql_identity.models import AuthType

# Polling interval when the provider sends none (seconds)
DEFAULT_POLL_INTERVAL = 5

# Added to the polling interval on every slow_down response (seconds)
SLOW_DOWN_INCREMENT = 5


class DeviceCode(AzureAuth):
    """Device code login for environments without a local browser."""

    auth_type = AuthType.DEVICE_CODE

    def __init__(self, *args, login_timeout: float = LOGIN_TIMEOUT, **kwargs):
        super().__init__(*args, **kwargs)
        self.login_timeout = login_timeout
        self.slow_down_increment = SLOW_DOWN_INCREMENT
        self.pending: Optional[DeviceCodeInfo] = None
        self._cancel_event = asyncio.Event()

    def cancel(self) -> None:
        """Stops a running device code login."""
        self._cancel_event.set()

    async def _login(self) -> TokenResponse:
        self._cancel_event.clear()
        info = await self.identity_client.request_device_code()
        self.pending = info
        try:
            self._transition(FlowState.AWAITING_USER_ACTION)
            self.user_interaction.show_device_code_message(info.user_code, info.verification_url)
            return await self._poll(info)
        finally:
            self.pending = None

    async def _poll(self, info: DeviceCodeInfo) -> TokenResponse:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + min(info.expires_in, self.login_timeout)
        interval = info.interval if info.interval > 0 else DEFAULT_POLL_INTERVAL

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise LoginTimedOutError("Device code expired before sign-in completed")

            try:
                await asyncio.wait_for(self._cancel_event.wait(), timeout=min(interval, remaining))
            except asyncio.TimeoutError:
                pass
            else:
                raise LoginCancelledError("Device code login cancelled")

            try:
                tokens = await self.identity_client.poll_device_code(info.device_code)
            except DeviceCodePending as pending:
                if pending.slow_down:
                    interval += self.slow_down_increment
                    logger.debug(f"Device code polling slowed down to {interval}s")
                continue

            self._transition(FlowState.EXCHANGING)
            return tokens
