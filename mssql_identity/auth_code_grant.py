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
Authorization code flow with PKCE.

Opens the system browser on the authorize endpoint and receives the code
on the local callback listener.
"""

import secrets

from loguru import logger

from mssql_identity.azure_auth import AzureAuth, FlowState
from mssql_identity.callback_server import AuthCallbackServer
from mssql_identity.config import LOGIN_TIMEOUT
from mssql_identity.exceptions import LoginFailedError, ReauthenticationRequiredError
from mssql_identity.identity_client import TokenResponse, generate_pkce_pair
from mssql_identity.models import AuthType


class AuthCodeGrant(AzureAuth):
    """Browser based login."""

    auth_type = AuthType.AUTH_CODE_GRANT

    def __init__(self, *args, callback_server: AuthCallbackServer, login_timeout: float = LOGIN_TIMEOUT, **kwargs):
        super().__init__(*args, **kwargs)
        self.callback_server = callback_server
        self.login_timeout = login_timeout

    async def _login(self) -> TokenResponse:
        redirect_uri = await self.callback_server.start()
        state = secrets.token_urlsafe(32)
        code_verifier, code_challenge = generate_pkce_pair()

        auth_url = self.identity_client.build_authorization_url(
            redirect_uri=redirect_uri,
            state=state,
            code_challenge=code_challenge,
        )

        self.callback_server.expect_callback(state)
        try:
            self._transition(FlowState.AWAITING_USER_ACTION)
            self.user_interaction.open_url(auth_url)
            logger.info("Waiting for browser sign-in")

            code = await self.callback_server.wait_for_callback(state, self.login_timeout)
        finally:
            self.callback_server.discard_callback(state)

        self._transition(FlowState.EXCHANGING)
        try:
            return await self.identity_client.exchange_code(
                code=code,
                redirect_uri=redirect_uri,
                code_verifier=code_verifier,
            )
        except ReauthenticationRequiredError as e:
            raise LoginFailedError(f"Authorization code was rejected: {e}") from e
