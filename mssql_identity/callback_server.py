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
Local callback listener for the authorization code flow.

A small FastAPI app served by uvicorn on an ephemeral loopback port.
The provider redirects the browser to http://127.0.0.1:<port>/callback
with either ?code=...&state=... or ?error=...&state=....

Each login registers a single-shot waiter keyed by its CSRF state.
"""

import asyncio
import socket
from typing import Dict, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import HTMLResponse
from loguru import logger

from mssql_identity.config import CALLBACK_HOST, CALLBACK_PATH, CALLBACK_STARTUP_TIMEOUT
from mssql_identity.exceptions import (
    LoginCancelledError,
    LoginFailedError,
    LoginTimedOutError,
)

SUCCESS_PAGE = """<html><body>
<h3>Authentication complete.</h3><p>You can close this window and return to the application.</p>
</body></html>"""

ERROR_PAGE = """<html><body>
<h3>Authentication failed.</h3><p>{message}</p>
</body></html>"""


class AuthCallbackServer:
    """
    Loopback HTTP listener receiving authorization code redirects.

    start() is idempotent: the listener is bound once and reused for every
    login until stop().

    Example:
        >>> server = AuthCallbackServer()
        >>> redirect_uri = await server.start()
        >>> server.expect_callback(state)
        >>> code = await server.wait_for_callback(state, timeout=300)
    """

    def __init__(
        self,
        host: str = CALLBACK_HOST,
        path: str = CALLBACK_PATH,
        startup_timeout: float = CALLBACK_STARTUP_TIMEOUT,
    ):
        self.host = host
        self.path = path
        self.startup_timeout = startup_timeout
        self.app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
        self.app.add_api_route(path, self._handle_callback, methods=["GET"], response_class=HTMLResponse)

        self._server: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._socket: Optional[socket.socket] = None
        self._port: Optional[int] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._start_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def redirect_uri(self) -> str:
        if self._port is None:
            raise RuntimeError("Callback server is not started")
        return f"http://{self.host}:{self._port}{self.path}"

    async def start(self) -> str:
        """
        Binds the listener on an ephemeral port.

        Returns:
            Redirect URI to embed in the authorization request
        """
        async with self._start_lock:
            if self._server is not None:
                return self.redirect_uri

            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, 0))
            self._port = sock.getsockname()[1]

            config = uvicorn.Config(
                self.app,
                log_config=None,
                access_log=False,
                lifespan="off",
            )
            server = uvicorn.Server(config)
            serve_task = asyncio.create_task(server.serve(sockets=[sock]))
            try:
                await self._wait_started(server, serve_task)
            except LoginFailedError:
                sock.close()
                self._port = None
                raise

            self._serve_task = serve_task
            self._server = server
            self._socket = sock

            logger.info(f"Auth callback server listening on {self.redirect_uri}")
            return self.redirect_uri

    async def _wait_started(self, server: uvicorn.Server, serve_task: asyncio.Task) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout
        while not server.started:
            if serve_task.done():
                error = None if serve_task.cancelled() else serve_task.exception()
                logger.error(f"Auth callback server exited during startup: {error}")
                raise LoginFailedError("Auth callback server failed to start")
            if loop.time() >= deadline:
                serve_task.cancel()
                logger.error(f"Auth callback server did not start within {self.startup_timeout}s")
                raise LoginFailedError("Auth callback server failed to start")
            await asyncio.sleep(0.01)

    def expect_callback(self, state: str) -> asyncio.Future:
        """
        Registers a waiter for one redirect.

        Must be called before the browser is opened so no redirect is missed.
        """
        future = self._pending.get(state)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._pending[state] = future
        return future

    async def wait_for_callback(self, state: str, timeout: float) -> str:
        """
        Waits for the redirect carrying the given state.

        Args:
            state: CSRF state of the login
            timeout: Maximum wait in seconds

        Returns:
            Authorization code

        Raises:
            LoginTimedOutError: No redirect within the timeout
            LoginCancelledError: User denied consent
            LoginFailedError: Provider returned another error
        """
        future = self.expect_callback(state)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise LoginTimedOutError(f"No sign-in response within {timeout:.0f} seconds")
        finally:
            self._pending.pop(state, None)

    def discard_callback(self, state: str) -> None:
        """Drops the waiter of an abandoned login."""
        future = self._pending.pop(state, None)
        if future is not None and not future.done():
            future.cancel()

    async def _handle_callback(
        self,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> HTMLResponse:
        future = self._pending.get(state) if state else None
        if future is None or future.done():
            logger.warning("Auth callback with unknown or expired state")
            return HTMLResponse(ERROR_PAGE.format(message="Unknown or expired sign-in request."), status_code=400)

        if error:
            message = error_description or error
            logger.warning(f"Auth callback returned error: {error}")
            if error == "access_denied":
                future.set_exception(LoginCancelledError(f"Login cancelled: {message}"))
            else:
                future.set_exception(LoginFailedError(f"Login failed: {message}"))
            return HTMLResponse(ERROR_PAGE.format(message=message), status_code=400)

        if not code:
            future.set_exception(LoginFailedError("Callback did not contain an authorization code"))
            return HTMLResponse(ERROR_PAGE.format(message="Missing authorization code."), status_code=400)

        future.set_result(code)
        logger.info("Received authorization code from callback")
        return HTMLResponse(SUCCESS_PAGE)

    async def stop(self) -> None:
        """Shuts the listener down and fails pending waiters."""
        for future in self._pending.values():
            if not future.done():
                future.set_exception(LoginCancelledError("Callback server stopped"))
        self._pending.clear()

        if self._server is None:
            return

        self._server.should_exit = True
        if self._serve_task is not None:
            try:
                await asyncio.wait_for(self._serve_task, timeout=5)
            except asyncio.TimeoutError:
                self._serve_task.cancel()
        if self._socket is not None:
            self._socket.close()

        logger.info("Auth callback server stopped")
        self._server = None
        self._serve_task = None
        self._socket = None
        self._port = None
