"""Loopback redirect listener for the OAuth 2.1 authorization code flow.

Serves a single Starlette route on 127.0.0.1 through uvicorn and resolves a
one-shot future with the authorization code, or with the reason the redirect
was rejected.
"""

from __future__ import annotations

import asyncio
import html
import logging
import socket
from enum import Enum

import uvicorn
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import HTMLResponse
from starlette.routing import Route

from mcp_login.auth.client.config import DEFAULT_CALLBACK_PATH, DEFAULT_FLOW_TIMEOUT
from mcp_login.auth.client.models.errors import (
    AuthorizationDeniedError,
    CallbackError,
    CallbackTimeoutError,
    MissingAuthorizationCodeError,
    StateMismatchError,
)
from mcp_login.auth.client.models.flow import AuthorizationResponse
from mcp_login.auth.client.primitives.pkce import validate_state

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"

# Upper bound on waiting for uvicorn to finish after exit is requested
_SHUTDOWN_GRACE = 5.0

_PAGE_STYLE = """
    body { font-family: -apple-system, 'Segoe UI', Roboto, sans-serif;
           display: flex; justify-content: center; align-items: center;
           height: 100vh; margin: 0; background: #f7fafc; }
    .container { text-align: center; background: white; padding: 40px 60px;
                 border-radius: 16px; box-shadow: 0 10px 40px rgba(0,0,0,0.1); }
    h1 { color: #1a202c; margin: 0 0 10px 0; }
    p { color: #718096; margin: 0; }
    code { background: #f7fafc; padding: 2px 8px; border-radius: 4px; color: #e53e3e; }
"""


class ListenerState(Enum):
    STARTING = "starting"
    LISTENING = "listening"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class CallbackListener:
    """Captures the authorization server's redirect on a loopback port.

    The first terminal request to the callback path settles the outcome;
    later requests still get a page but change nothing. A timer settles the
    outcome with ``CallbackTimeoutError`` and shuts the listener down when no
    redirect arrives in time.

    Usage:
        async with CallbackListener(state) as listener:
            redirect_uri = listener.redirect_uri
            ...
            code = await listener.wait_for_code()
    """

    def __init__(
        self,
        expected_state: str,
        port: int = 0,
        callback_path: str = DEFAULT_CALLBACK_PATH,
        timeout: float = DEFAULT_FLOW_TIMEOUT,
    ):
        """Initialize the listener.

        Args:
            expected_state: State parameter sent in the authorization request
            port: Port to bind; 0 lets the OS pick one
            callback_path: Path the authorization server redirects to
            timeout: Seconds to wait for the redirect
        """
        self.expected_state = expected_state
        self.callback_path = callback_path
        self.timeout = timeout
        self.state = ListenerState.STARTING

        self._requested_port = port
        self._port: int | None = None
        self._socket: socket.socket | None = None
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self._stop_task: asyncio.Task[None] | None = None
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._outcome: asyncio.Future[str] | None = None

        self._app = Starlette(
            routes=[Route(callback_path, self._handle_callback, methods=["GET"])]
        )
        # Only the exact callback path is served; no trailing-slash redirect
        self._app.router.redirect_slashes = False

    @property
    def port(self) -> int:
        if self._port is None:
            raise RuntimeError("Callback listener has not been started")
        return self._port

    @property
    def redirect_uri(self) -> str:
        return f"http://{LOOPBACK_HOST}:{self.port}{self.callback_path}"

    async def start(self) -> int:
        """Bind the loopback socket and start serving.

        Returns:
            The port actually bound
        """
        if self._server is not None:
            raise RuntimeError("Callback listener already started")

        loop = asyncio.get_running_loop()
        self._outcome = loop.create_future()

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((LOOPBACK_HOST, self._requested_port))
        except OSError:
            sock.close()
            raise
        self._socket = sock
        self._port = sock.getsockname()[1]

        config = uvicorn.Config(
            app=self._app,
            log_config=None,
            access_log=False,
            lifespan="off",
            http="h11",
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[sock]))

        while not self._server.started:
            if self._serve_task.done():
                self._close_socket()
                # Surfaces the startup exception, if any
                self._serve_task.result()
                raise RuntimeError("Callback listener exited during startup")
            await asyncio.sleep(0.01)

        self.state = ListenerState.LISTENING
        self._timeout_handle = loop.call_later(self.timeout, self._on_timeout)

        logger.debug(f"Callback listener started on {self.redirect_uri}")
        return self._port

    async def wait_for_code(self) -> str:
        """Wait for the redirect and return the authorization code.

        Raises:
            AuthorizationDeniedError: If the server redirected with an error
            StateMismatchError: If the state parameter did not match
            MissingAuthorizationCodeError: If the redirect carried no code
            CallbackTimeoutError: If no redirect arrived in time
        """
        if self._outcome is None:
            raise RuntimeError("Callback listener has not been started")

        try:
            return await asyncio.shield(self._outcome)
        except CallbackTimeoutError:
            # Port is released before the caller sees the timeout
            await self.stop()
            raise

    async def stop(self) -> None:
        """Shut the listener down. Safe to call more than once."""
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._shutdown())
        await asyncio.shield(self._stop_task)

    async def __aenter__(self) -> CallbackListener:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def _handle_callback(self, request: Request) -> HTMLResponse:
        response = AuthorizationResponse.from_query(request.query_params)

        try:
            code = self._evaluate(response)
        except CallbackError as e:
            error_code, description = self._describe_failure(e)
            return HTMLResponse(
                _error_page(error_code, description),
                status_code=400,
                background=BackgroundTask(self._settle, error=e),
            )

        return HTMLResponse(
            _success_page(),
            status_code=200,
            background=BackgroundTask(self._settle, code=code),
        )

    def _evaluate(self, response: AuthorizationResponse) -> str:
        if response.denied:
            raise AuthorizationDeniedError(response.error, response.error_description)

        validate_state(self.expected_state, response.state)

        if not response.code:
            raise MissingAuthorizationCodeError("No authorization code in callback")

        return response.code

    def _describe_failure(self, error: CallbackError) -> tuple[str, str | None]:
        if isinstance(error, AuthorizationDeniedError):
            return error.error, error.description
        if isinstance(error, StateMismatchError):
            return "invalid_state", "State parameter mismatch"
        return "missing_code", "No authorization code received"

    async def _settle(
        self, code: str | None = None, error: CallbackError | None = None
    ) -> None:
        """Resolve the outcome once; later calls are ignored."""
        if self._outcome is None or self._outcome.done():
            return

        self._cancel_timeout()

        if error is not None:
            logger.warning(f"Authorization callback rejected: {error}")
            self.state = ListenerState.FAILED
            self._outcome.set_exception(error)
        else:
            logger.debug("Received authorization code")
            self.state = ListenerState.COMPLETED
            self._outcome.set_result(code)

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        if self._outcome is None or self._outcome.done():
            return

        logger.warning(f"No authorization callback received within {self.timeout}s")
        self.state = ListenerState.TIMED_OUT
        self._outcome.set_exception(
            CallbackTimeoutError(f"OAuth flow timed out after {self.timeout}s")
        )
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._shutdown())

    def _cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    async def _shutdown(self) -> None:
        self._cancel_timeout()

        if self._outcome is not None:
            if not self._outcome.done():
                self.state = ListenerState.FAILED
                self._outcome.set_exception(
                    CallbackError("Callback listener stopped before a redirect arrived")
                )
            # Nobody may be awaiting it; mark any exception as retrieved
            self._outcome.exception()

        if self._server is not None:
            self._server.should_exit = True
            self._server.force_exit = True
            # Keep-alive connections would otherwise hold the shutdown open
            for connection in list(self._server.server_state.connections):
                transport = getattr(connection, "transport", None)
                if transport is not None:
                    transport.close()

        if self._serve_task is not None:
            try:
                await asyncio.wait_for(
                    asyncio.shield(self._serve_task), timeout=_SHUTDOWN_GRACE
                )
            except asyncio.TimeoutError:
                logger.warning("Callback listener did not stop in time; cancelling")
                self._serve_task.cancel()
                try:
                    await self._serve_task
                except asyncio.CancelledError:
                    pass

        self._close_socket()
        logger.debug("Callback listener stopped")

    def _close_socket(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None


def _success_page() -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
  <title>Authentication Successful</title>
  <style>{_PAGE_STYLE}</style>
</head>
<body>
  <div class="container">
    <h1>Authentication Successful</h1>
    <p>You can close this window and return to the terminal.</p>
  </div>
</body>
</html>"""


def _error_page(error: str, description: str | None = None) -> str:
    detail = f"<p>{html.escape(description)}</p>" if description else ""
    return f"""<!DOCTYPE html>
<html>
<head>
  <title>Authentication Failed</title>
  <style>{_PAGE_STYLE}</style>
</head>
<body>
  <div class="container">
    <h1>Authentication Failed</h1>
    <p>Error: <code>{html.escape(error)}</code></p>
    {detail}
  </div>
</body>
</html>"""
