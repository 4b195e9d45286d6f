"""
Control plane - loopback HTTP API of the recorder daemon.

Every request needs `Authorization: Bearer <token>`; the token and port are
advertised in runtime.json. Routes are declared in ROUTES.
"""

import hmac
from typing import Callable, Optional

from aiohttp import web

from .errors import NotFoundError
from .logger import get_logger


API_PREFIX = "/v1"
DAEMON_HOST = "127.0.0.1"

DAEMON_KEY = web.AppKey("daemon")
TOKEN_KEY = web.AppKey("token", str)

logger = get_logger('api')


def _json_error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


@web.middleware
async def error_handling_middleware(request: web.Request, handler: Callable) -> web.Response:
    """
    Turn every failure into a JSON error.

    Unmatched routes (unknown path or method) are 404. Unexpected
    exceptions are logged with traceback and answered with a generic 500.
    """
    try:
        return await handler(request)
    except (web.HTTPNotFound, web.HTTPMethodNotAllowed):
        return _json_error("Not found", 404)
    except web.HTTPException as e:
        return _json_error(e.reason or "HTTP error", e.status)
    except Exception:
        logger.exception(f"Control plane handler failed: {request.method} {request.path}")
        return _json_error("Internal server error", 500)


@web.middleware
async def bearer_auth_middleware(request: web.Request, handler: Callable) -> web.Response:
    """Reject requests without the exact bearer token, on every route."""
    expected = f"Bearer {request.app[TOKEN_KEY]}"
    provided = request.headers.get("Authorization", "")
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning(f"Rejected unauthorized request: {request.method} {request.path}")
        return _json_error("Unauthorized", 401)
    return await handler(request)


async def status_handler(request: web.Request) -> web.Response:
    """GET /v1/status - Daemon status snapshot."""
    daemon = request.app[DAEMON_KEY]
    return web.json_response(daemon.status())


async def reload_handler(request: web.Request) -> web.Response:
    """POST /v1/reload - Re-read configuration."""
    daemon = request.app[DAEMON_KEY]
    await daemon.reload()
    return web.json_response({"ok": True})


async def recordings_handler(request: web.Request) -> web.Response:
    """GET /v1/recordings - Active recordings."""
    daemon = request.app[DAEMON_KEY]
    return web.json_response({"recordings": daemon.recordings()})


async def probe_handler(request: web.Request) -> web.Response:
    """POST /v1/probe/{target_id} - Probe now, start recording if live."""
    daemon = request.app[DAEMON_KEY]
    raw_id = request.match_info["target_id"]
    if not (raw_id.isascii() and raw_id.isdigit()) or int(raw_id) <= 0:
        return _json_error("Invalid target id", 400)

    try:
        result = await daemon.probe_target(int(raw_id))
    except NotFoundError:
        return _json_error("Target not found", 404)
    return web.json_response(result.to_dict())


async def shutdown_handler(request: web.Request) -> web.Response:
    """POST /v1/shutdown - Stop the daemon after responding."""
    daemon = request.app[DAEMON_KEY]
    daemon.request_shutdown()
    return web.json_response({"ok": True})


ROUTES = [
    ("GET", "/status", status_handler),
    ("POST", "/reload", reload_handler),
    ("GET", "/recordings", recordings_handler),
    ("POST", "/probe/{target_id}", probe_handler),
    ("POST", "/shutdown", shutdown_handler),
]


def create_app(daemon, token: str) -> web.Application:
    """Build the aiohttp application: errors -> auth -> routes."""
    app = web.Application(middlewares=[error_handling_middleware, bearer_auth_middleware])
    app[DAEMON_KEY] = daemon
    app[TOKEN_KEY] = token

    for method, path, handler in ROUTES:
        app.router.add_route(method, f"{API_PREFIX}{path}", handler)

    return app


class ControlServer:
    """
    Runs the control-plane app on the loopback interface.

    The port is chosen by the OS and available as `port` after start().
    """

    def __init__(self, daemon, token: str, host: str = DAEMON_HOST):
        self.daemon = daemon
        self.token = token
        self.host = host
        self.port: Optional[int] = None

        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        app = create_app(self.daemon, self.token)
        self._runner = web.AppRunner(app, access_log=None)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, 0)
        await site.start()

        self.port = self._runner.addresses[0][1]
        logger.info(f"Control plane listening on http://{self.host}:{self.port}{API_PREFIX}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Control plane stopped")
