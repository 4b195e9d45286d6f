"""
Control-plane client used by the CLI to talk to a running daemon.
"""

from typing import Any, List, Optional

import aiohttp

from .api import API_PREFIX, DAEMON_HOST
from .errors import DaemonRequestError
from .runtime import DaemonRuntime


REQUEST_TIMEOUT_SEC = 60


class DaemonApiClient:
    """
    Thin client for the daemon's loopback HTTP API.

    Usage:
        async with DaemonApiClient(runtime) as client:
            status = await client.status()
    """

    def __init__(self, runtime: DaemonRuntime, host: str = DAEMON_HOST, timeout_sec: int = REQUEST_TIMEOUT_SEC):
        self.runtime = runtime
        self.base_url = f"http://{host}:{runtime.port}{API_PREFIX}"
        self.timeout_sec = timeout_sec
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> 'DaemonApiClient':
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={'Authorization': f"Bearer {self.runtime.token}"},
                timeout=aiohttp.ClientTimeout(total=self.timeout_sec)
            )

    async def disconnect(self) -> None:
        """Close session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def _request(self, method: str, path: str) -> Any:
        """
        Send one request and decode the JSON body.

        Raises:
            DaemonRequestError: On any non-2xx response.
        """
        await self.connect()
        async with self._session.request(method, f"{self.base_url}{path}") as resp:
            body = await resp.text()
            if resp.status < 200 or resp.status >= 300:
                raise DaemonRequestError(resp.status, body)
            return await resp.json(content_type=None)

    async def status(self) -> dict:
        return await self._request('GET', '/status')

    async def reload(self) -> dict:
        return await self._request('POST', '/reload')

    async def recordings(self) -> List[dict]:
        data = await self._request('GET', '/recordings')
        return data.get('recordings', [])

    async def probe(self, target_id: int) -> dict:
        return await self._request('POST', f'/probe/{target_id}')

    async def shutdown(self) -> dict:
        return await self._request('POST', '/shutdown')
