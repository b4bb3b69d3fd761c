"""
HTTP client for a running acd daemon.

Used by the `tui` command and anything else that talks to the daemon from
outside its process. Every request carries the access token header.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from acd.errors import DaemonError, DaemonNotRunningError
from acd.sessions.models import SessionSnapshot

logger = logging.getLogger(__name__)

ACCESS_TOKEN_HEADER = "X-Access-Token"
DEFAULT_TIMEOUT = 5.0


class DaemonClient:
    """
    Thin async wrapper over the daemon's /api routes.

    Args:
        base_url: e.g. http://127.0.0.1:3000
        access_token: Sent as X-Access-Token when set
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests pass an ASGI transport)
    """

    def __init__(
        self,
        base_url: str,
        access_token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {}
        if self.access_token:
            headers[ACCESS_TOKEN_HEADER] = self.access_token
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.ConnectError as e:
            raise DaemonNotRunningError(f"Cannot reach daemon at {self.base_url}: {e}") from e
        except httpx.HTTPError as e:
            raise DaemonError(f"Request to daemon failed: {e}") from e

        if response.status_code >= 400:
            try:
                message = response.json().get("error") or response.text
            except ValueError:
                message = response.text
            raise DaemonError(f"Daemon returned {response.status_code}: {message}")
        return response.json()

    async def is_running(self) -> bool:
        """Check if the daemon answers its health endpoint."""
        try:
            async with self._client() as client:
                response = await client.get("/health", timeout=min(self.timeout, 2.0))
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def get_state(self) -> Dict[str, Any]:
        return await self._request("GET", "/api/state")

    async def list_sessions(self) -> List[SessionSnapshot]:
        data = await self._request("GET", "/api/sessions")
        return [SessionSnapshot.model_validate(item) for item in data]

    async def create_session(
        self,
        path: str,
        agent_id: str,
        options: Optional[Dict[str, Any]] = None,
        session_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {
            "path": path,
            "agentId": agent_id,
            "options": options or {},
            "sessionName": session_name,
        }
        return await self._request("POST", "/api/session/create-with-agent", json=payload)

    async def stop_session(self, session_id: str) -> Dict[str, Any]:
        return await self._request("POST", "/api/session/stop", json={"id": session_id})
