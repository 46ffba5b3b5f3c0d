"""HTTP clients for Instance and Dispatcher services.

Services expose their tools over ``POST /tools/call``; every call carries the
service's authentication token.  A client holds no open connections between
calls, so one cached client can be shared by any number of event loops.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from gridfleet.core.errors import RemoteCallError

logger = structlog.get_logger(__name__)


def is_socket_url(url: str) -> bool:
    """True if *url* is a unix socket path rather than ``host:port``."""
    return url.startswith("/") or ":" not in url


class ToolClient:
    """Base client for a gridfleet service.

    Args:
        url: ``host:port`` or unix socket path of the service.
        token: Authentication token, ``None`` to call without credentials.
        timeout: Seconds before a single call gives up.
    """

    def __init__(self, url: str, token: Optional[str] = None, timeout: float = 10.0) -> None:
        self.url = url
        self.token = token
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"{type(self).__name__}(url={self.url!r})"

    def _http_client(self) -> httpx.AsyncClient:
        if is_socket_url(self.url):
            return httpx.AsyncClient(
                transport=httpx.AsyncHTTPTransport(uds=self.url),
                base_url="http://localhost",
                timeout=self.timeout,
            )
        return httpx.AsyncClient(base_url=f"http://{self.url}", timeout=self.timeout)

    async def call(self, name: str, **arguments: Any) -> Any:
        """Invoke tool *name* on the service and return its result.

        Raises:
            RemoteCallError: The service answered with an error status.
            httpx.HTTPError: The service could not be reached.
        """
        payload = {"name": name, "arguments": {**arguments, "auth_token": self.token}}
        async with self._http_client() as client:
            response = await client.post("/tools/call", json=payload)

        if response.status_code >= 400:
            detail = response.text
            try:
                detail = response.json().get("error", response.text)
            except ValueError:
                pass
            raise RemoteCallError(self.url, response.status_code, detail)
        return response.json().get("result")

    # ── Tools every service provides ──────────────────────────────

    async def alive(self) -> bool:
        return bool(await self.call("alive"))

    async def consumed_pids(self) -> list[int]:
        """Pids of the service process and everything it has started."""
        return [int(pid) for pid in await self.call("consumed_pids")]

    async def shutdown(self) -> bool:
        return bool(await self.call("shutdown"))


class InstanceClient(ToolClient):
    """Client for an Instance service."""

    async def set_as_master(self) -> bool:
        """Make this Instance the master of its grid."""
        return bool(await self.call("set_as_master"))

    async def is_master(self) -> bool:
        return bool(await self.call("is_master"))

    async def options(self) -> dict[str, Any]:
        return await self.call("options")

    async def set_options(self, options: dict[str, Any]) -> dict[str, Any]:
        """Deep-merge *options* into the Instance's options; returns the result."""
        return await self.call("set_options", options=options)

    async def status(self) -> dict[str, Any]:
        return await self.call("status")


class DispatcherClient(ToolClient):
    """Client for a Dispatcher service."""

    async def dispatch(self) -> dict[str, str]:
        """Ask the Dispatcher for an Instance; returns ``{"url", "token"}``."""
        info = await self.call("dispatch")
        logger.debug("instance_dispatched", dispatcher=self.url, instance=info.get("url"))
        return info

    async def neighbours(self) -> list[str]:
        return list(await self.call("neighbours"))

    async def stats(self) -> dict[str, Any]:
        return await self.call("stats")
