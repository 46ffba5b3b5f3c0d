"""Helper for managing Dispatcher service processes."""

from __future__ import annotations

from typing import Any, Callable, Optional

from gridfleet.core.options import Options
from gridfleet.processes.base import ServiceProcesses
from gridfleet.rpc.client import DispatcherClient

LIGHT_POOL_SIZE = 1


class Dispatchers(ServiceProcesses[DispatcherClient]):
    """Spawns and tracks Dispatchers, the nodes that hand out Instances."""

    kind = "dispatcher"
    client_class = DispatcherClient

    def entrypoint(self) -> Callable[..., None]:
        from gridfleet.rpc.server.dispatcher import run

        return run

    async def spawn(
        self,
        *,
        neighbour: Optional[str] = None,
        pipe_id: Optional[str] = None,
        pool_size: Optional[int] = None,
        token: Optional[str] = None,
        socket: Optional[str] = None,
        port: Optional[int] = None,
        address: Optional[str] = None,
        customize: Optional[Callable[[Options], Any]] = None,
    ) -> DispatcherClient:
        """Spawn a Dispatcher and wait until it answers.

        Args:
            neighbour: Url of the previous grid node, if any.
            pipe_id: Pairing id for the channel to the neighbour.
            pool_size: Instances kept warm; defaults to the configured size.
            token: Authentication token; generated when omitted.
            socket: Unix socket to listen on instead of address/port.
            port: TCP port; a free one is picked when omitted.
            address: Bind address, ``localhost`` by default.
            customize: Called in the child with its Options before it serves.

        Raises:
            InstanceNeverStarted: The Dispatcher never answered.
        """
        dispatcher: dict[str, Any] = {"neighbour": neighbour, "pipe_id": pipe_id}
        if pool_size is not None:
            dispatcher["pool_size"] = pool_size

        return await self._spawn(
            token=token,
            socket=socket,
            port=port,
            address=address,
            customize=customize,
            overrides={"dispatcher": dispatcher},
        )

    async def light_spawn(self, **kwargs: Any) -> DispatcherClient:
        """Spawn a Dispatcher that keeps a single Instance warm."""
        kwargs["pool_size"] = LIGHT_POOL_SIZE
        return await self.spawn(**kwargs)
