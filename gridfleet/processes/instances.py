"""Helper for managing Instance service processes.

Besides spawning standalone Instances this builds Dispatcher grids: a chain
of Dispatchers, each pointing at the previous one, whose last node hands out
an Instance that becomes the grid's master and runs in aggregate mode.

Usage::

    instances = Instances()
    master = await instances.grid_spawn(grid_size=3)
    ...
    await instances.killall()
    await instances.dispatchers.killall()
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

import structlog

from gridfleet.core.options import GridMode, Options
from gridfleet.processes.base import ServiceProcesses
from gridfleet.processes.dispatchers import Dispatchers
from gridfleet.processes.manager import ProcessManager
from gridfleet.processes.utilities import available_port
from gridfleet.rpc.client import DispatcherClient, InstanceClient

logger = structlog.get_logger(__name__)


class Instances(ServiceProcesses[InstanceClient]):
    """Spawns, connects to, and kills Instances.

    Args:
        manager: Shared process manager.
        options: Default options for spawned Instances and Dispatchers.
        dispatchers: Dispatcher helper used for grids; one sharing this
            helper's manager and options is created on first use.
        **kwargs: ``readiness_timeout`` / ``poll_interval`` overrides.
    """

    kind = "instance"
    client_class = InstanceClient

    def __init__(
        self,
        manager: Optional[ProcessManager] = None,
        options: Optional[Options] = None,
        dispatchers: Optional[Dispatchers] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(manager, options, **kwargs)
        self._dispatchers = dispatchers
        self._timing = kwargs

    def entrypoint(self) -> Callable[..., None]:
        from gridfleet.rpc.server.instance import run

        return run

    @property
    def dispatchers(self) -> Dispatchers:
        if self._dispatchers is None:
            self._dispatchers = Dispatchers(self.manager, self.options, **self._timing)
        return self._dispatchers

    async def spawn(
        self,
        *,
        token: Optional[str] = None,
        socket: Optional[str] = None,
        port: Optional[int] = None,
        address: Optional[str] = None,
        spawns: Optional[int] = None,
        customize: Optional[Callable[[Options], Any]] = None,
    ) -> InstanceClient:
        """Spawn an Instance and wait until it answers.

        Args:
            token: Authentication token; generated when omitted.
            socket: Unix socket to listen on instead of address/port.
            port: TCP port; a free one is picked when omitted.
            address: Bind address, ``localhost`` by default.
            spawns: Helper Instances the new Instance starts for itself.
            customize: Called in the child with its Options before it
                serves.  Must be picklable (a module-level function).

        Returns:
            Cached client for the new Instance.

        Raises:
            InstanceNeverStarted: The Instance did not answer within
                ``readiness_timeout`` seconds.  Its process is killed.
        """
        overrides = {"spawns": spawns} if spawns is not None else {}
        return await self._spawn(
            token=token,
            socket=socket,
            port=port,
            address=address,
            customize=customize,
            overrides=overrides,
        )

    # ── Grids ─────────────────────────────────────────────────────

    async def grid_spawn(self, grid_size: Optional[int] = None) -> InstanceClient:
        """Start a Dispatcher grid and return its master Instance.

        Args:
            grid_size: Amount of Dispatchers to chain (configured default: 3).
        """
        return await self._grid_spawn(self.dispatchers.spawn, grid_size)

    async def light_grid_spawn(self, grid_size: Optional[int] = None) -> InstanceClient:
        """Like :meth:`grid_spawn` but with single-Instance Dispatcher pools."""
        return await self._grid_spawn(self.dispatchers.light_spawn, grid_size)

    async def dispatcher_spawn(self) -> InstanceClient:
        """Start one light Dispatcher and return an Instance it dispatched."""
        dispatcher = await self.dispatchers.light_spawn()
        info = await dispatcher.dispatch()
        return self.connect(info["url"], info["token"])

    async def _grid_spawn(
        self,
        spawn: Callable[..., Awaitable[DispatcherClient]],
        grid_size: Optional[int],
    ) -> InstanceClient:
        grid_size = grid_size or self.options.dispatcher.grid_size
        if grid_size < 1:
            raise ValueError(f"grid_size must be positive, got {grid_size}")

        last_member: Optional[DispatcherClient] = None
        for _ in range(grid_size):
            last_member = await spawn(
                neighbour=last_member.url if last_member else None,
                pipe_id=str(available_port()) + str(available_port()),
            )

        info = await last_member.dispatch()

        instance = self.connect(info["url"], info["token"])
        await instance.set_as_master()
        await instance.set_options({"dispatcher": {"grid_mode": GridMode.AGGREGATE.value}})
        logger.info(
            "grid_spawned",
            grid_size=grid_size,
            master=instance.url,
            last_dispatcher=last_member.url,
        )
        return instance
