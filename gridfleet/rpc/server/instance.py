"""Instance service, the worker process forked by :class:`Instances`."""

from __future__ import annotations

import asyncio
import os
from typing import Any, Callable, Optional

import structlog

from gridfleet.core.errors import InstanceNeverStarted
from gridfleet.core.log import configure_logging
from gridfleet.core.options import Options
from gridfleet.rpc.server.base import ToolService

logger = structlog.get_logger(__name__)


class InstanceService(ToolService):
    """Remote Instance: reports its processes, accepts master role and options."""

    name = "instance"

    def __init__(self, options: Options, token: Optional[str]) -> None:
        super().__init__(options, token)
        self.master = False
        self.helpers = None
        self._helpers_task: Optional[asyncio.Task] = None

        self.tool(self.set_as_master)
        self.tool(self.is_master)
        self.tool(self.get_options, name="options")
        self.tool(self.set_options)
        self.tool(self.status)

    async def set_as_master(self) -> bool:
        self.master = True
        logger.info("instance_promoted_to_master", url=self.url)
        return True

    async def is_master(self) -> bool:
        return self.master

    async def get_options(self) -> dict[str, Any]:
        return self.options.model_dump(mode="json")

    async def set_options(self, options: dict[str, Any]) -> dict[str, Any]:
        """Deep-merge *options* into the current ones."""
        self.options = self.options.merge(options)
        logger.info("instance_options_updated", url=self.url, keys=sorted(options))
        return await self.get_options()

    async def status(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "pid": os.getpid(),
            "master": self.master,
            "grid_mode": self.options.dispatcher.grid_mode.value,
            "dispatcher": self.options.dispatcher.url,
            "helpers": list(self.helpers.list()) if self.helpers else [],
        }

    # ── Helper Instances ──────────────────────────────────────────

    async def on_startup(self) -> None:
        if self.options.spawns > 0:
            self._helpers_task = asyncio.create_task(self._spawn_helpers(self.options.spawns))

    async def _spawn_helpers(self, count: int) -> None:
        from gridfleet.processes.instances import Instances

        self.helpers = Instances(options=self.options.merge({"spawns": 0}))
        address = self.options.rpc.server_address
        for _ in range(count):
            try:
                await self.helpers.spawn(address=address)
            except InstanceNeverStarted as e:
                logger.error("helper_never_started", url=e.url, owner=self.url)
                return

    async def on_shutdown(self) -> None:
        if self._helpers_task is not None and not self._helpers_task.done():
            self._helpers_task.cancel()
        if self.helpers is not None:
            await self.helpers.killall()


def run(options_data: dict[str, Any], token: Optional[str],
        customize: Optional[Callable[[Options], Any]] = None) -> None:
    """Child-process entry point used by :class:`Instances`."""
    options = Options.model_validate(options_data)
    if customize is not None:
        customize(options)
    configure_logging(options.log_level, options.log_format)
    InstanceService(options, token).run()
