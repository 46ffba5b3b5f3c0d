"""Dispatcher service: hands out Instances from a warm pool.

Each Dispatcher keeps up to ``dispatcher.pool_size`` Instances running.
``dispatch`` returns one of them (or spawns one on the spot when the pool is
empty) and the pool is refilled in the background.  A Dispatcher that is
part of a grid knows the url of the previous node as its neighbour.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import structlog

from gridfleet.core.errors import InstanceNeverStarted
from gridfleet.core.log import configure_logging
from gridfleet.core.options import Options
from gridfleet.processes.instances import Instances
from gridfleet.rpc.server.base import ToolService

logger = structlog.get_logger(__name__)


class DispatcherService(ToolService):
    name = "dispatcher"

    def __init__(self, options: Options, token: Optional[str],
                 instances: Optional[Instances] = None) -> None:
        super().__init__(options, token)
        self.instances = instances or Instances(options=self._instance_options())
        self._pool: list[dict[str, str]] = []
        self._dispatched: list[str] = []
        self._refill_task: Optional[asyncio.Task] = None

        self.tool(self.dispatch)
        self.tool(self.neighbours)
        self.tool(self.stats)

    def _instance_options(self) -> Options:
        return self.options.merge({"spawns": 0, "dispatcher": {"url": self.url}})

    async def dispatch(self) -> dict[str, str]:
        """Return ``{"url", "token"}`` of an Instance reserved for the caller."""
        if self._pool:
            info = self._pool.pop(0)
        else:
            info = await self._spawn_instance()
        self._dispatched.append(info["url"])
        logger.info("instance_dispatched", dispatcher=self.url, instance=info["url"])
        self._schedule_refill()
        return info

    async def neighbours(self) -> list[str]:
        neighbour = self.options.dispatcher.neighbour
        return [neighbour] if neighbour else []

    async def stats(self) -> dict[str, Any]:
        dispatcher = self.options.dispatcher
        return {
            "url": self.url,
            "neighbour": dispatcher.neighbour,
            "pipe_id": dispatcher.pipe_id,
            "pool_size": dispatcher.pool_size,
            "pooled": len(self._pool),
            "dispatched": list(self._dispatched),
        }

    # ── Pool ──────────────────────────────────────────────────────

    async def _spawn_instance(self) -> dict[str, str]:
        client = await self.instances.spawn(address=self.options.rpc.server_address)
        return {"url": client.url, "token": self.instances.token_for(client)}

    def _schedule_refill(self) -> None:
        if self._refill_task is None or self._refill_task.done():
            self._refill_task = asyncio.create_task(self._refill_pool())

    async def _refill_pool(self) -> None:
        while len(self._pool) < self.options.dispatcher.pool_size:
            try:
                self._pool.append(await self._spawn_instance())
            except InstanceNeverStarted as e:
                logger.error("pool_refill_failed", dispatcher=self.url, instance=e.url)
                return
            except Exception as e:
                logger.error("pool_refill_failed", dispatcher=self.url, error=str(e))
                return

    async def on_startup(self) -> None:
        self._schedule_refill()

    async def on_shutdown(self) -> None:
        if self._refill_task is not None and not self._refill_task.done():
            self._refill_task.cancel()
        await self.instances.killall()
        self._pool.clear()


def run(options_data: dict[str, Any], token: Optional[str],
        customize: Optional[Callable[[Options], Any]] = None) -> None:
    """Child-process entry point used by :class:`Dispatchers`."""
    options = Options.model_validate(options_data)
    if customize is not None:
        customize(options)
    configure_logging(options.log_level, options.log_format)
    DispatcherService(options, token).run()
