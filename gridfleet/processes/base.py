"""Shared spawn / connect / teardown logic for service processes.

:class:`ServiceProcesses` owns a :class:`ConnectionRegistry` and a
:class:`ProcessManager`.  Concrete helpers (:class:`Instances`,
:class:`Dispatchers`) only say which service to fork and which client to
talk to it with.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Generic, Mapping, Optional, TypeVar

import structlog

from gridfleet.core.errors import InstanceNeverStarted, TeardownError, TeardownReport
from gridfleet.core.options import Options, load_options
from gridfleet.processes.manager import ProcessManager
from gridfleet.processes.registry import ConnectionRegistry
from gridfleet.processes.utilities import available_port, generate_token
from gridfleet.rpc.client import ToolClient

logger = structlog.get_logger(__name__)

ClientT = TypeVar("ClientT", bound=ToolClient)

READINESS_TIMEOUT_SECONDS = 10.0
POLL_INTERVAL_SECONDS = 0.1


class ServiceProcesses(ABC, Generic[ClientT]):
    """Spawns, tracks and kills one kind of service process.

    Args:
        manager: Forks and kills processes; a private one is created if omitted.
        options: Default options merged under every spawn request.
        readiness_timeout: Seconds to wait for a spawned service to answer.
        poll_interval: Seconds between readiness polls.
    """

    kind = "service"
    client_class: type[ToolClient] = ToolClient

    def __init__(
        self,
        manager: Optional[ProcessManager] = None,
        options: Optional[Options] = None,
        *,
        readiness_timeout: float = READINESS_TIMEOUT_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ) -> None:
        self.manager = manager or ProcessManager()
        self.options = options or load_options()
        self.readiness_timeout = readiness_timeout
        self.poll_interval = poll_interval
        self.registry: ConnectionRegistry[ClientT] = ConnectionRegistry(self._new_client)

    @abstractmethod
    def entrypoint(self) -> Callable[..., None]:
        """Module-level function run in the child as ``fn(options, token, customize)``."""
        ...

    def _new_client(self, url: str, token: Optional[str]) -> ClientT:
        return self.client_class(url, token, timeout=self.options.rpc.client_timeout)

    # ── Registry passthrough ──────────────────────────────────────

    def connect(self, url: str, token: Optional[str] = None) -> ClientT:
        """Cached client for *url*; *token* is only needed the first time."""
        return self.registry.connect(url, token)

    def each(self, visitor: Callable[[ClientT], Any]) -> None:
        self.registry.each(visitor)

    def token_for(self, client_or_url: Any) -> Optional[str]:
        return self.registry.token_for(client_or_url)

    def list(self) -> Mapping[str, Optional[str]]:
        """Read-only url → token mapping of every known service."""
        return self.registry.list()

    # ── Spawning ──────────────────────────────────────────────────

    def spawn_options(
        self,
        *,
        socket: Optional[str] = None,
        port: Optional[int] = None,
        address: Optional[str] = None,
        overrides: Optional[dict[str, Any]] = None,
    ) -> Options:
        """Merge a spawn request over the default options.

        A socket path wins over address/port, which are then dropped.
        Otherwise a free port is allocated when none is given and the
        address defaults to ``localhost``.
        """
        if socket:
            rpc = {"server_socket": socket, "server_address": None, "server_port": None}
        else:
            rpc = {
                "server_socket": None,
                "server_port": port or available_port(),
                "server_address": address or "localhost",
            }
        return self.options.merge(overrides).merge({"rpc": rpc})

    async def _spawn(
        self,
        *,
        token: Optional[str] = None,
        socket: Optional[str] = None,
        port: Optional[int] = None,
        address: Optional[str] = None,
        customize: Optional[Callable[[Options], Any]] = None,
        overrides: Optional[dict[str, Any]] = None,
    ) -> ClientT:
        token = token or generate_token()
        options = self.spawn_options(socket=socket, port=port, address=address, overrides=overrides)
        url = options.url

        process = self.manager.fork(
            self.entrypoint(), options.model_dump(mode="json"), token, customize
        )
        logger.info("service_spawning", kind=self.kind, url=url, pid=process.pid)

        if not await self.wait_until_ready(url, token):
            logger.error(
                "service_never_started",
                kind=self.kind,
                url=url,
                pid=process.pid,
                timeout=self.readiness_timeout,
            )
            await asyncio.to_thread(self.manager.kill_many, [process.pid])
            raise InstanceNeverStarted(url, self.readiness_timeout)

        self.registry.register(url, token)
        logger.info("service_ready", kind=self.kind, url=url, pid=process.pid)
        return self.connect(url)

    async def wait_until_ready(self, url: str, token: Optional[str]) -> bool:
        """Poll ``alive`` on *url* until it answers or the deadline passes.

        Every failed poll, including refused connections, means "not ready
        yet".  Returns False on timeout.
        """
        client = self._new_client(url, token)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.readiness_timeout
        attempt = 0

        while True:
            await asyncio.sleep(self.poll_interval)
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False

            attempt += 1
            try:
                if await asyncio.wait_for(client.alive(), timeout=remaining):
                    return True
            except Exception as e:
                logger.debug("readiness_poll_failed", url=url, attempt=attempt, error=str(e))

    # ── Teardown ──────────────────────────────────────────────────

    async def kill(self, url: str) -> set[int]:
        """Kill the service at *url* and everything it started.

        Returns:
            The pids that were signalled.
        """
        pids = await self.connect(url).consumed_pids()
        killed = await asyncio.to_thread(self.manager.kill_many, pids)
        self.registry.remove(url)
        logger.info("service_killed", kind=self.kind, url=url, pids=sorted(pids))
        return killed

    async def killall(self) -> TeardownReport:
        """Best-effort teardown of every known service.

        Pids are collected from every service first, since a service that has
        shut down can no longer report them.  Then every service is asked to
        shut down, the registry is cleared and the collected pids are killed.
        Per-service failures are recorded in the report, never raised.
        """
        report = TeardownReport()

        for client in self.registry.clients():
            try:
                report.pids.update(await client.consumed_pids())
            except Exception as e:
                report.errors.append(TeardownError(client.url, "consumed_pids", e))

        for client in self.registry.clients():
            try:
                await client.shutdown()
                report.shut_down.append(client.url)
            except Exception as e:
                report.errors.append(TeardownError(client.url, "shutdown", e))

        self.registry.clear()
        await asyncio.to_thread(self.manager.kill_many, report.pids)

        for error in report.errors:
            logger.warning("teardown_call_failed", kind=self.kind, **error.to_dict())
        logger.info(
            "services_killed",
            kind=self.kind,
            shut_down=len(report.shut_down),
            pids=len(report.pids),
            errors=len(report.errors),
        )
        return report
