"""Process manager: forks service processes and reaps them.

Services are started through a :mod:`multiprocessing` context (``spawn`` by
default, so children start from a clean interpreter even when the parent is
running an event loop).  Termination goes through :mod:`psutil` so any pid
reported by a service, including grandchildren we never forked ourselves,
can be killed.

``kill_many`` blocks while it waits for processes to exit; async callers run
it with :func:`asyncio.to_thread`.
"""

from __future__ import annotations

import atexit
import multiprocessing
import threading
import time
from multiprocessing.process import BaseProcess
from typing import Any, Callable, Iterable

import psutil
import structlog

logger = structlog.get_logger(__name__)

WAIT_SLICE_SECONDS = 0.1


def _exited(proc: psutil.Process) -> bool:
    """True once *proc* is gone or only left as a zombie nobody reaps."""
    try:
        return proc.status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


class ProcessManager:
    """Forks and kills service processes.

    A ``killall`` hook is registered with :mod:`atexit` on the first fork and
    removed again by :meth:`close`.

    Args:
        start_method: multiprocessing start method for forked services.
        kill_timeout: Seconds to wait for killed processes to disappear.
    """

    def __init__(self, start_method: str = "spawn", kill_timeout: float = 5.0) -> None:
        self._context = multiprocessing.get_context(start_method)
        self.kill_timeout = kill_timeout
        self._children: dict[int, BaseProcess] = {}
        self._lock = threading.Lock()
        self._exit_hook = False

    @property
    def pids(self) -> list[int]:
        """Pids of forked children that are still alive."""
        with self._lock:
            children = list(self._children.items())
        return [pid for pid, proc in children if proc.is_alive()]

    def fork(self, target: Callable[..., Any], *args: Any) -> BaseProcess:
        """Start ``target(*args)`` in a new process and return it.

        The child is not a daemon so it may fork services of its own.
        """
        process = self._context.Process(target=target, args=args, daemon=False)
        process.start()
        with self._lock:
            self._children[process.pid] = process
            if not self._exit_hook:
                atexit.register(self.killall)
                self._exit_hook = True
        logger.debug("process_forked", pid=process.pid, target=getattr(target, "__name__", repr(target)))
        return process

    def close(self) -> None:
        """Drop the exit hook; children still running are left alone."""
        with self._lock:
            if self._exit_hook:
                atexit.unregister(self.killall)
                self._exit_hook = False

    def kill(self, pid: int) -> bool:
        """Kill a single process. Returns False if it was already gone."""
        return pid in self.kill_many([pid])

    def kill_many(self, pids: Iterable[int]) -> set[int]:
        """Kill every pid in *pids*, ignoring ones that no longer exist.

        Blocks for up to ``kill_timeout`` seconds.  Zombies count as dead:
        a killed grandchild stays one until its own parent reaps it.

        Returns:
            The pids that were alive and have been signalled.
        """
        procs: list[psutil.Process] = []
        for pid in set(pids):
            try:
                proc = psutil.Process(pid)
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as e:
                logger.warning("process_kill_denied", pid=pid, error=str(e))
                continue
            procs.append(proc)

        survivors = self._wait_for_exit(procs)
        for proc in survivors:
            logger.warning("process_survived_kill", pid=proc.pid)

        killed = {proc.pid for proc in procs}
        self._reap(killed)
        if killed:
            logger.info("processes_killed", count=len(killed))
        return killed

    def killall(self) -> set[int]:
        """Kill every child this manager forked that is still running."""
        return self.kill_many(self.pids)

    def _wait_for_exit(self, procs: list[psutil.Process]) -> list[psutil.Process]:
        deadline = time.monotonic() + self.kill_timeout
        pending = procs
        while pending:
            remaining = deadline - time.monotonic()
            _, alive = psutil.wait_procs(pending, timeout=max(0.0, min(WAIT_SLICE_SECONDS, remaining)))
            pending = [proc for proc in alive if not _exited(proc)]
            if remaining <= WAIT_SLICE_SECONDS:
                break
        return pending

    def _reap(self, pids: set[int]) -> None:
        """Join tracked children among *pids* so they do not linger as zombies."""
        for pid in pids:
            with self._lock:
                process = self._children.pop(pid, None)
            if process is not None:
                process.join(timeout=self.kill_timeout)
