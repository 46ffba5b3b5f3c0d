"""Tests for killing services."""

import asyncio
import threading
import time
from unittest.mock import MagicMock

import httpx
import pytest

from gridfleet.core.errors import RemoteCallError
from gridfleet.core.options import Options
from gridfleet.processes.instances import Instances
from gridfleet.processes.manager import ProcessManager
from gridfleet.processes.registry import ConnectionRegistry


class FakeService:
    """Client double recording the order of teardown calls."""

    def __init__(self, url: str, token: str | None, journal: list, pids=None, fail=None) -> None:
        self.url = url
        self.token = token
        self.journal = journal
        self.pids = pids or []
        self.fail = fail or set()

    async def consumed_pids(self) -> list[int]:
        self.journal.append(("consumed_pids", self.url))
        if "consumed_pids" in self.fail:
            raise httpx.ConnectError("refused")
        return self.pids

    async def shutdown(self) -> bool:
        self.journal.append(("shutdown", self.url))
        if "shutdown" in self.fail:
            raise RemoteCallError(self.url, 500, "boom")
        return True


@pytest.fixture
def journal() -> list:
    return []


@pytest.fixture
def manager() -> MagicMock:
    manager = MagicMock(spec=ProcessManager)
    manager.kill_many.side_effect = lambda pids: set(pids)
    return manager


def build_instances(manager: MagicMock, journal: list, services: dict) -> Instances:
    """Instances whose registry hands out FakeService objects configured by *services*."""
    instances = Instances(manager=manager, options=Options())
    instances.registry = ConnectionRegistry(
        lambda url, token: FakeService(url, token, journal, **services.get(url, {}))
    )
    for url in services:
        instances.registry.register(url, f"token-{url}")
    return instances


class TestKill:
    @pytest.mark.asyncio
    async def test_kill_terminates_consumed_pids(self, manager: MagicMock, journal: list) -> None:
        instances = build_instances(
            manager, journal, {"localhost:7001": {"pids": [10, 11]}, "localhost:7002": {}}
        )

        killed = await instances.kill("localhost:7001")

        assert killed == {10, 11}
        manager.kill_many.assert_called_once_with([10, 11])
        assert list(instances.list()) == ["localhost:7002"]

    @pytest.mark.asyncio
    async def test_kill_propagates_unreachable_service(
        self, manager: MagicMock, journal: list
    ) -> None:
        instances = build_instances(
            manager, journal, {"localhost:7001": {"fail": {"consumed_pids"}}}
        )

        with pytest.raises(httpx.ConnectError):
            await instances.kill("localhost:7001")

        manager.kill_many.assert_not_called()
        assert "localhost:7001" in instances.list()


class TestKillall:
    @pytest.mark.asyncio
    async def test_best_effort_over_failing_services(
        self, manager: MagicMock, journal: list
    ) -> None:
        instances = build_instances(
            manager,
            journal,
            {
                "localhost:7001": {"pids": [1, 2]},
                "localhost:7002": {"pids": [2, 3], "fail": {"shutdown"}},
                "localhost:7003": {"fail": {"consumed_pids"}},
            },
        )

        report = await instances.killall()

        assert report.pids == {1, 2, 3}
        assert report.shut_down == ["localhost:7001", "localhost:7003"]
        assert [(e.url, e.stage) for e in report.errors] == [
            ("localhost:7003", "consumed_pids"),
            ("localhost:7002", "shutdown"),
        ]
        assert not report.ok
        assert set(manager.kill_many.call_args.args[0]) == {1, 2, 3}
        assert len(instances.list()) == 0

    @pytest.mark.asyncio
    async def test_every_service_is_asked_to_shut_down(
        self, manager: MagicMock, journal: list
    ) -> None:
        instances = build_instances(
            manager,
            journal,
            {"a:1": {"fail": {"shutdown"}}, "b:2": {"fail": {"shutdown"}}, "c:3": {}},
        )

        await instances.killall()

        shutdowns = [url for call, url in journal if call == "shutdown"]
        assert shutdowns == ["a:1", "b:2", "c:3"]

    @pytest.mark.asyncio
    async def test_pids_collected_before_any_shutdown(
        self, manager: MagicMock, journal: list
    ) -> None:
        instances = build_instances(manager, journal, {"a:1": {"pids": [1]}, "b:2": {"pids": [2]}})

        await instances.killall()

        stages = [call for call, _ in journal]
        assert stages == ["consumed_pids", "consumed_pids", "shutdown", "shutdown"]

    @pytest.mark.asyncio
    async def test_empty_registry(self, manager: MagicMock, journal: list) -> None:
        instances = build_instances(manager, journal, {})

        report = await instances.killall()

        assert report.ok
        assert report.pids == set()
        assert report.shut_down == []
        manager.kill_many.assert_called_once_with(set())

    @pytest.mark.asyncio
    async def test_error_details_are_serialisable(
        self, manager: MagicMock, journal: list
    ) -> None:
        instances = build_instances(manager, journal, {"a:1": {"fail": {"shutdown"}}})

        report = await instances.killall()

        assert report.errors[0].to_dict() == {
            "url": "a:1",
            "stage": "shutdown",
            "error": "a:1: HTTP 500: boom",
        }
        assert isinstance(report.errors[0].error, RemoteCallError)


class TestEventLoopStaysResponsive:
    @pytest.mark.asyncio
    async def test_slow_kill_does_not_block_loop(self, journal: list) -> None:
        manager = MagicMock(spec=ProcessManager)
        kill_threads: list[int] = []

        def slow_kill_many(pids) -> set:
            kill_threads.append(threading.get_ident())
            time.sleep(0.3)
            return set(pids)

        manager.kill_many.side_effect = slow_kill_many
        instances = build_instances(manager, journal, {"a:1": {"pids": [1]}})
        ticks = 0

        async def ticker() -> None:
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        task = asyncio.create_task(ticker())
        try:
            report = await instances.killall()
        finally:
            task.cancel()

        assert report.pids == {1}
        assert kill_threads and kill_threads[0] != threading.get_ident()
        assert ticks >= 5

    @pytest.mark.asyncio
    async def test_kill_runs_off_loop(self, manager: MagicMock, journal: list) -> None:
        kill_threads: list[int] = []

        def record(pids) -> set:
            kill_threads.append(threading.get_ident())
            return set(pids)

        manager.kill_many.side_effect = record
        instances = build_instances(manager, journal, {"a:1": {"pids": [5]}})

        assert await instances.kill("a:1") == {5}
        assert kill_threads[0] != threading.get_ident()


class TestManualConnections:
    @pytest.mark.asyncio
    async def test_connected_services_are_torn_down(self, manager: MagicMock, journal: list) -> None:
        instances = build_instances(manager, journal, {})
        instances.registry = ConnectionRegistry(
            lambda url, token: FakeService(url, token, journal, pids=[99])
        )
        instances.connect("remote:7000", "secret")

        report = await instances.killall()

        assert report.pids == {99}
        assert report.shut_down == ["remote:7000"]
