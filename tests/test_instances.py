"""Tests for spawning Instances and Dispatchers."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from gridfleet.core.errors import InstanceNeverStarted, RemoteCallError
from gridfleet.core.options import Options
from gridfleet.processes.dispatchers import Dispatchers
from gridfleet.processes.instances import Instances
from gridfleet.processes.manager import ProcessManager
from gridfleet.rpc.client import DispatcherClient, InstanceClient
from gridfleet.rpc.server import dispatcher as dispatcher_server
from gridfleet.rpc.server import instance as instance_server


def shrink_pool(options: Options) -> None:
    options.dispatcher.pool_size = 0


@pytest.fixture
def manager() -> MagicMock:
    manager = MagicMock(spec=ProcessManager)
    manager.fork.return_value = MagicMock(pid=4242)
    manager.kill_many.return_value = {4242}
    return manager


@pytest.fixture
def instances(manager: MagicMock) -> Instances:
    return Instances(manager=manager, options=Options(), readiness_timeout=0.5, poll_interval=0.05)


class TestSpawn:
    @pytest.mark.asyncio
    async def test_spawn_registers_ready_instance(
        self, instances: Instances, manager: MagicMock
    ) -> None:
        with patch.object(instances, "wait_until_ready", AsyncMock(return_value=True)) as ready:
            client = await instances.spawn(port=7001, token="secret")

        assert isinstance(client, InstanceClient)
        assert client.url == "localhost:7001"
        assert client.token == "secret"
        assert dict(instances.list()) == {"localhost:7001": "secret"}
        assert instances.connect("localhost:7001") is client
        ready.assert_awaited_once_with("localhost:7001", "secret")

        target, options_data, token, customize = manager.fork.call_args.args
        assert target is instance_server.run
        assert options_data["rpc"]["server_port"] == 7001
        assert options_data["rpc"]["server_address"] == "localhost"
        assert token == "secret"
        assert customize is None

    @pytest.mark.asyncio
    async def test_spawn_generates_token(self, instances: Instances) -> None:
        with patch.object(instances, "wait_until_ready", AsyncMock(return_value=True)):
            client = await instances.spawn(port=7002)

        token = instances.token_for(client)
        assert token is not None
        assert len(token) == 32

    @pytest.mark.asyncio
    async def test_spawn_allocates_port(self, instances: Instances) -> None:
        with patch("gridfleet.processes.base.available_port", return_value=7123), \
                patch.object(instances, "wait_until_ready", AsyncMock(return_value=True)):
            client = await instances.spawn(address="127.0.0.1")

        assert client.url == "127.0.0.1:7123"

    @pytest.mark.asyncio
    async def test_spawn_on_socket_drops_address_and_port(
        self, instances: Instances, manager: MagicMock
    ) -> None:
        with patch.object(instances, "wait_until_ready", AsyncMock(return_value=True)):
            client = await instances.spawn(socket="/tmp/gridfleet-test.sock", port=7001)

        assert client.url == "/tmp/gridfleet-test.sock"
        rpc = manager.fork.call_args.args[1]["rpc"]
        assert rpc["server_socket"] == "/tmp/gridfleet-test.sock"
        assert rpc["server_address"] is None
        assert rpc["server_port"] is None

    @pytest.mark.asyncio
    async def test_spawn_passes_spawns_and_customize(
        self, instances: Instances, manager: MagicMock
    ) -> None:
        with patch.object(instances, "wait_until_ready", AsyncMock(return_value=True)):
            await instances.spawn(port=7003, spawns=2, customize=shrink_pool)

        _, options_data, _, customize = manager.fork.call_args.args
        assert options_data["spawns"] == 2
        assert customize is shrink_pool

    @pytest.mark.asyncio
    async def test_spawn_times_out_when_nothing_listens(
        self, instances: Instances, manager: MagicMock
    ) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(InstanceNeverStarted) as exc_info:
            await instances.spawn(port=6000)

        elapsed = loop.time() - started
        assert exc_info.value.url == "localhost:6000"
        assert "Instance 'localhost:6000' never started!" == str(exc_info.value)
        assert 0.45 <= elapsed < 5
        manager.kill_many.assert_called_once_with([4242])
        assert "localhost:6000" not in instances.list()


class TestReadiness:
    @pytest.mark.asyncio
    async def test_poll_errors_are_retried(self, instances: Instances) -> None:
        flaky = MagicMock()
        flaky.alive = AsyncMock(
            side_effect=[
                httpx.ConnectError("refused"),
                RemoteCallError("localhost:7001", 500, "booting"),
                True,
            ]
        )

        with patch.object(instances, "_new_client", return_value=flaky):
            assert await instances.wait_until_ready("localhost:7001", "secret") is True

        assert flaky.alive.await_count == 3

    @pytest.mark.asyncio
    async def test_returns_false_after_deadline(self, instances: Instances) -> None:
        dead = MagicMock()
        dead.alive = AsyncMock(side_effect=httpx.ConnectError("refused"))

        with patch.object(instances, "_new_client", return_value=dead):
            assert await instances.wait_until_ready("localhost:7001", "secret") is False

        assert dead.alive.await_count >= 2

    @pytest.mark.asyncio
    async def test_hanging_poll_is_bounded_by_deadline(self, instances: Instances) -> None:
        async def hang() -> bool:
            await asyncio.sleep(30)
            return True

        stuck = MagicMock()
        stuck.alive = hang
        loop = asyncio.get_running_loop()
        started = loop.time()

        with patch.object(instances, "_new_client", return_value=stuck):
            assert await instances.wait_until_ready("localhost:7001", "secret") is False

        assert loop.time() - started < 2


class TestDispatchersSpawn:
    @pytest.fixture
    def dispatchers(self, manager: MagicMock) -> Dispatchers:
        return Dispatchers(manager=manager, options=Options(), readiness_timeout=0.5, poll_interval=0.05)

    @pytest.mark.asyncio
    async def test_spawn_forks_dispatcher_with_grid_options(
        self, dispatchers: Dispatchers, manager: MagicMock
    ) -> None:
        with patch.object(dispatchers, "wait_until_ready", AsyncMock(return_value=True)):
            client = await dispatchers.spawn(
                neighbour="localhost:8000", pipe_id="11112222", port=8001
            )

        assert isinstance(client, DispatcherClient)
        target, options_data, _, _ = manager.fork.call_args.args
        assert target is dispatcher_server.run
        assert options_data["dispatcher"]["neighbour"] == "localhost:8000"
        assert options_data["dispatcher"]["pipe_id"] == "11112222"
        assert options_data["dispatcher"]["pool_size"] == 5

    @pytest.mark.asyncio
    async def test_light_spawn_reserves_one_instance(
        self, dispatchers: Dispatchers, manager: MagicMock
    ) -> None:
        with patch.object(dispatchers, "wait_until_ready", AsyncMock(return_value=True)):
            await dispatchers.light_spawn(neighbour="localhost:8000", port=8002)

        options_data = manager.fork.call_args.args[1]
        assert options_data["dispatcher"]["pool_size"] == 1
        assert options_data["dispatcher"]["neighbour"] == "localhost:8000"

    def test_instances_share_manager_with_dispatchers(self, manager: MagicMock) -> None:
        instances = Instances(manager=manager, options=Options())
        assert instances.dispatchers.manager is manager
        assert instances.dispatchers is instances.dispatchers
