"""Tests for ToolServerManager against real child processes."""

import asyncio
import os
import signal
import sys

import pytest
import pytest_asyncio

from cloud_cost_shared.data_models import LifecycleState, ServerCommand
from cloud_cost_shared.exceptions import (
    ConnectionLostError,
    InvocationError,
    NotConnectedError,
    StartupError,
    UnexpectedExitError,
)
from cloud_cost_shared.mcp_lifecycle import ToolServerManager

from conftest import FIXTURES_DIR, python_server

pytestmark = pytest.mark.asyncio

INSTANCES = [{"type": "t3.micro", "quantity": 3, "region": "us-east-1"}]
SLOW_SERVER = str(FIXTURES_DIR / "slow_server.py")


def _alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


async def _wait_until(condition, timeout=5.0):
    for _ in range(int(timeout / 0.05)):
        if condition():
            return
        await asyncio.sleep(0.05)
    raise AssertionError("condition not met in time")


@pytest_asyncio.fixture
async def manager(bundled_server):
    manager = ToolServerManager(bundled_server, client_name="tests", handshake_timeout=20)
    yield manager
    await manager.stop()


async def test_start_list_call_stop(manager):
    events = []
    manager.subscribe("connected", lambda: events.append("connected"))
    manager.subscribe("disconnected", lambda: events.append("disconnected"))

    await manager.start()
    assert manager.is_connected()
    assert manager.state is LifecycleState.CONNECTED
    assert manager.server_info.name == "cloud-cost-calculator"
    assert manager.pid is not None

    tools = await manager.list_tools()
    assert [t.name for t in tools] == ["calculate_instance_savings", "list_supported_instances"]

    result = await manager.call_tool("calculate_instance_savings", {"instances": INSTANCES})
    assert result["comparison"]["aws_monthly_cost"] == pytest.approx(22.78)

    await manager.stop()
    assert manager.state is LifecycleState.DISCONNECTED
    assert manager.pid is None
    assert events == ["connected", "disconnected"]


async def test_tool_error_becomes_invocation_error(manager):
    await manager.start()
    with pytest.raises(InvocationError) as excinfo:
        await manager.call_tool(
            "calculate_instance_savings",
            {"instances": [{"type": "t3.micro", "quantity": 0, "region": "us-east-1"}]},
        )
    assert excinfo.value.message == "Quantity must be positive, got 0"
    # The server is still usable afterwards
    assert manager.is_connected()


async def test_stop_is_idempotent(manager):
    await manager.stop()
    await manager.start()
    await manager.stop()
    await manager.stop()
    assert manager.state is LifecycleState.DISCONNECTED


async def test_operations_require_connection(manager):
    with pytest.raises(NotConnectedError):
        await manager.list_tools()
    with pytest.raises(NotConnectedError):
        await manager.call_tool("list_supported_instances")


async def test_concurrent_starts_spawn_one_process(manager):
    await asyncio.gather(manager.start(), manager.start(), manager.start())
    pid = manager.pid
    await manager.start()
    assert manager.pid == pid


async def test_unexpected_exit(manager):
    exits = []
    manager.subscribe("unexpected_exit", exits.append)
    await manager.start()

    os.kill(manager.pid, signal.SIGKILL)
    for _ in range(100):
        if exits:
            break
        await asyncio.sleep(0.05)

    [error] = exits
    assert isinstance(error, UnexpectedExitError)
    assert manager.exit_error is error
    assert not manager.is_connected()
    with pytest.raises(NotConnectedError):
        await manager.call_tool("list_supported_instances")


async def test_restart_after_stop(manager):
    await manager.start()
    first = manager.pid
    await manager.stop()
    await manager.start()
    assert manager.pid != first
    assert (await manager.call_tool("list_supported_instances"))["regions"]


async def test_missing_executable():
    manager = ToolServerManager(ServerCommand(command="definitely-not-a-real-binary-xyz"))
    with pytest.raises(StartupError, match="not found"):
        await manager.start()
    assert manager.state is LifecycleState.DISCONNECTED


async def test_missing_script(tmp_path):
    manager = ToolServerManager(ServerCommand.for_script(tmp_path / "server.py"))
    with pytest.raises(StartupError, match="script not found"):
        await manager.start()


async def test_server_that_exits_during_handshake():
    manager = ToolServerManager(ServerCommand(command=sys.executable, args=["-c", "import sys; sys.exit(3)"]))
    with pytest.raises(StartupError):
        await manager.start()
    assert manager.state is LifecycleState.DISCONNECTED


async def test_handshake_timeout():
    manager = ToolServerManager(
        ServerCommand(command=sys.executable, args=["-c", "import time; time.sleep(30)"]),
        handshake_timeout=0.5,
        kill_grace_period=0.5,
    )
    with pytest.raises(StartupError, match="handshake"):
        await manager.start()
    assert manager.pid is None


async def test_stop_kills_server_ignoring_sigterm():
    manager = ToolServerManager(
        python_server(SLOW_SERVER),
        kill_grace_period=0.5,
    )
    await manager.start()
    assert manager.server_info.name == "slow-server"

    await asyncio.wait_for(manager.stop(), timeout=10)
    assert manager.state is LifecycleState.DISCONNECTED


async def test_cancelled_start_kills_child():
    manager = ToolServerManager(python_server(SLOW_SERVER, "--mute-initialize"), kill_grace_period=0.5)
    starting = asyncio.create_task(manager.start())
    await _wait_until(lambda: manager.pid is not None)
    pid = manager.pid

    starting.cancel()
    with pytest.raises(asyncio.CancelledError):
        await starting

    assert manager.state is LifecycleState.DISCONNECTED
    assert manager.pid is None
    assert not _alive(pid)

    # A later start spawns exactly one fresh child
    await manager.start(python_server(SLOW_SERVER))
    assert manager.is_connected()
    await manager.stop()


async def test_stop_while_spawning_wins(bundled_server):
    manager = ToolServerManager(bundled_server)
    starting = asyncio.create_task(manager.start())
    await asyncio.sleep(0)

    await manager.stop()

    with pytest.raises(StartupError, match="stopped during startup"):
        await starting
    assert not manager.is_connected()
    assert manager.pid is None


async def test_stop_during_handshake_kills_child():
    manager = ToolServerManager(python_server(SLOW_SERVER, "--mute-initialize"), kill_grace_period=0.5)
    starting = asyncio.create_task(manager.start())
    await _wait_until(lambda: manager.pid is not None)
    pid = manager.pid

    await manager.stop()

    with pytest.raises(StartupError):
        await starting
    assert manager.state is LifecycleState.DISCONNECTED
    assert not _alive(pid)


async def test_stop_fails_in_flight_call():
    manager = ToolServerManager(python_server(SLOW_SERVER, "--hang-calls"), kill_grace_period=0.5)
    await manager.start()
    call = asyncio.create_task(manager.call_tool("list_supported_instances"))
    await asyncio.sleep(0.2)
    assert not call.done()

    await manager.stop()

    with pytest.raises(ConnectionLostError):
        await asyncio.wait_for(call, timeout=5)


async def test_child_death_fails_in_flight_call():
    manager = ToolServerManager(python_server(SLOW_SERVER, "--hang-calls"), kill_grace_period=0.5)
    await manager.start()
    process = manager._process
    readers = list(manager._tasks)
    call = asyncio.create_task(manager.call_tool("list_supported_instances"))
    await asyncio.sleep(0.2)

    os.kill(manager.pid, signal.SIGKILL)

    with pytest.raises(ConnectionLostError):
        await asyncio.wait_for(call, timeout=5)
    await _wait_until(lambda: manager.exit_error is not None)
    assert process.stdin.is_closing()
    await _wait_until(lambda: all(task.done() for task in readers))


async def test_server_ping_is_answered():
    manager = ToolServerManager(python_server(SLOW_SERVER, "--ping-client"), kill_grace_period=0.5)
    await manager.start()
    try:
        result = await asyncio.wait_for(manager.call_tool("list_supported_instances"), timeout=5)
        assert result == {"pong": True}
        await _wait_until(lambda: not manager._server_requests)
    finally:
        await manager.stop()
