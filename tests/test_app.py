"""Tests for daemontop application."""

import json

import httpx
import pytest
from click.testing import CliRunner

from daemontop.app import (
    ChannelStatus,
    ContainerTable,
    DaemonTable,
    DaemontopApp,
    format_bytes,
    format_percent,
    main,
)
from daemontop.config import DaemonConfig, DashboardConfig
from daemontop.models import ChannelState, DaemonRef, DaemonState, DerivedMetrics

URL = "ws://dashboard.test/ws/daemons"
CADVISOR = "http://build-01.test:8080/api/v1.3"


def make_config(**overrides) -> DashboardConfig:
    return DashboardConfig(
        channel_url=URL,
        daemons=[
            DaemonConfig(id="5a1c", name="build_01"),
            DaemonConfig(id="7b2d", name="deploy_01"),
        ],
        **overrides,
    )


def requests_sent(connection) -> list[dict]:
    return [json.loads(raw)["data"] for raw in connection.sent]


async def wait_until(pilot, predicate, timeout: float = 3.0) -> bool:
    """Let the app run until the predicate holds or the timeout expires."""
    for _ in range(int(timeout / 0.1)):
        if predicate():
            return True
        await pilot.pause(0.1)
    return predicate()


@pytest.fixture
def app(fake_server):
    app = DaemontopApp(make_config(), connector=fake_server)
    yield app
    app.stop_monitoring()


def test_format_bytes_gigabytes():
    """Test format_bytes with gigabyte values."""
    assert "G" in format_bytes(8_000_000_000)


def test_format_bytes_bytes():
    """Test format_bytes with byte values."""
    assert "B" in format_bytes(500)


def test_format_percent():
    """Test percentage columns."""
    assert format_percent(75) == " 75%"
    assert format_percent(None) == "-"


@pytest.mark.asyncio
async def test_app_creation(app):
    """Test DaemontopApp can be instantiated."""
    assert app.title == "daemontop"
    assert app.sub_title == "Docker Daemon Monitor"


@pytest.mark.asyncio
async def test_app_compose(app):
    """Test DaemontopApp composes correctly."""
    async with app.run_test() as pilot:
        assert pilot.app.query_one("#channel-status") is not None
        assert pilot.app.query_one("#daemon-table") is not None
        assert pilot.app.query_one("#container-table") is not None


@pytest.mark.asyncio
async def test_app_requests_info_when_connected(app, fake_server):
    """Test every daemon is requested once the channel opens."""
    async with app.run_test() as pilot:
        assert await wait_until(
            pilot, lambda: fake_server.connections and len(fake_server.connections[0].sent) == 2
        )

        sent = requests_sent(fake_server.connections[0])
        assert [data["daemon"]["id"] for data in sent] == ["5a1c", "7b2d"]
        assert all(data["force"] is False for data in sent)
        assert app._store.get("5a1c").fetching

        status = pilot.app.query_one("#channel-status", ChannelStatus)
        assert await wait_until(pilot, lambda: status.channel_state is ChannelState.OPEN)


@pytest.mark.asyncio
async def test_app_applies_received_info(app, fake_server):
    """Test a RECEIVE_DAEMON_INFO message updates the daemon table."""
    async with app.run_test() as pilot:
        assert await wait_until(pilot, lambda: fake_server.connections and fake_server.connections[0].sent)

        fake_server.connections[0].push(
            json.dumps(
                {
                    "action": "RECEIVE_DAEMON_INFO",
                    "data": {
                        "daemon": {"id": "5a1c"},
                        "info": {"status": "UP", "nbImages": 12, "nbContainers": 4},
                    },
                }
            )
        )

        table = pilot.app.query_one("#daemon-table")
        assert await wait_until(pilot, lambda: app._store.get("5a1c").info is not None)
        assert await wait_until(pilot, lambda: table.get_cell("5a1c", "status") == "UP")
        assert table.get_cell("5a1c", "images") == "12"
        assert not app._store.get("5a1c").fetching


@pytest.mark.asyncio
async def test_app_info_bindings(app, fake_server):
    """Test 'i' and 'f' request info for the selected daemon."""
    async with app.run_test() as pilot:
        daemon_table = pilot.app.query_one(DaemonTable)
        assert await wait_until(
            pilot,
            lambda: fake_server.connections
            and len(fake_server.connections[0].sent) == 2
            and daemon_table.selected_daemon_id() is not None,
        )
        selected = daemon_table.selected_daemon_id()

        await pilot.press("i")
        await pilot.press("f")

        sent = requests_sent(fake_server.connections[0])
        assert sent[2] == {"daemon": {"id": selected, "name": "build_01"}, "force": False}
        assert sent[3] == {"daemon": {"id": selected, "name": "build_01"}, "force": True}


@pytest.mark.asyncio
async def test_app_refresh_all_binding(app, fake_server):
    """Test 'r' requests every daemon again."""
    async with app.run_test() as pilot:
        assert await wait_until(
            pilot, lambda: fake_server.connections and len(fake_server.connections[0].sent) == 2
        )

        await pilot.press("r")

        assert len(fake_server.connections[0].sent) == 4


@pytest.mark.asyncio
async def test_app_survives_disconnect(app, fake_server):
    """Test a dropped channel is shown and requests fail gracefully."""
    async with app.run_test() as pilot:
        assert await wait_until(pilot, lambda: app._channel.is_open)

        fake_server.connections[0].drop()

        status = pilot.app.query_one("#channel-status", ChannelStatus)
        assert await wait_until(pilot, lambda: status.channel_state is ChannelState.CLOSED)

        sent_before = len(fake_server.connections[0].sent)
        app._store.set_fetching("5a1c", False)

        await pilot.press("i")
        await pilot.press("r")

        assert len(fake_server.connections[0].sent) == sent_before
        assert not app._store.get("5a1c").fetching


@pytest.mark.asyncio
async def test_app_reconnect_binding(app, fake_server):
    """Test 'c' replaces the transport."""
    async with app.run_test() as pilot:
        assert await wait_until(pilot, lambda: app._channel.is_open)

        await pilot.press("c")

        assert await wait_until(pilot, lambda: len(fake_server.connections) == 2 and app._channel.is_open)
        assert len(fake_server.live) == 1


@pytest.mark.asyncio
async def test_app_quit_binding(app, fake_server):
    """Test that 'q' closes the channel and stops sampling."""
    async with app.run_test() as pilot:
        assert await wait_until(pilot, lambda: app._channel.is_open)

        await pilot.press("q")

        assert app._channel.state is ChannelState.CLOSED
        assert not app._poller.is_running
        assert fake_server.connections[0].closed.is_set()


@pytest.mark.asyncio
async def test_app_fetch_timeout(fake_server):
    """Test a configured fetch timeout clears unanswered requests."""
    app = DaemontopApp(make_config(fetch_timeout=0.3), connector=fake_server)
    try:
        async with app.run_test() as pilot:
            assert await wait_until(
                pilot, lambda: fake_server.connections and fake_server.connections[0].sent
            )
            assert await wait_until(
                pilot, lambda: not any(state.fetching for state in app._store.daemons())
            )
    finally:
        app.stop_monitoring()


@pytest.mark.asyncio
async def test_app_shows_container_metrics(fake_server, container_payload):
    """Test sampled container metrics reach the container table."""
    routes = {
        "/api/v1.3/machine": {"num_cores": 2, "memory_capacity": 8_000_000_000},
        "/api/v1.3/containers/docker/3f2a9c": container_payload,
    }

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path not in routes:
            return httpx.Response(404)
        return httpx.Response(200, json=routes[request.url.path])

    config = DashboardConfig(
        channel_url=URL,
        poll_rate=0.1,
        daemons=[
            DaemonConfig(id="5a1c", name="build_01", cadvisor_api=CADVISOR, containers=["3f2a9c"]),
        ],
    )
    app = DaemontopApp(
        config,
        connector=fake_server,
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    try:
        async with app.run_test() as pilot:
            table = pilot.app.query_one("#container-table")
            assert await wait_until(pilot, lambda: table.row_count == 1)
            assert table.get_cell("3f2a9c", "cpu") == " 75%"
            assert table.get_cell("3f2a9c", "daemon") == "build_01"
            assert table.get_cell("3f2a9c", "mem") == "6 MB"
    finally:
        app.stop_monitoring()


@pytest.mark.asyncio
async def test_daemon_table_removes_old_daemons(app):
    """Test DaemonTable drops rows for daemons no longer present."""
    async with app.run_test() as pilot:
        daemon_table = pilot.app.query_one(DaemonTable)

        daemon_table.update_daemons(
            [DaemonState(ref=DaemonRef(id="x")), DaemonState(ref=DaemonRef(id="y"))]
        )
        daemon_table.update_daemons([DaemonState(ref=DaemonRef(id="y"), fetching=True)])

        assert "x" not in daemon_table._current_ids
        assert "y" in daemon_table._current_ids


@pytest.mark.asyncio
async def test_container_table_without_memory(app):
    """Test containers without a memory spec show dashes."""
    async with app.run_test() as pilot:
        container_table = pilot.app.query_one(ContainerTable)
        container_table.update_metrics({"abc": DerivedMetrics(cpu_usage_percent=5)})

        table = pilot.app.query_one("#container-table")
        assert table.get_cell("abc", "mem") == "-"
        assert table.get_cell("abc", "mem_percent") == "-"


def test_cli_rejects_bad_url():
    """Test the CLI reports an invalid channel URL."""
    result = CliRunner().invoke(main, ["--url", "http://not-a-websocket"])
    assert result.exit_code != 0
    assert "ws://" in result.output


def test_cli_rejects_missing_config(tmp_path):
    """Test the CLI refuses a config path that does not exist."""
    result = CliRunner().invoke(main, ["--config", str(tmp_path / "absent.json")])
    assert result.exit_code != 0
