"""daemontop - Main Textual application."""

import logging
from enum import Enum
from pathlib import Path
from queue import Empty, Queue

import click
import httpx
from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import DataTable, Footer, Static

from daemontop.channel import ConnectionManager, Connector
from daemontop.config import DashboardConfig, load_config
from daemontop.daemons import DaemonInfoRequester
from daemontop.exceptions import ChannelClosedError, ConfigurationError
from daemontop.logging_setup import setup_logging
from daemontop.models import ChannelState, DaemonState, DerivedMetrics
from daemontop.poller import PollTarget, StatsPoller, StatsSource
from daemontop.router import MessageRouter
from daemontop.store import DaemonStore

logger = logging.getLogger(__name__)


class ChannelEvent(Enum):
    """Lifecycle events handed from the channel thread to the UI."""

    OPENED = "opened"
    CLOSED = "closed"


def format_bytes(size: int) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{size:5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def format_percent(value: int | None) -> str:
    """Format a percentage column, '-' when not applicable."""
    return "-" if value is None else f"{value:3d}%"


class ChannelStatus(Static):
    """Header widget showing the channel state and fetch activity."""

    DEFAULT_CSS = """
    ChannelStatus {
        height: auto;
        padding: 0 1;
        background: $surface;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize ChannelStatus."""
        super().__init__(*args, **kwargs)
        self._url: str = ""
        self._state: ChannelState = ChannelState.CLOSED
        self._daemon_count: int = 0
        self._fetching_count: int = 0

    @property
    def channel_state(self) -> ChannelState:
        """Channel state currently displayed."""
        return self._state

    def on_mount(self) -> None:
        """Render the initial status."""
        self.update(self._render_status())

    def update_status(
        self,
        url: str,
        state: ChannelState,
        daemons: list[DaemonState],
    ) -> None:
        """Update the header from the channel state and daemon list."""
        self._url = url
        self._state = state
        self._daemon_count = len(daemons)
        self._fetching_count = sum(1 for daemon in daemons if daemon.fetching)
        self.update(self._render_status())

    def _render_status(self) -> str:
        color = {
            ChannelState.OPEN: "green",
            ChannelState.CONNECTING: "yellow",
            ChannelState.CLOSED: "red",
        }[self._state]
        return (
            f"Channel \\[[{color}]{self._state.value}[/{color}]] {self._url}   "
            f"Daemons: {self._daemon_count}   Fetching: {self._fetching_count}"
        )


class DaemonTable(Container):
    """Container for the daemon data table."""

    DEFAULT_CSS = """
    DaemonTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize DaemonTable."""
        super().__init__(*args, **kwargs)
        self._current_ids: set[str] = set()

    def compose(self) -> ComposeResult:
        """Compose the daemon table."""
        yield DataTable(id="daemon-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#daemon-table", DataTable)
        table.cursor_type = "row"

        table.add_column("ID", key="id", width=26)
        table.add_column("NAME", key="name", width=20)
        table.add_column("STATUS", key="status", width=8)
        table.add_column("IMAGES", key="images", width=7)
        table.add_column("CONTAINERS", key="containers", width=11)
        table.add_column("", key="fetching", width=3)
        table.add_column("MESSAGE", key="message")

    def selected_daemon_id(self) -> str | None:
        """Id of the daemon under the cursor, if any."""
        table = self.query_one("#daemon-table", DataTable)
        if table.row_count == 0:
            return None
        row_key = table.coordinate_to_cell_key(table.cursor_coordinate).row_key
        return row_key.value

    def update_daemons(self, daemons: list[DaemonState]) -> None:
        """
        Update the daemon table with the latest state.

        Uses update_cell for existing rows to avoid re-rendering the whole table.
        """
        table = self.query_one("#daemon-table", DataTable)
        new_ids = {daemon.ref.id for daemon in daemons}

        for daemon_id in self._current_ids - new_ids:
            try:
                table.remove_row(daemon_id)
            except Exception:
                pass  # Row may not exist

        for daemon in daemons:
            cells = self._cells(daemon)
            if daemon.ref.id in self._current_ids:
                try:
                    for key, value in cells.items():
                        table.update_cell(daemon.ref.id, key, value)
                except Exception:
                    pass  # Row may have been removed
            else:
                try:
                    table.add_row(*cells.values(), key=daemon.ref.id)
                except Exception:
                    pass  # Row may already exist

        self._current_ids = new_ids

    @staticmethod
    def _cells(daemon: DaemonState) -> dict[str, str]:
        info = daemon.info if isinstance(daemon.info, dict) else {}
        return {
            "id": daemon.ref.id,
            "name": (daemon.ref.name or "")[:20],
            "status": str(info.get("status", "?")),
            "images": str(info.get("nbImages", "-")),
            "containers": str(info.get("nbContainers", "-")),
            "fetching": "…" if daemon.fetching else "",
            "message": str(info.get("message", ""))[:60],
        }


class ContainerTable(Container):
    """Container for the container metrics table."""

    DEFAULT_CSS = """
    ContainerTable {
        height: 1fr;
        border: solid $secondary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize ContainerTable."""
        super().__init__(*args, **kwargs)
        self._current_ids: set[str] = set()
        self._owners: dict[str, str] = {}

    def set_owners(self, owners: dict[str, str]) -> None:
        """Map container ids to the name of the daemon running them."""
        self._owners = dict(owners)

    def compose(self) -> ComposeResult:
        """Compose the container table."""
        yield DataTable(id="container-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#container-table", DataTable)
        table.cursor_type = "row"

        table.add_column("CONTAINER", key="container", width=14)
        table.add_column("DAEMON", key="daemon", width=20)
        table.add_column("CPU%", key="cpu", width=6)
        table.add_column("MEM", key="mem", width=9)
        table.add_column("LIMIT", key="limit", width=8)
        table.add_column("MEM%", key="mem_percent", width=6)

    def update_metrics(self, metrics: dict[str, DerivedMetrics]) -> None:
        """Update the table with the latest metrics per container."""
        table = self.query_one("#container-table", DataTable)
        new_ids = set(metrics)

        for container_id in self._current_ids - new_ids:
            try:
                table.remove_row(container_id)
            except Exception:
                pass  # Row may not exist

        for container_id in sorted(metrics):
            cells = self._cells(container_id, metrics[container_id])
            if container_id in self._current_ids:
                try:
                    for key, value in cells.items():
                        table.update_cell(container_id, key, value)
                except Exception:
                    pass  # Row may have been removed
            else:
                try:
                    table.add_row(*cells.values(), key=container_id)
                except Exception:
                    pass  # Row may already exist

        self._current_ids = new_ids

    def _cells(self, container_id: str, metrics: DerivedMetrics) -> dict[str, str]:
        has_memory = metrics.memory_limit is not None
        return {
            "container": container_id[:12],
            "daemon": self._owners.get(container_id, "")[:20],
            "cpu": format_percent(metrics.cpu_usage_percent),
            "mem": f"{metrics.memory_usage} MB" if has_memory else "-",
            "limit": format_bytes(metrics.memory_limit) if has_memory else "-",
            "mem_percent": format_percent(metrics.memory_usage_percent),
        }


class DaemontopApp(App):
    """Main daemontop application."""

    TITLE = "daemontop"
    SUB_TITLE = "Docker Daemon Monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #channel-status {
        dock: top;
        height: 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("i", "info", "Info"),
        ("f", "force_info", "Force refresh"),
        ("r", "refresh_all", "Refresh all"),
        ("c", "reconnect", "Reconnect"),
    ]

    def __init__(
        self,
        config: DashboardConfig | None = None,
        connector: Connector | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        """
        Initialize the DaemontopApp.

        Args:
            config: Dashboard configuration; defaults apply when omitted.
            connector: WebSocket connection factory, for alternative transports.
            http_client: HTTP client for the stats poller.
        """
        super().__init__()
        self._settings = config or DashboardConfig.default()
        self._channel_events: Queue[ChannelEvent] = Queue()
        self._store = DaemonStore()
        for daemon in self._settings.daemons:
            self._store.add_daemon(daemon.to_ref())

        self._channel = ConnectionManager(
            self._settings.channel_url,
            connector=connector,
            open_timeout=self._settings.open_timeout,
        )
        self._router = MessageRouter(
            self._channel,
            on_open=lambda: self._channel_events.put(ChannelEvent.OPENED),
            on_close=lambda: self._channel_events.put(ChannelEvent.CLOSED),
        )
        self._requester = DaemonInfoRequester(self._router, self._store)

        client = http_client or httpx.Client(timeout=self._settings.http_timeout)
        self._poller = StatsPoller(
            StatsSource(client),
            self._store,
            [
                PollTarget(
                    daemon_id=daemon.id,
                    cadvisor_url=daemon.cadvisor_api,
                    containers=list(daemon.containers),
                    local=daemon.is_local,
                )
                for daemon in self._settings.daemons
                if daemon.cadvisor_api
            ],
            poll_rate=self._settings.poll_rate,
        )
        self._owners = {
            container_id: daemon.name or daemon.id
            for daemon in self._settings.daemons
            for container_id in daemon.containers
        }

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield ChannelStatus(id="channel-status")
        yield DaemonTable()
        yield ContainerTable()
        yield Footer()

    def on_mount(self) -> None:
        """Open the channel and start sampling when the app is mounted."""
        self.query_one(ContainerTable).set_owners(self._owners)
        self._channel.open()
        self._poller.start()
        # Set up a timer to poll for channel events and state changes
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Handle queued channel events and refresh the UI from the store."""
        while True:
            try:
                event = self._channel_events.get_nowait()
            except Empty:
                break
            self._handle_channel_event(event)

        if self._settings.fetch_timeout is not None:
            for daemon_id in self._store.expire_fetching(self._settings.fetch_timeout):
                logger.info("Info request for daemon %s timed out", daemon_id)

        self._update_ui()

    def _handle_channel_event(self, event: ChannelEvent) -> None:
        if event is ChannelEvent.OPENED:
            self.notify("Channel connected")
            self._request_all(force=False)
        else:
            self.notify("Channel disconnected", severity="warning")

    def _update_ui(self) -> None:
        """Update the UI from the current store contents."""
        daemons = self._store.daemons()
        try:
            self.query_one("#channel-status", ChannelStatus).update_status(
                self._channel.url, self._channel.state, daemons
            )
            self.query_one(DaemonTable).update_daemons(daemons)
            self.query_one(ContainerTable).update_metrics(self._store.all_metrics())
        except Exception:
            # The app must never crash on a refresh
            logger.exception("UI refresh failed")

    def _request_all(self, force: bool) -> None:
        """Request every daemon; a closed channel may leave the round partly sent."""
        refs = [state.ref for state in self._store.daemons()]
        try:
            self._requester.request_all(refs, force=force)
        except ChannelClosedError:
            self.notify("Channel is not open", severity="error")

    def _request_selected(self, force: bool) -> None:
        daemon_id = self.query_one(DaemonTable).selected_daemon_id()
        state = self._store.get(daemon_id) if daemon_id is not None else None
        if state is None:
            self.notify("No daemon selected")
            return
        try:
            self._requester.request_info(state.ref, force=force)
        except ChannelClosedError:
            self.notify("Channel is not open", severity="error")
            return
        self._update_ui()

    def action_info(self) -> None:
        """Request info for the selected daemon."""
        self._request_selected(force=False)

    def action_force_info(self) -> None:
        """Request fresh info for the selected daemon, bypassing server caches."""
        self._request_selected(force=True)

    def action_refresh_all(self) -> None:
        """Request info for every daemon."""
        self._request_all(force=False)
        self._update_ui()

    def action_reconnect(self) -> None:
        """Replace the channel transport with a new one."""
        self._channel.open()
        self.notify("Reconnecting...")

    def stop_monitoring(self) -> None:
        """Close the channel and stop sampling. Safe to call more than once."""
        self._channel.close()
        self._poller.stop()

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self.stop_monitoring()
        self.exit()


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON configuration file.",
)
@click.option("--url", help="Override the channel WebSocket URL.")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write logs to this file.",
)
@click.option("--log-level", help="Logging level (DEBUG, INFO, WARNING, ...).")
def main(
    config_path: Path | None,
    url: str | None,
    log_file: Path | None,
    log_level: str | None,
) -> None:
    """Entry point for daemontop application."""
    try:
        config = load_config(config_path) if config_path else DashboardConfig.default()
        overrides = {
            key: value
            for key, value in (("channel_url", url), ("log_file", log_file), ("log_level", log_level))
            if value is not None
        }
        if overrides:
            config = DashboardConfig.model_validate({**config.model_dump(), **overrides})
    except (ConfigurationError, ValueError) as e:
        raise click.ClickException(str(e)) from e

    setup_logging(config.log_file, config.log_level)
    app = DaemontopApp(config)
    try:
        app.run()
    finally:
        app.stop_monitoring()


if __name__ == "__main__":
    main()
