"""Periodic container stats sampling for daemontop."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

import httpx

from daemontop.metrics import metrics_from_payload
from daemontop.models import DerivedMetrics, HostCapacity
from daemontop.store import StateSink

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PollTarget:
    """A daemon's stats endpoint and the containers to sample on it."""

    daemon_id: str
    cadvisor_url: str
    containers: list[str] = field(default_factory=list)
    local: bool = False


class StatsSource:
    """HTTP client for a daemon's cAdvisor API."""

    def __init__(self, client: httpx.Client) -> None:
        self._client = client

    def fetch_container(self, cadvisor_url: str, container_id: str) -> dict[str, Any]:
        """Fetch `{spec, stats}` for a Docker container, oldest sample first."""
        return self._get_json(f"{cadvisor_url.rstrip('/')}/containers/docker/{container_id}")

    def fetch_machine(self, cadvisor_url: str) -> HostCapacity:
        """Fetch the capacity of the machine behind the API."""
        return HostCapacity.from_dict(self._get_json(f"{cadvisor_url.rstrip('/')}/machine"))

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def _get_json(self, url: str) -> dict[str, Any]:
        response = self._client.get(url)
        response.raise_for_status()
        body = response.json()
        if not isinstance(body, dict):
            raise ValueError(f"Expected an object from {url}")
        return body


class StatsPoller:
    """
    Samples container stats on a background thread.

    Each round fetches every target container, derives metrics and attaches
    them to the sink. A failing daemon or container is logged and skipped;
    the loop keeps running.
    """

    def __init__(
        self,
        source: StatsSource,
        sink: StateSink,
        targets: list[PollTarget],
        poll_rate: float = 2.0,
    ) -> None:
        """
        Initialize the StatsPoller.

        Args:
            source: Where samples come from.
            sink: Where derived metrics go.
            targets: Daemons and containers to sample.
            poll_rate: How often to poll (in seconds). Default 2.0s.
        """
        self._source = source
        self._sink = sink
        self._targets = list(targets)
        self._poll_rate = max(0.1, poll_rate)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._capacities: dict[str, HostCapacity] = {}

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate."""
        self._poll_rate = max(0.1, value)  # Minimum 0.1 seconds

    @property
    def is_running(self) -> bool:
        """Check if the poller thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the polling thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="StatsPoller",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the polling thread.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Stats polling round failed")
            self._stop_event.wait(timeout=self._poll_rate)

    def poll_once(self) -> dict[str, DerivedMetrics]:
        """
        Sample every target once.

        Returns:
            Metrics attached in this round, by container id.
        """
        attached: dict[str, DerivedMetrics] = {}
        for target in self._targets:
            capacity = self._capacity_for(target)
            if capacity is None:
                continue
            for container_id in target.containers:
                metrics = self._sample_container(target, container_id, capacity)
                if metrics is not None:
                    self._sink.attach_metrics(container_id, metrics)
                    attached[container_id] = metrics
        return attached

    def _capacity_for(self, target: PollTarget) -> HostCapacity | None:
        """Host capacity of a target's machine, cached after the first success."""
        capacity = self._capacities.get(target.daemon_id)
        if capacity is not None:
            return capacity

        try:
            capacity = self._source.fetch_machine(target.cadvisor_url)
        except (httpx.HTTPError, ValueError) as e:
            if not target.local:
                logger.warning("Cannot read machine info of daemon %s: %s", target.daemon_id, e)
                return None
            # The daemon shares this machine
            capacity = HostCapacity.local()

        self._capacities[target.daemon_id] = capacity
        return capacity

    def _sample_container(
        self,
        target: PollTarget,
        container_id: str,
        capacity: HostCapacity,
    ) -> DerivedMetrics | None:
        try:
            payload = self._source.fetch_container(target.cadvisor_url, container_id)
            return metrics_from_payload(payload, capacity)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "Cannot sample container %s on daemon %s: %s",
                container_id,
                target.daemon_id,
                e,
            )
            return None
