"""In-memory state for daemons and container metrics."""

import threading
import time
from dataclasses import replace
from typing import Protocol

from daemontop.models import DaemonInfo, DaemonRef, DaemonState, DerivedMetrics


class StateSink(Protocol):
    """Updates the channel and the stats poller apply to dashboard state."""

    def set_fetching(self, daemon_id: str, fetching: bool) -> None: ...

    def set_info(self, daemon_id: str, info: DaemonInfo | None) -> None: ...

    def attach_metrics(self, container_id: str, metrics: DerivedMetrics) -> None: ...


class DaemonStore:
    """
    Thread-safe StateSink backed by dictionaries.

    Updates for daemons the store does not know are ignored, so a response
    for a daemon removed in the meantime changes nothing.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._daemons: dict[str, DaemonState] = {}
        self._metrics: dict[str, DerivedMetrics] = {}

    def add_daemon(self, ref: DaemonRef) -> None:
        """Track a daemon; an existing entry keeps its info."""
        with self._lock:
            if ref.id in self._daemons:
                self._daemons[ref.id].ref = ref
            else:
                self._daemons[ref.id] = DaemonState(ref=ref)

    def remove_daemon(self, daemon_id: str) -> None:
        """Stop tracking a daemon."""
        with self._lock:
            self._daemons.pop(daemon_id, None)

    def has_daemon(self, daemon_id: str) -> bool:
        """Check if the daemon is tracked."""
        with self._lock:
            return daemon_id in self._daemons

    def get(self, daemon_id: str) -> DaemonState | None:
        """Copy of a daemon's state, or None if unknown."""
        with self._lock:
            state = self._daemons.get(daemon_id)
            return replace(state) if state is not None else None

    def daemons(self) -> list[DaemonState]:
        """Copies of every daemon's state, in insertion order."""
        with self._lock:
            return [replace(state) for state in self._daemons.values()]

    def set_fetching(self, daemon_id: str, fetching: bool) -> None:
        """Raise or clear the daemon's single fetching flag."""
        with self._lock:
            state = self._daemons.get(daemon_id)
            if state is None:
                return
            if fetching and not state.fetching:
                state.fetching_since = time.monotonic()
            elif not fetching:
                state.fetching_since = None
            state.fetching = fetching

    def set_info(self, daemon_id: str, info: DaemonInfo | None) -> None:
        """Attach received info verbatim."""
        with self._lock:
            state = self._daemons.get(daemon_id)
            if state is not None:
                state.info = info

    def attach_metrics(self, container_id: str, metrics: DerivedMetrics) -> None:
        """Replace a container's latest metrics."""
        with self._lock:
            self._metrics[container_id] = metrics

    def metrics(self, container_id: str) -> DerivedMetrics | None:
        """Latest metrics for a container, if any."""
        with self._lock:
            return self._metrics.get(container_id)

    def all_metrics(self) -> dict[str, DerivedMetrics]:
        """Latest metrics for every container."""
        with self._lock:
            return dict(self._metrics)

    def expire_fetching(self, timeout: float, now: float | None = None) -> list[str]:
        """
        Clear fetching flags raised more than `timeout` seconds ago.

        Without this a daemon whose response never arrives stays fetching.

        Returns:
            Ids of the daemons whose flag was cleared.
        """
        now = time.monotonic() if now is None else now
        expired = []
        with self._lock:
            for daemon_id, state in self._daemons.items():
                if (
                    state.fetching
                    and state.fetching_since is not None
                    and now - state.fetching_since > timeout
                ):
                    state.fetching = False
                    state.fetching_since = None
                    expired.append(daemon_id)
        return expired
