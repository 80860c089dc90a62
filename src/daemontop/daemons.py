"""Daemon info requests over the channel."""

import logging
from typing import Any, Iterable

from daemontop.exceptions import ChannelClosedError
from daemontop.models import DaemonRef
from daemontop.router import MessageRouter
from daemontop.store import StateSink

logger = logging.getLogger(__name__)

REQUEST_DAEMON_INFO = "REQUEST_DAEMON_INFO"
RECEIVE_DAEMON_INFO = "RECEIVE_DAEMON_INFO"


class DaemonInfoRequester:
    """
    Requests daemon info and applies the responses to a state sink.

    There is no request id: a response is matched to its daemon by the id it
    carries. Every request is transmitted, even while one is already in
    flight for the same daemon, and whichever response arrives last wins.
    Whether cached info may be served is decided by the server from the
    `force` flag alone.
    """

    def __init__(self, router: MessageRouter, sink: StateSink) -> None:
        self._router = router
        self._sink = sink
        router.register(RECEIVE_DAEMON_INFO, self._receive_info)

    def request_info(self, daemon: DaemonRef, force: bool = False) -> None:
        """
        Mark the daemon as fetching and send a REQUEST_DAEMON_INFO envelope.

        Returns as soon as the frame is written; the response arrives later
        through the channel.

        Raises:
            ChannelClosedError: If the channel is not open. The fetching flag
                is cleared again before the error propagates.
        """
        self._sink.set_fetching(daemon.id, True)
        try:
            self._router.send(
                REQUEST_DAEMON_INFO,
                {"daemon": daemon.to_dict(), "force": force},
            )
        except ChannelClosedError:
            self._sink.set_fetching(daemon.id, False)
            raise

    def request_all(self, daemons: Iterable[DaemonRef], force: bool = False) -> int:
        """
        Request info for each daemon; returns how many requests were sent.

        Stops at the first send that fails. Daemons already requested keep
        their fetching flag, later ones are neither flagged nor sent.

        Raises:
            ChannelClosedError: If the channel closes partway through.
        """
        sent = 0
        for daemon in daemons:
            self.request_info(daemon, force=force)
            sent += 1
        return sent

    def _receive_info(self, data: dict[str, Any]) -> None:
        """Attach received info to the daemon and clear its fetching flag."""
        ref = DaemonRef.from_dict(data.get("daemon"))
        # Both calls are no-ops for daemons removed in the meantime
        self._sink.set_info(ref.id, data.get("info"))
        self._sink.set_fetching(ref.id, False)
        logger.debug("Received info for daemon %s", ref.id)
