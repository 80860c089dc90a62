"""Envelope routing over the daemon channel."""

import logging
from typing import Any, Callable, Mapping

from daemontop.channel import ConnectionManager
from daemontop.exceptions import ChannelClosedError, ProtocolError
from daemontop.models import Envelope

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], None]


class MessageRouter:
    """
    Serializes outbound envelopes and dispatches inbound ones by action.

    Actions without a registered handler are ignored so that servers can
    introduce new message types. A malformed message or a failing handler
    only costs that one message; the channel stays open.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        on_open: Callable[[], None] | None = None,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self._manager = manager
        self._handlers: dict[str, Handler] = {}
        self._on_open = on_open
        self._on_close = on_close
        manager.set_callbacks(
            on_open=self._opened,
            on_close=self._closed,
            on_message=self.on_message,
        )

    @property
    def manager(self) -> ConnectionManager:
        """The connection manager this router writes to."""
        return self._manager

    def register(self, action: str, handler: Handler) -> None:
        """Register the handler for an action, replacing any previous one."""
        self._handlers[action] = handler

    def unregister(self, action: str) -> None:
        """Remove the handler for an action, if any."""
        self._handlers.pop(action, None)

    def send(self, action: str, payload: Mapping[str, Any]) -> None:
        """
        Send `{action, data: payload}` over the open transport.

        Raises:
            ChannelClosedError: If no transport is open.
        """
        transport = self._manager.transport
        if transport is None or not transport.is_open:
            raise ChannelClosedError(f"Cannot send {action}: channel is not open")
        transport.send_text(Envelope(action=action, data=dict(payload)).to_json())

    def on_message(self, raw: str | bytes) -> None:
        """Parse an inbound frame and hand its data to the registered handler."""
        try:
            envelope = Envelope.from_json(raw)
        except ProtocolError as e:
            logger.warning("Discarding malformed message: %s", e)
            return

        handler = self._handlers.get(envelope.action)
        if handler is None:
            logger.debug("Ignoring message with unknown action %s", envelope.action)
            return

        try:
            handler(envelope.data)
        except ProtocolError as e:
            logger.warning("Discarding %s message: %s", envelope.action, e)
        except Exception:
            logger.exception("Handler for %s failed", envelope.action)

    def _opened(self) -> None:
        logger.debug("Router notified of open channel")
        if self._on_open is not None:
            self._on_open()

    def _closed(self) -> None:
        logger.debug("Router notified of closed channel")
        if self._on_close is not None:
            self._on_close()
