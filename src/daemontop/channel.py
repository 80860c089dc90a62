"""Connection management for the daemon channel."""

import logging
import threading
from typing import Any, Callable

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect

from daemontop.exceptions import ChannelClosedError
from daemontop.models import ChannelState

logger = logging.getLogger(__name__)

Connector = Callable[..., Any]
OpenCallback = Callable[[], None]
CloseCallback = Callable[[], None]
MessageCallback = Callable[[str | bytes], None]


class Transport:
    """
    Owned handle for one WebSocket connection.

    Connects and reads on its own daemon thread so that neither opening nor
    receiving ever blocks the caller. Every event is reported back to the
    owning ConnectionManager, which decides whether it is still current.
    """

    def __init__(
        self,
        manager: "ConnectionManager",
        url: str,
        connector: Connector,
        open_timeout: float,
        close_timeout: float,
    ) -> None:
        self._manager = manager
        self._url = url
        self._connector = connector
        self._open_timeout = open_timeout
        self._close_timeout = close_timeout
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._connection: Any = None
        self._state = ChannelState.CONNECTING
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name="DaemonChannel",
        )

    @property
    def url(self) -> str:
        """The endpoint this transport connects to."""
        return self._url

    @property
    def state(self) -> ChannelState:
        """Current state of this transport."""
        with self._lock:
            return self._state

    @property
    def is_open(self) -> bool:
        """Check if the connection is established and not closed."""
        return self.state is ChannelState.OPEN

    def start(self) -> None:
        """Start connecting in the background."""
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        """Wait for the reader thread to finish."""
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

    def send_text(self, text: str) -> None:
        """
        Write one text frame.

        Raises:
            ChannelClosedError: If the transport is not open or the write fails.
        """
        with self._lock:
            connection = self._connection if self._state is ChannelState.OPEN else None
        if connection is None:
            raise ChannelClosedError(f"Channel to {self._url} is not open")
        try:
            connection.send(text)
        except (ConnectionClosed, OSError) as e:
            raise ChannelClosedError(f"Channel to {self._url} dropped: {e}") from e

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            self._state = ChannelState.CLOSED
            connection = self._connection
            self._connection = None
        if connection is not None:
            self._close_connection(connection)

    def _close_connection(self, connection: Any) -> None:
        try:
            connection.close()
        except (WebSocketException, OSError) as e:
            logger.debug("Error while closing channel to %s: %s", self._url, e)

    def _run(self) -> None:
        """Connect, then deliver frames until the connection ends."""
        try:
            connection = self._connector(
                self._url,
                open_timeout=self._open_timeout,
                close_timeout=self._close_timeout,
            )
        except (WebSocketException, OSError) as e:
            logger.info("Channel to %s could not be opened: %s", self._url, e)
            self._finish()
            return

        with self._lock:
            closed_while_connecting = self._closed.is_set()
            if not closed_while_connecting:
                self._connection = connection
                self._state = ChannelState.OPEN
        if closed_while_connecting:
            self._close_connection(connection)
            return

        logger.info("Channel to %s connected", self._url)
        self._manager._handle_open(self)

        try:
            while not self._closed.is_set():
                raw = connection.recv()
                try:
                    self._manager._handle_message(self, raw)
                except Exception:
                    logger.exception("Failed to handle message on channel to %s", self._url)
        except ConnectionClosed as e:
            logger.info("Channel to %s closed: %s", self._url, e)
        except OSError as e:
            logger.info("Channel to %s dropped: %s", self._url, e)
        finally:
            self._finish()

    def _finish(self) -> None:
        with self._lock:
            already_closed = self._closed.is_set()
            self._closed.set()
            self._state = ChannelState.CLOSED
            self._connection = None
        if not already_closed:
            self._manager._handle_close(self)


class ConnectionManager:
    """
    Owns the single transport of the daemon channel.

    `open()` always replaces the current transport, so at most one connection
    is ever live. Closing detaches the lifecycle callbacks from the old
    transport in the same step: anything it still receives is dropped.
    Reconnecting after an unexpected close is left to the caller.
    """

    def __init__(
        self,
        url: str,
        connector: Connector | None = None,
        open_timeout: float = 10.0,
        close_timeout: float = 2.0,
    ) -> None:
        """
        Initialize the ConnectionManager.

        Args:
            url: WebSocket endpoint of the daemon channel.
            connector: Factory returning a connection with send/recv/close.
                Defaults to websockets' synchronous client.
            open_timeout: Seconds allowed for the opening handshake.
            close_timeout: Seconds allowed for the closing handshake.
        """
        self._url = url
        self._connector = connector or connect
        self._open_timeout = open_timeout
        self._close_timeout = close_timeout
        # Reentrant: callbacks run under the lock and may send
        self._lock = threading.RLock()
        self._transport: Transport | None = None
        self._on_open: OpenCallback | None = None
        self._on_close: CloseCallback | None = None
        self._on_message: MessageCallback | None = None

    @property
    def url(self) -> str:
        """The channel endpoint."""
        return self._url

    @property
    def transport(self) -> Transport | None:
        """The current transport handle, if any."""
        with self._lock:
            return self._transport

    @property
    def state(self) -> ChannelState:
        """State of the current transport, CLOSED when there is none."""
        with self._lock:
            transport = self._transport
        return transport.state if transport is not None else ChannelState.CLOSED

    @property
    def is_open(self) -> bool:
        """Check if the channel is open."""
        return self.state is ChannelState.OPEN

    def set_callbacks(
        self,
        on_open: OpenCallback | None = None,
        on_close: CloseCallback | None = None,
        on_message: MessageCallback | None = None,
    ) -> None:
        """Register the opened, closed and message-received callbacks."""
        with self._lock:
            self._on_open = on_open
            self._on_close = on_close
            self._on_message = on_message

    def open(self) -> Transport:
        """
        Establish a new transport, closing any existing one first.

        Returns:
            The new transport handle, initially CONNECTING.
        """
        with self._lock:
            previous = self._transport
            transport = Transport(
                self,
                self._url,
                self._connector,
                self._open_timeout,
                self._close_timeout,
            )
            self._transport = transport
        if previous is not None:
            logger.debug("Replacing channel transport")
            previous.close()
        transport.start()
        return transport

    def close(self) -> None:
        """Tear down the current transport; no-op when there is none."""
        with self._lock:
            transport = self._transport
            self._transport = None
        if transport is not None:
            transport.close()
            logger.info("Channel to %s closed by client", self._url)

    def _is_current(self, transport: Transport) -> bool:
        return transport is self._transport

    def _handle_open(self, transport: Transport) -> None:
        with self._lock:
            if self._is_current(transport) and self._on_open is not None:
                self._on_open()

    def _handle_message(self, transport: Transport, raw: str | bytes) -> None:
        with self._lock:
            if not self._is_current(transport) or not transport.is_open:
                logger.debug("Dropping message from detached transport")
                return
            if self._on_message is not None:
                self._on_message(raw)

    def _handle_close(self, transport: Transport) -> None:
        with self._lock:
            if not self._is_current(transport):
                return
            self._transport = None
            if self._on_close is not None:
                self._on_close()
