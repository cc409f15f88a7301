"""ovpnctl -- Python client library for the OpenVPN management interface.

Provides ManagementClient for issuing commands to a running OpenVPN
daemon over its management socket, a parser for the "status" report,
and an exception hierarchy for transport, server and parse failures.

Usage::

    with ManagementClient.connect("localhost", 5555, timeout=10) as mgmt:
        report = mgmt.get_status()
        for client in report.clients:
            print(client.common_name, client.bytes_received)
"""

import enum
import logging
import socket
import threading
from typing import Callable, Optional

from .protocol import (
    ClientClosedError, ENCODING, ManagementError, Outcome, ParseError,
    ResponseBlock, ServerError, TransportError, TruncatedResponseError,
    UnrecognizedFormatError, LineReader, collect_response, encode_command,
    send_command, send_line,
)
from .status import (
    ClientRecord, RouteEntry, RowError, StatusReport, parse_status,
)


__all__ = [
    "ClientClosedError",
    "ClientRecord",
    "ClientState",
    "ManagementClient",
    "ManagementError",
    "Outcome",
    "ParseError",
    "ResponseBlock",
    "RouteEntry",
    "RowError",
    "ServerError",
    "StatusReport",
    "TransportError",
    "TruncatedResponseError",
    "UnrecognizedFormatError",
    "parse_status",
]

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 5555

logger = logging.getLogger(__name__)


class ClientState(enum.Enum):
    """Lifecycle of a ManagementClient."""
    IDLE = "idle"
    AWAITING_RESPONSE = "awaiting_response"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# Client class
# ---------------------------------------------------------------------------

class ManagementClient:
    """A client bound to one OpenVPN management connection.

    Wraps an already-connected socket, or use connect() to open one::

        with ManagementClient.connect("localhost", 5555) as mgmt:
            print(mgmt.get_status().clients)

    Only one command is in flight at a time; concurrent callers sharing
    an instance are serialized by an internal lock.  Any transport
    failure closes the client for good, since the position in the
    response stream can no longer be trusted.  Reconnect by creating a
    new client.

    on_notification, if given, receives every real-time ``>`` line (the
    connect banner included) read while waiting for a response.
    """

    def __init__(
        self,
        sock: socket.socket,
        encoding: str = ENCODING,
        on_notification: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._sock = sock
        self.encoding = encoding
        self.on_notification = on_notification
        self._reader = LineReader(sock, encoding)
        self._lock = threading.Lock()
        self._state = ClientState.IDLE

    @classmethod
    def connect(
        cls,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
        **kwargs,
    ) -> "ManagementClient":
        """Open a TCP connection to the management interface.

        timeout bounds every later read and write; connect_timeout bounds
        only the connection attempt.  None means block indefinitely.
        Raises TransportError if the connection cannot be made.
        """
        try:
            sock = socket.create_connection((host, port), connect_timeout)
        except OSError as e:
            raise TransportError(
                "Could not connect to {}:{}: {}".format(host, port, e)) from e
        sock.settimeout(timeout)
        logger.debug("Connected to %s:%d", host, port)
        return cls(sock, **kwargs)

    # -- Context manager ---------------------------------------------------

    def __enter__(self) -> "ManagementClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore
        self.close()
        return None

    def __repr__(self) -> str:
        return "ManagementClient({})".format(self._state.value)

    # -- Connection lifecycle ----------------------------------------------

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is ClientState.CLOSED

    def close(self) -> None:
        """Send quit (best-effort) and close the socket."""
        with self._lock:
            if self._state is ClientState.CLOSED:
                return
            self._state = ClientState.CLOSED
            # quit gets no reply; the daemon just drops the session
            try:
                send_command(self._sock, "quit", self.encoding)
            except TransportError:
                pass
            try:
                self._sock.close()
            except OSError:
                pass

    def _fail(self) -> None:
        """Mark the client closed after a transport failure."""
        self._state = ClientState.CLOSED
        try:
            self._sock.close()
        except OSError:
            pass

    # -- Commands ----------------------------------------------------------

    def send_command(self, command: str) -> ResponseBlock:
        """Send a command and collect its response.

        Returns the ResponseBlock on success.  Raises ServerError if the
        daemon answers ``ERROR:`` (the client stays usable),
        TruncatedResponseError if the connection closes mid-response,
        TransportError on socket failures (both close the client), and
        ClientClosedError if the client is already closed.  A command
        that is not a single encodable line raises ValueError before any
        I/O.

        Notifications are delivered after the lock is released, so an
        on_notification callback may issue commands of its own.
        """
        data = encode_command(command, self.encoding)
        with self._lock:
            if self._state is ClientState.CLOSED:
                raise ClientClosedError()
            self._state = ClientState.AWAITING_RESPONSE
            logger.debug("Sending command: %s", command)
            try:
                send_line(self._sock, data)
                block = collect_response(self._reader)
            except TransportError:
                logger.warning("Connection lost during %r", command)
                self._fail()
                raise
            except BaseException:
                # unread reply bytes may remain; the stream is unusable
                logger.warning("Command %r interrupted, closing", command)
                self._fail()
                raise

            if block.outcome is Outcome.TRUNCATED:
                logger.warning("Connection closed during %r", command)
                self._fail()
            else:
                self._state = ClientState.IDLE

        if self.on_notification is not None:
            for line in block.notifications:
                self.on_notification(line)
        block.raise_for_outcome()
        return block

    def get_status(self, version: Optional[int] = None) -> StatusReport:
        """Send status (or "status <version>") and parse the report.

        Raises UnrecognizedFormatError if the response holds no known
        status section; the client stays usable.  Other errors are as for
        send_command().
        """
        cmd = "status"
        if version is not None:
            cmd += " {}".format(version)
        block = self.send_command(cmd)
        report = parse_status(block.lines)
        logger.debug("Status: %d clients, %d routes",
                     len(report.clients), len(report.routes))
        return report
