"""Wire protocol helpers for the ovpnctl client.

Handles line framing, response collection and command sending for the
OpenVPN management interface.  Responses are framed by sentinels rather
than lengths:

  - multi-line replies end with a literal ``END`` line
  - single-line replies start with ``SUCCESS:`` or ``ERROR:``
  - lines starting with ``>`` are real-time notifications and may arrive
    at any point, including in the middle of a reply
"""

import enum
import logging
import socket
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

ENCODING = "utf-8"

END_MARKER = "END"
ERROR_PREFIX = "ERROR:"
SUCCESS_PREFIX = "SUCCESS:"
NOTIFICATION_PREFIX = ">"

RECV_SIZE = 4096

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------

class ManagementError(Exception):
    """Base exception for everything raised by ovpnctl."""


class TransportError(ManagementError):
    """Raised on socket failures, timeouts, and framing violations.

    Always fatal for the connection: the position in the response stream
    is unknown afterwards.
    """


class TruncatedResponseError(TransportError):
    """Raised when the connection closes before a response sentinel."""


class ServerError(ManagementError):
    """Raised when the daemon answers with an ``ERROR:`` line.

    The connection remains usable for the next command.

    Attributes:
        message: The text after "ERROR:" (e.g. "unknown command").
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__("ERROR: {}".format(message))


class ParseError(ManagementError):
    """Raised when a successful response cannot be interpreted."""


class UnrecognizedFormatError(ParseError):
    """Raised when a status response contains no known section.

    Attributes:
        lines: The response lines, for callers that want to inspect them.
    """

    def __init__(self, lines: Sequence[str]) -> None:
        self.lines = tuple(lines)
        super().__init__(
            "Unrecognized status format ({} lines, no known section)".format(
                len(self.lines)))


class ClientClosedError(ManagementError):
    """Raised when a command is issued on a closed client."""

    def __init__(self) -> None:
        super().__init__("Client is closed")


# ---------------------------------------------------------------------------
# Response framing
# ---------------------------------------------------------------------------

class Outcome(enum.Enum):
    """How a response block was terminated."""
    SUCCESS = "success"
    ERROR = "error"
    TRUNCATED = "truncated"


@dataclass(frozen=True)
class ResponseBlock:
    """The lines belonging to one command's response.

    Attributes:
        outcome: How the block ended.
        lines: Data lines in arrival order, sentinel excluded.  Always
            empty for ERROR blocks.
        message: Daemon text after ``ERROR:`` or ``SUCCESS:``; empty for
            END-terminated and truncated blocks.
        notifications: Real-time ``>`` lines seen while collecting.
    """
    outcome: Outcome
    lines: Tuple[str, ...] = ()
    message: str = ""
    notifications: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    def raise_for_outcome(self) -> None:
        """Raise ServerError or TruncatedResponseError unless successful."""
        if self.outcome is Outcome.ERROR:
            raise ServerError(self.message)
        if self.outcome is Outcome.TRUNCATED:
            raise TruncatedResponseError(
                "Connection closed before end of response "
                "({} lines received)".format(len(self.lines)))


class LineReader:
    """Buffered line reader over a connected socket.

    Bytes received beyond the current line stay buffered for the next
    call, so lines split across several recv() calls (or several lines
    arriving in one) are handled transparently.

    max_line_length caps the size of a single buffered line.  It is off
    (None) by default: the management interface has no line limit.
    """

    def __init__(self, sock: socket.socket, encoding: str = ENCODING,
                 max_line_length: Optional[int] = None) -> None:
        self._sock = sock
        self.encoding = encoding
        self.max_line_length = max_line_length
        self._buf = bytearray()
        self._eof = False

    def next_line(self) -> Optional[str]:
        """Return the next line without its terminator.

        Strips the trailing LF and an optional CR before it.  Returns None
        on a clean EOF (connection closed with nothing buffered).  Raises
        TransportError on socket errors and timeouts, or when the
        connection closes mid-line.
        """
        while True:
            idx = self._buf.find(b"\n")
            if idx >= 0:
                self._check_length(idx)
                raw = bytes(self._buf[:idx])
                del self._buf[:idx + 1]
                if raw.endswith(b"\r"):
                    raw = raw[:-1]
                return raw.decode(self.encoding, errors="replace")

            if self._eof:
                if self._buf:
                    partial = bytes(self._buf)
                    self._buf.clear()
                    raise TransportError(
                        "Connection closed mid-line (partial data: {!r})".format(
                            partial))
                return None

            self._check_length(len(self._buf))

            try:
                chunk = self._sock.recv(RECV_SIZE)
            except socket.timeout as e:
                raise TransportError(
                    "Timed out waiting for data from server") from e
            except OSError as e:
                raise TransportError("Socket error: {}".format(e)) from e

            if not chunk:
                self._eof = True
            else:
                self._buf.extend(chunk)

    def _check_length(self, length):
        # type: (int) -> None
        if self.max_line_length is not None and length > self.max_line_length:
            raise TransportError(
                "Line exceeds {} bytes".format(self.max_line_length))


def collect_response(reader: LineReader) -> ResponseBlock:
    """Read lines until the response to one command is complete.

    Returns a ResponseBlock whose outcome is:
      - SUCCESS on an ``END`` line (lines hold the payload) or on a
        ``SUCCESS:`` line (message holds the text after the marker)
      - ERROR on an ``ERROR:`` line; payload read so far is discarded and
        message holds the text after the marker
      - TRUNCATED when the connection closes before any sentinel

    Raises TransportError if the underlying read fails.

    Examples:
      status  -> (SUCCESS, ["TITLE,...", "HEADER,CLIENT_LIST,...", ...], "")
      pid     -> (SUCCESS, [], "pid=1234")
      bogus   -> (ERROR, [], "unknown command, enter 'help' for more options")
    """
    lines = []  # type: List[str]
    notifications = []  # type: List[str]
    while True:
        line = reader.next_line()
        if line is None:
            return ResponseBlock(Outcome.TRUNCATED, tuple(lines), "",
                                 tuple(notifications))
        if line.startswith(NOTIFICATION_PREFIX):
            logger.debug("Notification: %s", line)
            notifications.append(line)
            continue
        if line == END_MARKER:
            return ResponseBlock(Outcome.SUCCESS, tuple(lines), "",
                                 tuple(notifications))
        if line.startswith(ERROR_PREFIX):
            return ResponseBlock(Outcome.ERROR, (),
                                 line[len(ERROR_PREFIX):].strip(),
                                 tuple(notifications))
        if line.startswith(SUCCESS_PREFIX):
            return ResponseBlock(Outcome.SUCCESS, tuple(lines),
                                 line[len(SUCCESS_PREFIX):].strip(),
                                 tuple(notifications))
        lines.append(line)


def encode_command(command: str, encoding: str = ENCODING) -> bytes:
    """Return the wire form of a command: one encoded line ending in LF.

    Raises ValueError for a command spanning several lines, and
    UnicodeEncodeError (a ValueError) when it cannot be encoded.
    """
    if "\n" in command or "\r" in command:
        raise ValueError(
            "Command must be a single line: {!r}".format(command))
    return (command + "\n").encode(encoding)


def send_line(sock: socket.socket, data: bytes) -> None:
    """Write an already encoded command line, wrapping write errors."""
    try:
        sock.sendall(data)
    except socket.timeout as e:
        raise TransportError("Timed out sending command") from e
    except OSError as e:
        raise TransportError("Socket error: {}".format(e)) from e


def send_command(sock: socket.socket, command: str,
                 encoding: str = ENCODING) -> None:
    """Send a command line to the server.

    Appends LF and encodes with the given encoding.  Raises
    TransportError if the write fails.
    """
    send_line(sock, encode_command(command, encoding))
