"""Shared fixtures and helpers for ovpnctl tests.

The tests need no running OpenVPN daemon.  Wire-level behavior is
exercised against ``FakeDaemon``, a scripted management interface
listening on 127.0.0.1 in a background thread, and framing edge cases
against ``ChunkedSocket``, which hands out pre-cut recv() chunks.

Usage:
    pytest tests/ -v
"""

import os
import socket
import sys
import threading

import pytest

# Add the client library to the path so tests can import ovpnctl
_client_dir = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
    "client",
)
if _client_dir not in sys.path:
    sys.path.insert(0, _client_dir)


BANNER = (b">INFO:OpenVPN Management Interface Version 3 -- "
          b"type 'help' for more info\r\n")

STATUS_2 = (
    "TITLE,OpenVPN 2.5.9 x86_64-pc-linux-gnu [SSL (OpenSSL)]\r\n"
    "TIME,2024-03-01 10:00:00,1709287200\r\n"
    "HEADER,CLIENT_LIST,Common Name,Real Address,Virtual Address,"
    "Virtual IPv6 Address,Bytes Received,Bytes Sent,Connected Since,"
    "Connected Since (time_t),Username,Client ID,Peer ID,"
    "Data Channel Cipher\r\n"
    "CLIENT_LIST,alice,198.51.100.7:51234,10.8.0.6,,1024,2048,"
    "2024-03-01 09:00:00,1709283600,alice,0,0,AES-256-GCM\r\n"
    "CLIENT_LIST,bob,203.0.113.9:40001,10.8.0.10,,300,400,"
    "2024-03-01 09:30:00,1709285400,UNDEF,1,1,AES-256-GCM\r\n"
    "HEADER,ROUTING_TABLE,Virtual Address,Common Name,Real Address,"
    "Last Ref,Last Ref (time_t)\r\n"
    "ROUTING_TABLE,10.8.0.6,alice,198.51.100.7:51234,"
    "2024-03-01 09:59:50,1709287190\r\n"
    "ROUTING_TABLE,10.8.0.10,bob,203.0.113.9:40001,"
    "2024-03-01 09:59:40,1709287180\r\n"
    "GLOBAL_STATS,Max bcast/mcast queue length,3\r\n"
    "END\r\n"
).encode("utf-8")


# ---------------------------------------------------------------------------
# Fake sockets
# ---------------------------------------------------------------------------

class ChunkedSocket:
    """Socket stand-in whose recv() returns scripted chunks.

    Items may be bytes (returned as-is) or exceptions (raised).  Once the
    script is exhausted recv() reports EOF.  sendall() data is recorded.
    """

    def __init__(self, chunks=()):
        self.chunks = list(chunks)
        self.sent = bytearray()
        self.closed = False

    def recv(self, bufsize):
        if not self.chunks:
            return b""
        item = self.chunks.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def sendall(self, data):
        self.sent.extend(data)

    def close(self):
        self.closed = True


class FakeDaemon:
    """A scripted OpenVPN management interface on 127.0.0.1.

    Accepts one connection, sends the banner, then answers each command
    line with the next entry of *responses*.  An entry of None closes the
    connection instead of answering.  With close_after=True the
    connection is dropped once the script runs out; otherwise remaining
    lines (e.g. "quit") are recorded until the client disconnects.

    Every command line received is appended to ``received``.
    """

    def __init__(self, responses, banner=BANNER, delay=0.0,
                 close_after=False):
        self.responses = list(responses)
        self.banner = banner
        self.delay = delay
        self.close_after = close_after
        self.received = []
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(1)
        self._listener.settimeout(10)
        self.host, self.port = self._listener.getsockname()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        try:
            conn, _addr = self._listener.accept()
        except OSError:
            return
        with conn:
            conn.settimeout(10)
            reader = conn.makefile("rb")
            try:
                if self.banner:
                    conn.sendall(self.banner)
                for response in self.responses:
                    line = reader.readline()
                    if not line:
                        return
                    self.received.append(line.decode("utf-8").rstrip("\r\n"))
                    if response is None:
                        return
                    if self.delay:
                        threading.Event().wait(self.delay)
                    conn.sendall(response)
                if self.close_after:
                    return
                while True:
                    line = reader.readline()
                    if not line:
                        return
                    self.received.append(line.decode("utf-8").rstrip("\r\n"))
            except OSError:
                return
            finally:
                reader.close()

    def stop(self):
        self._listener.close()
        self._thread.join(timeout=5)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_daemon():
    """Factory fixture: ``fake_daemon(responses, **kwargs)``.

    Every daemon started through the factory is stopped on teardown.
    """
    daemons = []

    def start(responses, **kwargs):
        daemon = FakeDaemon(responses, **kwargs)
        daemons.append(daemon)
        return daemon

    yield start
    for daemon in daemons:
        daemon.stop()


@pytest.fixture
def socket_pair():
    """Yield ``(client_sock, server_sock)`` from socket.socketpair().

    Both ends carry a 5-second timeout so a framing bug cannot hang the
    test run.
    """
    a, b = socket.socketpair()
    a.settimeout(5)
    b.settimeout(5)
    yield a, b
    a.close()
    b.close()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep OVPNCTL_* variables from the developer's shell out of tests."""
    for name in ("OVPNCTL_HOST", "OVPNCTL_PORT", "OVPNCTL_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
