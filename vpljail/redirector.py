"""Relays of data between a running program and its client connection.

Each redirector is a small state machine advanced by repeated calls to
``advance``.  The batch terminal variant collects program output, the
terminal variant bridges a pseudo terminal and a websocket, the VNC variant
bridges a local VNC server and a websocket, and the web server variant
bridges a local HTTP server and an HTTP client connection.
"""

from __future__ import annotations

import logging
import os
import re
import select
import socket
import time
from abc import ABC, abstractmethod
from enum import IntEnum

from .httpsocket import NET_BUFFER_SIZE, HttpSocket
from .util import atoi, fdblock
from .websocket import FrameType, WebSocket

logger = logging.getLogger(__name__)

MAX_READ = NET_BUFFER_SIZE
POLL_BAD = select.POLLERR | select.POLLHUP | select.POLLNVAL
POLL_READ = select.POLLIN | select.POLLPRI
POLL_TIMEOUT_MS = 100
BUFFER_SIZE_LIMIT = 50 * 1024
CONNECT_TIMEOUT = 10.0

_CUT_TEXT = b"\n=============== output cut to 1Mb =============\n"
_LIMIT_MESSAGE = b"\nJail: program output has been limited to 1MB\n"
_SILENT_MESSAGE = b"\nProgram terminated with no output\n"

_EVENT_NAMES = (
    "POLLIN", "POLLPRI", "POLLOUT", "POLLERR", "POLLHUP", "POLLNVAL",
    "POLLRDNORM", "POLLRDBAND", "POLLWRNORM", "POLLWRBAND",
)

_SERVER_ADDRESS = re.compile(r"(127\.[0-9]+\.[0-9]+\.[0-9]+):([0-9]+)")


class RedirectorState(IntEnum):
    """States of a redirector."""

    BEGIN = 0
    CONNECTING = 1
    CONNECTED = 2
    ENDING = 3
    END = 4
    ERROR = 5


def events_to_string(events: int) -> str:
    """Return poll event flags as readable text, e.g. '(POLLIN )'."""
    names = "".join(
        f"{name} "
        for name in _EVENT_NAMES
        if getattr(select, name, 0) and events & getattr(select, name, 0)
    )
    return f"({names})"


def parse_server_address(address: str) -> tuple[str, int]:
    """Return (ip, port) of a local server address '127.X.X.X:PORT'."""
    match = _SERVER_ADDRESS.search(address)
    if not match:
        raise ValueError(f"Bad local web server address {address}")
    return match.group(1), atoi(match.group(2))


def _as_bytes(data: bytes | bytearray | str) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


def _poll(entries: list[tuple[int, int]], timeout_ms: int) -> list[int]:
    """Poll (fd, events) pairs and return each fd's returned events."""
    poller = select.poll()
    for fd, events in entries:
        poller.register(fd, events)
    results: dict[int, int] = {}
    for fd, events in poller.poll(timeout_ms):
        results[fd] = results.get(fd, 0) | events
    return [results.get(fd, 0) for fd, _ in entries]


def _new_reusable_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM, 0)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    except OSError as exc:
        logger.error("setsockopt(SO_REUSEADDR) failed: %s", exc)
    if hasattr(socket, "SO_REUSEPORT"):
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        except OSError as exc:
            logger.error("setsockopt(SO_REUSEPORT) failed: %s", exc)
    return sock


class Redirector(ABC):
    """Common buffers and state handling of all redirectors."""

    def __init__(self) -> None:
        self.state = RedirectorState.ERROR
        self._timeout = 0.0
        self._message_buf = b""
        self._program_buf = b""
        self._net_buf = b""
        self._buffer_size_limit = BUFFER_SIZE_LIMIT
        self._no_output = False
        self._limit_reported = False

    def stop(self) -> None:
        """Ask the redirector to finish."""
        self.state = RedirectorState.ENDING

    @abstractmethod
    def advance(self) -> None:
        """Run the state machine until its state stops changing."""

    def is_error(self) -> bool:
        return self.state == RedirectorState.ERROR

    def is_active(self) -> bool:
        return self.state not in (RedirectorState.ERROR, RedirectorState.END)

    def is_silent(self) -> bool:
        return self._no_output

    def is_output_buffer_full(self) -> bool:
        return len(self._net_buf) >= self._buffer_size_limit

    def add_output(self, text: bytes | str) -> None:
        """Append program output, keeping head and tail when it grows too big."""
        data = _as_bytes(text)
        if not data:
            return
        self._no_output = False
        if len(self._net_buf) + len(data) > 2 * self._buffer_size_limit:
            overflow = self._net_buf + data
            half = self._buffer_size_limit // 2
            self._net_buf = overflow[:half] + _CUT_TEXT + overflow[len(overflow) - half:]
            logger.info("Program output has been cut to 1MB")
            if not self._limit_reported:
                self.add_message(_LIMIT_MESSAGE)
                self._limit_reported = True
        else:
            self._net_buf += data

    def add_message(self, text: bytes | str) -> None:
        """Append a jail message to be shown after the program output."""
        self._message_buf += _as_bytes(text)

    def output(self) -> bytes:
        """Return the collected program output."""
        return self._net_buf

    def output_size(self) -> int:
        return len(self._net_buf)

    def _log_transition(self, old: RedirectorState) -> None:
        if old != self.state:
            logger.info("New redirector state %d => %d", int(old), int(self.state))


class TerminalBatchRedirector(Redirector):
    """Collects the output of a program running on a pseudo terminal."""

    def __init__(self, fd: int) -> None:
        super().__init__()
        self.state = RedirectorState.BEGIN
        self._fd = fd

    def advance(self) -> None:
        while True:
            old = self.state
            self._step()
            self._log_transition(old)
            if old == self.state:
                break

    def _step(self) -> None:
        state = self.state
        if state == RedirectorState.BEGIN:
            if self._fd < 0:
                self.state = RedirectorState.ERROR
                return
            fdblock(self._fd, False)
            self.state = RedirectorState.CONNECTED
        elif state == RedirectorState.CONNECTING:
            self.state = RedirectorState.CONNECTED
        elif state == RedirectorState.CONNECTED:
            try:
                (revents,) = _poll([(self._fd, POLL_READ)], POLL_TIMEOUT_MS)
            except OSError:
                self.state = RedirectorState.ERROR
                return
            if not revents:
                return
            if revents & POLL_READ:
                try:
                    data = os.read(self._fd, MAX_READ)
                except OSError as exc:
                    logger.info("program output read error: %s", exc)
                    self.state = RedirectorState.ERROR
                    return
                if not data:
                    logger.info("program output end")
                    self.state = RedirectorState.END
                    return
                self._net_buf += data
                return
            if revents & POLL_BAD:
                logger.info("Program end or I/O error: %d %s", revents, events_to_string(revents))
                self.state = RedirectorState.ERROR
        elif state == RedirectorState.ENDING:
            self.state = RedirectorState.END
        else:
            time.sleep(0.05)


class TerminalRedirector(Redirector):
    """Bridges a program's pseudo terminal with a websocket client."""

    def __init__(self, fd: int, websocket: WebSocket) -> None:
        super().__init__()
        self.state = RedirectorState.BEGIN
        self._fd = fd
        self._ws = websocket

    def advance(self) -> None:
        while True:
            old = self.state
            self._step()
            self._log_transition(old)
            if old == self.state:
                break

    def _step(self) -> None:
        state = self.state
        if state == RedirectorState.BEGIN:
            if self._fd < 0:
                self.state = RedirectorState.ERROR
                return
            fdblock(self._fd, False)
            self.state = RedirectorState.CONNECTED
        elif state == RedirectorState.CONNECTING:
            self.state = RedirectorState.CONNECTED
        elif state == RedirectorState.CONNECTED:
            self._relay()
        elif state == RedirectorState.ENDING:
            if self.is_silent():
                logger.info("Program terminated with no output")
                self._ws.send(_SILENT_MESSAGE)
            if self._message_buf:
                logger.info("Add jail message to output")
                self._ws.send(self._message_buf)
                self._message_buf = b""
            self.state = RedirectorState.END
        elif self._ws.is_closed():
            time.sleep(0.05)
        else:
            self._ws.close()

    def _relay(self) -> None:
        ws = self._ws
        if ws.is_read_buffered():
            self._program_buf += ws.receive()
        program_events = POLL_READ | select.POLLOUT if self._program_buf else POLL_READ
        try:
            program, client = _poll(
                [(self._fd, program_events), (ws.fileno(), POLL_READ)], POLL_TIMEOUT_MS
            )
        except OSError as exc:
            logger.info("poll error %s", exc)
            self.state = RedirectorState.ERROR
            return
        if not program and not client:
            return
        logger.info("poll: program %d %s", program, events_to_string(program))
        if client & POLL_READ:
            self._program_buf += ws.receive()
        if program & POLL_READ and not self.is_output_buffer_full():
            try:
                data = os.read(self._fd, MAX_READ)
            except OSError as exc:
                logger.info("program output read error: %s", exc)
                data = b""
            if not data:
                self.state = RedirectorState.ENDING
                return
            ws.send(data)
        if self._program_buf and program & select.POLLOUT:
            try:
                written = os.write(self._fd, self._program_buf)
            except OSError as exc:
                logger.info("Write to program error: %s", exc)
                written = 0
            if written <= 0:
                self.state = RedirectorState.ENDING
                return
            self._program_buf = self._program_buf[written:]
        if program & POLL_BAD and not program & POLL_READ:
            logger.info("Program end or I/O error: %d %s", program, events_to_string(program))
            self.state = RedirectorState.ENDING


class _SocketBridge(Redirector):
    """Shared relay between a local TCP server and a client connection."""

    def __init__(self) -> None:
        super().__init__()
        self.state = RedirectorState.BEGIN
        self._server: socket.socket | None = None
        self._timeout = time.time() + CONNECT_TIMEOUT

    def advance(self) -> None:
        while True:
            old = self.state
            self._step()
            self._log_transition(old)
            if old == self.state:
                break

    def _step(self) -> None:
        state = self.state
        if state == RedirectorState.BEGIN:
            try:
                self._server = _new_reusable_socket()
            except OSError as exc:
                logger.error("socket creation error: %s", exc)
                self.state = RedirectorState.ERROR
                return
            self.state = RedirectorState.CONNECTING
        elif state == RedirectorState.CONNECTING:
            self._connect()
        elif state == RedirectorState.CONNECTED:
            self._relay()
        elif state == RedirectorState.ENDING:
            self.state = RedirectorState.END
        elif self._client_closed():
            time.sleep(0.05)
        else:
            self._close_client()

    def _target(self) -> tuple[str, int]:
        raise NotImplementedError

    def _on_connected(self) -> None:
        """Hook run once the local server connection is up."""

    def _client_closed(self) -> bool:
        raise NotImplementedError

    def _close_client(self) -> None:
        raise NotImplementedError

    def _client_fileno(self) -> int:
        raise NotImplementedError

    def _client_read_buffered(self) -> bool:
        raise NotImplementedError

    def _client_receive(self) -> bytes:
        raise NotImplementedError

    def _client_send(self, data: bytes) -> None:
        raise NotImplementedError

    def _connect(self) -> None:
        try:
            address = self._target()
        except ValueError as exc:
            logger.error("%s", exc)
            self.state = RedirectorState.ERROR
            return
        assert self._server is not None
        try:
            self._server.connect(address)
        except OSError as exc:
            logger.info("socket connect to (%s:%d) error: %s", address[0], address[1], exc)
            time.sleep(0.1)
        else:
            self._on_connected()
            self.state = RedirectorState.CONNECTED
            return
        if self._timeout < time.time():
            logger.error("socket connect timeout")
            self.state = RedirectorState.ERROR

    def _relay(self) -> None:
        if self._client_closed():
            logger.info("Closed by client")
            self.state = RedirectorState.END
            return
        if self._client_read_buffered():
            self._net_buf += self._client_receive()
        assert self._server is not None
        server_events = POLL_READ | select.POLLOUT if self._net_buf else POLL_READ
        try:
            server, client = _poll(
                [(self._server.fileno(), server_events), (self._client_fileno(), POLL_READ)],
                POLL_TIMEOUT_MS,
            )
        except OSError as exc:
            logger.info("poll error %s", exc)
            self.state = RedirectorState.ERROR
            return
        if not server and not client:
            return
        logger.info("poll: server socket %d %s", server, events_to_string(server))
        logger.info("poll: client socket %d %s", client, events_to_string(client))
        if client & POLL_READ:
            self._net_buf += self._client_receive()
        if server & POLL_READ:
            try:
                data = self._server.recv(MAX_READ)
            except OSError as exc:
                logger.info("Receive from server error: %s", exc)
                data = b""
            if not data:
                logger.info("Receive from server ended")
                self.state = RedirectorState.ENDING
                return
            self._client_send(data)
        if self._net_buf and server & select.POLLOUT:
            try:
                written = self._server.send(self._net_buf)
            except OSError as exc:
                logger.info("Send to server error: %s", exc)
                written = 0
            if written <= 0:
                self.state = RedirectorState.ENDING
                return
            self._net_buf = self._net_buf[written:]
        if server & POLL_BAD and not server & POLL_READ:
            logger.info("Server end or I/O error: %d %s", server, events_to_string(server))
            self.state = RedirectorState.ENDING


class VNCRedirector(_SocketBridge):
    """Bridges a local VNC server with a websocket client."""

    def __init__(self, websocket: WebSocket, port: int) -> None:
        super().__init__()
        self._ws = websocket
        self.port = port

    def _target(self) -> tuple[str, int]:
        return "127.0.0.1", self.port

    def _client_closed(self) -> bool:
        return self._ws.is_closed()

    def _close_client(self) -> None:
        self._ws.close()

    def _client_fileno(self) -> int:
        return self._ws.fileno()

    def _client_read_buffered(self) -> bool:
        return self._ws.is_read_buffered()

    def _client_receive(self) -> bytes:
        return self._ws.receive()

    def _client_send(self, data: bytes) -> None:
        self._ws.send(data, FrameType.BINARY)

    def advance(self) -> None:
        super().advance()


class WebServerRedirector(_SocketBridge):
    """Bridges a local web server with an HTTP client connection."""

    def __init__(self, client: HttpSocket, server_address: str) -> None:
        super().__init__()
        self._client = client
        self.server_address = server_address

    def _target(self) -> tuple[str, int]:
        return parse_server_address(self.server_address)

    def _on_connected(self) -> None:
        self._net_buf = self._client.raw_headers()

    def _client_closed(self) -> bool:
        return self._client.is_closed()

    def _close_client(self) -> None:
        self._client.close()

    def _client_fileno(self) -> int:
        return self._client.fileno()

    def _client_read_buffered(self) -> bool:
        return self._client.is_read_buffered()

    def _client_receive(self) -> bytes:
        return self._client.receive()

    def _client_send(self, data: bytes) -> None:
        self._client.send(data)

    def advance(self) -> None:
        super().advance()