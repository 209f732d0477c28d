"""HTTP request parsing and buffered client sockets, plain and TLS."""

from __future__ import annotations

import logging
import re
import select
import socket
import ssl
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from .util import HttpError, HttpStatus, file_exists, get_line, time_of_file_modification

logger = logging.getLogger(__name__)

NET_BUFFER_SIZE = 32 * 1024
HEADERS_SIZE_LIMIT = 64 * 1024
SOCKET_TIMEOUT = 5.0
SOCKET_REQUEST_TIMEOUT = 60.0
REQUEST_MAX_SIZE = 128 * 1024 * 1024

_POLL_INTERVAL = 0.01
_END_OF_HEADERS = b"\r\n\r\n"

_REQUEST_LINE = re.compile(r"^([^ ]+) ([^ ]+) ([^ ]+)\Z", re.DOTALL)
_HEADER = re.compile(r"^[ \t]*([^ \t:]+):[ \t]*(.*)\Z", re.DOTALL)
_URL = re.compile(r"^([a-zA-Z]+)?(://[^/]+)?([^?]*)\??(.*)\Z", re.DOTALL)
_COOKIE = re.compile(r"([^=]+)=([^;]+)(; )?", re.DOTALL)

_T = TypeVar("_T")


class SSLSetupError(Exception):
    """No usable TLS context could be built from the certificate files."""


@dataclass
class HttpRequest:
    """The request line, headers and cookies of one HTTP request."""

    method: str = ""
    url: str = ""
    version: str = ""
    protocol: str = ""
    path: str = ""
    query_string: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    cookies: dict[str, str] = field(default_factory=dict)


def parse_request_line(line: str) -> HttpRequest:
    """Parse 'METHOD URL VERSION' and split the URL into its parts."""
    logger.debug('Request line :"%s"', line)
    match = _REQUEST_LINE.search(line)
    if not match:
        raise HttpError(HttpStatus.BAD_REQUEST, "Erroneous request line", line)
    method, url, version = match.groups()
    url_match = _URL.search(url)
    if not url_match:
        raise HttpError(HttpStatus.BAD_REQUEST, "Erroneous URL", url)
    return HttpRequest(
        method=method,
        url=url,
        version=version,
        protocol=url_match.group(1) or "",
        path=url_match.group(3) or "",
        query_string=url_match.group(4) or "",
    )


def parse_header(line: str) -> tuple[str, str]:
    """Return (upper-cased name, value) of a 'Name: value' header line."""
    logger.info('Header :"%s"', line)
    match = _HEADER.search(line)
    if not match:
        logger.debug("No match header: %s", line)
        raise HttpError(HttpStatus.BAD_REQUEST, "Erroneous header", line)
    return match.group(1).upper(), match.group(2)


def parse_cookies(value: str) -> dict[str, str]:
    """Parse a Cookie header value; repeated names are an error."""
    logger.info('Cookie :"%s"', value)
    cookies: dict[str, str] = {}
    remaining = value
    count = 0
    while match := _COOKIE.search(remaining):
        count += 1
        cookies[match.group(1)] = match.group(2)
        remaining = remaining[len(match.group(0)):]
    if len(cookies) != count:
        logger.debug("Bad cookies (repeated): %s", value)
        raise HttpError(HttpStatus.BAD_REQUEST, "Erroneous cookie (repeated)", value)
    return cookies


def parse_headers(text: str) -> HttpRequest:
    """Parse a request line and the headers that follow, up to an empty line."""
    logger.debug("processHeaders: %s", text)
    line, offset = get_line(text, 0)
    while not line and offset < len(text):
        line, offset = get_line(text, offset)
    request = parse_request_line(line)
    while True:
        line, offset = get_line(text, offset)
        if not line:
            break
        name, value = parse_header(line)
        request.headers[name] = value
        if name == "COOKIE":
            cookies = parse_cookies(value)
            total = len(request.cookies) + len(cookies)
            request.cookies.update(cookies)
            if len(request.cookies) != total:
                raise HttpError(HttpStatus.BAD_REQUEST, "Erroneous cookie (repeated)", value)
    return request


class HttpSocket:
    """A client connection that reads an HTTP request and buffers traffic."""

    socket_timeout: float = SOCKET_TIMEOUT
    request_timeout: float = SOCKET_REQUEST_TIMEOUT

    def __init__(self, sock: socket.socket, max_data_size: int = REQUEST_MAX_SIZE) -> None:
        self._sock = sock
        self.client_ip = ""
        try:
            peer = sock.getpeername()
        except OSError as exc:
            logger.error("getpeername fail %s", exc)
        else:
            if isinstance(peer, tuple):
                self.client_ip = str(peer[0])
                logger.info("Client: %s", self.client_ip)
        self.max_data_size = max_data_size
        self.request = HttpRequest()
        self._header = b""
        self._read_buffer = b""
        self._write_buffer = b""
        self._closed = False

    def __enter__(self) -> HttpSocket:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def fileno(self) -> int:
        """Return the underlying file descriptor."""
        return self._sock.fileno()

    def read_headers(self) -> None:
        """Read and parse the request headers if not done yet."""
        if not self._header:
            self.receive()

    def header_size(self) -> int:
        """Return the size in bytes of the raw request headers."""
        return len(self._header)

    def raw_headers(self) -> bytes:
        """Return the raw request headers, including the final CRLFCRLF."""
        return self._header

    def header(self, name: str) -> str:
        """Return a header value (case-insensitive name) or ''."""
        return self.request.headers.get(name.upper(), "")

    def cookie(self, name: str) -> str:
        """Return a cookie value or ''."""
        return self.request.cookies.get(name, "")

    def is_read_buffered(self) -> bool:
        return bool(self._read_buffer)

    def is_write_buffered(self) -> bool:
        return bool(self._write_buffer)

    def is_secure(self) -> bool:
        return False

    def is_closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Shut the connection down in both directions (once)."""
        if not self._closed:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._closed = True

    def _readable(self, timeout: float) -> bool:
        return bool(select.select([self._sock], [], [], timeout)[0])

    def _writable(self, timeout: float) -> bool:
        return bool(select.select([], [self._sock], [], timeout)[1])

    def _net_read(self, size: int) -> bytes:
        return self._sock.recv(size)

    def _net_write(self, data: bytes) -> int:
        return self._sock.send(data)

    def _take_read_buffer(self) -> bytes:
        data, self._read_buffer = self._read_buffer, b""
        if data:
            logger.info("Received %d", len(data))
        return data

    def wait(self, msec: int = 50) -> bool:
        """Wait up to msec for activity; True when nothing happened."""
        if self._read_buffer:
            return False
        writers = [self._sock] if self._write_buffer else []
        try:
            readable, writable, _ = select.select([self._sock], writers, [], msec / 1000)
        except OSError:
            return False
        if self._write_buffer and writable:
            self.send(b"")
            return False
        return not readable and not writable

    def send(self, data: bytes, nonblocking: bool = False) -> None:
        """Send data plus anything pending; nonblocking stops when not writable."""
        if self._closed:
            return
        self._write_buffer += data
        size = len(self._write_buffer)
        if not size:
            return
        logger.info("Sending %d to fd %d", size, self.fileno())
        offset = 0
        now = time.monotonic()
        time_limit = now + self.socket_timeout
        full_time_limit = now + self.request_timeout
        while True:
            try:
                ready = self._writable(_POLL_INTERVAL)
            except OSError as exc:
                raise HttpError(HttpStatus.INTERNAL_SERVER_ERROR, "Error poll writing data") from exc
            if not ready and nonblocking:
                break
            now = time.monotonic()
            if now > time_limit or now > full_time_limit:
                logger.error("Socket write timeout")
                raise HttpError(HttpStatus.REQUEST_TIMEOUT, "Socket write timeout")
            if not ready:
                continue
            chunk = self._write_buffer[offset:offset + NET_BUFFER_SIZE]
            try:
                written = self._net_write(chunk)
            except (BlockingIOError, InterruptedError):
                continue
            except OSError as exc:
                raise HttpError(HttpStatus.INTERNAL_SERVER_ERROR, "Socket write data error") from exc
            if written == 0:
                self._closed = True
                break
            offset += written
            time_limit = now + self.socket_timeout
            if offset >= size:
                break
        self._write_buffer = self._write_buffer[offset:]
        logger.info("Send %d", offset)

    def receive(self, size: int = 0) -> bytes:
        """Read data; size 0 returns what is available without waiting.

        Until the request headers have been read, this reads and parses them
        and returns b''.
        """
        if self._closed:
            return self._take_read_buffer()
        if not self._header:
            size = HEADERS_SIZE_LIMIT
        if size > 0:
            logger.info("Receiving until %d bytes", size)
        if size > 0 and self._header and len(self._read_buffer) >= size:
            data = self._read_buffer[:size]
            self._read_buffer = self._read_buffer[size:]
            return data
        now = time.monotonic()
        time_limit = now + self.socket_timeout
        full_time_limit = now + self.request_timeout
        while True:
            try:
                ready = self._readable(_POLL_INTERVAL)
            except OSError as exc:
                logger.info("poll fail reading %s", exc)
                raise HttpError(HttpStatus.INTERNAL_SERVER_ERROR, "Error poll reading data") from exc
            now = time.monotonic()
            if now > time_limit or now > full_time_limit:
                if size == 0:
                    logger.debug("Socket read timeout, closed connection?")
                    return b""
                raise HttpError(HttpStatus.REQUEST_TIMEOUT, "Socket read timeout")
            if not ready:
                if size == 0:
                    break
                continue
            try:
                data = self._net_read(NET_BUFFER_SIZE)
            except (BlockingIOError, InterruptedError):
                continue
            except HttpError:
                raise
            except OSError as exc:
                raise HttpError(HttpStatus.BAD_REQUEST, "Error reading data") from exc
            if not data:
                logger.info("sizeRead==0")
                self._closed = True
                break
            self._read_buffer += data
            if not self._header:
                pos = self._read_buffer.find(_END_OF_HEADERS)
                if pos != -1:
                    end = pos + len(_END_OF_HEADERS)
                    self._header = self._read_buffer[:end]
                    logger.info("Received header %d", end)
                    self.request = parse_headers(self._header.decode("latin-1"))
                    self._read_buffer = self._read_buffer[end:]
                    return b""
                if len(self._read_buffer) > HEADERS_SIZE_LIMIT:
                    raise HttpError(HttpStatus.REQUEST_ENTITY_TOO_LARGE, "Http headers too large")
            elif size == 0 or len(self._read_buffer) >= size:
                break
            time_limit = now + self.socket_timeout
        return self._take_read_buffer()


class SSLContextProvider:
    """Builds a server TLS context and reloads it when the files change."""

    def __init__(
        self,
        cert_file: str,
        key_file: str,
        cipher_list: str = "",
        cipher_suites: str = "",
    ) -> None:
        self.cert_file = cert_file
        self.key_file = key_file
        self.cipher_list = cipher_list
        self.cipher_suites = cipher_suites
        self._context: ssl.SSLContext | None = None
        self._key_mtime = 0
        self._cert_mtime = 0
        self.refresh()

    def context(self) -> ssl.SSLContext | None:
        """Return the current context, or None when none could be loaded."""
        return self._context

    def refresh(self) -> None:
        """Load the context, or reload it when a file's mtime changed."""
        if not file_exists(self.cert_file, True) or not file_exists(self.key_file, True):
            logger.error("SSL unavailable due certificate or private key file not found.")
            logger.error("Certfile: '%s'", self.cert_file)
            logger.error("Keyfile: '%s'", self.key_file)
            return
        if (
            self._key_mtime == time_of_file_modification(self.key_file)
            and self._cert_mtime == time_of_file_modification(self.cert_file)
        ):
            return
        try:
            context = self._build()
        except (ssl.SSLError, OSError, ValueError) as exc:
            logger.error("SSL context creation fail: %s", exc)
            if self._context is None:
                raise SSLSetupError(str(exc)) from exc
            return
        self._key_mtime = time_of_file_modification(self.key_file)
        self._cert_mtime = time_of_file_modification(self.cert_file)
        if self._context is not None:
            logger.warning("SSL certificate and private key files renew and reloaded.")
        else:
            logger.info("SSL certificate and private key files loaded.")
        self._context = context

    def _build(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.load_cert_chain(self.cert_file, self.key_file)
        if self.cipher_list:
            context.set_ciphers(self.cipher_list)
        if self.cipher_suites:
            raise ValueError("TLS 1.3 cipher suites selection is not available")
        return context


class SSLSocket(HttpSocket):
    """An HttpSocket speaking TLS, accepted with a handshake timeout."""

    def __init__(
        self,
        sock: socket.socket,
        provider: SSLContextProvider,
        max_data_size: int = REQUEST_MAX_SIZE,
    ) -> None:
        context = provider.context()
        if context is None:
            logger.error("No SSL context available: certificate o private key file access error?")
            raise SSLSetupError("No SSL context available")
        super().__init__(sock, max_data_size)
        sock.setblocking(False)
        self._sock = context.wrap_socket(sock, server_side=True, do_handshake_on_connect=False)
        self._ssl_call("accept", self._sock.do_handshake, None)

    def is_secure(self) -> bool:
        return True

    def _readable(self, timeout: float) -> bool:
        if self._sock.pending():
            return True
        return super()._readable(timeout)

    def _net_read(self, size: int) -> bytes:
        return self._ssl_call("read", lambda: self._sock.recv(size), b"")

    def _net_write(self, data: bytes) -> int:
        return self._ssl_call("write", lambda: self._sock.send(data), 0)

    def _ssl_call(self, action: str, operation: Callable[[], _T], closed_value: _T) -> _T:
        message = f"Error in SSL {action} "
        deadline = time.monotonic() + self.socket_timeout
        while True:
            try:
                return operation()
            except ssl.SSLWantReadError:
                readers, writers = [self._sock], []
            except ssl.SSLWantWriteError:
                readers, writers = [], [self._sock]
            except ssl.SSLZeroReturnError:
                return closed_value
            except (ssl.SSLEOFError, ssl.SSLSyscallError) as exc:
                logger.info("SSL socket closed unexpected: %s %s", message, exc)
                return closed_value
            except ssl.SSLError as exc:
                raise HttpError(HttpStatus.INTERNAL_SERVER_ERROR, message + str(exc)) from exc
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HttpError(HttpStatus.REQUEST_TIMEOUT, message + ": timeout")
            try:
                ready = select.select(readers, writers, [], remaining)
            except OSError as exc:
                raise HttpError(HttpStatus.INTERNAL_SERVER_ERROR, message + ": poll error") from exc
            if not (ready[0] or ready[1]) or time.monotonic() > deadline:
                raise HttpError(HttpStatus.REQUEST_TIMEOUT, message + ": timeout")