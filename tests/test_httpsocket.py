import socket
import threading

import pytest

from vpljail.httpsocket import (
    HEADERS_SIZE_LIMIT,
    HttpSocket,
    SSLContextProvider,
    SSLSetupError,
    SSLSocket,
    parse_cookies,
    parse_header,
    parse_headers,
    parse_request_line,
)
from vpljail.util import HttpError, HttpStatus


@pytest.fixture
def pair():
    left, right = socket.socketpair()
    yield left, right
    left.close()
    right.close()


def test_parse_request_line_relative_url():
    request = parse_request_line("GET /run?x=1 HTTP/1.1")
    assert request.method == "GET"
    assert request.url == "/run?x=1"
    assert request.version == "HTTP/1.1"
    assert request.protocol == ""
    assert request.path == "/run"
    assert request.query_string == "x=1"


def test_parse_request_line_absolute_url():
    request = parse_request_line("POST http://example.com/a/b?q=1 HTTP/1.0")
    assert request.protocol == "http"
    assert request.path == "/a/b"
    assert request.query_string == "q=1"


def test_parse_request_line_rejects_bad_line():
    with pytest.raises(HttpError) as info:
        parse_request_line("GET /only-two")
    assert info.value.code == HttpStatus.BAD_REQUEST


def test_parse_header_uppercases_name():
    assert parse_header("  Content-Type:  text/plain") == ("CONTENT-TYPE", "text/plain")


def test_parse_header_rejects_missing_colon():
    with pytest.raises(HttpError) as info:
        parse_header("no colon here")
    assert info.value.code == HttpStatus.BAD_REQUEST


def test_parse_cookies_pairs():
    assert parse_cookies("a=1; b=2") == {"a": "1", "b": "2"}


def test_parse_cookies_repeated_is_error():
    with pytest.raises(HttpError) as info:
        parse_cookies("a=1; a=2")
    assert info.value.code == HttpStatus.BAD_REQUEST


def test_parse_headers_skips_leading_blank_lines():
    request = parse_headers("\r\n\r\nGET / HTTP/1.1\r\nHost: example.com\r\nCookie: k=v\r\n\r\n")
    assert request.method == "GET"
    assert request.headers["HOST"] == "example.com"
    assert request.cookies == {"k": "v"}


def test_read_headers_and_body(pair):
    left, right = pair
    raw = b"GET /run?x=1 HTTP/1.1\r\nHost: example.com\r\nCookie: VPL_web=token\r\n\r\n"
    right.sendall(raw + b"body")
    conn = HttpSocket(left)
    conn.read_headers()
    assert conn.request.method == "GET"
    assert conn.header("host") == "example.com"
    assert conn.header("missing") == ""
    assert conn.cookie("VPL_web") == "token"
    assert conn.raw_headers() == raw
    assert conn.header_size() == len(raw)
    assert conn.receive() == b"body"
    assert conn.is_secure() is False


def test_receive_sized(pair):
    left, right = pair
    right.sendall(b"GET / HTTP/1.1\r\n\r\n")
    conn = HttpSocket(left)
    conn.read_headers()
    right.sendall(b"abcdef")
    assert conn.receive(6) == b"abcdef"


def test_receive_detects_peer_close(pair):
    left, right = pair
    right.sendall(b"GET / HTTP/1.1\r\n\r\n")
    conn = HttpSocket(left)
    conn.read_headers()
    right.close()
    assert conn.receive() == b""
    assert conn.is_closed() is True


def test_headers_too_large(pair):
    left, right = pair
    payload = b"a" * (HEADERS_SIZE_LIMIT + 10)
    sender = threading.Thread(target=right.sendall, args=(payload,), daemon=True)
    sender.start()
    conn = HttpSocket(left)
    with pytest.raises(HttpError) as info:
        conn.receive()
    assert info.value.code == HttpStatus.REQUEST_ENTITY_TOO_LARGE
    sender.join(timeout=5)


def test_incomplete_headers_time_out(pair):
    left, right = pair
    right.sendall(b"GET / HTTP/1.1\r\n")
    conn = HttpSocket(left)
    conn.socket_timeout = 0.1
    with pytest.raises(HttpError) as info:
        conn.receive()
    assert info.value.code == HttpStatus.REQUEST_TIMEOUT


def test_send_delivers_bytes(pair):
    left, right = pair
    conn = HttpSocket(left)
    conn.send(b"hello")
    assert right.recv(100) == b"hello"
    assert conn.is_write_buffered() is False


def test_send_after_close_is_ignored(pair):
    left, _right = pair
    conn = HttpSocket(left)
    conn.close()
    conn.close()
    conn.send(b"x")
    assert conn.is_closed() is True
    assert conn.is_write_buffered() is False


def test_wait_reports_idle_and_activity(pair):
    left, right = pair
    conn = HttpSocket(left)
    assert conn.wait(10) is True
    right.sendall(b"x")
    assert conn.wait(200) is False


def test_provider_without_files_has_no_context(tmp_path):
    provider = SSLContextProvider(str(tmp_path / "cert.pem"), str(tmp_path / "key.pem"))
    assert provider.context() is None


def test_provider_with_bad_files_raises(tmp_path):
    cert = tmp_path / "cert.pem"
    key = tmp_path / "key.pem"
    cert.write_text("not a certificate")
    key.write_text("not a key")
    with pytest.raises(SSLSetupError):
        SSLContextProvider(str(cert), str(key))


def test_ssl_socket_requires_context(pair, tmp_path):
    left, _right = pair
    provider = SSLContextProvider(str(tmp_path / "cert.pem"), str(tmp_path / "key.pem"))
    with pytest.raises(SSLSetupError):
        SSLSocket(left, provider)