import os
import select
import socket

import pytest

from vpljail.redirector import (
    RedirectorState,
    TerminalBatchRedirector,
    TerminalRedirector,
    VNCRedirector,
    WebServerRedirector,
    events_to_string,
    parse_server_address,
)
from vpljail.websocket import FrameType

CUT_TEXT = b"\n=============== output cut to 1Mb =============\n"


class FakeWebSocket:
    def __init__(self):
        self.pair = socket.socketpair()
        self.queue = []
        self.sent = []
        self.closed = False
        self.close_calls = 0

    def fileno(self):
        return self.pair[0].fileno()

    def is_read_buffered(self):
        return bool(self.queue)

    def receive(self):
        return self.queue.pop(0) if self.queue else b""

    def send(self, data, frame_type=FrameType.TEXT):
        self.sent.append((bytes(data), frame_type))

    def is_closed(self):
        return self.closed

    def close(self, text=""):
        self.close_calls += 1
        self.closed = True


class FakeClient(FakeWebSocket):
    def __init__(self, headers):
        super().__init__()
        self.headers = headers

    def raw_headers(self):
        return self.headers

    def send(self, data, nonblocking=False):
        self.sent.append(bytes(data))


def _listener():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    server.settimeout(5)
    return server


def test_events_to_string():
    assert events_to_string(0) == "()"
    assert events_to_string(select.POLLIN) == "(POLLIN )"
    assert events_to_string(select.POLLIN | select.POLLHUP) == "(POLLIN POLLHUP )"


def test_parse_server_address():
    assert parse_server_address("127.0.0.1:8080") == ("127.0.0.1", 8080)
    assert parse_server_address("127.1.2.3:80") == ("127.1.2.3", 80)


@pytest.mark.parametrize("address", ["10.0.0.1:80", "localhost:80", "127.0.0.1"])
def test_parse_server_address_rejects(address):
    with pytest.raises(ValueError):
        parse_server_address(address)


def test_add_output_and_cut():
    red = TerminalBatchRedirector(-1)
    red.add_output("abc")
    assert red.output() == b"abc"
    assert red.output_size() == 3
    assert not red.is_output_buffer_full()
    first = b"a" * 60 * 1024
    second = b"b" * 60 * 1024
    red = TerminalBatchRedirector(-1)
    red.add_output(first)
    red.add_output(second)
    out = red.output()
    half = 25 * 1024
    assert out == first[:half] + CUT_TEXT + second[-half:]
    assert red.is_output_buffer_full()
    assert not red.is_silent()


def test_batch_bad_fd_is_error():
    red = TerminalBatchRedirector(-1)
    assert red.is_active()
    red.advance()
    assert red.is_error()
    assert not red.is_active()


def test_batch_collects_output():
    read_fd, write_fd = os.pipe()
    try:
        os.write(write_fd, b"hello")
        os.close(write_fd)
        red = TerminalBatchRedirector(read_fd)
        for _ in range(20):
            if not red.is_active():
                break
            red.advance()
        assert red.output() == b"hello"
        assert not red.is_active()
    finally:
        os.close(read_fd)


def test_batch_stop_ends():
    read_fd, write_fd = os.pipe()
    try:
        red = TerminalBatchRedirector(read_fd)
        red.advance()
        assert red.state == RedirectorState.CONNECTED
        red.stop()
        red.advance()
        assert red.state == RedirectorState.END
    finally:
        os.close(read_fd)
        os.close(write_fd)


def test_terminal_relays_both_ways():
    program, peer = socket.socketpair()
    ws = FakeWebSocket()
    try:
        red = TerminalRedirector(program.fileno(), ws)
        peer.sendall(b"out")
        for _ in range(10):
            red.advance()
            if ws.sent:
                break
        assert ws.sent[0] == (b"out", FrameType.TEXT)
        ws.queue.append(b"in")
        red.advance()
        peer.settimeout(5)
        assert peer.recv(10) == b"in"
        peer.close()
        for _ in range(10):
            red.advance()
            if not red.is_active():
                break
        assert red.state == RedirectorState.END
        assert ws.closed
    finally:
        program.close()


def test_terminal_stop_sends_messages():
    program, peer = socket.socketpair()
    ws = FakeWebSocket()
    try:
        red = TerminalRedirector(program.fileno(), ws)
        red.add_message("jail note")
        red.stop()
        red.advance()
        assert (b"jail note", FrameType.TEXT) in ws.sent
        assert red.state == RedirectorState.END
        assert ws.close_calls == 1
    finally:
        program.close()
        peer.close()


def test_vnc_relay():
    server = _listener()
    ws = FakeWebSocket()
    try:
        red = VNCRedirector(ws, server.getsockname()[1])
        red.advance()
        assert red.state == RedirectorState.CONNECTED
        conn, _ = server.accept()
        conn.settimeout(5)
        conn.sendall(b"RFB 003.008\n")
        for _ in range(10):
            red.advance()
            if ws.sent:
                break
        assert ws.sent[0] == (b"RFB 003.008\n", FrameType.BINARY)
        ws.queue.append(b"client")
        red.advance()
        assert conn.recv(100) == b"client"
        ws.closed = True
        red.advance()
        assert red.state == RedirectorState.END
        conn.close()
    finally:
        server.close()


def test_web_server_sends_headers():
    server = _listener()
    headers = b"GET / HTTP/1.1\r\nHost: example.com\r\n\r\n"
    client = FakeClient(headers)
    try:
        port = server.getsockname()[1]
        red = WebServerRedirector(client, f"127.0.0.1:{port}")
        red.advance()
        assert red.state == RedirectorState.CONNECTED
        conn, _ = server.accept()
        conn.settimeout(5)
        for _ in range(10):
            red.advance()
            if not red.output_size():
                break
        assert conn.recv(1000) == headers
        conn.sendall(b"HTTP/1.1 200 OK\r\n\r\n")
        for _ in range(10):
            red.advance()
            if client.sent:
                break
        assert client.sent[0] == b"HTTP/1.1 200 OK\r\n\r\n"
        conn.close()
        for _ in range(10):
            red.advance()
            if not red.is_active():
                break
        assert red.state == RedirectorState.END
        assert client.closed
    finally:
        server.close()


def test_web_server_bad_address_is_error():
    client = FakeClient(b"")
    red = WebServerRedirector(client, "192.168.0.1:80")
    red.advance()
    assert red.is_error()