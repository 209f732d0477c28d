"""WebSocket (RFC 6455) framing over an HTTP client connection.

Besides plain binary and text frames, the "base64" sub-protocol used by
noVNC is supported: binary payloads travel as Base64 text frames.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from enum import IntEnum

from . import base64codec
from .httpsocket import HttpSocket
from .util import VPL_SETIWASHERECOOKIE

logger = logging.getLogger(__name__)

_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"
_SHORT_LIMIT = 125
_MEDIUM_LIMIT = 0xFFFF


class FrameType(IntEnum):
    """WebSocket frame opcodes, plus a marker for malformed frames."""

    CONTINUATION = 0x00
    TEXT = 0x01
    BINARY = 0x02
    CONNECTION_CLOSE = 0x08
    PING = 0x09
    PONG = 0x0A
    ERROR = 0xFF


class WebSocketProtocolError(ValueError):
    """A received frame cannot be accepted."""


@dataclass(frozen=True)
class DecodedFrame:
    """One decoded frame: its payload, opcode, FIN bit and wire size."""

    payload: bytes
    frame_type: FrameType
    fin: bool
    size: int


def handshake_answer(key: str, requested_protocols: str = "") -> tuple[bytes, bool]:
    """Return the 101 response for a handshake and whether base64 mode is on."""
    if "binary" in requested_protocols:
        protocols = "Sec-WebSocket-Protocol: binary\r\n"
        base64_mode = False
    elif "base64" in requested_protocols:
        protocols = "Sec-WebSocket-Protocol: base64\r\n"
        base64_mode = True
    else:
        protocols = ""
        base64_mode = False
    digest = hashlib.sha1((key + _GUID).encode("latin-1")).digest()
    accept = base64codec.encode(digest).decode("ascii")
    answer = (
        "HTTP/1.1 101 Switching Protocols\r\n"
        "Connection: Upgrade\r\n"
        "Upgrade: websocket\r\n"
        + VPL_SETIWASHERECOOKIE
        + protocols
        + "Sec-WebSocket-Accept: " + accept + "\r\n\r\n"
    )
    return answer.encode("latin-1"), base64_mode


def _layout(data: bytes) -> tuple[int, int, int] | None:
    """Return (control size, mask size, payload size), or None if too short."""
    if len(data) < 2:
        return None
    mask_size = 4 if data[1] & 0x80 else 0
    payload_size = data[1] & 0x7F
    control_size = 2
    if len(data) < control_size + mask_size + payload_size:
        return None
    if payload_size == 126:
        control_size = 4
        payload_size = int.from_bytes(data[2:4], "big")
    elif payload_size == 127:
        control_size = 10
        payload_size = int.from_bytes(data[2:10], "big")
    return control_size, mask_size, payload_size


def frame_size(data: bytes) -> int | None:
    """Return the full wire size of the frame at the start of data.

    None means not enough bytes have arrived to know it.
    """
    layout = _layout(data)
    return None if layout is None else sum(layout)


def is_frame_complete(data: bytes) -> bool:
    """Return True if data starts with a whole frame."""
    size = frame_size(data)
    return size is not None and len(data) >= size


def decode_frame(data: bytes, base64_mode: bool = False) -> DecodedFrame:
    """Decode the masked frame at the start of data.

    In base64 mode a text frame's payload is Base64-decoded and the frame is
    reported as binary.
    """
    layout = _layout(data)
    if layout is None or len(data) < sum(layout):
        raise WebSocketProtocolError("Frame size too large")
    control_size, mask_size, payload_size = layout
    if mask_size == 0:
        raise WebSocketProtocolError("Frame must be masked")
    if data[0] & 0x70:
        raise WebSocketProtocolError("Websocket extensions unsupported")
    fin = bool(data[0] & 0x80)
    try:
        frame_type = FrameType(data[0] & 0x0F)
    except ValueError as exc:
        raise WebSocketProtocolError("Unsupported frame type") from exc
    mask = data[control_size:control_size + 4]
    start = control_size + mask_size
    payload = bytes(
        byte ^ mask[index % 4]
        for index, byte in enumerate(data[start:start + payload_size])
    )
    if base64_mode and frame_type == FrameType.TEXT:
        frame_type = FrameType.BINARY
        payload = base64codec.decode(payload)
    return DecodedFrame(payload, frame_type, fin, start + payload_size)


def encode_frame(
    data: bytes | str,
    frame_type: FrameType = FrameType.TEXT,
    base64_mode: bool = False,
) -> bytes:
    """Build an unmasked, final frame; base64 mode sends binary as text."""
    payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
    if base64_mode and frame_type == FrameType.BINARY:
        payload = base64codec.encode(payload)
        frame_type = FrameType.TEXT
    size = len(payload)
    header = bytearray([0x80 | int(frame_type)])
    if size <= _SHORT_LIMIT:
        header.append(size)
    elif size <= _MEDIUM_LIMIT:
        header.append(126)
        header += size.to_bytes(2, "big")
    else:
        header.append(127)
        header += size.to_bytes(8, "big")
    return bytes(header) + payload


class WebSocket:
    """A server-side websocket over an HttpSocket whose headers were read."""

    def __init__(self, sock: HttpSocket) -> None:
        self._sock = sock
        self._receive_buffer = b""
        self._fragments = b""
        self._close_sent = False
        self._last_type = FrameType.CONTINUATION
        answer, self._base64 = handshake_answer(
            sock.header("Sec-WebSocket-Key"), sock.header("Sec-WebSocket-Protocol")
        )
        sock.send(answer)

    def fileno(self) -> int:
        """Return the underlying file descriptor."""
        return self._sock.fileno()

    def close(self, text: bytes | str = "") -> None:
        """Send a close frame carrying text, only the first time."""
        if not self._close_sent:
            self._sock.send(encode_frame(text, FrameType.CONNECTION_CLOSE, self._base64))
            self._close_sent = True

    def is_read_buffered(self) -> bool:
        return self._sock.is_read_buffered() or bool(self._receive_buffer)

    def is_write_buffered(self) -> bool:
        return self._sock.is_write_buffered()

    def is_closed(self) -> bool:
        return self._sock.is_closed()

    def last_frame_type(self) -> FrameType:
        """Return the type of the last data or control frame received."""
        return self._last_type

    def _fail(self) -> None:
        self.close("Error")
        self._sock.close()

    def receive(self) -> bytes:
        """Read available data and return a complete message, or b''.

        Control frames are answered here: ping gets a pong, close is echoed
        and the connection shut down.
        """
        self._receive_buffer += self._sock.receive()
        if not is_frame_complete(self._receive_buffer):
            return b""
        try:
            frame = decode_frame(self._receive_buffer, self._base64)
        except WebSocketProtocolError as exc:
            logger.info("Websocket frame error: %s", exc)
            self._last_type = FrameType.ERROR
            self._fail()
            return b""
        self._receive_buffer = self._receive_buffer[frame.size:]
        if frame.frame_type != FrameType.CONTINUATION:
            self._last_type = frame.frame_type
        kind = self._last_type
        if kind in (FrameType.TEXT, FrameType.BINARY):
            if not frame.fin:
                self._fragments += frame.payload
                return b""
            message, self._fragments = self._fragments + frame.payload, b""
            return message
        if kind == FrameType.CONNECTION_CLOSE:
            self.close("Bye")
            self._sock.close()
        elif kind == FrameType.PING:
            self._sock.send(encode_frame(b"Hello", FrameType.PONG, self._base64))
        elif kind != FrameType.PONG:
            self._fail()
        return b""

    def send(self, data: bytes | str, frame_type: FrameType = FrameType.TEXT) -> None:
        """Send data as one frame."""
        self._sock.send(encode_frame(data, frame_type, self._base64))

    def wait(self, msec: int = 50) -> bool:
        """Wait up to msec for activity; True when nothing happened."""
        if self._receive_buffer:
            return False
        return self._sock.wait(msec)