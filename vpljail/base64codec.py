"""Lenient Base64 encoding and decoding used for websocket payloads."""

from __future__ import annotations

_ALPHABET = b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
_VALUES = {char: index for index, char in enumerate(_ALPHABET)}


def _as_bytes(data: bytes | bytearray | str) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def encode(data: bytes | bytearray | str) -> bytes:
    """Encode data as padded Base64."""
    raw = _as_bytes(data)
    out = bytearray()
    for start in range(0, len(raw), 3):
        chunk = raw[start:start + 3]
        padded = chunk + b"\0" * (3 - len(chunk))
        value = int.from_bytes(padded, "big")
        out += bytes(_ALPHABET[(value >> shift) & 0x3F] for shift in (18, 12, 6, 0))
    remainder = len(raw) % 3
    if remainder == 2:
        out[-1:] = b"="
    elif remainder == 1:
        out[-2:] = b"=="
    return bytes(out)


def decode(data: bytes | bytearray | str) -> bytes:
    """Decode Base64, ignoring any character outside the alphabet.

    The output length is derived from the count of alphabet characters and
    '=' padding characters; a non-positive length yields empty bytes.
    """
    raw = _as_bytes(data)
    values = [_VALUES[char] for char in raw if char in _VALUES]
    padding = raw.count(b"=")
    size = (len(values) + padding) // 4 * 3 - padding
    if size <= 0:
        return b""
    out = bytearray()
    bits = 0
    nbits = 0
    for value in values:
        bits = (bits << 6) | value
        nbits += 6
        if nbits >= 8:
            nbits -= 8
            out.append((bits >> nbits) & 0xFF)
            bits &= (1 << nbits) - 1
        if len(out) >= size:
            break
    if len(out) < size:
        out += b"\0" * (size - len(out))
    return bytes(out[:size])