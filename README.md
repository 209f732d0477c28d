# vpljail

These are the building blocks for a server that runs untrusted programs in a jail and connects them to a browser. The package covers the parts that sit between the network and the running program.

- `vpljail.util` has the helpers:
  - path and file-name checks (`correct_path`, `correct_file_name`, `path_changed`)
  - jailed file handling (`read_file`, `write_file`, `delete_file`, `create_dir`, `remove_dir`)
  - memory-size parsing (`mem_size_to_bytes`, `mem_size_to_bytes_int`)
  - URL decoding (`url_decode`)
  - UTF-8 cleaning (`clean_utf8`)
  - line splitting (`get_line`)
  - the `HttpError`, `HttpStatus`, `ExitStatus` and `ExecutionLimits` types.
- `vpljail.base64codec` provides a lenient Base64 `encode` and `decode`. The decoder skips characters that are outside the alphabet.
- `vpljail.httpsocket` does the HTTP side:
  - request-line, header and cookie parsing: `parse_request_line`, `parse_header`, `parse_cookies` and `parse_headers`, which return an `HttpRequest`.
  - `HttpSocket` and `SSLSocket`, which read headers and body with timeouts over a plain or TLS connection.
  - `SSLContextProvider`, which builds a server TLS context and reloads it when the certificate or key file changes.
- `vpljail.websocket` does the WebSocket side:
  - RFC 6455 framing: `encode_frame`, `decode_frame`, `frame_size` and `is_frame_complete`.
  - the `handshake_answer`.
  - a `WebSocket` built on an `HttpSocket`, with the binary and base64 sub-protocols.
- `vpljail.redirector` has state machines that move data between a program and its client:
  - `TerminalBatchRedirector` collects the output.
  - `TerminalRedirector` connects a pseudo terminal to a `WebSocket`.
  - `VNCRedirector` connects a local VNC server to a `WebSocket`.
  - `WebServerRedirector` connects a local web server on `127.x.x.x:port` to an `HttpSocket`.

## Installation

```
pip install .
```

The package needs only the standard library at run time. The redirectors use `select.poll` and are meant for Linux.

## Examples

This frames a WebSocket message and reads the size back:

```python
from vpljail.websocket import FrameType, encode_frame, frame_size

frame = encode_frame(b"hello", FrameType.TEXT)
assert frame[0] == 0x81
assert frame_size(frame) == len(frame)
```

This checks paths before touching the file system:

```python
from vpljail.util import correct_path, mem_size_to_bytes

correct_path("src/main.c")      # True
correct_path("../etc/passwd")   # False
mem_size_to_bytes("64M")        # 67108864
```

This parses a request:

```python
from vpljail.httpsocket import parse_headers

request = parse_headers("GET /run?id=1 HTTP/1.1\r\nCookie: a=1; b=2\r\n\r\n")
request.path          # "/run"
request.query_string  # "id=1"
request.cookies       # {"a": "1", "b": "2"}
```

This collects a program's output in batch mode:

```python
from vpljail.redirector import TerminalBatchRedirector

redirector = TerminalBatchRedirector(fd)
while redirector.is_active():
    redirector.advance()
print(redirector.output())
```

## What this package does not do

This is a library. It has:

- no command
- no listening server or daemon
- no request dispatching
- no configuration file handling

It also does not start, limit or jail programs. The caller supplies:

- the accepted sockets
- the pseudo-terminal file descriptors
- the local server addresses
- the TLS certificate and key paths

## Tests

```
pip install ".[test]"
pytest
```