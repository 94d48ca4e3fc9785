"""HTTP request parsing, reply building and buffered client connections."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from http import HTTPStatus
from urllib.parse import parse_qsl, urlsplit

_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})


@dataclass
class HttpRequest:
    """A parsed HTTP request line with its headers and query parameters."""

    method: str
    path: str
    query: str = ""
    version: str = "HTTP/1.0"
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, str] = field(default_factory=dict)

    @property
    def uri(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path

    def get_param(self, name: str, default=""):
        """Return a query parameter converted to the type of ``default``.

        Raises ValueError when the value cannot be converted.
        """
        value = self.params.get(name)
        if value is None:
            return default
        if isinstance(default, bool):
            return value.strip().lower() in _TRUE_WORDS
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        return value

    def has_param(self, name: str) -> bool:
        return name in self.params


def parse_request(data: bytes | bytearray | str) -> HttpRequest:
    """Parse the head of an HTTP request; raise ValueError if it is malformed."""
    text = bytes(data).decode("latin-1") if isinstance(data, (bytes, bytearray)) else data
    lines = []
    for line in text.splitlines():
        if not line:
            break
        lines.append(line)
    if not lines:
        raise ValueError("empty request")

    parts = lines[0].split()
    if len(parts) != 3 or not parts[2].startswith("HTTP/"):
        raise ValueError(f"malformed request line: {lines[0]!r}")
    method, target, version = parts

    url = urlsplit(target)
    params: dict[str, str] = {}
    for key, value in parse_qsl(url.query, keep_blank_values=True):
        params.setdefault(key, value)

    headers: dict[str, str] = {}
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if not sep or not name.strip():
            raise ValueError(f"malformed header line: {line!r}")
        headers[name.strip().lower()] = value.strip()

    return HttpRequest(
        method=method.upper(),
        path=url.path or "/",
        query=url.query,
        version=version,
        headers=headers,
        params=params,
    )


def _to_bytes(data) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    if isinstance(data, (bytes, bytearray, memoryview)):
        return bytes(data)
    try:
        return bytes(memoryview(data))
    except TypeError:
        raise TypeError(f"cannot write {type(data).__name__} to a connection") from None


class Connection:
    """An outgoing byte stream to one client.

    Every write returns a handle; the handle stays pending until its bytes
    have been passed to the sink. With ``autoflush`` writes go out at once.
    """

    def __init__(self, sink, autoflush: bool = True):
        sendall = getattr(sink, "sendall", None)
        self._sink_write = sendall if sendall is not None else sink.write
        self._autoflush = autoflush
        self._pending: deque[tuple[int, bytes]] = deque()
        self._last_handle = 0
        self._flushed = 0
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data) -> int:
        """Queue ``data`` for the client and return its handle."""
        payload = _to_bytes(data)
        with self._lock:
            if self._closed:
                raise ConnectionError("connection is closed")
            self._last_handle += 1
            handle = self._last_handle
            self._pending.append((handle, payload))
        if self._autoflush:
            self.flush()
        return handle

    def flush(self) -> None:
        """Pass every queued chunk to the sink, in order."""
        with self._lock:
            while self._pending:
                handle, payload = self._pending[0]
                try:
                    self._sink_write(payload)
                except OSError:
                    self._close_locked()
                    raise
                self._pending.popleft()
                self._flushed = handle

    def is_pending(self, handle: int) -> bool:
        with self._lock:
            return handle > self._flushed

    def close(self) -> None:
        with self._lock:
            self._close_locked()

    def _close_locked(self) -> None:
        self._closed = True
        self._pending.clear()
        self._flushed = self._last_handle


def build_reply(status, headers: Mapping[str, str] | Iterable[tuple[str, str]] = ()) -> bytes:
    """Build a reply head; with ``status`` None only the header block is built."""
    items = headers.items() if isinstance(headers, Mapping) else headers
    lines = []
    if status is not None:
        code = HTTPStatus(status)
        lines.append(f"HTTP/1.0 {code.value} {code.phrase}")
    lines.extend(f"{name}: {value}" for name, value in items)
    return ("".join(line + "\r\n" for line in lines) + "\r\n").encode("latin-1")


def stock_reply(status) -> bytes:
    """A complete reply with a small HTML page naming the status."""
    code = HTTPStatus(status)
    body = (
        f"<html><head><title>{code.phrase}</title></head>"
        f"<body><h1>{code.value} {code.phrase}</h1></body></html>"
    ).encode("utf-8")
    head = build_reply(code, [("Content-Length", str(len(body))), ("Content-Type", "text/html")])
    return head + body