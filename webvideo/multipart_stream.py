"""multipart/x-mixed-replace streaming with back-pressure on slow clients."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from http import HTTPStatus

from webvideo.http import Connection, build_reply

DEFAULT_BOUNDARY = "boundarydonotcross"
MAX_FOOTER_AGE = 0.5


def format_stamp(seconds: float) -> str:
    """Format a timestamp in seconds as sent in X-Timestamp headers."""
    return f"{seconds:.6f}"


@dataclass(frozen=True)
class PendingFooter:
    """A part footer that may not have reached the client yet."""

    timestamp: float
    handle: int


class MultipartStream:
    """Writes image parts to a connection, skipping parts while it lags."""

    def __init__(
        self,
        get_now: Callable[[], float],
        connection: Connection,
        boundary: str = DEFAULT_BOUNDARY,
        max_queue_size: int = 1,
    ):
        self._get_now = get_now
        self.connection = connection
        self.boundary = boundary
        self.max_queue_size = max_queue_size
        self._pending: deque[PendingFooter] = deque()

    def send_initial_header(self) -> None:
        self.connection.write(
            build_reply(
                HTTPStatus.OK,
                [
                    ("Connection", "close"),
                    ("Server", "web_video_server"),
                    (
                        "Cache-Control",
                        "no-cache, no-store, must-revalidate, pre-check=0, post-check=0, max-age=0",
                    ),
                    ("Pragma", "no-cache"),
                    ("Content-type", f"multipart/x-mixed-replace;boundary={self.boundary}"),
                    ("Access-Control-Allow-Origin", "*"),
                ],
            )
        )
        self.connection.write(f"--{self.boundary}\r\n")

    def send_part_header(self, time: float, content_type: str, payload_size: int) -> None:
        self.connection.write(
            build_reply(
                None,
                [
                    ("Content-type", content_type),
                    ("X-Timestamp", format_stamp(time)),
                    ("Content-Length", str(payload_size)),
                ],
            )
        )

    def send_part_footer(self, time: float) -> None:
        handle = self.connection.write(f"\r\n--{self.boundary}\r\n")
        if self.max_queue_size > 0:
            self._pending.append(PendingFooter(time, handle))

    def send_part(self, time: float, content_type: str, data) -> bool:
        """Send one part unless the client is busy; return whether it was sent."""
        if self.is_busy():
            return False
        payload = data if isinstance(data, bytes) else bytes(data)
        self.send_part_header(time, content_type, len(payload))
        self.connection.write(payload)
        self.send_part_footer(time)
        return True

    def is_busy(self) -> bool:
        """Drop delivered or stale footers, then report whether the queue is full."""
        now = self._get_now()
        while self._pending:
            footer = self._pending[0]
            delivered = not self.connection.is_pending(footer.handle)
            if delivered or now - footer.timestamp > MAX_FOOTER_AGE:
                self._pending.popleft()
            else:
                break
        return not (self.max_queue_size == 0 or len(self._pending) < self.max_queue_size)