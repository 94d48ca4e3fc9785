"""The HTTP server that lists image topics and streams them to clients."""

from __future__ import annotations

import argparse
import logging
import socketserver
import threading
from collections.abc import Callable
from dataclasses import dataclass
from http import HTTPStatus

from webvideo.http import Connection, HttpRequest, build_reply, parse_request, stock_reply
from webvideo.image_streamer import (
    CAMERA_INFO_TYPE,
    IMAGE_TYPE,
    ImageStreamer,
    ImageStreamerType,
    Node,
)
from webvideo.jpeg_streamers import JpegSnapshotStreamer, MjpegStreamerType
from webvideo.png_streamers import PngStreamerType
from webvideo.ros_compressed_streamer import RosCompressedStreamerType

log = logging.getLogger(__name__)

CLEANUP_INTERVAL = 0.5
_MAX_HEAD_SIZE = 64 * 1024
_NO_CACHE = "no-cache, no-store, must-revalidate, pre-check=0, post-check=0, max-age=0"


@dataclass
class ServerConfig:
    """Settings of the web video server."""

    port: int = 8080
    address: str = "0.0.0.0"
    verbose: bool = True
    publish_rate: float = -1.0
    default_stream_type: str = "mjpeg"


def _topic_advertised(node: Node, topic: str) -> bool:
    for name, types in node.topic_names_and_types():
        if len(types) > 1:
            # topics with more than one type end the search
            break
        if name == topic or (name.startswith("/") and name[1:] == topic):
            return True
    return False


class _TCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, address, web_server: WebVideoServer):
        self.web_server = web_server
        super().__init__(address, _RequestHandler)


class _RequestHandler(socketserver.StreamRequestHandler):
    def handle(self) -> None:
        web: WebVideoServer = self.server.web_server
        head = bytearray()
        while len(head) < _MAX_HEAD_SIZE:
            line = self.rfile.readline(_MAX_HEAD_SIZE)
            if not line:
                break
            head += line
            if line in (b"\r\n", b"\n"):
                break
        if not head:
            return
        connection = Connection(self.connection)
        try:
            request = parse_request(bytes(head))
        except ValueError:
            try:
                connection.write(stock_reply(HTTPStatus.BAD_REQUEST))
            except OSError:
                pass
            return
        web.handle_request(request, connection)
        web._wait_for_streams(connection)
        connection.close()


class WebVideoServer:
    """Routes HTTP requests and keeps the set of live image streams."""

    def __init__(self, node: Node, config: ServerConfig | None = None):
        self.node = node
        self.config = config or ServerConfig()
        self.stream_types: dict[str, ImageStreamerType] = {
            "mjpeg": MjpegStreamerType(),
            "png": PngStreamerType(),
            "ros_compressed": RosCompressedStreamerType(),
        }
        self._routes: dict[str, Callable[[HttpRequest, Connection], bool]] = {
            "/": self.handle_list_streams,
            "/stream": self.handle_stream,
            "/stream_viewer": self.handle_stream_viewer,
            "/snapshot": self.handle_snapshot,
        }
        self._streamers: list[ImageStreamer] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._tcp: _TCPServer | None = None
        self._serving = False
        self.server_address: tuple[str, int] | None = None

    @property
    def streamers(self) -> list[ImageStreamer]:
        with self._lock:
            return list(self._streamers)

    def handle_request(self, request: HttpRequest, connection: Connection) -> bool:
        """Dispatch a request by path; return False if handling it failed."""
        if self.config.verbose:
            log.info("Handling Request: %s", request.uri)
        handler = self._routes.get(request.path)
        try:
            if handler is None:
                connection.write(stock_reply(HTTPStatus.NOT_FOUND))
            else:
                handler(request, connection)
            return True
        except Exception as exc:
            log.warning("Error Handling Request: %s", exc)
            return False

    def _resolve_type(self, request: HttpRequest) -> tuple[str, str]:
        stream_type = request.get_param("type", self.config.default_stream_type)
        topic = request.get_param("topic", "")
        if stream_type == "ros_compressed" and not _topic_advertised(self.node, topic + "/compressed"):
            log.warning("Could not find compressed image topic for %s, falling back to mjpeg", topic)
            stream_type = "mjpeg"
        return stream_type, topic

    def _add(self, streamer: ImageStreamer) -> None:
        streamer.start()
        with self._lock:
            self._streamers.append(streamer)

    def handle_stream(self, request: HttpRequest, connection: Connection) -> bool:
        if request.get_param("type", self.config.default_stream_type) not in self.stream_types:
            connection.write(stock_reply(HTTPStatus.NOT_FOUND))
            return True
        stream_type, _ = self._resolve_type(request)
        self._add(self.stream_types[stream_type].create_streamer(request, connection, self.node))
        return True

    def handle_snapshot(self, request: HttpRequest, connection: Connection) -> bool:
        self._add(JpegSnapshotStreamer(request, connection, self.node))
        return True

    def handle_stream_viewer(self, request: HttpRequest, connection: Connection) -> bool:
        if request.get_param("type", self.config.default_stream_type) not in self.stream_types:
            connection.write(stock_reply(HTTPStatus.NOT_FOUND))
            return True
        stream_type, topic = self._resolve_type(request)
        connection.write(
            build_reply(
                HTTPStatus.OK,
                [("Connection", "close"), ("Server", "web_video_server"), ("Content-type", "text/html;")],
            )
        )
        connection.write(
            f"<html><head><title>{topic}</title></head><body>"
            f"<h1>{topic}</h1>"
            f"{self.stream_types[stream_type].create_viewer(request)}"
            "</body></html>"
        )
        return True

    def handle_list_streams(self, request: HttpRequest, connection: Connection) -> bool:
        image_topics: list[str] = []
        camera_info_topics: list[str] = []
        for name, types in self.node.topic_names_and_types():
            if len(types) > 1:
                # topics with more than one type end the listing
                break
            topic_type = types[0]
            log.debug("topic_type: %s", topic_type)
            if topic_type == IMAGE_TYPE:
                image_topics.append(name)
            elif topic_type == CAMERA_INFO_TYPE:
                camera_info_topics.append(name)

        connection.write(
            build_reply(
                HTTPStatus.OK,
                [
                    ("Connection", "close"),
                    ("Server", "web_video_server"),
                    ("Cache-Control", _NO_CACHE),
                    ("Pragma", "no-cache"),
                    ("Content-type", "text/html;"),
                ],
            )
        )
        parts = [
            "<html><head><title>ROS Image Topic List</title></head>"
            "<body><h1>Available ROS Image Topics:</h1>",
            "<ul>",
        ]
        for info_topic in camera_info_topics:
            if info_topic.endswith("/camera_info"):
                base_topic = info_topic[: -len("camera_info")]
                parts += ["<li>", base_topic, "<ul>"]
                remaining = []
                for image_topic in image_topics:
                    if image_topic.startswith(base_topic):
                        parts.append(_topic_entry(image_topic, image_topic[len(base_topic):]))
                    else:
                        remaining.append(image_topic)
                image_topics = remaining
                parts.append("</ul>")
            parts.append("</li>")
        parts.append("</ul>")
        # image topics without camera_info
        parts.append("<ul>")
        parts.extend(_topic_entry(topic, topic) for topic in image_topics)
        parts.append("</ul></body></html>")
        connection.write("".join(parts))
        return True

    def restream_frames(self, max_age: float) -> None:
        with self._lock:
            for streamer in self._streamers:
                streamer.restream_frame(max_age)

    def cleanup_inactive_streams(self) -> None:
        """Drop inactive streams, unless another thread holds the list."""
        if not self._lock.acquire(blocking=False):
            return
        try:
            removed = [s for s in self._streamers if s.is_inactive()]
            self._streamers = [s for s in self._streamers if not s.is_inactive()]
        finally:
            self._lock.release()
        if self.config.verbose:
            for streamer in removed:
                log.info("Removed Stream: %s", streamer.topic)

    def _wait_for_streams(self, connection: Connection) -> None:
        """Block while a live stream still writes to ``connection``."""
        while not self._stop.is_set() and not connection.closed:
            with self._lock:
                busy = any(s.connection is connection and not s.is_inactive() for s in self._streamers)
            if not busy:
                return
            self._stop.wait(0.1)

    def _every(self, interval: float, action: Callable[[], None]) -> threading.Thread:
        def loop() -> None:
            while not self._stop.wait(interval):
                try:
                    action()
                except Exception as exc:
                    log.error("exception: %s", exc)

        thread = threading.Thread(target=loop, daemon=True)
        thread.start()
        return thread

    def serve_forever(self) -> None:
        """Accept connections until shutdown() is called."""
        try:
            self._tcp = _TCPServer((self.config.address, self.config.port), self)
        except OSError:
            log.error("Exception when creating the web server! %s:%d", self.config.address, self.config.port)
            raise
        self.server_address = self._tcp.server_address[:2]
        log.info("Waiting For connections on %s:%d", *self.server_address)
        threads = [self._every(CLEANUP_INTERVAL, self.cleanup_inactive_streams)]
        rate = self.config.publish_rate
        if rate > 0:
            threads.append(self._every(1.0 / rate, lambda: self.restream_frames(1.0 / rate)))
        try:
            if not self._stop.is_set():
                self._serving = True
                self._tcp.serve_forever(poll_interval=0.1)
        finally:
            self._serving = False
            self._stop.set()
            self._tcp.server_close()
            for thread in threads:
                thread.join()

    def shutdown(self) -> None:
        """Stop serving; call from a thread other than serve_forever's."""
        self._stop.set()
        if self._tcp is not None and self._serving:
            self._tcp.shutdown()


def _topic_entry(topic: str, label: str) -> str:
    return (
        f'<li><a href="/stream_viewer?topic={topic}">{label}</a> '
        f'(<a href="/snapshot?topic={topic}">Snapshot</a>)</li>'
    )


def main(argv=None) -> int:
    defaults = ServerConfig()
    parser = argparse.ArgumentParser(prog="webvideo", description="Stream image topics over HTTP.")
    parser.add_argument("--port", type=int, default=defaults.port)
    parser.add_argument("--address", default=defaults.address)
    parser.add_argument("--quiet", action="store_true", help="do not log each request")
    parser.add_argument("--publish-rate", type=float, default=defaults.publish_rate)
    parser.add_argument("--default-stream-type", default=defaults.default_stream_type)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    config = ServerConfig(
        port=args.port,
        address=args.address,
        verbose=not args.quiet,
        publish_rate=args.publish_rate,
        default_stream_type=args.default_stream_type,
    )
    server = WebVideoServer(Node("web_video_server"), config)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    return 0