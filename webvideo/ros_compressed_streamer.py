"""Streams already compressed images without re-encoding them."""

from __future__ import annotations

import logging

from webvideo.http import Connection, HttpRequest
from webvideo.image_streamer import CompressedImage, ImageStreamer, ImageStreamerType, Node, img_viewer
from webvideo.multipart_stream import MultipartStream

log = logging.getLogger(__name__)

_CONTENT_TYPES = (("jpeg", "image/jpeg"), ("png", "image/png"))


class RosCompressedStreamer(ImageStreamer):
    """Forwards messages of ``<topic>/compressed`` as multipart parts."""

    def __init__(self, request: HttpRequest, connection: Connection, node: Node):
        super().__init__(request, connection, node)
        self.stream = MultipartStream(node.now, connection)
        self.last_frame = 0.0
        self.last_msg: CompressedImage | None = None
        self._subscription = None
        self.stream.send_initial_header()

    def start(self) -> None:
        self._subscription = self.node.subscribe(self.topic + "/compressed", self.image_callback)

    def restream_frame(self, max_age: float) -> None:
        if self.inactive or self.last_msg is None:
            return
        if self.last_frame + max_age < self.node.now():
            with self._send_lock:
                # last_frame keeps the stamp of the last received message
                self.send_image(self.last_msg, self.node.now())

    def send_image(self, msg: CompressedImage, time: float) -> None:
        with self._deactivate_on_error():
            content_type = next((mime for key, mime in _CONTENT_TYPES if key in msg.format), None)
            if content_type is None:
                log.warning("Unknown ROS compressed image format: %s", msg.format)
                return
            self.stream.send_part(time, content_type, msg.data)

    def image_callback(self, msg: CompressedImage) -> None:
        with self._send_lock:
            self.last_msg = msg
            self.last_frame = msg.stamp
            self.send_image(msg, msg.stamp)


class RosCompressedStreamerType(ImageStreamerType):
    def create_streamer(self, request: HttpRequest, connection: Connection, node: Node) -> ImageStreamer:
        return RosCompressedStreamer(request, connection, node)

    def create_viewer(self, request: HttpRequest) -> str:
        return img_viewer(request)