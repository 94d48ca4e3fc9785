"""JPEG streamers: an MJPEG multipart stream and a single JPEG snapshot."""

from __future__ import annotations

import numpy as np

from webvideo.http import Connection, HttpRequest
from webvideo.image_streamer import (
    ImageStreamer,
    ImageStreamerType,
    MultipartImageStreamer,
    Node,
    SnapshotImageStreamer,
    encode_picture,
    img_viewer,
)

DEFAULT_QUALITY = 95


def _encode_jpeg(img: np.ndarray, quality: int) -> bytes:
    return encode_picture(img, "JPEG", quality=max(1, min(100, quality)))


class MjpegStreamer(MultipartImageStreamer):
    """Streams JPEG frames as multipart/x-mixed-replace parts."""

    default_quality = DEFAULT_QUALITY

    def send_image(self, img: np.ndarray, time: float) -> None:
        self.stream.send_part(time, "image/jpeg", _encode_jpeg(img, self.quality))


class MjpegStreamerType(ImageStreamerType):
    def create_streamer(self, request: HttpRequest, connection: Connection, node: Node) -> ImageStreamer:
        return MjpegStreamer(request, connection, node)

    def create_viewer(self, request: HttpRequest) -> str:
        return img_viewer(request)


class JpegSnapshotStreamer(SnapshotImageStreamer):
    """Sends one JPEG image as a complete reply, then goes inactive."""

    default_quality = DEFAULT_QUALITY

    def send_image(self, img: np.ndarray, time: float) -> None:
        self.send_snapshot(time, "image/jpeg", _encode_jpeg(img, self.quality))