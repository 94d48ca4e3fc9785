"""PNG streamers: a multipart PNG stream and a single PNG snapshot."""

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

DEFAULT_COMPRESSION = 3


def _encode_png(img: np.ndarray, compression: int) -> bytes:
    return encode_picture(img, "PNG", compress_level=max(0, min(9, compression)))


class PngStreamer(MultipartImageStreamer):
    """Streams PNG frames as multipart/x-mixed-replace parts."""

    default_quality = DEFAULT_COMPRESSION

    def send_image(self, img: np.ndarray, time: float) -> None:
        self.stream.send_part(time, "image/png", _encode_png(img, self.quality))


class PngStreamerType(ImageStreamerType):
    def create_streamer(self, request: HttpRequest, connection: Connection, node: Node) -> ImageStreamer:
        return PngStreamer(request, connection, node)

    def create_viewer(self, request: HttpRequest) -> str:
        return img_viewer(request)


class PngSnapshotStreamer(SnapshotImageStreamer):
    """Sends one PNG image as a complete reply, then goes inactive."""

    default_quality = DEFAULT_COMPRESSION

    def send_image(self, img: np.ndarray, time: float) -> None:
        self.send_snapshot(time, "image/png", _encode_png(img, self.quality))