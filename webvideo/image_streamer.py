"""Image messages, an in-process topic bus, and the base image streamers."""

from __future__ import annotations

import io
import logging
import re
import threading
import time as _time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from http import HTTPStatus

import numpy as np
from PIL import Image as PILImage

from webvideo.http import Connection, HttpRequest, build_reply
from webvideo.multipart_stream import MultipartStream, format_stamp

log = logging.getLogger(__name__)

IMAGE_TYPE = "sensor_msgs/msg/Image"
COMPRESSED_IMAGE_TYPE = "sensor_msgs/msg/CompressedImage"
CAMERA_INFO_TYPE = "sensor_msgs/msg/CameraInfo"

NO_CACHE = "no-cache, no-store, must-revalidate, pre-check=0, post-check=0, max-age=0"

_NAMED_ENCODINGS = {
    "mono8": (1, np.uint8),
    "mono16": (1, np.uint16),
    "bgr8": (3, np.uint8),
    "rgb8": (3, np.uint8),
    "bgra8": (4, np.uint8),
    "rgba8": (4, np.uint8),
    "bgr16": (3, np.uint16),
    "rgb16": (3, np.uint16),
    "bgra16": (4, np.uint16),
    "rgba16": (4, np.uint16),
}
_GENERIC_ENCODING = re.compile(r"^(8|16|32|64)(U|S|F)C(\d+)$")
_GENERIC_TYPES = {
    ("8", "U"): np.uint8,
    ("8", "S"): np.int8,
    ("16", "U"): np.uint16,
    ("16", "S"): np.int16,
    ("32", "S"): np.int32,
    ("32", "F"): np.float32,
    ("64", "F"): np.float64,
}


@dataclass
class Image:
    """A raw image message."""

    width: int
    height: int
    encoding: str
    data: bytes
    step: int = 0
    stamp: float = 0.0
    is_bigendian: bool = False


@dataclass
class CompressedImage:
    """A compressed image message; ``format`` names the codec."""

    format: str
    data: bytes
    stamp: float = 0.0


def _resolve(topic: str) -> str:
    return topic if topic.startswith("/") else "/" + topic


class _Subscription:
    def __init__(self, node: Node, topic: str, callback: Callable):
        self.node = node
        self.topic = topic
        self.callback = callback

    def cancel(self) -> None:
        with self.node._lock:
            callbacks = self.node._subscribers.get(self.topic, [])
            if self.callback in callbacks:
                callbacks.remove(self.callback)


class Node:
    """A clock plus an in-process publish/subscribe bus of named topics."""

    def __init__(self, name: str = "web_video_server", clock: Callable[[], float] | None = None):
        self.name = name
        self._clock = clock or _time.time
        self._types: dict[str, list[str]] = {}
        self._subscribers: dict[str, list[Callable]] = {}
        self._lock = threading.Lock()

    def now(self) -> float:
        return self._clock()

    def topic_names_and_types(self) -> list[tuple[str, list[str]]]:
        with self._lock:
            return [(name, list(types)) for name, types in sorted(self._types.items())]

    def advertise(self, topic: str, type_name: str) -> None:
        with self._lock:
            types = self._types.setdefault(_resolve(topic), [])
            if type_name not in types:
                types.append(type_name)

    def subscribe(self, topic: str, callback: Callable) -> _Subscription:
        name = _resolve(topic)
        with self._lock:
            self._subscribers.setdefault(name, []).append(callback)
        return _Subscription(self, name, callback)

    def publish(self, topic: str, msg) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(_resolve(topic), ()))
        for callback in callbacks:
            callback(msg)


def _layout(encoding: str) -> tuple[int, type]:
    if encoding in _NAMED_ENCODINGS:
        return _NAMED_ENCODINGS[encoding]
    match = _GENERIC_ENCODING.match(encoding)
    if match and (match[1], match[2]) in _GENERIC_TYPES and int(match[3]) > 0:
        return int(match[3]), _GENERIC_TYPES[(match[1], match[2])]
    raise ValueError(f"unsupported image encoding: {encoding!r}")


def image_to_array(msg: Image) -> np.ndarray:
    """Decode an Image into an array of its own type: (h, w) or (h, w, channels)."""
    channels, base = _layout(msg.encoding)
    dtype = np.dtype(base).newbyteorder(">" if msg.is_bigendian else "<")
    row = msg.width * channels * dtype.itemsize
    step = msg.step or row
    if msg.width < 0 or msg.height < 0 or step < row:
        raise ValueError("invalid image geometry")
    if len(msg.data) < step * msg.height:
        raise ValueError("image data is shorter than height * step")
    rows = np.frombuffer(msg.data, dtype=np.uint8, count=step * msg.height)
    rows = rows.reshape(msg.height, step)[:, :row].copy()
    array = rows.view(dtype).reshape(msg.height, msg.width, channels).astype(dtype.newbyteorder("="))
    return array[:, :, 0] if channels == 1 else array


def encode_picture(img: np.ndarray, image_format: str, **options) -> bytes:
    """Encode a BGR(A) or grey array with Pillow in ``image_format``."""
    array = np.asarray(img)
    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)
    if array.ndim == 3:
        # channels arrive in BGR(A) order
        array = array[:, :, 2::-1]
    buffer = io.BytesIO()
    PILImage.fromarray(np.ascontiguousarray(array)).save(buffer, format=image_format, **options)
    return buffer.getvalue()


def img_viewer(request: HttpRequest) -> str:
    """HTML that shows the stream of ``request`` in an <img> element."""
    return f'<img src="/stream?{request.query}"></img>'


def _to_bgr8(array: np.ndarray, encoding: str) -> np.ndarray:
    if array.dtype == np.uint16:
        array = (array // 256).astype(np.uint8)
    elif array.dtype != np.uint8:
        raise ValueError(f"cannot convert {encoding!r} to bgr8")
    if array.ndim == 2:
        return np.repeat(array[:, :, np.newaxis], 3, axis=2)
    if array.shape[2] not in (3, 4):
        raise ValueError(f"cannot convert {encoding!r} to bgr8")
    if encoding.startswith("rgb"):
        return np.ascontiguousarray(array[:, :, 2::-1])
    return np.ascontiguousarray(array[:, :, :3])


def _resize(img: np.ndarray, width: int, height: int) -> np.ndarray:
    if width <= 0 or height <= 0:
        raise ValueError(f"invalid output size {width}x{height}")
    resized = PILImage.fromarray(img).resize((width, height), PILImage.Resampling.BILINEAR)
    return np.asarray(resized)


def _topic_advertised(node: Node, topic: str) -> bool:
    for name, types in node.topic_names_and_types():
        if len(types) > 1:
            # topics with more than one type end the search
            break
        if name == topic or (name.startswith("/") and name[1:] == topic):
            return True
    return False


class ImageStreamer(ABC):
    """One client's stream of one topic."""

    def __init__(self, request: HttpRequest, connection: Connection, node: Node):
        self.request = request
        self.connection = connection
        self.node = node
        self.inactive = False
        self.topic = request.get_param("topic", "")
        self._send_lock = threading.Lock()

    @abstractmethod
    def start(self) -> None:
        """Subscribe to the topic."""

    @abstractmethod
    def restream_frame(self, max_age: float) -> None:
        """Send the last frame again if it is older than ``max_age`` seconds."""

    def is_inactive(self) -> bool:
        return self.inactive

    @contextmanager
    def _deactivate_on_error(self) -> Iterator[None]:
        """Swallow any error of the enclosed block and mark the stream inactive."""
        try:
            yield
        except OSError as exc:
            # the client went away
            log.debug("system_error exception: %s", exc)
            self.inactive = True
        except Exception as exc:
            log.error("exception: %s", exc)
            self.inactive = True


class ImageTransportImageStreamer(ImageStreamer):
    """Streams raw images, scaled, rotated and resized as the request asks."""

    def __init__(self, request: HttpRequest, connection: Connection, node: Node):
        super().__init__(request, connection, node)
        self.output_width = request.get_param("width", -1)
        self.output_height = request.get_param("height", -1)
        self.invert = request.has_param("invert")
        self.default_transport = request.get_param("default_transport", "raw")
        self.last_frame = 0.0
        self.output_size_image: np.ndarray | None = None
        self._initialized = False
        self._subscription: _Subscription | None = None

    def start(self) -> None:
        self.inactive = not _topic_advertised(self.node, self.topic)
        self._subscription = self.node.subscribe(self.topic, self.image_callback)

    def initialize(self, img: np.ndarray) -> None:
        """Called once with the first output-sized image; marks the streamer ready."""
        self._initialized = True

    @abstractmethod
    def send_image(self, img: np.ndarray, time: float) -> None:
        """Encode and send one image stamped with ``time``."""

    def restream_frame(self, max_age: float) -> None:
        if self.inactive or not self._initialized:
            return
        with self._deactivate_on_error():
            if self.last_frame + max_age < self.node.now():
                with self._send_lock:
                    # last_frame keeps the time of the last received image
                    self.send_image(self.output_size_image, self.node.now())

    def image_callback(self, msg: Image) -> None:
        if self.inactive:
            return
        with self._deactivate_on_error():
            if "F" in msg.encoding:
                img = image_to_array(msg).astype(np.float32)
                max_val = float(img.max()) if img.size else 0.0
                if max_val > 0:
                    img *= 255 / max_val
                img = np.clip(np.rint(img), 0, 255).astype(np.uint8)
            else:
                img = _to_bgr8(image_to_array(msg), msg.encoding)

            input_height, input_width = img.shape[:2]
            if self.output_width == -1:
                self.output_width = input_width
            if self.output_height == -1:
                self.output_height = input_height

            if self.invert:
                img = np.ascontiguousarray(img[::-1, ::-1])

            with self._send_lock:
                if (self.output_width, self.output_height) != (input_width, input_height):
                    self.output_size_image = _resize(img, self.output_width, self.output_height)
                else:
                    self.output_size_image = img
                if not self._initialized:
                    self.initialize(self.output_size_image)
                self.last_frame = self.node.now()
                self.send_image(self.output_size_image, self.last_frame)


class MultipartImageStreamer(ImageTransportImageStreamer):
    """Sends encoded frames as parts of a multipart/x-mixed-replace reply."""

    default_quality = 0

    def __init__(self, request: HttpRequest, connection: Connection, node: Node):
        super().__init__(request, connection, node)
        self.stream = MultipartStream(node.now, connection)
        self.quality = request.get_param("quality", self.default_quality)
        self.stream.send_initial_header()


class SnapshotImageStreamer(ImageTransportImageStreamer):
    """Sends one encoded frame as a complete reply, then goes inactive."""

    default_quality = 0

    def __init__(self, request: HttpRequest, connection: Connection, node: Node):
        super().__init__(request, connection, node)
        self.quality = request.get_param("quality", self.default_quality)

    def send_snapshot(self, time: float, content_type: str, payload: bytes) -> None:
        headers = [
            ("Connection", "close"),
            ("Server", "web_video_server"),
            ("Cache-Control", NO_CACHE),
            ("X-Timestamp", format_stamp(time)),
            ("Pragma", "no-cache"),
            ("Content-type", content_type),
            ("Access-Control-Allow-Origin", "*"),
            ("Content-Length", str(len(payload))),
        ]
        self.connection.write(build_reply(HTTPStatus.OK, headers))
        self.connection.write(payload)
        self.inactive = True


class ImageStreamerType(ABC):
    """A kind of stream: makes streamers and the HTML that views them."""

    @abstractmethod
    def create_streamer(self, request: HttpRequest, connection: Connection, node: Node) -> ImageStreamer:
        """Make a streamer for one client."""

    @abstractmethod
    def create_viewer(self, request: HttpRequest) -> str:
        """Return the HTML element that shows the stream."""