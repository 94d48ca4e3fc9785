import io

import numpy as np
import pytest

from webvideo.http import Connection, parse_request
from webvideo.image_streamer import (
    CompressedImage,
    IMAGE_TYPE,
    Image,
    ImageStreamerType,
    ImageTransportImageStreamer,
    Node,
    image_to_array,
)


class FakeClock:
    def __init__(self, now=10.0):
        self.now = now

    def __call__(self):
        return self.now


class RecordingStreamer(ImageTransportImageStreamer):
    def __init__(self, request, connection, node, fail_with=None):
        super().__init__(request, connection, node)
        self.sent = []
        self.initialized_shapes = []
        self.fail_with = fail_with

    def initialize(self, img):
        self.initialized_shapes.append(img.shape)

    def send_image(self, img, time):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((img.copy(), time))


def make_streamer(query="topic=camera", advertise=True, fail_with=None):
    clock = FakeClock()
    node = Node(clock=clock)
    if advertise:
        node.advertise("camera", IMAGE_TYPE)
    request = parse_request(f"GET /stream?{query} HTTP/1.1\r\n\r\n")
    streamer = RecordingStreamer(request, Connection(io.BytesIO()), node, fail_with=fail_with)
    streamer.start()
    return streamer, node, clock


def bgr_image(height=2, width=3):
    return np.arange(height * width * 3, dtype=np.uint8).reshape(height, width, 3)


def as_msg(array, encoding):
    return Image(width=array.shape[1], height=array.shape[0], encoding=encoding, data=array.tobytes())


def test_node_topics_and_publish():
    node = Node()
    node.advertise("camera/image", IMAGE_TYPE)
    assert node.topic_names_and_types() == [("/camera/image", [IMAGE_TYPE])]
    received = []
    subscription = node.subscribe("/camera/image", received.append)
    msg = CompressedImage(format="jpeg", data=b"x")
    node.publish("camera/image", msg)
    subscription.cancel()
    node.publish("camera/image", msg)
    assert received == [msg]


def test_node_clock_is_injectable():
    assert Node(clock=lambda: 42.0).now() == 42.0


def test_image_to_array_round_trip():
    array = bgr_image()
    assert np.array_equal(image_to_array(as_msg(array, "bgr8")), array)


def test_image_to_array_respects_step_padding():
    expected = np.array([[1, 2, 3], [4, 5, 6]], dtype=np.uint8)
    msg = Image(width=3, height=2, encoding="mono8", data=bytes([1, 2, 3, 0, 4, 5, 6, 0]), step=4)
    assert np.array_equal(image_to_array(msg), expected)


def test_image_to_array_big_endian():
    array = np.array([[1, 300], [65535, 0]], dtype=np.uint16)
    msg = Image(width=2, height=2, encoding="mono16", data=array.astype(">u2").tobytes(), is_bigendian=True)
    assert np.array_equal(image_to_array(msg), array)


def test_image_to_array_errors():
    with pytest.raises(ValueError):
        image_to_array(Image(width=1, height=1, encoding="yuv422_weird", data=b"\0\0"))
    with pytest.raises(ValueError):
        image_to_array(Image(width=2, height=2, encoding="mono8", data=b"\0\0"))


def test_start_marks_missing_topic_inactive():
    streamer, _, _ = make_streamer(advertise=False)
    assert streamer.is_inactive() is True
    found, _, _ = make_streamer()
    assert found.is_inactive() is False


def test_topic_with_several_types_stops_search():
    clock = FakeClock()
    node = Node(clock=clock)
    node.advertise("a", IMAGE_TYPE)
    node.advertise("a", "other/msg/Type")
    node.advertise("camera", IMAGE_TYPE)
    request = parse_request("GET /stream?topic=camera HTTP/1.1\r\n\r\n")
    streamer = RecordingStreamer(request, Connection(io.BytesIO()), node)
    streamer.start()
    assert streamer.is_inactive() is True


def test_rgb_image_is_sent_as_bgr():
    streamer, node, clock = make_streamer()
    array = bgr_image()
    node.publish("camera", as_msg(array, "rgb8"))
    img, time = streamer.sent[0]
    assert np.array_equal(img, array[:, :, ::-1])
    assert time == clock.now
    assert streamer.last_frame == clock.now


def test_mono_image_is_expanded_to_three_channels():
    streamer, node, _ = make_streamer()
    array = np.array([[0, 100], [200, 255]], dtype=np.uint8)
    node.publish("camera", as_msg(array, "mono8"))
    img = streamer.sent[0][0]
    assert img.shape == (2, 2, 3)
    assert all(np.array_equal(img[:, :, c], array) for c in range(3))


def test_resize_to_requested_size():
    streamer, node, _ = make_streamer("topic=camera&width=2&height=2")
    node.publish("camera", as_msg(bgr_image(4, 4), "bgr8"))
    node.publish("camera", as_msg(bgr_image(4, 4), "bgr8"))
    assert [img.shape for img, _ in streamer.sent] == [(2, 2, 3), (2, 2, 3)]
    assert streamer.initialized_shapes == [(2, 2, 3)]


def test_invert_rotates_half_turn():
    streamer, node, _ = make_streamer("topic=camera&invert")
    array = bgr_image()
    node.publish("camera", as_msg(array, "bgr8"))
    assert np.array_equal(streamer.sent[0][0], array[::-1, ::-1])


def test_float_image_is_scaled_to_full_range():
    streamer, node, _ = make_streamer()
    array = np.array([[0.0, 1.0, 2.0, 4.0]], dtype="<f4")
    node.publish("camera", as_msg(array, "32FC1"))
    img = streamer.sent[0][0]
    assert img.dtype == np.uint8
    assert img.max() == 255 and img.min() == 0
    assert list(img[0]) == sorted(img[0])


def test_restream_only_after_first_frame_and_max_age():
    streamer, node, clock = make_streamer()
    streamer.restream_frame(0.1)
    assert streamer.sent == []
    node.publish("camera", as_msg(bgr_image(), "bgr8"))
    clock.now += 0.05
    streamer.restream_frame(0.1)
    assert len(streamer.sent) == 1
    clock.now += 0.5
    streamer.restream_frame(0.1)
    assert len(streamer.sent) == 2
    assert streamer.sent[1][1] == clock.now
    assert np.array_equal(streamer.sent[1][0], streamer.sent[0][0])


@pytest.mark.parametrize("error", [RuntimeError("encode failed"), BrokenPipeError("gone")])
def test_send_failure_deactivates(error):
    streamer, node, _ = make_streamer(fail_with=error)
    node.publish("camera", as_msg(bgr_image(), "bgr8"))
    assert streamer.is_inactive() is True


def test_bad_message_deactivates():
    streamer, node, _ = make_streamer()
    node.publish("camera", Image(width=2, height=2, encoding="mono8", data=b"\0"))
    assert streamer.is_inactive() is True
    node.publish("camera", as_msg(bgr_image(), "bgr8"))
    assert streamer.sent == []


def test_streamer_type_is_abstract():
    with pytest.raises(TypeError):
        ImageStreamerType()