import io

import numpy as np

from webvideo.http import Connection
from webvideo.multipart_stream import (
    DEFAULT_BOUNDARY,
    MultipartStream,
    PendingFooter,
    format_stamp,
)


def make_stream(max_queue_size=1, autoflush=False):
    clock = {"now": 0.0}
    sink = io.BytesIO()
    connection = Connection(sink, autoflush=autoflush)
    stream = MultipartStream(lambda: clock["now"], connection, max_queue_size=max_queue_size)
    return stream, connection, sink, clock


def test_format_stamp_six_decimals():
    assert format_stamp(1.5) == "1.500000"
    assert format_stamp(0.0).count(".") == 1


def test_initial_header():
    stream, connection, sink, _ = make_stream(autoflush=True)
    stream.send_initial_header()
    data = sink.getvalue()
    assert b"Content-type: multipart/x-mixed-replace;boundary=boundarydonotcross\r\n" in data
    assert b"Access-Control-Allow-Origin: *\r\n" in data
    assert data.endswith(f"\r\n\r\n--{DEFAULT_BOUNDARY}\r\n".encode())


def test_part_wire_format():
    stream, connection, sink, _ = make_stream()
    assert stream.send_part(1.5, "image/jpeg", b"abc") is True
    connection.flush()
    assert sink.getvalue() == (
        b"Content-type: image/jpeg\r\nX-Timestamp: 1.500000\r\nContent-Length: 3\r\n\r\n"
        b"abc\r\n--boundarydonotcross\r\n"
    )


def test_part_from_array_payload():
    stream, connection, sink, _ = make_stream(autoflush=True)
    payload = np.arange(5, dtype=np.uint8)
    stream.send_part(0.0, "image/png", payload)
    assert b"Content-Length: 5\r\n" in sink.getvalue()
    assert payload.tobytes() in sink.getvalue()


def test_busy_while_footer_pending():
    stream, connection, sink, clock = make_stream()
    assert stream.send_part(0.0, "image/jpeg", b"a")
    clock["now"] = 0.1
    assert stream.is_busy() is True
    assert stream.send_part(0.1, "image/jpeg", b"b") is False
    connection.flush()
    assert stream.is_busy() is False
    assert stream.send_part(0.1, "image/jpeg", b"c") is True


def test_stale_footer_is_dropped_after_half_second():
    stream, connection, sink, clock = make_stream()
    stream.send_part(0.0, "image/jpeg", b"a")
    clock["now"] = 0.5
    assert stream.is_busy() is True
    clock["now"] = 0.6
    assert stream.is_busy() is False


def test_zero_queue_size_never_busy():
    stream, connection, sink, clock = make_stream(max_queue_size=0)
    assert all(stream.send_part(0.0, "image/jpeg", b"x") for _ in range(5))
    assert stream.is_busy() is False


def test_queue_size_two_allows_two_parts():
    stream, connection, sink, clock = make_stream(max_queue_size=2)
    assert stream.send_part(0.0, "image/jpeg", b"a")
    assert stream.send_part(0.0, "image/jpeg", b"b")
    assert stream.send_part(0.0, "image/jpeg", b"c") is False


def test_closed_connection_releases_footers():
    stream, connection, sink, clock = make_stream()
    stream.send_part(0.0, "image/jpeg", b"a")
    connection.close()
    assert stream.is_busy() is False


def test_pending_footer_fields():
    footer = PendingFooter(timestamp=2.0, handle=7)
    assert (footer.timestamp, footer.handle) == (2.0, 7)