# webvideo

`webvideo` is a small threaded HTTP server that turns image topics into
streams a browser can show directly. Images are published on an in-process
topic bus (`webvideo.image_streamer.Node`); every connected client gets its
own streamer, which encodes incoming frames and writes them to the client's
connection until the client goes away or an error occurs.

## Installing

```
pip install .
```

To run the tests as well:

```
pip install .[test]
pytest
```

## Running the server

```
webvideo [--port 8080] [--address 0.0.0.0] [--quiet]
         [--publish-rate RATE] [--default-stream-type mjpeg]
```

- `--port`, `--address` – where to listen (default `0.0.0.0:8080`).
- `--quiet` – do not log each handled request and removed stream.
- `--publish-rate` – when greater than zero, every `1/RATE` seconds the last
  frame of each stream is sent again if no newer frame arrived within that
  time. Default `-1` (off).
- `--default-stream-type` – stream type used when a request gives no `type`
  (default `mjpeg`).

Note that the command starts the server with an empty `Node`: it has no
topics until code in the same process advertises and publishes them (see
below).

## Endpoints

| Path             | What it returns                                                  |
|------------------|------------------------------------------------------------------|
| `/`              | An HTML list of image topics, grouped under their camera         |
| `/stream`        | A live multipart stream of one topic                             |
| `/stream_viewer` | An HTML page embedding the stream of one topic                   |
| `/snapshot`      | A single JPEG frame as a complete reply                          |

Any other path, and any unknown `type`, answers `404 Not Found`. A request
that cannot be parsed answers `400 Bad Request`.

The topic list puts image topics (`sensor_msgs/msg/Image`) under each
`.../camera_info` topic (`sensor_msgs/msg/CameraInfo`) whose base they share,
followed by the remaining image topics. Listing stops at the first topic that
is advertised with more than one type.

### Query parameters

- `topic` – the image topic to stream.
- `type` – `mjpeg`, `png` or `ros_compressed`. For `ros_compressed` the
  server forwards messages of `<topic>/compressed` unchanged; if that topic is
  not advertised it falls back to `mjpeg`.
- `width`, `height` – output size; frames are resized when they differ from
  the source. A missing value keeps the source size.
- `invert` – when present, every frame is rotated by 180 degrees.
- `quality` – JPEG quality (default `95`, clamped to 1–100) or PNG compression
  level (default `3`, clamped to 0–9).
- `default_transport` – read and kept on the streamer (default `raw`); the
  in-process bus has only one transport, so it changes nothing.

Example:

```
http://localhost:8080/stream?topic=/camera/image_raw&type=mjpeg&width=640&height=480
```

## How the streams behave

Multipart streams are sent as `multipart/x-mixed-replace` with the boundary
`boundarydonotcross`. Every part carries `Content-type`, `X-Timestamp`
(seconds, six decimals) and `Content-Length` headers. While the footer of the
previous part has not yet been written to the client (and is less than 0.5 s
old), new frames are dropped rather than queued, so a slow viewer sees the
newest picture instead of a growing backlog.

A raw-image stream is marked inactive at once if its topic is not advertised
on the node. Raw images in `mono8`, `mono16`, `bgr8`, `rgb8`, `bgra8`,
`rgba8`, their 16-bit variants, and generic encodings such as `8UC3` are
converted to 8-bit BGR; floating-point encodings (containing `F`, e.g.
`32FC1`) are scaled so their maximum maps to 255. Compressed messages whose
`format` contains `jpeg` or `png` are sent as `image/jpeg` or `image/png`;
other formats are skipped with a warning.

A streamer that hits an error, whose client disconnects, or that has sent its
snapshot marks itself inactive; the server removes inactive streams every
0.5 s and then closes the connection.

## Using it from Python

```python
import threading

import numpy as np

from webvideo.image_streamer import IMAGE_TYPE, Image, Node
from webvideo.server import ServerConfig, WebVideoServer

node = Node()
node.advertise("/camera/image_raw", IMAGE_TYPE)

server = WebVideoServer(node, ServerConfig(port=8080))
threading.Thread(target=server.serve_forever, daemon=True).start()

frame = np.zeros((480, 640, 3), np.uint8)
node.publish(
    "/camera/image_raw",
    Image(width=640, height=480, encoding="bgr8", data=frame.tobytes(), stamp=node.now()),
)
# ...
server.shutdown()
```

The modules:

- `webvideo.server` – `WebVideoServer` (`serve_forever`, `shutdown`,
  `handle_request` and the per-path handlers, `restream_frames`,
  `cleanup_inactive_streams`), `ServerConfig` and `main`.
- `webvideo.image_streamer` – `Node` (`now`, `advertise`, `subscribe`,
  `publish`, `topic_names_and_types`), the `Image` and `CompressedImage`
  messages, `image_to_array`, and the streamer base classes
  `ImageStreamer`, `ImageTransportImageStreamer` and `ImageStreamerType`.
- `webvideo.jpeg_streamers` – `MjpegStreamer`, `MjpegStreamerType`,
  `JpegSnapshotStreamer`.
- `webvideo.png_streamers` – `PngStreamer`, `PngStreamerType`,
  `PngSnapshotStreamer`.
- `webvideo.ros_compressed_streamer` – `RosCompressedStreamer`,
  `RosCompressedStreamerType`.
- `webvideo.multipart_stream` – `MultipartStream` with its back-pressure
  check `is_busy`, and `format_stamp`.
- `webvideo.http` – `HttpRequest`, `parse_request`, `Connection`,
  `build_reply` and `stock_reply`.

## What it does not do

- It does not connect to any external robotics middleware or message broker:
  topics exist only on the in-process `Node`, so images must be published
  from the same Python process that runs the server.
- It has no video codecs: there are no VP8, VP9 or H.264 stream types, only
  `mjpeg`, `png` and `ros_compressed`.
- PNG snapshots (`PngSnapshotStreamer`) exist as a class, but the `/snapshot`
  endpoint always serves JPEG.