"""HTTP server that streams images from an in-process topic bus as MJPEG, PNG or compressed multipart streams."""

__version__ = "0.1.0"