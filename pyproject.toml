[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "webvideo"
version = "0.1.0"
description = "HTTP server that streams image topics to browsers as MJPEG, PNG or pre-compressed multipart streams"
requires-python = ">=3.10"
keywords = ["mjpeg", "png", "video", "streaming", "http", "camera", "snapshot", "multipart"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Web Environment",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Multimedia :: Video :: Display",
]
dependencies = [
    "numpy",
    "pillow",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
webvideo = "webvideo.server:main"

[tool.hatch.build.targets.wheel]
packages = ["webvideo"]

[tool.pytest.ini_options]
addopts = "-ra"
