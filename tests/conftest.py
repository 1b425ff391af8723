import io
import logging
import os
import threading
import zipfile

import pytest
from PIL import Image

os.environ.setdefault("MPLBACKEND", "Agg")

import cbzrepack  # noqa: E402


def image_bytes(width, height, fmt="JPEG", mode="RGB", color=(200, 30, 30)):
    if mode == "L":
        color = color[0]
    elif mode == "RGBA":
        color = color + (128,)
    elif mode == "CMYK":
        color = (0, 100, 100, 0)
    elif mode == "P":
        color = 1
    buf = io.BytesIO()
    Image.new(mode, (width, height), color).save(buf, format=fmt)
    return buf.getvalue()


def write_cbz(path, entries, comment=b""):
    """entries: list of (name, bytes) or (name, bytes, date_time)."""
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
        zf.comment = comment
        for entry in entries:
            if len(entry) == 3:
                name, data, date_time = entry
                zf.writestr(zipfile.ZipInfo(name, date_time=date_time), data)
            else:
                name, data = entry
                zf.writestr(name, data)
    return path


def read_cbz(path):
    with zipfile.ZipFile(path) as zf:
        return {info.filename: zf.read(info) for info in zf.infolist()}, zf.comment, zf.namelist()


def webp_size(data):
    with Image.open(io.BytesIO(data)) as img:
        assert img.format == "WEBP"
        return img.size


class RecordingSink(cbzrepack.ProgressSink):
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()
        self._children = 0

    def spawn_child(self, total, label):
        with self._lock:
            self._children += 1
            tracker = f"child-{self._children}"
            self.events.append(("spawn", tracker, total, label))
        return tracker

    def tick(self, tracker, message=""):
        with self._lock:
            self.events.append(("tick", tracker, message))

    def set_message(self, tracker, message):
        with self._lock:
            self.events.append(("message", tracker, message))

    def tick_root(self):
        with self._lock:
            self.events.append(("root",))

    def of(self, kind):
        return [e for e in self.events if e[0] == kind]


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def book(tmp_path):
    """book.cbz: one 500x800 page plus an info.txt sidecar."""
    return write_cbz(tmp_path / "book.cbz", [
        ("001.jpg", image_bytes(500, 800)),
        ("info.txt", b"Series: Example\n"),
    ])


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    for handler in list(cbzrepack.logger.handlers):
        handler.close()
        cbzrepack.logger.removeHandler(handler)
    cbzrepack.logger.propagate = True
    cbzrepack.logger.setLevel(logging.NOTSET)
