# pipewrap/tests/conftest.py
import re
import threading
import time
from pathlib import Path

import pytest
from loguru import logger

from pipewrap.capture.backends.base import CaptureSource
from pipewrap.capture.backends.process_backend import LineEncoder
from pipewrap.capture.records import END_OF_STREAM, Record

_NAME_RE = re.compile(r"\.(\d{14})(?:-(\d+))?(?:\.[a-z]+)?$")


def ordered_files(directory):
    """Output files in creation order: by timestamp, then by same-second sequence number."""
    files = []
    for p in Path(directory).iterdir():
        m = _NAME_RE.search(p.name)
        if p.is_file() and m:
            files.append(((m.group(1), int(m.group(2) or 0)), p))
    return [p for _, p in sorted(files)]


def read_lines(paths):
    return [p.read_text().splitlines() for p in paths]


def line_record(text: str) -> Record:
    return Record(payload=text.encode(), timestamp=time.time())


class ListSource(CaptureSource):
    """Yields the given lines, then END_OF_STREAM. With endless=True it keeps producing until stopped."""

    def __init__(self, lines=(), endless=False):
        self.name = "fake"
        self.extension = None
        self._lines = list(lines)
        self.endless = endless
        self.produced = 0
        self.stop_calls = 0
        self.close_calls = 0
        self.reached = threading.Event()
        self.reach_target = 50
        self._stop = threading.Event()

    def open(self):
        return self

    def next(self):
        if self._stop.is_set():
            return END_OF_STREAM
        if self.endless:
            text = f"r{self.produced}"
        elif self.produced < len(self._lines):
            text = self._lines[self.produced]
        else:
            return END_OF_STREAM
        self.produced += 1
        if self.produced >= self.reach_target:
            self.reached.set()
        return line_record(text)

    def stop(self):
        self.stop_calls += 1
        self._stop.set()

    def close(self):
        self.close_calls += 1

    def new_encoder(self, fh):
        return LineEncoder(fh)


@pytest.fixture
def log_messages():
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


def levels(records, name):
    return [r for r in records if r["level"].name == name]
