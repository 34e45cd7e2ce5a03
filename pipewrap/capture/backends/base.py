# pipewrap/capture/backends/base.py
# Capability interfaces shared by the capture backends.
from abc import ABC, abstractmethod
from typing import BinaryIO, Iterator, Optional, Union

from pipewrap.capture.records import END_OF_STREAM, EndOfStream, Record


class RecordEncoder(ABC):
    """Serializes records of one backend into a single open output file."""

    def __init__(self, fh: BinaryIO):
        self.fh = fh

    def write_header(self) -> None:
        """Write whatever the format needs before the first record. Most formats need nothing."""

    @abstractmethod
    def write(self, record: Record) -> None:
        ...


class CaptureSource(ABC):
    """
    A lazy, unbounded, ordered sequence of records.

    Lifecycle: open() acquires the OS resource (child process, capture handle) and raises a
    BackendError subclass when it cannot. next() blocks until the next record is available and
    returns END_OF_STREAM once the source is exhausted or stopped. stop() may be called from
    any thread and unblocks a pending next(). close() releases the resource; both are idempotent.
    """

    #: identifier used as the output file prefix
    name: str = "capture"
    #: output file extension, without the dot
    extension: Optional[str] = None

    @abstractmethod
    def open(self) -> "CaptureSource":
        ...

    @abstractmethod
    def next(self) -> Union[Record, EndOfStream]:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    @abstractmethod
    def new_encoder(self, fh: BinaryIO) -> RecordEncoder:
        ...

    def describe(self) -> str:
        return self.name

    def __iter__(self) -> Iterator[Record]:
        while True:
            item = self.next()
            if item is END_OF_STREAM:
                return
            yield item
