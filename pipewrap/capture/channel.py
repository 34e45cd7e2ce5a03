# pipewrap/capture/channel.py
# Bounded hand-off queue between the capture driver and the writer driver.
import queue
import threading
from typing import Union

from pipewrap.capture.records import END_OF_STREAM, EndOfStream, Record
from pipewrap.errors import ChannelClosed

DEFAULT_CAPACITY = 100


class RecordChannel:
    """
    Single-producer / single-consumer FIFO of records.
    put() blocks while the channel is full, so records are never dropped; a slow disk slows capture down instead.
    close() queues END_OF_STREAM behind whatever is still pending.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("channel capacity must be >= 1")
        self.capacity = capacity
        self._queue = queue.Queue(maxsize=capacity)
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, record: Record) -> None:
        if self._closed:
            raise ChannelClosed("cannot put into a closed channel")
        self._queue.put(record)

    def get(self) -> Union[Record, EndOfStream]:
        return self._queue.get()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._queue.put(END_OF_STREAM)

    def qsize(self) -> int:
        return self._queue.qsize()
