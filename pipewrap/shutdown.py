# pipewrap/shutdown.py
# Turns SIGINT/SIGTERM into exactly one ordered drain of the capture session.
import signal
import threading
from typing import Dict, Optional, Sequence

from loguru import logger

EXIT_OK = 0


class ShutdownCoordinator:
    """
    The signal handler only records the signal and wakes run(); the drain itself runs on the main
    thread. run() also wakes when the session finishes by itself (e.g. the child process exited).
    Signals arriving after the first one are counted and otherwise ignored.
    """

    def __init__(self, session, signals: Sequence[int] = (signal.SIGINT, signal.SIGTERM)):
        self.session = session
        self.signals = tuple(signals)
        self.received: Optional[int] = None
        self.ignored_signals = 0
        self._wake = threading.Event()
        self._lock = threading.Lock()
        self._started = False
        self._previous: Dict[int, object] = {}

    @property
    def shutting_down(self) -> bool:
        return self._started

    def install(self) -> "ShutdownCoordinator":
        for sig in self.signals:
            self._previous[sig] = signal.signal(sig, self._handle)
        self.session.add_done_callback(self._wake.set)
        return self

    def restore(self) -> None:
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)
        self._previous.clear()

    def _handle(self, signum, frame) -> None:
        # no logging here: the main thread may be holding the log sink's lock
        if self.received is not None or self._started:
            self.ignored_signals += 1
            return
        self.received = signum
        self._wake.set()

    def request_shutdown(self) -> None:
        self._wake.set()

    def run(self) -> int:
        self._wake.wait()
        with self._lock:
            if self._started:
                return EXIT_OK
            self._started = True
        if self.received is not None:
            logger.info("Received {}, flushing the active log file", signal.Signals(self.received).name)
        elif self.session.finished:
            logger.info("Capture source ended, shutting down")
        else:
            logger.info("Shutdown requested")
        try:
            self.session.stop()
        finally:
            self.restore()
        if self.ignored_signals:
            logger.debug("Ignored {} repeated signal(s) during shutdown", self.ignored_signals)
        logger.info("Shutdown complete")
        return EXIT_OK
