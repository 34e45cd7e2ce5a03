# pipewrap/capture/manager.py
# Wires a capture source, the record channel, the rotating writer and retention into one session
# and runs the capture and writer drivers on their own threads.
import threading
from pathlib import Path
from typing import Callable, List, Optional

from loguru import logger

from .backends.base import CaptureSource
from .backends.process_backend import ProcessSource
from .channel import DEFAULT_CAPACITY, RecordChannel
from .records import END_OF_STREAM
from pipewrap.errors import BackendUnavailable, ConfigError, PipewrapError
from pipewrap.storage.retention import RetentionManager
from pipewrap.storage.rotating_writer import RotatingWriter

RETENTION_GRACE = 5.0


def create_source(config) -> CaptureSource:
    """Build the (unopened) capture source selected by the config."""
    if config.backend == "process":
        return ProcessSource(config.command, echo=config.echo)
    if config.backend == "interface":
        try:
            from .backends.scapy_backend import InterfaceSource
        except ImportError as e:
            raise BackendUnavailable(f"Interface capture needs scapy (pip install 'pipewrap[pcap]'): {e}") from e
        return InterfaceSource(config.interface, bpf_filter=config.bpf_filter, snaplen=config.snaplen,
                               promisc=config.promisc)
    raise ConfigError("Unsupported backend: " + str(config.backend))


class CaptureSession:
    """
    Run-scoped owner of the pipeline.

    capture driver: source.next() -> channel.put(), closes the channel after the last record
    writer driver:  channel.get() -> writer.write(), closes the writer on END_OF_STREAM
    retention:      one detached run per rotation, plus one at start

    stop() drains in order: stop the source, wait for the writer to close the active file,
    release the source. It can be called any number of times from any thread.
    """

    def __init__(self, source: CaptureSource, directory, records_per_file: int, max_dir_bytes: int,
                 channel_capacity: int = DEFAULT_CAPACITY, writer: Optional[RotatingWriter] = None,
                 retention: Optional[RetentionManager] = None):
        self.source = source
        self.directory = Path(directory)
        self.channel = RecordChannel(channel_capacity)
        self.writer = writer or RotatingWriter(
            self.directory,
            name=source.name,
            records_per_file=records_per_file,
            encoder_factory=source.new_encoder,
            extension=source.extension,
        )
        self.retention = retention or RetentionManager(self.directory, max_dir_bytes,
                                                       active_path_getter=lambda: self.writer.active_path)
        self.writer.on_rotate = self._on_rotate
        self.records_captured = 0

        self._capture_thread: Optional[threading.Thread] = None
        self._writer_thread: Optional[threading.Thread] = None
        self._finished = threading.Event()
        self._stop_lock = threading.Lock()
        self._stopped = False
        self._callbacks: List[Callable[[], None]] = []
        self._callbacks_lock = threading.Lock()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def add_done_callback(self, fn: Callable[[], None]) -> None:
        """Call fn once the writer driver has finished; right away when it already has."""
        with self._callbacks_lock:
            if not self._finished.is_set():
                self._callbacks.append(fn)
                return
        fn()

    def start(self) -> "CaptureSession":
        logger.info("Starting capture session: source={} dir={} count={} threshold={} bytes",
                    self.source.describe(), self.directory, self.writer.records_per_file, self.retention.max_bytes)
        self.retention.trigger()
        self._writer_thread = threading.Thread(target=self._writer_loop, name="writer", daemon=True)
        self._capture_thread = threading.Thread(target=self._capture_loop, name="capture", daemon=True)
        self._writer_thread.start()
        self._capture_thread.start()
        return self

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._finished.wait(timeout)

    def stop(self) -> None:
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True
        logger.info("Stopping capture session")
        self.source.stop()
        if self._writer_thread is None:
            self.source.close()
            return
        self._finished.wait()
        self.source.close()
        for thread in (self._capture_thread, self._writer_thread):
            if thread is not None:
                thread.join()
        self.retention.wait(RETENTION_GRACE)
        logger.info("Capture session stopped: captured={} written={} dropped={} files={}",
                    self.records_captured, self.writer.records_written, self.writer.records_dropped,
                    self.writer.files_completed)

    def _on_rotate(self, logfile) -> None:
        self.retention.trigger()

    def _capture_loop(self) -> None:
        try:
            for record in self.source:
                self.channel.put(record)
                self.records_captured += 1
        except (PipewrapError, OSError) as e:
            logger.error("Capture source {} failed: {}", self.source.describe(), e)
        finally:
            logger.debug("Capture driver done after {} records", self.records_captured)
            self.channel.close()

    def _writer_loop(self) -> None:
        try:
            while True:
                item = self.channel.get()
                if item is END_OF_STREAM:
                    break
                self.writer.write(item)
        except Exception:
            logger.exception("Writer driver crashed, stopping capture")
            self.source.stop()
            self._drain()
        finally:
            self.writer.close()
            self._mark_finished()

    def _mark_finished(self) -> None:
        with self._callbacks_lock:
            self._finished.set()
            callbacks, self._callbacks = self._callbacks, []
        for fn in callbacks:
            fn()

    def _drain(self) -> None:
        dropped = 0
        while self.channel.get() is not END_OF_STREAM:
            dropped += 1
        if dropped:
            logger.error("Discarded {} records after the writer failed", dropped)
