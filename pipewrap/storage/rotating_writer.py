# pipewrap/storage/rotating_writer.py
# Writes records into the active file and rotates to a new one every records_per_file records.
# The writer driver is the only thread that ever touches file contents, so nothing here is locked.
import itertools
import os
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Callable, Optional

from loguru import logger

from pipewrap.capture.backends.base import RecordEncoder
from pipewrap.capture.records import Record
from pipewrap.capture.utils import timestamped_filename, utc_now

IDLE = "idle"
WRITING = "writing"


@dataclass
class LogFile:
    path: Path
    created_at: datetime
    record_count: int = 0
    is_active: bool = True


class RotatingWriter:
    """
    Two-state machine:
      idle    -> writing  first record after start or after a rotation: create the file, write the header
      writing -> writing  encode the record, flush and fsync, count it
      writing -> idle     record_count reached records_per_file (rotation, on_rotate is called)
                          or close() on shutdown (no on_rotate)

    A failed write drops the record and rotates early. A failed create drops the record and stops
    trying to create files until retry_interval seconds have passed, so a vanished directory does not
    turn into an error per record.
    """

    def __init__(self, directory, name: str, records_per_file: int,
                 encoder_factory: Callable[[BinaryIO], RecordEncoder], extension: Optional[str] = None,
                 on_rotate: Optional[Callable[[LogFile], None]] = None,
                 clock: Callable[[], datetime] = utc_now, retry_interval: float = 5.0):
        if records_per_file < 1:
            raise ValueError("records_per_file must be >= 1")
        self.directory = Path(directory)
        self.name = name
        self.extension = extension
        self.records_per_file = records_per_file
        self.encoder_factory = encoder_factory
        self.on_rotate = on_rotate
        self.clock = clock
        self.retry_interval = retry_interval

        self.active: Optional[LogFile] = None
        self.records_written = 0
        self.records_dropped = 0
        self.files_completed = 0

        self._fh: Optional[BinaryIO] = None
        self._encoder: Optional[RecordEncoder] = None
        self._create_failing = False
        self._retry_at = 0.0
        self._dropped_while_failing = 0
        self._closed = False

    @property
    def state(self) -> str:
        return WRITING if self.active is not None else IDLE

    @property
    def active_path(self) -> Optional[Path]:
        active = self.active
        return active.path if active is not None else None

    def write(self, record: Record) -> None:
        if self._closed:
            raise RuntimeError("writer is closed")
        if self.active is None and not self._open_next():
            self.records_dropped += 1
            return

        offset = self._fh.tell()
        try:
            self._encoder.write(record)
            self._sync()
        except OSError as e:
            self.records_dropped += 1
            logger.error("Write to {} failed: {}; record lost, rotating early", self.active.path, e)
            self._discard_from(offset)
            self._finish(rotated=True)
            return

        self.active.record_count += 1
        self.records_written += 1
        if self.active.record_count >= self.records_per_file:
            self._finish(rotated=True)

    def close(self) -> None:
        """Flush and close the active file whatever its record count. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self.active is not None:
            self._finish(rotated=False)

    def _open_next(self) -> bool:
        now = time.monotonic()
        if self._create_failing and now < self._retry_at:
            self._dropped_while_failing += 1
            return False

        created_at = self.clock()
        fh = None
        try:
            for seq in itertools.count():
                path = self.directory / timestamped_filename(self.name, created_at, self.extension, seq)
                try:
                    fh = open(path, "xb")
                    break
                except FileExistsError:
                    continue
            encoder = self.encoder_factory(fh)
            encoder.write_header()
            fh.flush()
            os.fsync(fh.fileno())
        except OSError as e:
            if fh is not None:
                fh.close()
            if not self._create_failing:
                logger.error("Cannot create log file in {}: {}; dropping records, next attempt in {}s",
                             self.directory, e, self.retry_interval)
            else:
                logger.debug("Log file creation still failing in {}: {}", self.directory, e)
            self._create_failing = True
            self._retry_at = now + self.retry_interval
            self._dropped_while_failing += 1
            return False

        if self._create_failing:
            logger.warning("Log directory {} usable again; {} records were lost", self.directory,
                           self._dropped_while_failing)
            self._create_failing = False
            self._dropped_while_failing = 0

        self._fh = fh
        self._encoder = encoder
        self.active = LogFile(path=path, created_at=created_at)
        logger.info("Opened log file {}", path)
        return True

    def _discard_from(self, offset: int) -> None:
        # the file ends at the last complete record
        try:
            self._fh.truncate(offset)
        except OSError as e:
            logger.error("Cannot cut partial record from {}: {}", self.active.path, e)

    def _sync(self) -> None:
        self._fh.flush()
        os.fsync(self._fh.fileno())

    def _finish(self, rotated: bool) -> None:
        logfile = self.active
        fh = self._fh
        self.active = None
        self._fh = None
        self._encoder = None
        try:
            self._sync_and_close(fh)
        except OSError as e:
            logger.error("Closing {} failed: {}", logfile.path, e)
        logfile.is_active = False
        self.files_completed += 1
        logger.info("Closed log file {} ({} records)", logfile.path, logfile.record_count)
        if rotated and self.on_rotate is not None:
            self.on_rotate(logfile)

    @staticmethod
    def _sync_and_close(fh: BinaryIO) -> None:
        try:
            fh.flush()
            os.fsync(fh.fileno())
        finally:
            fh.close()
