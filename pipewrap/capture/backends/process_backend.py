# pipewrap/capture/backends/process_backend.py
# Runs a child process and turns each line of its standard output into a record.
import collections
import os
import shlex
import shutil
import signal
import subprocess
import threading
import time
from typing import BinaryIO, List, Optional, Sequence, Union

from loguru import logger

from pipewrap.capture.backends.base import CaptureSource, RecordEncoder
from pipewrap.capture.records import END_OF_STREAM, EndOfStream, Record
from pipewrap.errors import ProcessStartFailed


class LineAssembler:
    """
    Splits a stream of byte chunks into lines.
    A line that arrives in several chunks is kept as deferred fragments and joined once its newline shows up,
    so a partial line is never emitted on its own.
    """

    def __init__(self):
        self._pending: List[bytes] = []

    def feed(self, chunk: bytes) -> List[bytes]:
        lines = []
        start = 0
        while True:
            idx = chunk.find(b"\n", start)
            if idx < 0:
                break
            self._pending.append(chunk[start:idx])
            lines.append(self._join())
            start = idx + 1
        if start < len(chunk):
            self._pending.append(chunk[start:])
        return lines

    def flush(self) -> Optional[bytes]:
        """Return the unterminated tail, if any. Called once the stream hit EOF."""
        if not self._pending:
            return None
        return self._join()

    @property
    def pending(self) -> int:
        return sum(len(p) for p in self._pending)

    def _join(self) -> bytes:
        line = b"".join(self._pending)
        self._pending.clear()
        if line.endswith(b"\r"):
            line = line[:-1]
        return line


class LineEncoder(RecordEncoder):
    """Plain text: one record per line."""

    def write(self, record: Record) -> None:
        self.fh.write(record.payload + b"\n")


class ProcessSource(CaptureSource):
    """
    Subprocess backend.
    stop() terminates the child (SIGKILL after kill_timeout seconds); the reader then drains what is left
    in the pipe and next() returns END_OF_STREAM.
    """

    def __init__(self, command: Union[str, Sequence[str]], chunk_size: int = 4096, echo: bool = False,
                 kill_timeout: float = 5.0):
        self.argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.argv:
            raise ProcessStartFailed("command is empty")
        self.name = os.path.basename(self.argv[0])
        self.extension = None
        self.chunk_size = chunk_size
        self.echo = echo
        self.kill_timeout = kill_timeout

        self._proc: Optional[subprocess.Popen] = None
        self._assembler = LineAssembler()
        self._ready = collections.deque()
        self._eof = False
        self._lock = threading.Lock()
        self._stopped = False
        self._closed = False

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    def describe(self) -> str:
        return " ".join(self.argv)

    def _resolve_argv(self) -> List[str]:
        exe = self.argv[0]
        if os.path.basename(exe) == exe:
            found = shutil.which(exe)
            if found is None:
                raise ProcessStartFailed(f"executable not found on PATH: {exe}")
            return [found] + self.argv[1:]
        return list(self.argv)

    def open(self) -> "ProcessSource":
        argv = self._resolve_argv()
        try:
            self._proc = subprocess.Popen(argv, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, bufsize=0,
                                          start_new_session=True)
        except OSError as e:
            raise ProcessStartFailed(f"cannot start {self.argv[0]}: {e}") from e
        logger.info("Started child process pid={} cmd={}", self._proc.pid, self.describe())
        return self

    def next(self) -> Union[Record, EndOfStream]:
        if self._proc is None:
            raise RuntimeError("source is not open")
        while not self._ready:
            if self._eof:
                return END_OF_STREAM
            chunk = self._proc.stdout.read(self.chunk_size)
            if not chunk:
                self._eof = True
                tail = self._assembler.flush()
                if tail is not None:
                    self._ready.append(tail)
                continue
            self._ready.extend(self._assembler.feed(chunk))
        record = Record(payload=self._ready.popleft(), timestamp=time.time())
        if self.echo:
            print(record.text, flush=True)
        return record

    def stop(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        proc = self._proc
        if proc is None:
            return
        if proc.poll() is not None:
            self._kill_leftovers()
            return
        # the child leads its own session; anything it forked shares the pipe and the group
        logger.info("Terminating process group of pid={}", proc.pid)
        if not self._signal_group(signal.SIGTERM):
            return
        try:
            proc.wait(timeout=self.kill_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Child process pid={} ignored SIGTERM for {}s, killing its group", proc.pid,
                           self.kill_timeout)
            self._signal_group(signal.SIGKILL)
            return
        self._kill_leftovers()

    def _kill_leftovers(self) -> None:
        if self._signal_group(signal.SIGKILL):
            logger.debug("Killed processes left in group {}", self._proc.pid)

    def _signal_group(self, sig) -> bool:
        try:
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            return False
        return True

    def close(self) -> None:
        with self._lock:
            if self._closed or self._proc is None:
                return
            self._closed = True
        self.stop()
        returncode = self._proc.wait()
        self._proc.stdout.close()
        logger.info("Child process pid={} exited with status {}", self._proc.pid, returncode)

    def new_encoder(self, fh: BinaryIO) -> LineEncoder:
        return LineEncoder(fh)
