# pipewrap/storage/retention.py
# Keeps the log directory under its size ceiling by deleting the oldest file, one per rotation.
import os
import threading
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from loguru import logger

from pipewrap.capture.utils import bytes_to_mb, creation_order


def scan_directory(directory) -> Tuple[int, List[Tuple[float, Path]]]:
    """
    Non-recursive scan of the regular files in directory.
    Returns the total size in bytes and (mtime, path) for every file. Files that disappear while
    being scanned are skipped.
    """
    total = 0
    files = []
    with os.scandir(directory) as it:
        for entry in it:
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                st = entry.stat(follow_symlinks=False)
            except FileNotFoundError:
                continue
            total += st.st_size
            files.append((st.st_mtime, Path(entry.path)))
    return total, files


def _same_file(a: Path, b) -> bool:
    if b is None:
        return False
    return os.path.abspath(a) == os.path.abspath(b)


def enforce(directory, max_bytes: int, active_path=None) -> Optional[Path]:
    """
    Delete at most one file: the least recently modified one, if the directory is over max_bytes.

    The oldest file is chosen among all files. When that file is the active one nothing is deleted;
    the next rotation gets another chance. Returns the deleted path, or None when nothing was deleted.
    Raises OSError when the directory cannot be scanned.
    """
    total, files = scan_directory(directory)
    if total <= max_bytes or not files:
        logger.debug("Log dir {} at {:.2f} MB, limit {:.2f} MB", directory, bytes_to_mb(total), bytes_to_mb(max_bytes))
        return None

    logger.info("Threshold exceeded: log dir {} is {:.2f} MB, limit {:.2f} MB",
                directory, bytes_to_mb(total), bytes_to_mb(max_bytes))
    _, oldest = min(files, key=lambda f: (f[0], creation_order(f[1].name)))
    if _same_file(oldest, active_path):
        logger.info("Oldest file {} is the active log file, not removing it", oldest)
        return None
    try:
        os.remove(oldest)
    except FileNotFoundError:
        logger.info("Oldest file {} vanished before it could be removed", oldest)
        return None
    logger.info("Removed {}", oldest)
    return oldest


class RetentionManager:
    """
    Runs enforce() on a detached daemon thread.
    Only one run is in flight at a time; a trigger that arrives while one is running is skipped,
    the next rotation triggers again.
    """

    def __init__(self, directory, max_bytes: int, active_path_getter: Callable[[], Optional[Path]] = lambda: None):
        self.directory = Path(directory)
        self.max_bytes = max_bytes
        self.active_path_getter = active_path_getter
        self.runs = 0
        self.skipped = 0
        self.removed = 0
        self._busy = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def trigger(self) -> bool:
        if not self._busy.acquire(blocking=False):
            self.skipped += 1
            logger.debug("Retention already running for {}, skipping", self.directory)
            return False
        self._thread = threading.Thread(target=self._run, name="retention", daemon=True)
        self._thread.start()
        return True

    def _run(self) -> None:
        try:
            removed = enforce(self.directory, self.max_bytes, self.active_path_getter())
            if removed is not None:
                self.removed += 1
        except OSError as e:
            logger.warning("Retention scan of {} failed: {}", self.directory, e)
        finally:
            self.runs += 1
            self._busy.release()

    def wait(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
