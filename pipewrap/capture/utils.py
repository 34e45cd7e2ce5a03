# pipewrap/capture/utils.py
import re
from datetime import datetime, timezone
from typing import Optional, Tuple

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

_STAMP_RE = re.compile(r"\.(\d{14})(?:-(\d+))?(?:\.[A-Za-z0-9]+)?$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def timestamped_filename(prefix: str, when: datetime, ext: Optional[str] = None, seq: int = 0) -> str:
    """
    <prefix>.<YYYYMMDDHHMMSS>[-<seq>][.<ext>]
    seq disambiguates files created within the same second.
    """
    name = f"{prefix}.{when.strftime(TIMESTAMP_FORMAT)}"
    if seq:
        name = f"{name}-{seq}"
    if ext:
        name = f"{name}.{ext}"
    return name


def creation_order(name: str) -> Tuple[str, int, str]:
    """Sort key for names made by timestamped_filename(): timestamp, then seq. Other names sort by name."""
    m = _STAMP_RE.search(name)
    if m is None:
        return "", 0, name
    return m.group(1), int(m.group(2) or 0), name


def bytes_to_mb(size: int) -> float:
    return size / (1024 * 1024)


def mb_to_bytes(mb) -> int:
    return int(mb * 1024 * 1024)
