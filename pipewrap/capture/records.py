# pipewrap/capture/records.py
# The unit of captured data (a line or a packet) and the end-of-stream marker that follows the last one.
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Record:
    """
    One captured line or packet.
    Packet records also carry the lengths and link type the pcap encoder needs; line records leave them as None.
    """
    payload: bytes
    timestamp: float
    wire_length: Optional[int] = None
    captured_length: Optional[int] = None
    link_type: Optional[int] = None

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")


class EndOfStream:
    """Marker returned by a source after its last record and carried down the channel."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = EndOfStream()
