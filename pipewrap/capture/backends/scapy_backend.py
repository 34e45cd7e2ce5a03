# pipewrap/capture/backends/scapy_backend.py
# Live-interface backend built on Scapy: packets are sniffed from a layer-2 listen socket and
# written out through Scapy's pcap writer.
import queue
import threading
from typing import BinaryIO, Optional, Union

from loguru import logger
from scapy.all import AsyncSniffer, conf, get_if_list
from scapy.arch.common import compile_filter
from scapy.data import DLT_EN10MB
from scapy.error import Scapy_Exception
from scapy.utils import RawPcapWriter

from pipewrap.capture.backends.base import CaptureSource, RecordEncoder
from pipewrap.capture.records import END_OF_STREAM, EndOfStream, Record
from pipewrap.errors import DeviceNotFound, DeviceOpenFailed, FilterRejected

DEFAULT_SNAPLEN = 65535


class PcapEncoder(RecordEncoder):
    """
    Classic pcap layout: one global header (magic, version 2.4, snaplen, link type) at the start of
    every file, then per record ts_sec / ts_usec / incl_len / orig_len followed by the bytes.
    """

    def __init__(self, fh: BinaryIO, linktype: int = DLT_EN10MB, snaplen: int = DEFAULT_SNAPLEN):
        super().__init__(fh)
        self._writer = RawPcapWriter(fh, linktype=linktype, snaplen=snaplen, sync=True)

    def write_header(self) -> None:
        self._writer.write_header(None)

    def write(self, record: Record) -> None:
        sec = int(record.timestamp)
        usec = int(round((record.timestamp - sec) * 1_000_000))
        if usec >= 1_000_000:
            sec += 1
            usec -= 1_000_000
        self._writer.write_packet(record.payload, sec=sec, usec=usec,
                                  caplen=record.captured_length, wirelen=record.wire_length)


class InterfaceSource(CaptureSource):
    """
    Sniffs a named interface with an optional BPF filter.
    The sniffer runs on its own thread and hands packets over through an internal queue; a watcher thread
    joins the sniffer and queues END_OF_STREAM after the last packet, whether the sniffer was stopped or died.
    """

    def __init__(self, interface: str, bpf_filter: Optional[str] = None, snaplen: int = DEFAULT_SNAPLEN,
                 promisc: bool = False):
        self.interface = interface
        self.filter = bpf_filter
        self.snaplen = snaplen
        self.promisc = promisc
        self.name = interface
        self.extension = "pcap"
        self.link_type = DLT_EN10MB

        self._socket = None
        self._sniffer: Optional[AsyncSniffer] = None
        self._watcher: Optional[threading.Thread] = None
        self._packets = queue.SimpleQueue()
        self._started = threading.Event()
        self._lock = threading.Lock()
        self._stopped = False
        self._closed = False
        self._exhausted = False

    def describe(self) -> str:
        return f"{self.interface} filter={self.filter!r}"

    def open(self) -> "InterfaceSource":
        available = get_if_list()
        if self.interface not in available:
            raise DeviceNotFound(f"Interface '{self.interface}' not found. Available: {', '.join(available)}")
        if self.filter:
            try:
                compile_filter(self.filter, iface=self.interface)
            except (Scapy_Exception, ImportError) as e:
                raise FilterRejected(f"Unable to set filter {self.filter!r}: {e}") from e
        try:
            self._socket = conf.L2listen(iface=self.interface, filter=self.filter, promisc=self.promisc)
        except (OSError, Scapy_Exception) as e:
            raise DeviceOpenFailed(f"Unable to open device {self.interface}: {e}") from e
        self.link_type = conf.l2types.layer2num.get(getattr(self._socket, "LL", None), DLT_EN10MB)

        logger.info("Starting InterfaceSource on iface={} filter={} snaplen={} linktype={}",
                    self.interface, self.filter, self.snaplen, self.link_type)
        self._sniffer = AsyncSniffer(opened_socket=self._socket, prn=self._on_packet, store=False,
                                     started_callback=self._started.set)
        self._sniffer.start()
        self._watcher = threading.Thread(target=self._watch, name=f"sniff-watch-{self.interface}", daemon=True)
        self._watcher.start()
        # stop() is only safe once the sniffer loop is running
        self._started.wait()
        return self

    def _on_packet(self, pkt) -> None:
        raw = bytes(pkt)
        data = raw[:self.snaplen]
        self._packets.put(Record(
            payload=data,
            timestamp=float(pkt.time),
            wire_length=getattr(pkt, "wirelen", None) or len(raw),
            captured_length=len(data),
            link_type=self.link_type,
        ))

    def _watch(self) -> None:
        self._sniffer.thread.join()
        if not self._stopped:
            error = getattr(self._sniffer, "exception", None)
            if error is not None:
                logger.error("Sniffer on {} failed: {}", self.interface, error)
            else:
                logger.warning("Sniffer on {} ended unexpectedly", self.interface)
        self._started.set()
        self._packets.put(END_OF_STREAM)

    def next(self) -> Union[Record, EndOfStream]:
        if self._exhausted:
            return END_OF_STREAM
        item = self._packets.get()
        if item is END_OF_STREAM:
            self._exhausted = True
        return item

    def stop(self) -> None:
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        if self._sniffer is None:
            self._packets.put(END_OF_STREAM)
            return
        logger.info("Stopping InterfaceSource on {}", self.interface)
        try:
            if self._sniffer.running:
                self._sniffer.stop(join=False)
        except Scapy_Exception as e:
            logger.debug("Sniffer on {} already stopped: {}", self.interface, e)

    def close(self) -> None:
        with self._lock:
            if self._closed or self._socket is None:
                return
            self._closed = True
        self.stop()
        if self._watcher:
            self._watcher.join()
        self._socket.close()
        logger.info("Closed capture handle on {}", self.interface)

    def new_encoder(self, fh: BinaryIO) -> PcapEncoder:
        return PcapEncoder(fh, linktype=self.link_type, snaplen=self.snaplen)
