# pipewrap/tests/test_channel.py
import threading

import pytest

from conftest import line_record
from pipewrap.capture.channel import RecordChannel
from pipewrap.capture.records import END_OF_STREAM
from pipewrap.errors import ChannelClosed


def test_preserves_order_and_ends_with_marker():
    channel = RecordChannel(10)
    records = [line_record(str(i)) for i in range(5)]
    for r in records:
        channel.put(r)
    channel.close()

    received = [channel.get() for _ in range(6)]
    assert received[:5] == records
    assert received[5] is END_OF_STREAM


def test_put_blocks_when_full_instead_of_dropping():
    channel = RecordChannel(2)
    channel.put(line_record("a"))
    channel.put(line_record("b"))

    producer = threading.Thread(target=channel.put, args=(line_record("c"),), daemon=True)
    producer.start()
    producer.join(0.2)
    assert producer.is_alive()

    assert channel.get().text == "a"
    producer.join(5)
    assert not producer.is_alive()
    assert [channel.get().text for _ in range(2)] == ["b", "c"]


def test_close_is_idempotent_and_rejects_puts():
    channel = RecordChannel(4)
    channel.close()
    channel.close()
    assert channel.closed
    assert channel.qsize() == 1
    with pytest.raises(ChannelClosed):
        channel.put(line_record("late"))


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        RecordChannel(0)
