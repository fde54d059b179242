import threading
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional

import pytest

from streamlog.index_file import read_producer_offset
from streamlog.models import (
    ALIGNMENT_FLAG,
    ALIGNMENT_SIZE,
    DatalogConfig,
    TopicDataId,
    encode_chunk,
    segment_file_name,
)
from streamlog.segment_writer import SegmentWriter, pad_to_alignment


@dataclass
class WriteItem:
    data_block: bytes
    start_offset: int = 123
    record_length: int = 200
    segment_id: int = 0
    replication: Any = "replication-info"
    results: List[Optional[BaseException]] = field(default_factory=list)
    done: threading.Event = field(default_factory=threading.Event)

    def set_result(self, error):
        self.results.append(error)
        self.done.set()


class FakeReplicator:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def send_to_followers(self, replication, topic, segment_id, item):
        self.calls.append((replication, topic, segment_id))
        if self.error is not None:
            raise self.error


def make_config(tmp_path, **overrides):
    values = dict(
        home_path=tmp_path,
        index_file_period_bytes=5 * 1024 * 1024,
        max_group_size=100,
        segment_buffer_size=300,
        max_segment_size=500,
        segment_flush_interval=1.0,
    )
    values.update(overrides)
    return DatalogConfig(**values)


def test_pad_to_alignment_completes_remaining_length():
    buffer = bytearray()
    assert pad_to_alignment(buffer) == 0
    assert len(buffer) == 0

    buffer += bytes([0, 0, 0])
    assert pad_to_alignment(buffer) == ALIGNMENT_SIZE - 3
    assert len(buffer) == ALIGNMENT_SIZE
    assert buffer[:3] == bytes([0, 0, 0])
    assert all(b == ALIGNMENT_FLAG for b in buffer[3:])

    # Already aligned, no effect
    assert pad_to_alignment(buffer) == 0
    assert len(buffer) == ALIGNMENT_SIZE

    buffer += bytes([1])
    pad_to_alignment(buffer)
    assert len(buffer) == ALIGNMENT_SIZE * 2
    assert buffer[ALIGNMENT_SIZE] == 1
    assert all(b == ALIGNMENT_FLAG for b in buffer[ALIGNMENT_SIZE + 1 :])


def test_leader_creates_new_files_and_flushes(tmp_path):
    config = make_config(tmp_path)
    topic = TopicDataId(name="abc")
    replicator = FakeReplicator()
    writer = SegmentWriter(topic, replicator, config, None)
    items = [WriteItem(bytes(100)) for _ in range(3)]
    for item in items:
        writer.put(item)
    assert items[-1].done.wait(5)
    writer.close()

    assert [item.results for item in items] == [[None], [None], [None]]
    assert [call[2] for call in replicator.calls[:2]] == [0, 0]
    assert all(call[0] == "replication-info" and call[1] == topic for call in replicator.calls)

    chunk = encode_chunk(bytes(100), 123, 200)
    base = config.datalog_path(topic)
    first = (base / segment_file_name(0)).read_bytes()
    assert len(first) == ALIGNMENT_SIZE
    assert first[: 2 * len(chunk)] == chunk * 2
    assert all(b == ALIGNMENT_FLAG for b in first[2 * len(chunk) :])

    second = (base / segment_file_name(123)).read_bytes()
    assert len(second) == ALIGNMENT_SIZE
    assert second[: len(chunk)] == chunk

    assert read_producer_offset(topic, config) == 322


def test_leader_reports_replication_error(tmp_path):
    config = make_config(tmp_path)
    error = ConnectionError("followers unavailable")
    writer = SegmentWriter(TopicDataId(name="err"), FakeReplicator(error), config, None)
    item = WriteItem(b"payload", start_offset=0, record_length=1)
    writer.put(item)
    assert item.done.wait(5)
    writer.close()
    assert item.results == [error]


def test_flushes_on_timer(tmp_path):
    config = make_config(tmp_path, segment_buffer_size=8192, max_segment_size=1024 * 1024,
                         segment_flush_interval=0.05)
    topic = TopicDataId(name="timer")
    writer = SegmentWriter(topic, FakeReplicator(), config, None)
    item = WriteItem(b"abc", start_offset=0, record_length=1)
    writer.put(item)
    path = config.datalog_path(topic) / segment_file_name(0)
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline and path.stat().st_size == 0:
        time.sleep(0.02)
    try:
        data = path.read_bytes()
        assert len(data) == ALIGNMENT_SIZE
        assert data.startswith(encode_chunk(b"abc", 0, 1))
    finally:
        writer.close()


def test_replica_switches_segment_files(tmp_path):
    config = make_config(tmp_path, segment_buffer_size=8192, max_segment_size=1024 * 1024)
    topic = TopicDataId(name="replica", token=7)
    writer = SegmentWriter(topic, None, config, 5)
    first = WriteItem(b"first", start_offset=5, record_length=2, segment_id=5)
    second = WriteItem(b"second", start_offset=10, record_length=3, segment_id=10)
    writer.put(first)
    writer.put(second)
    writer.close()

    assert first.results == [None]
    assert second.results == [None]

    base = config.datalog_path(topic)
    data5 = (base / segment_file_name(5)).read_bytes()
    data10 = (base / segment_file_name(10)).read_bytes()
    assert len(data5) == ALIGNMENT_SIZE
    assert data5.startswith(encode_chunk(b"first", 5, 2))
    assert len(data10) == ALIGNMENT_SIZE
    assert data10.startswith(encode_chunk(b"second", 10, 3))
    assert read_producer_offset(topic, config) == 12


def test_put_after_close_raises(tmp_path):
    writer = SegmentWriter(TopicDataId(name="closed"), FakeReplicator(), make_config(tmp_path), None)
    writer.close()
    with pytest.raises(RuntimeError):
        writer.put(WriteItem(b"late"))