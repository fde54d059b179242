"""Appending chunks to segment files on disk and replicating them to followers."""

from __future__ import annotations

import logging
import queue
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, BinaryIO, Optional, Protocol

from streamlog.index_file import IndexFileWriter
from streamlog.models import (
    DatalogConfig,
    TopicDataId,
    alignment_padding,
    encode_chunk,
    segment_file_name,
)

log = logging.getLogger(__name__)

# How often the write loop wakes up to check whether a timed flush is due.
FLUSH_RESOLUTION = 0.2

# Segment id used while no segment file is open.
NO_SEGMENT = sys.maxsize

DIRECTORY_PERMISSIONS = 0o755

_STOP = object()


class Replicator(Protocol):
    """Sends written chunks to the follower brokers."""

    def send_to_followers(self, replication: Any, topic: TopicDataId, segment_id: int, item: Any) -> None:
        """Sends the item to the followers, raising when it could not be replicated."""
        ...


def pad_to_alignment(buffer: bytearray) -> int:
    """Appends alignment bytes to ``buffer`` and returns how many were added."""
    padding = alignment_padding(len(buffer))
    buffer += padding
    return len(padding)


class SegmentWriter:
    """Writes chunks for one topic data id and generation to segment files.

    As a leader (``segment_id`` is ``None``) each item must provide ``data_block``,
    ``start_offset``, ``record_length``, ``replication`` and ``set_result(error)``; the
    item is also sent to the followers through the replicator. As a replica, items
    provide ``segment_id`` instead of ``replication``.
    """

    def __init__(
        self,
        topic: TopicDataId,
        replicator: Optional[Replicator],
        config: DatalogConfig,
        segment_id: Optional[int] = None,
    ) -> None:
        self.topic = topic
        self._config = config
        self._replicator = replicator
        self._base_path: Path = config.datalog_path(topic)
        self._base_path.mkdir(mode=DIRECTORY_PERMISSIONS, parents=True, exist_ok=True)

        self._items: "queue.Queue[object]" = queue.Queue(maxsize=1)
        self._buffer = bytearray()
        self._last_flush: Optional[float] = None
        self._buffered_offset = 0
        self._tail_offset = 0
        self._segment_id = NO_SEGMENT
        self._segment_file: Optional[BinaryIO] = None
        self._segment_length = 0
        self._index_file = IndexFileWriter(self._base_path, config)
        self._error: Optional[BaseException] = None
        self._closed = False
        self._executor: Optional[ThreadPoolExecutor] = None

        if segment_id is None:
            log.info("Creating segment writer as leader for %s", topic)
            self._create_file(0)
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="segment-send")
            target = self._write_loop_as_leader
        else:
            log.info("Creating segment writer as replica for %s", topic)
            self._create_file(segment_id)
            target = self._write_loop_as_replica

        self._thread = threading.Thread(target=self._run, args=(target,), name="segment-writer", daemon=True)
        self._thread.start()

    def put(self, item: Any) -> None:
        """Queues an item to be written; its ``set_result`` is called once handled."""
        if self._closed:
            raise RuntimeError("Segment writer is closed")
        if self._error is not None:
            raise self._error
        self._items.put(item)

    def close(self) -> None:
        """Writes whatever is buffered, closes the files and stops the writer."""
        if self._closed:
            return
        self._closed = True
        self._items.put(_STOP)
        self._thread.join()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
        self._index_file.close()
        if self._error is not None:
            raise self._error

    def __enter__(self) -> "SegmentWriter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _next_item(self) -> object:
        try:
            return self._items.get(timeout=FLUSH_RESOLUTION)
        except queue.Empty:
            # No data: only a chance to flush on time
            return None

    def _run(self, loop: Any) -> None:
        try:
            loop()
            if self._buffer:
                self._flush("closing writer")
            self._close_file()
        except Exception as error:  # noqa: BLE001 - reported to every pending item
            log.exception("Segment writer failed on %s", self._base_path)
            self._error = error
            self._fail_pending(error)
            if self._segment_file is not None:
                self._segment_file.close()
                self._segment_file = None

    def _fail_pending(self, error: BaseException) -> None:
        while (item := self._items.get()) is not _STOP:
            if item is not None:
                item.set_result(error)

    def _write_loop_as_leader(self) -> None:
        assert self._executor is not None
        while (item := self._next_item()) is not _STOP:
            if self._maybe_flush():
                self._maybe_close_segment()
            if item is None:
                continue

            self._write_to_buffer(item)
            # Send in the background while flushing
            future = self._executor.submit(self._send, item, self._segment_id)
            if self._maybe_flush():
                self._maybe_close_segment()
            item.set_result(future.exception())

    def _write_loop_as_replica(self) -> None:
        while (item := self._next_item()) is not _STOP:
            self._maybe_flush()
            if item is None:
                continue

            if self._segment_id != item.segment_id:
                if self._buffer:
                    self._flush("closing")
                self._close_file()

            self._write_to_buffer(item)
            self._maybe_flush()
            item.set_result(None)

    def _send(self, item: Any, segment_id: int) -> None:
        if self._replicator is None:
            raise RuntimeError("No replicator to send to followers")
        self._replicator.send_to_followers(item.replication, self.topic, segment_id, item)

    def _maybe_flush(self) -> bool:
        if not self._buffer:
            return False

        can_buffer_next_group = len(self._buffer) + self._config.max_group_size < self._config.segment_buffer_size
        elapsed = time.monotonic() - (self._last_flush or 0.0)
        if can_buffer_next_group and elapsed < self._config.segment_flush_interval:
            return False

        self._flush("timer" if can_buffer_next_group else "buffer size")
        return True

    def _create_file(self, segment_id: int) -> None:
        self._segment_id = segment_id
        name = segment_file_name(segment_id)
        log.debug("Creating segment file %s on %s", name, self._base_path)
        self._segment_file = open(self._base_path / name, "ab", buffering=0)

    def _flush(self, reason: str) -> None:
        pad_to_alignment(self._buffer)
        length = len(self._buffer)

        if self._segment_file is None:
            self._create_file(self._buffered_offset)
        assert self._segment_file is not None

        log.debug(
            "Writing %d bytes to segment file %s/%s (%s)",
            length,
            self._base_path,
            segment_file_name(self._segment_id),
            reason,
        )
        self._segment_file.write(self._buffer)

        self._index_file.append(self._segment_id, self._buffered_offset, self._segment_length, self._tail_offset)
        self._segment_length += length
        self._buffer.clear()
        self._last_flush = time.monotonic()

    def _maybe_close_segment(self) -> None:
        if self._segment_length + self._config.segment_buffer_size > self._config.max_segment_size:
            self._close_file()

    def _close_file(self) -> None:
        previous_id = self._segment_id
        log.debug("Closing segment file %d on %s", previous_id, self._base_path)
        if self._segment_file is not None:
            self._segment_file.close()
        self._index_file.close_file(previous_id, self._tail_offset)
        self._segment_file = None
        self._segment_id = NO_SEGMENT
        self._segment_length = 0

    def _write_to_buffer(self, item: Any) -> None:
        if self._last_flush is None or not self._buffer:
            # The buffer was empty: restart the flush check logic
            self._last_flush = time.monotonic()
            self._buffered_offset = item.start_offset

        if item.record_length > 0:
            self._tail_offset = item.start_offset + item.record_length - 1

        self._buffer += encode_chunk(item.data_block, item.start_offset, item.record_length)