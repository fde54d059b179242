"""Reading chunks from segment files for a consumer group, one generation at a time."""

from __future__ import annotations

import logging
import queue
import threading
import time
from pathlib import Path
from typing import Any, BinaryIO, List, Optional, Protocol, Tuple

from streamlog.index_file import try_read_index_file
from streamlog.models import (
    ALIGNMENT_FLAG,
    ALIGNMENT_SIZE,
    CHUNK_HEADER_SIZE,
    OFFSET_COMPLETED,
    SEGMENT_FILE_EXTENSION,
    DatalogConfig,
    Offset,
    OffsetCommit,
    ReadSegmentChunk,
    TopicDataId,
    new_empty_chunk,
    read_chunk_header,
    segment_id_from_name,
)

log = logging.getLogger(__name__)

DIRECTORY_PERMISSIONS = 0o755

_STOP = object()


class ReadItem(Protocol):
    """A queued poll request; ``set_result`` is called once it was handled."""

    origin: Any
    commit_only: bool

    def set_result(self, error: Optional[BaseException], chunk: Optional[ReadSegmentChunk]) -> None:
        """Receives the outcome of the poll."""
        ...


class ReplicationReader(Protocol):
    """Access to the data held by the replicas of a generation."""

    def merge_file_structure(self) -> bool:
        """Merges the remote file structure into the local one; ``True`` when done."""
        ...

    def stream_file(self, segment_id: int, topic: TopicDataId, start_offset: int, max_records: int) -> bytes:
        """Reads at least a chunk from a replica."""
        ...


class OffsetState(Protocol):
    """Storage of the consumer offsets."""

    def get(self, group: str, topic: str, token: int, range_index: int) -> Optional[Offset]:
        """Last stored offset, or ``None`` when unknown."""
        ...

    def set(
        self, group: str, topic: str, token: int, range_index: int, value: Offset, commit_type: OffsetCommit
    ) -> None:
        """Stores an offset locally or on every replica."""
        ...


class _ReadAhead:
    """Unconsumed bytes read ahead from a file or a replica."""

    def __init__(self) -> None:
        self.data = b""
        self.pos = 0

    def __len__(self) -> int:
        return len(self.data) - self.pos

    def reset(self, data: bytes = b"") -> None:
        self.data = data
        self.pos = 0

    def drain(self) -> bytes:
        rest = self.data[self.pos :]
        self.reset()
        return rest


def _round_up_to_alignment(length: int) -> int:
    return length + (-length) % ALIGNMENT_SIZE


class SegmentReader:
    """Reads the segment files of one topic generation on behalf of a consumer group.

    Reads are served in a background thread; submit items with :meth:`submit`.
    """

    def __init__(
        self,
        group: str,
        is_leader: bool,
        replication_reader: Optional[ReplicationReader],
        topic: TopicDataId,
        source_version: Any,
        initial_offset: int,
        offset_state: OffsetState,
        max_produced_offset: Optional[int],
        config: DatalogConfig,
    ) -> None:
        self.topic = topic
        self.source_version = source_version
        self.max_produced_offset = max_produced_offset
        self._group = group
        self._is_leader = is_leader
        self._replication_reader = replication_reader
        self._offset_state = offset_state
        self._config = config
        self._base_path: Path = config.datalog_path(topic)
        self._message_offset = initial_offset
        self._file_name = ""
        self._segment_file: Optional[BinaryIO] = None
        self._last_chunk_file_position = 0
        self._file_position = 0
        self._skip_from_file = 0
        self._reading_from_replica = False
        self._error: Optional[BaseException] = None
        self._closed = False
        self._items: "queue.Queue[object]" = queue.Queue(maxsize=16)

        self._init_read(foreground=True)

        self._thread = threading.Thread(target=self._start_reading, name="segment-reader", daemon=True)
        self._thread.start()

    @property
    def message_offset(self) -> int:
        """The offset of the next message to be read."""
        return self._message_offset

    def submit(self, item: ReadItem) -> None:
        """Queues a poll request."""
        if self._closed:
            raise RuntimeError("Segment reader is closed")
        self._items.put(item)

    def close(self) -> None:
        """Stops the reader; queued items are handled first."""
        if self._closed:
            return
        self._closed = True
        self._items.put(_STOP)
        self._thread.join()
        if self._segment_file is not None:
            self._segment_file.close()
            self._segment_file = None

    def __enter__(self) -> "SegmentReader":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # Background loop

    def _start_reading(self) -> None:
        log.info("Start reading for %s", self.topic)
        try:
            if not self._is_leader:
                self._init_read(foreground=False)
            self._read_loop()
        except Exception as error:  # noqa: BLE001 - reported to every pending item
            log.exception("Segment reader failed for %s", self.topic)
            self._error = error
        if self._error is not None:
            while (item := self._items.get()) is not _STOP:
                item.set_result(self._error, None)  # type: ignore[attr-defined]
        log.info("Closing segment reader for topic: %s", self.topic)

    def _read_loop(self) -> None:
        reader = _ReadAhead()
        last_commit: List[Optional[float]] = [None]
        next_file_name = ""
        offset_gap = -1
        last_origin: Any = None
        has_origin = False

        while (item := self._items.get()) is not _STOP:
            if has_origin and last_origin != item.origin:
                if item.commit_only:
                    item.set_result(RuntimeError("Manual commit was ignored"), None)
                    continue
                if self._reset_offset_to_last_committed():
                    reader.reset()
            else:
                self._store_offset(last_commit, item.commit_only)
                if item.commit_only:
                    item.set_result(None, new_empty_chunk(self._message_offset))
                    continue

            last_origin = item.origin
            has_origin = True
            remainder = b""
            chunk: Optional[ReadSegmentChunk] = None

            if len(reader) > 0:
                chunk, gap = self._read_chunk(reader)
                if chunk is None and len(reader) > 0:
                    remainder = reader.drain()
                if gap >= 0:
                    offset_gap = gap

            if chunk is not None:
                item.set_result(None, chunk)
                continue

            item.set_result(None, new_empty_chunk(self._message_offset))

            handled, offset_gap = self._handle_file_gap(offset_gap, reader)
            if handled:
                continue

            if self._segment_file is None:
                self._init_read(foreground=False)
                if self._segment_file is None:
                    continue

            try:
                data, new_bytes = self._poll_file(remainder)
            except OSError as error:
                log.error("Error while reading file %s/%s: %s", self._base_path, self._file_name, error)
                self._error = error
                data, new_bytes = remainder, 0

            if new_bytes <= 0:
                reader.reset(remainder)
                if not next_file_name:
                    next_file_name, offset_gap = self._check_next_file()
                else:
                    self._swap_segment_file(next_file_name)
                    next_file_name = ""
                continue

            reader.reset(data)

    # Chunk parsing

    def _read_single_chunk(self, reader: _ReadAhead) -> Tuple[int, Optional[ReadSegmentChunk]]:
        n = 0
        data = reader.data
        while reader.pos < len(data) and data[reader.pos] == ALIGNMENT_FLAG:
            reader.pos += 1
            n += 1
        if len(reader) < CHUNK_HEADER_SIZE:
            return n, None

        header = read_chunk_header(data[reader.pos : reader.pos + CHUNK_HEADER_SIZE])
        if len(reader) - CHUNK_HEADER_SIZE < header.body_length:
            return n, None

        body_start = reader.pos + CHUNK_HEADER_SIZE
        body = bytes(data[body_start : body_start + header.body_length])
        reader.pos = body_start + header.body_length
        n += CHUNK_HEADER_SIZE + header.body_length
        return n, ReadSegmentChunk(body, header.start, header.record_length)

    def _read_chunk(self, reader: _ReadAhead) -> Tuple[Optional[ReadSegmentChunk], int]:
        """Next chunk at the expected offset, skipping earlier ones; also returns a gap or -1."""
        while True:
            initial_position = self._file_position
            n, chunk = self._read_single_chunk(reader)
            if not self._reading_from_replica:
                self._file_position += n
            if chunk is None:
                return None, -1
            if not self._reading_from_replica:
                self._last_chunk_file_position = initial_position
            if chunk.start_offset > self._message_offset:
                return None, chunk.start_offset - 1
            if chunk.start_offset == self._message_offset:
                break
        self._message_offset = chunk.start_offset + chunk.record_length
        return chunk, -1

    # Gaps and offsets

    def _handle_file_gap(self, offset_gap: int, reader: _ReadAhead) -> Tuple[bool, int]:
        if offset_gap < 0:
            return False, offset_gap

        if self._message_offset <= offset_gap:
            log.debug(
                "Handling file gap in %s/%s with the range [%d, %d]",
                self._base_path,
                self._file_name,
                self._message_offset,
                offset_gap,
            )
            self._reading_from_replica = True
            if self._replication_reader is None:
                raise RuntimeError(
                    f"No replication reader found for {self.topic} for file gap in {self._base_path}/{self._file_name}"
                )
            segment_id = segment_id_from_name(self._file_name)
            max_records = offset_gap - self._message_offset + 1
            try:
                data = self._replication_reader.stream_file(segment_id, self.topic, self._message_offset, max_records)
            except Exception:  # noqa: BLE001 - the poll is retried later
                log.exception("File %s/%s could not be read from replicas", self._base_path, self._file_name)
                data = b""
            reader.reset(bytes(data))
            return True, offset_gap

        self._reading_from_replica = False
        self._skip_from_file = self._last_chunk_file_position % ALIGNMENT_SIZE
        file_offset = self._last_chunk_file_position - self._skip_from_file
        self._file_position = self._last_chunk_file_position
        log.info("Seeking position %d of file %s/%s after gap", file_offset, self._base_path, self._file_name)
        if self._segment_file is not None:
            self._segment_file.seek(file_offset)
        return False, -1

    def _store_offset(self, last_commit: List[Optional[float]], manual: bool) -> None:
        commit_type = OffsetCommit.LOCAL
        offset = self._message_offset
        now = time.monotonic()
        previous = last_commit[0]
        if manual or previous is None or now - previous >= self._config.auto_commit_interval:
            last_commit[0] = now
            commit_type = OffsetCommit.ALL
        elif self.max_produced_offset is not None and self._message_offset >= self.max_produced_offset:
            log.debug("Consumed all messages of a previous generation %s", self.topic)
            commit_type = OffsetCommit.ALL
            offset = OFFSET_COMPLETED

        value = Offset(offset, self.topic.version, self.source_version)
        self._offset_state.set(
            self._group, self.topic.name, self.topic.token, self.topic.range_index, value, commit_type
        )

    def _reset_offset_to_last_committed(self) -> bool:
        if self._segment_file is None:
            return False

        offset = self._offset_state.get(self._group, self.topic.name, self.topic.token, self.topic.range_index)
        if offset is None:
            offset = Offset(0, self.topic.version, self.source_version)
        elif offset.version != self.topic.version:
            log.error("Unexpected offset version for group %s and topic %s", self._group, self.topic)
            offset = Offset(0, self.topic.version, self.source_version)

        self._segment_file.close()
        self._segment_file = None
        self._message_offset = offset.offset
        return True

    # Files

    def _segment_names(self) -> List[str]:
        return sorted(p.name for p in self._base_path.glob(f"*.{SEGMENT_FILE_EXTENSION}"))

    def _init_read(self, foreground: bool) -> None:
        found = self._full_seek(foreground)
        if found is None:
            return
        file_name, file_offset = found
        self._open(file_name)
        if file_offset > 0:
            log.info("Seeking position %d for reading in file %s", file_offset, file_name)
            assert self._segment_file is not None
            self._segment_file.seek(file_offset)
            self._file_position = file_offset
        else:
            log.info("Started reading file %s/%s from position 0", self._base_path, file_name)

    def _open(self, file_name: str) -> None:
        self._segment_file = open(self._base_path / file_name, "rb", buffering=0)
        self._file_name = file_name
        self._last_chunk_file_position = 0
        self._file_position = 0
        self._skip_from_file = 0

    def _full_seek(self, foreground: bool) -> Optional[Tuple[str, int]]:
        """The segment file that may hold the current offset and the position to start from."""
        if not self._is_leader:
            if foreground:
                return None
            if not self._set_structure_as_follower():
                return None

        names = self._segment_names()
        if not names:
            log.debug("Reader could not find any files in %s", self._base_path)
            return None

        prefix = ""
        for name in names:
            candidate = name.split(".")[0]
            try:
                start = int(candidate)
            except ValueError:
                continue
            if start > self._message_offset:
                break
            prefix = candidate

        if not prefix:
            return None
        file_offset = try_read_index_file(self._base_path, prefix, self._message_offset)
        return f"{prefix}.{SEGMENT_FILE_EXTENSION}", file_offset

    def _set_structure_as_follower(self) -> bool:
        self._base_path.mkdir(mode=DIRECTORY_PERMISSIONS, parents=True, exist_ok=True)
        if self._replication_reader is None:
            raise RuntimeError(f"No replication reader found for {self.topic}")
        return self._replication_reader.merge_file_structure()

    def _check_next_file(self) -> Tuple[str, int]:
        """Name of the file after the current one, and the last offset of a gap or -1."""
        suffix_length = len(SEGMENT_FILE_EXTENSION) + 1
        found_current = False
        next_file_name = ""
        offset_gap = -1
        for name in self._segment_names():
            if found_current:
                try:
                    segment_id = int(name[:-suffix_length])
                except ValueError:
                    continue
                if segment_id > self._message_offset:
                    offset_gap = segment_id - 1
                next_file_name = name
                break
            if name == self._file_name:
                found_current = True

        if offset_gap >= 0:
            return "", offset_gap
        if next_file_name:
            return next_file_name, -1
        if self.max_produced_offset is not None and self._message_offset <= self.max_produced_offset:
            return "", self.max_produced_offset
        return "", -1

    def _swap_segment_file(self, next_file_name: str) -> None:
        previous = self._segment_file
        try:
            self._open(next_file_name)
        except OSError:
            log.exception("Next file could not be opened")
            return
        if previous is not None:
            previous.close()

    def _poll_file(self, remainder: bytes) -> Tuple[bytes, int]:
        """Remainder followed by newly read file data, and the number of new bytes."""
        assert self._segment_file is not None
        capacity = self._config.read_ahead_size - _round_up_to_alignment(len(remainder))
        capacity -= capacity % ALIGNMENT_SIZE
        data = self._segment_file.read(capacity) if capacity > 0 else b""
        data = data or b""
        if self._skip_from_file > 0:
            skip = self._skip_from_file
            self._skip_from_file = 0
            if skip <= len(data):
                data = data[skip:]
        return remainder + data, len(data)