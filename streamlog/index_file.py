"""Index files mapping message offsets to file offsets, and the producer offset file."""

from __future__ import annotations

import logging
import queue
import struct
import threading
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional, Union

from streamlog.models import (
    ALIGNMENT_SIZE,
    INDEX_FILE_EXTENSION,
    PRODUCER_OFFSET_FILE_NAME,
    DatalogConfig,
    TopicDataId,
    segment_file_prefix,
)

log = logging.getLogger(__name__)

_INDEX_BODY = struct.Struct(">qq")
_INDEX_ITEM = struct.Struct(">qqI")
INDEX_ITEM_SIZE = _INDEX_ITEM.size

_OFFSET_BODY = struct.Struct(">q")
_CRC = struct.Struct(">I")


@dataclass(frozen=True)
class IndexOffset:
    """An index file entry: a message offset and the file position of its chunk."""

    offset: int
    file_offset: int
    checksum: int


def _encode_index_item(offset: int, file_offset: int) -> bytes:
    body = _INDEX_BODY.pack(offset, file_offset)
    return body + _CRC.pack(zlib.crc32(body))


def try_read_index_file(base_path: Union[str, Path], file_prefix: str, message_offset: int) -> int:
    """Highest known file offset whose message offset does not exceed ``message_offset``."""
    index_path = Path(base_path) / f"{file_prefix}.{INDEX_FILE_EXTENSION}"
    try:
        data = index_path.read_bytes()
    except OSError:
        log.warning("Could not read index file at %s", index_path)
        return 0

    usable = len(data) - len(data) % INDEX_ITEM_SIZE
    file_offset = 0
    for raw in _INDEX_ITEM.iter_unpack(data[:usable]):
        item = IndexOffset(*raw)
        if item.checksum != zlib.crc32(_INDEX_BODY.pack(item.offset, item.file_offset)):
            log.warning("Invalid index file checksum on %s (%d)", index_path, item.checksum)
            return file_offset
        if item.offset > message_offset:
            return file_offset
        file_offset = item.file_offset
        if item.offset == message_offset:
            return file_offset
    return file_offset


class OffsetFileWriter:
    """Keeps the last known producer offset in a single aligned block. Not thread-safe."""

    def __init__(self) -> None:
        self._file: Optional[BinaryIO] = None

    def create(self, base_path: Union[str, Path]) -> None:
        self._file = open(Path(base_path) / PRODUCER_OFFSET_FILE_NAME, "wb", buffering=0)

    def write(self, value: int) -> None:
        if self._file is None:
            raise ValueError("Producer offset file was not created")
        body = _OFFSET_BODY.pack(value)
        block = (body + _CRC.pack(zlib.crc32(body))).ljust(ALIGNMENT_SIZE, b"\0")
        self._file.seek(0)
        self._file.write(block)

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
            log.debug("Producer file closed")


def read_producer_offset(topic: Optional[TopicDataId], config: DatalogConfig) -> int:
    """Reads the stored producer offset, validating its checksum."""
    base_path = config.datalog_path(topic)
    with open(base_path / PRODUCER_OFFSET_FILE_NAME, "rb") as f:
        data = f.read(ALIGNMENT_SIZE)
    if len(data) < _OFFSET_BODY.size + _CRC.size:
        raise ValueError(f"Producer offset file at {base_path} is incomplete")
    (stored_offset,) = _OFFSET_BODY.unpack_from(data)
    (stored_checksum,) = _CRC.unpack_from(data, _OFFSET_BODY.size)
    if zlib.crc32(data[: _OFFSET_BODY.size]) != stored_checksum:
        raise ValueError(f"Checksum does not match for producer file offset at {base_path}")
    return stored_offset


@dataclass(frozen=True)
class _IndexItem:
    segment_id: int
    tail_offset: int
    offset: int = 0
    file_offset: int = 0
    to_close: bool = False


_STOP = object()


class IndexFileWriter:
    """Writes index and producer offset files in a background thread."""

    def __init__(self, base_path: Union[str, Path], config: DatalogConfig) -> None:
        self._base_path = Path(base_path)
        self._threshold = config.index_file_period_bytes
        self._items: "queue.Queue[object]" = queue.Queue(maxsize=1)
        self._offset_writer = OffsetFileWriter()
        self._offset_writer.create(self._base_path)
        self._closed = False
        self._thread = threading.Thread(target=self._write_loop, name="index-file-writer", daemon=True)
        self._thread.start()

    def append(self, segment_id: int, offset: int, file_offset: int, tail_offset: int) -> None:
        """Queues an index entry; it is stored when past the configured byte period."""
        self._items.put(_IndexItem(segment_id, tail_offset, offset, file_offset))

    def close_file(self, segment_id: int, tail_offset: int) -> None:
        """Queues the closing of the current index file."""
        self._items.put(_IndexItem(segment_id, tail_offset, to_close=True))

    def close(self) -> None:
        """Processes every queued item and stops the background thread."""
        if self._closed:
            return
        self._closed = True
        self._items.put(_STOP)
        self._thread.join()

    def __enter__(self) -> "IndexFileWriter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _write_loop(self) -> None:
        file: Optional[BinaryIO] = None
        segment_id: Optional[int] = None
        last_stored = 0
        try:
            while (item := self._items.get()) is not _STOP:
                assert isinstance(item, _IndexItem)
                self._offset_writer.write(item.tail_offset)

                if item.to_close:
                    if file is not None:
                        file.close()
                        log.debug("Index file closed on path %s", self._base_path)
                        file = None
                        segment_id = None
                        last_stored = 0
                    continue

                if segment_id is None:
                    name = f"{segment_file_prefix(item.segment_id)}.{INDEX_FILE_EXTENSION}"
                    try:
                        file = open(self._base_path / name, "ab", buffering=0)
                    except OSError:
                        log.exception("Index file %s could not be created on path %s", name, self._base_path)
                        continue
                    segment_id = item.segment_id

                if item.file_offset - last_stored >= self._threshold:
                    try:
                        file.write(_encode_index_item(item.offset, item.file_offset))
                    except OSError:
                        log.exception("Error writing to the index file on path %s", self._base_path)
                    last_stored = item.file_offset
        finally:
            if file is not None:
                file.close()
            self._offset_writer.close()