"""Reading ranges of chunks from segment files and cleaning up expired segments."""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from datetime import timedelta
from pathlib import Path
from typing import Optional, Tuple, Union

from streamlog.index_file import try_read_index_file
from streamlog.models import (
    ALIGNMENT_FLAG,
    ALIGNMENT_SIZE,
    CHUNK_HEADER_SIZE,
    INDEX_FILE_EXTENSION,
    SEGMENT_FILE_EXTENSION,
    ChunkFormatError,
    ChunkHeader,
    DatalogConfig,
    TopicDataId,
    read_chunk_header,
    segment_file_name,
    segment_file_prefix,
)

log = logging.getLogger(__name__)

DIRECTORY_PERMISSIONS = 0o755
FILE_PERMISSIONS = 0o644
RETENTION_CHECK_MS = 5 * 60 * 1000

# Amount of buffers available for file streaming
STREAM_BUFFER_LENGTH = 2

Retention = Union[float, timedelta]


def _count_alignment(buf: memoryview) -> int:
    count = 0
    for value in buf:
        if value != ALIGNMENT_FLAG:
            break
        count += 1
    return count


def read_next_chunk(buf: bytes) -> Tuple[Optional[ChunkHeader], int]:
    """Header of the next complete chunk in ``buf`` and the alignment bytes before it.

    Returns ``(None, 0)`` when the header or the body is not fully contained.
    Raises :class:`ChunkFormatError` when the header is corrupted.
    """
    view = memoryview(buf)
    alignment = _count_alignment(view)
    view = view[alignment:]
    if len(view) < CHUNK_HEADER_SIZE:
        return None, 0
    header = read_chunk_header(view)
    if header.body_length + CHUNK_HEADER_SIZE > len(view):
        return None, 0
    return header, alignment


def read_chunks_until(buf: bytes, start_offset: int, max_records: int) -> Tuple[Optional[bytes], bool]:
    """Finds the chunk containing ``start_offset`` and the following ones up to ``max_records``.

    Returns ``(chunks, True)`` when the starting chunk was found. Otherwise returns
    ``(remaining, False)``, where ``remaining`` holds an incomplete trailing chunk, or
    ``None`` when every chunk in ``buf`` was skipped.
    """
    view = memoryview(buf)
    pos = 0
    while pos < len(view):
        header, alignment = read_next_chunk(view[pos:])
        if header is None:
            return bytes(view[pos:]), False

        chunk_start = pos + alignment
        if header.start <= start_offset < header.start + header.record_length:
            max_offset = start_offset + max_records - 1
            end = chunk_start + CHUNK_HEADER_SIZE + header.body_length
            while True:
                try:
                    following, following_alignment = read_next_chunk(view[end:])
                except ChunkFormatError:
                    break
                if following is None or following.start > max_offset:
                    break
                end += following_alignment + CHUNK_HEADER_SIZE + following.body_length
            return bytes(view[chunk_start:end]), True

        pos = chunk_start + CHUNK_HEADER_SIZE + header.body_length
    return None, False


def _round_up_to_alignment(length: int) -> int:
    return length + (-length) % ALIGNMENT_SIZE


def _seconds(retention: Retention) -> float:
    if isinstance(retention, timedelta):
        return retention.total_seconds()
    return float(retention)


class Datalog:
    """Reads chunks from segment files and removes segments past the retention period."""

    def __init__(self, config: DatalogConfig) -> None:
        self._config = config
        self._stream_buffers: "queue.Queue[bytearray]" = queue.Queue()
        for _ in range(STREAM_BUFFER_LENGTH):
            self._stream_buffers.put(bytearray(config.stream_buffer_size))
        self._stop = threading.Event()
        self._cleaner: Optional[threading.Thread] = None
        if config.log_retention_duration is not None:
            self._cleaner = threading.Thread(
                target=self._clean_up_loop,
                args=(config.log_retention_duration,),
                name="datalog-cleaner",
                daemon=True,
            )
            self._cleaner.start()

    def read_file_from(
        self,
        max_size: int,
        segment_id: int,
        start_offset: int,
        max_records: int,
        topic: Optional[TopicDataId],
    ) -> Optional[bytes]:
        """Reads the chunks starting at ``start_offset`` from a segment file.

        At most ``max_size`` bytes (bounded by the stream buffer size) are held while
        reading. Returns ``None`` when the file holds no complete chunk with that offset.
        """
        base_path = self._config.datalog_path(topic)
        file_offset = try_read_index_file(base_path, segment_file_prefix(segment_id), start_offset)
        size = min(max_size, self._config.stream_buffer_size)
        path = base_path / segment_file_name(segment_id)

        with open(path, "rb") as file:
            if file_offset > 0:
                file.seek(file_offset)

            pending = b""
            while True:
                capacity = size - _round_up_to_alignment(len(pending))
                capacity -= capacity % ALIGNMENT_SIZE
                data = file.read(capacity) if capacity > 0 else b""

                total = pending + data
                if len(total) < CHUNK_HEADER_SIZE:
                    return None

                try:
                    chunks, complete = read_chunks_until(total, start_offset, max_records)
                except ChunkFormatError:
                    log.error("Error reading chunks in file %s", path)
                    raise
                if complete:
                    return chunks
                pending = chunks or b""

                if not data:
                    return None

    def stream_buffer(self) -> bytearray:
        """Blocks until a stream buffer is available; it must be released after use."""
        return self._stream_buffers.get()

    def release_stream_buffer(self, buf: bytearray) -> None:
        """Returns a stream buffer to the pool."""
        self._stream_buffers.put(buf)

    def clean_up_dir(self, dir_path: Union[str, Path], retention: Retention) -> Tuple[int, int]:
        """Removes segment files older than ``retention`` below ``dir_path``.

        Returns the number of files and folders visited and the number of segments removed.
        """
        retention_seconds = _seconds(retention)
        log.debug("Log clean up reading dir %s", dir_path)
        try:
            with os.scandir(dir_path) as it:
                entries = list(it)
        except OSError:
            log.exception("Log clean up could not open the dir %s", dir_path)
            return 0, 0

        read = 0
        removed = 0
        segment_extension = f".{SEGMENT_FILE_EXTENSION}"
        for entry in entries:
            read += 1
            if entry.is_dir(follow_symlinks=False):
                sub_read, sub_removed = self.clean_up_dir(entry.path, retention_seconds)
                read += sub_read
                removed += sub_removed
                continue
            if os.path.splitext(entry.name)[1] == segment_extension:
                removed += self._clean_up_file(Path(dir_path), entry, retention_seconds)
        log.debug("Finishing cleaning up %s", dir_path)
        return read, removed

    def close(self) -> None:
        """Stops the background clean up."""
        self._stop.set()
        if self._cleaner is not None:
            self._cleaner.join()
            self._cleaner = None

    def __enter__(self) -> "Datalog":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _clean_up_file(self, dir_path: Path, entry: os.DirEntry, retention: float) -> int:
        try:
            modified = entry.stat(follow_symlinks=False).st_mtime
        except OSError:
            log.exception("Could not stat segment file %s on %s", entry.name, dir_path)
            return 0
        if time.time() - modified < retention:
            return 0

        log.debug("Log clean up removing segment file %s/%s", dir_path, entry.name)
        index_name = entry.name[: -len(SEGMENT_FILE_EXTENSION)] + INDEX_FILE_EXTENSION
        try:
            (dir_path / index_name).unlink(missing_ok=True)
        except OSError:
            log.exception("Failed to remove index file %s on %s", index_name, dir_path)

        try:
            (dir_path / entry.name).unlink()
        except OSError:
            log.exception("Failed to remove segment file %s on %s", entry.name, dir_path)
            return 0
        return 1

    def _clean_up_loop(self, retention: Retention) -> None:
        while not self._stop.wait(RETENTION_CHECK_MS / 1000):
            log.info("Start looking for log files to clean up pass the retention time")
            segments_path = self._config.segments_path
            if not segments_path.is_dir():
                log.info("Segment path does not exist yet")
                continue

            start = time.monotonic()
            read, removed = self.clean_up_dir(segments_path, retention)
            elapsed_ms = int((time.monotonic() - start) * 1000)
            spent = f"{elapsed_ms}ms" if elapsed_ms else "less than a ms"
            log.info(
                "Log clean up took %s to visit %d files/folders. Removed %d segment files",
                spent,
                read,
                removed,
            )