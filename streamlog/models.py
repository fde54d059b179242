"""Core data structures, configuration and the on-disk chunk format of the segment log."""

from __future__ import annotations

import enum
import struct
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

MIB = 1024 * 1024

# Direct I/O requires writes and reads aligned to this many bytes.
ALIGNMENT_SIZE = 512
# Bytes with this value pad a segment file up to the next alignment boundary.
ALIGNMENT_FLAG = 0x80

SEGMENT_FILE_EXTENSION = "dlog"
INDEX_FILE_EXTENSION = "index"
PRODUCER_OFFSET_FILE_NAME = "producer.offset"

# Offset value that marks every message of an old generation as consumed.
OFFSET_COMPLETED = -1

_HEADER_BODY = struct.Struct(">BIqI")
_CRC = struct.Struct(">I")
CHUNK_HEADER_SIZE = _HEADER_BODY.size + _CRC.size


@dataclass(frozen=True)
class TopicDataId:
    """Identifies the data of a topic for a token range and generation version."""

    name: str = ""
    token: int = 0
    range_index: int = 0
    version: int = 0

    def __str__(self) -> str:
        return f"'{self.name}' {self.token}/{self.range_index} v{self.version}"


@dataclass
class DatalogConfig:
    """Settings used by the data log readers and writers."""

    home_path: Union[str, Path]
    index_file_period_bytes: int = 50 * MIB
    segment_buffer_size: int = 8 * MIB
    max_group_size: int = 2 * MIB
    max_segment_size: int = 1024 * MIB
    segment_flush_interval: float = 5.0
    stream_buffer_size: int = 2 * MIB
    read_ahead_size: int = 1 * MIB
    auto_commit_interval: float = 5.0
    log_retention_duration: Optional[float] = None

    @property
    def segments_path(self) -> Path:
        """Root directory holding the segment files of every topic."""
        return Path(self.home_path) / "data" / "datalog"

    def datalog_path(self, topic: Optional[TopicDataId]) -> Path:
        """Directory holding the segment files of the given topic data."""
        topic = topic if topic is not None else TopicDataId()
        return (
            self.segments_path
            / (topic.name or "_")
            / str(topic.token)
            / str(topic.range_index)
            / str(topic.version)
        )


def segment_file_prefix(segment_id: int) -> str:
    """File name of a segment without its extension."""
    return f"{segment_id:020d}"


def segment_file_name(segment_id: int) -> str:
    """File name of the segment that starts at the given message offset."""
    return f"{segment_file_prefix(segment_id)}.{SEGMENT_FILE_EXTENSION}"


def segment_id_from_name(name: str) -> int:
    """Parses the segment id out of a segment or index file name."""
    prefix = Path(name).name.split(".")[0]
    try:
        return int(prefix)
    except ValueError:
        raise ValueError(f"Invalid segment file name: {name!r}") from None


class ChunkFormatError(ValueError):
    """Raised when a chunk header is incomplete or corrupted."""


@dataclass(frozen=True)
class ChunkHeader:
    """Header stored in front of every chunk body in a segment file."""

    flags: int
    body_length: int
    start: int
    record_length: int
    crc: int = 0

    def encode(self) -> bytes:
        """Serializes the header, computing the checksum of the preceding fields."""
        head = _HEADER_BODY.pack(self.flags, self.body_length, self.start, self.record_length)
        return head + _CRC.pack(zlib.crc32(head))

    @classmethod
    def decode(cls, data: bytes) -> "ChunkHeader":
        """Parses and validates a header from the first bytes of ``data``."""
        if len(data) < CHUNK_HEADER_SIZE:
            raise ChunkFormatError("Incomplete chunk header")
        head = bytes(data[: _HEADER_BODY.size])
        flags, body_length, start, record_length = _HEADER_BODY.unpack(head)
        (crc,) = _CRC.unpack_from(data, _HEADER_BODY.size)
        if zlib.crc32(head) != crc:
            raise ChunkFormatError("Checksum mismatch")
        if start < 0:
            raise ChunkFormatError("Invalid length")
        return cls(flags, body_length, start, record_length, crc)


def encode_chunk(body: bytes, start: int, record_length: int) -> bytes:
    """Returns the header followed by the body of a chunk."""
    header = ChunkHeader(0, len(body), start, record_length)
    return header.encode() + bytes(body)


def read_chunk_header(data: bytes) -> ChunkHeader:
    """Reads the chunk header at the beginning of ``data``."""
    return ChunkHeader.decode(data)


@dataclass(frozen=True)
class ReadSegmentChunk:
    """A chunk of messages read from a segment."""

    data_block: bytes
    start_offset: int
    record_length: int


def new_empty_chunk(start: int) -> ReadSegmentChunk:
    """A chunk with no data, positioned at ``start``."""
    return ReadSegmentChunk(b"", start, 0)


def alignment_padding(length: int) -> bytes:
    """Padding bytes needed to bring ``length`` to the next alignment boundary."""
    remainder = length % ALIGNMENT_SIZE
    if remainder == 0:
        return b""
    return bytes([ALIGNMENT_FLAG]) * (ALIGNMENT_SIZE - remainder)


@dataclass(frozen=True)
class Offset:
    """A consumer offset for a topic generation."""

    offset: int
    version: int
    source: Any = None

    def __str__(self) -> str:
        return f"offset {self.offset} (v{self.version}, source {self.source})"


class OffsetCommit(enum.Enum):
    """Where a consumer offset should be stored."""

    LOCAL = "local"
    ALL = "all"