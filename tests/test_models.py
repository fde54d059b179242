import pytest

from streamlog.models import (
    ALIGNMENT_FLAG,
    ALIGNMENT_SIZE,
    CHUNK_HEADER_SIZE,
    ChunkFormatError,
    ChunkHeader,
    DatalogConfig,
    TopicDataId,
    alignment_padding,
    encode_chunk,
    new_empty_chunk,
    read_chunk_header,
    segment_file_name,
    segment_file_prefix,
    segment_id_from_name,
)


def test_segment_file_name_is_zero_padded():
    assert segment_file_name(0) == "00000000000000000000.dlog"


def test_segment_id_round_trip():
    for segment_id in (0, 123, 99000001000):
        assert segment_id_from_name(segment_file_name(segment_id)) == segment_id
        assert segment_file_name(segment_id).startswith(segment_file_prefix(segment_id))


def test_segment_id_from_invalid_name():
    with pytest.raises(ValueError):
        segment_id_from_name("invalid.dlog")


def test_chunk_header_round_trip():
    header = ChunkHeader(0, 400, 100, 50)
    encoded = header.encode()
    assert len(encoded) == CHUNK_HEADER_SIZE
    decoded = ChunkHeader.decode(encoded)
    assert (decoded.flags, decoded.body_length, decoded.start, decoded.record_length) == (0, 400, 100, 50)
    assert decoded.encode() == encoded


def test_chunk_header_checksum_mismatch():
    encoded = bytearray(ChunkHeader(0, 400, 100, 50).encode())
    encoded[3] ^= 0xFF
    with pytest.raises(ChunkFormatError):
        read_chunk_header(bytes(encoded))


def test_chunk_header_negative_start():
    encoded = ChunkHeader(0, 10, -5, 1).encode()
    with pytest.raises(ChunkFormatError):
        ChunkHeader.decode(encoded)


def test_chunk_header_incomplete():
    encoded = ChunkHeader(0, 10, 5, 1).encode()
    with pytest.raises(ChunkFormatError):
        ChunkHeader.decode(encoded[:-2])


def test_encode_chunk_places_body_after_header():
    body = bytes(range(50))
    chunk = encode_chunk(body, 20, 15)
    assert chunk[CHUNK_HEADER_SIZE:] == body
    header = read_chunk_header(chunk)
    assert header.body_length == len(body)
    assert header.start == 20
    assert header.record_length == 15


def test_alignment_padding():
    for length in (1, 3, ALIGNMENT_SIZE - 1, ALIGNMENT_SIZE + 1, 1000):
        padding = alignment_padding(length)
        assert (length + len(padding)) % ALIGNMENT_SIZE == 0
        assert set(padding) == {ALIGNMENT_FLAG}
    assert alignment_padding(0) == b""
    assert alignment_padding(ALIGNMENT_SIZE * 3) == b""


def test_new_empty_chunk():
    chunk = new_empty_chunk(42)
    assert chunk.data_block == b""
    assert chunk.start_offset == 42
    assert chunk.record_length == 0


def test_datalog_path_is_per_topic(tmp_path):
    config = DatalogConfig(home_path=tmp_path)
    first = config.datalog_path(TopicDataId(name="abc", token=1))
    second = config.datalog_path(TopicDataId(name="abc", token=2))
    assert first != second
    assert config.segments_path in first.parents
    assert config.datalog_path(TopicDataId(name="abc", token=1)) == first