# streamlog

This is the storage layer of an event streaming broker. Records arrive
in chunks. The package treats each chunk body as opaque bytes. Chunks are
appended to segment files on disk, and every flush is padded to a 512-byte
boundary. Each segment has a sparse index file beside it. A producer
offset file records the last offset written. Readers follow the segments
in offset order. When a range is missing locally, a reader can fill the
gap from a replica.

The package depends only on the Python standard library. It needs
Python 3.10 or later.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Directory layout

`DatalogConfig(home_path=...)` fixes where data lives. The data of a topic
is kept under:

```
<home_path>/data/datalog/<topic name>/<token>/<range index>/<version>/
```

A topic with an empty name uses `_` in place of the name. The
`DatalogConfig.segments_path` property gives the root
`<home_path>/data/datalog`. `DatalogConfig.datalog_path(topic)` gives the
directory of one `TopicDataId`.

The other settings of `DatalogConfig` are:

| Setting | Default |
|---|---|
| `index_file_period_bytes` | 50 MiB |
| `segment_buffer_size` | 8 MiB |
| `max_group_size` | 2 MiB |
| `max_segment_size` | 1024 MiB |
| `segment_flush_interval` | 5.0 seconds |
| `stream_buffer_size` | 2 MiB |
| `read_ahead_size` | 1 MiB |
| `auto_commit_interval` | 5.0 seconds |
| `log_retention_duration` | `None`, which turns retention off |

## On-disk format

### Segment files

A segment file is named `<segment id, 20 digits>.dlog`. The helpers
`segment_file_name` and `segment_file_prefix` build the name, and
`segment_id_from_name` parses the id back out of it.

A segment file holds chunks. Each chunk starts with a 21-byte big-endian
header, which `ChunkHeader` represents. The header fields are, in order:

1. flags, 1 byte
2. body length, 4 bytes
3. start offset, 8 bytes
4. record count, 4 bytes
5. CRC-32 of the preceding 17 bytes, 4 bytes

The body follows the header. `ChunkHeader.decode` and `read_chunk_header`
raise `ChunkFormatError` in three cases: the header is incomplete, the
checksum does not match, or the start offset is negative.
`encode_chunk(body, start, record_length)` builds a complete chunk.

Each flush is padded with `0x80` bytes up to the next 512-byte boundary.
`alignment_padding(length)` returns that padding.

### Index files

An index file is named `<segment id>.index`. It holds 20-byte entries. Each
entry is a message offset (8 bytes), a file offset (8 bytes) and a CRC-32
(4 bytes).

### The `producer.offset` file

This file stores the last produced offset and its CRC-32. They are written
at the start of a 512-byte block.

## Usage

```python
from streamlog.models import DatalogConfig, TopicDataId
from streamlog.datalog import Datalog
from streamlog.file_structure import read_file_structure
from streamlog.index_file import read_producer_offset

config = DatalogConfig(home_path="/var/lib/streams")
topic = TopicDataId(name="orders", token=0, range_index=0, version=1)

# Segment file names that may hold data from offset 1000 onward
names = read_file_structure(topic, 1000, config)

# The chunks that cover records 100..119 of segment 0, or None
with Datalog(config) as datalog:
    data = datalog.read_file_from(1024 * 1024, 0, 100, 20, topic)

# The last offset written by the producer
tail = read_producer_offset(topic, config)
```

### Reading chunks from a segment file

`Datalog.read_file_from(max_size, segment_id, start_offset, max_records, topic)`
reads a segment file to find the chunk that contains `start_offset`:

- If an index file exists, the read starts from the position the index gives.
- The result is the raw bytes of the matching chunk, followed by the chunks
  after it up to `start_offset + max_records - 1`.
- Alignment bytes before the first chunk are left out of the result.
- It returns `None` when no complete chunk with that offset is found.
- Reads are bounded by `max_size` and by `stream_buffer_size`.

The same parsing is available on a buffer already in memory:

- `read_chunks_until(buf, start_offset, max_records)`
- `read_next_chunk(buf)`

`Datalog.stream_buffer()` hands out one of two reusable buffers and blocks
until a buffer is free. `Datalog.release_stream_buffer(buf)` returns a
buffer to the pool.

### Index and producer offset files

`IndexFileWriter(base_path, config)` writes entries in a background thread:

- `append(segment_id, offset, file_offset, tail_offset)` adds an entry to the
  index file. The entry is stored only when the file offset has advanced by
  at least `index_file_period_bytes` since the last stored entry.
- Every call also rewrites `producer.offset` with `tail_offset`.
- `close_file(...)` closes the current index file.
- `close()` writes everything still queued and stops the thread.

`OffsetFileWriter` writes the producer offset file directly.
`read_producer_offset(topic, config)` reads the file back. It raises
`ValueError` when the checksum does not match.

`try_read_index_file(base_path, file_prefix, message_offset)` returns the
highest indexed file offset whose message offset does not exceed
`message_offset`. It returns 0 when there is no usable entry.

### File structure

`read_file_structure(topic, offset, config)` lists, in order, the segment
file names that may hold data from `offset` onward. Names that do not parse
as a number are skipped.

`merge_file_structure(file_names, topic, offset, config)` creates an empty
local file for each name in `file_names` that is missing locally. It raises
`FileNotFoundError` when neither local nor new files exist.

### Writing segments

`streamlog.segment_writer.SegmentWriter(topic, replicator, config, segment_id=None)`
accepts items through `put()`. Each item provides `data_block`,
`start_offset` and `record_length`, plus `set_result(error)`. The writer
then:

- Buffers chunks and writes them to the segment file, padded to alignment.
  It writes when the next group would not fit in `segment_buffer_size`, or
  once `segment_flush_interval` has passed.
- Closes the segment when it would grow past `max_segment_size`. The next
  flush starts a new segment, named after the first buffered offset.
- Updates the index file and `producer.offset`.

It runs in one of two roles:

- **Leader** (`segment_id` is `None`). Items also provide `replication`.
  Each item is passed to `replicator.send_to_followers(...)`, and any error
  from the replicator is handed to `set_result`. Writing starts with
  segment 0.
- **Replica**. Writing starts with the given segment. Items also provide
  `segment_id`, and a change of `segment_id` closes the current segment.

`close()` writes whatever is buffered, closes the files and stops the
writer. `pad_to_alignment(buffer)` appends alignment bytes to a
`bytearray`.

### Reading segments

`streamlog.segment_reader.SegmentReader` serves one consumer group for one
topic generation. It runs in a background thread.

Requests arrive through `submit()`. Each request is a `ReadItem`, which has
`origin`, `commit_only` and `set_result(error, chunk)`. Every request gets
one of two answers:

- the next `ReadSegmentChunk`, or
- an empty chunk when no new data is available yet.

The reader also does the following:

- **Offsets.** It stores consumer offsets through an `OffsetState`.
- **Commits.** It commits to all replicas every `auto_commit_interval` and
  on manual commits.
- **Change of origin.** When `origin` changes, it rewinds to the last
  committed offset.
- **Next segment.** When the current segment file is exhausted, it moves on
  to the next one.
- **Gaps.** It fills ranges missing from local files through
  `ReplicationReader.stream_file`.

A reader that is not the leader calls
`ReplicationReader.merge_file_structure()` before it looks for files. The
`message_offset` property gives the next offset to be read. `close()`
stops the reader.

### Retention

`Datalog.clean_up_dir(path, retention)` walks `path` recursively. It removes
segment files older than `retention`, together with their index files.
`retention` is given in seconds or as a `timedelta`. The method returns the
number of entries visited and the number of segments removed.

When `log_retention_duration` is set, `Datalog` runs this clean up over
`segments_path` every five minutes in a background thread. `Datalog.close()`
stops that thread.

### Topics

`streamlog.topics.TopicHandler` treats every topic as existing:
`exists()` always returns `True`. `get()` returns `None` unless information
has been stored for the topic.

## What this package does not do

This package stores and reads data on the local disk only. It has:

- no command-line program
- no network server
- no cluster discovery
- no way of its own to reach other brokers

Replication and offset storage are left to the caller. `Replicator`,
`ReplicationReader` and `OffsetState` are protocols that the caller
implements. The package calls them, but provides no implementation that
sends data over a network or persists consumer offsets.