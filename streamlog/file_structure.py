"""Listing and merging of the segment files of a topic."""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional

from streamlog.models import SEGMENT_FILE_EXTENSION, DatalogConfig, TopicDataId

log = logging.getLogger(__name__)

_SEGMENT_ID = re.compile(r"[+-]?\d+")


def read_file_structure(topic: Optional[TopicDataId], offset: int, config: DatalogConfig) -> List[str]:
    """Segment file names, in order, that may hold the data starting from ``offset``."""
    base_path = config.datalog_path(topic)
    suffix = f".{SEGMENT_FILE_EXTENSION}"
    names = sorted(p.name for p in base_path.glob(f"*{suffix}"))

    result: List[str] = []
    last_containing = ""
    for name in names:
        segment_id = name[: -len(suffix)]
        if not _SEGMENT_ID.fullmatch(segment_id):
            log.error("Filename %s could not be parsed", name)
            continue
        if int(segment_id) > offset:
            result.append(name)
        else:
            last_containing = name

    if last_containing:
        result.insert(0, last_containing)
    return result


def merge_file_structure(
    file_names: Iterable[str], topic: Optional[TopicDataId], offset: int, config: DatalogConfig
) -> None:
    """Creates empty local files for the segment names that are not present locally."""
    file_names = list(file_names)
    log.info("Merging %d files for %s", len(file_names), topic)
    local_names = set(read_file_structure(topic, offset, config))

    base_path = config.datalog_path(topic)
    total = 0
    for name in file_names:
        if name in local_names:
            continue
        with open(base_path / name, "ab"):
            pass
        total += 1

    if total > 0:
        log.info("%d files merged for %s", total, topic)
    elif local_names:
        log.info("All files already present for %s", topic)
    else:
        raise FileNotFoundError(f"No file was found for {topic}")