import pytest

from streamlog.file_structure import merge_file_structure, read_file_structure
from streamlog.models import DatalogConfig, TopicDataId

FILES = ["00000000000.dlog", "00000001000.dlog", "00000001005.dlog", "99000001000.dlog"]


@pytest.fixture
def setup(tmp_path):
    topic = TopicDataId()
    config = DatalogConfig(home_path=tmp_path)
    base = config.datalog_path(topic)
    base.mkdir(parents=True)
    return topic, config, base


def test_returns_filenames_that_might_contain_offset(setup):
    topic, config, base = setup
    assert read_file_structure(topic, 0, config) == []

    (base / FILES[0]).touch()
    assert read_file_structure(topic, 1000, config) == FILES[:1]

    (base / "invalid.dlog").touch()
    for name in FILES[1:]:
        (base / name).touch()

    assert read_file_structure(topic, 0, config) == FILES
    assert read_file_structure(topic, 1, config) == FILES
    assert read_file_structure(topic, 1000, config) == FILES[1:]
    assert read_file_structure(topic, 1001, config) == FILES[1:]
    assert read_file_structure(topic, 1002, config) == FILES[1:]
    assert read_file_structure(topic, 2000, config) == FILES[2:]
    assert read_file_structure(topic, 99000001000, config) == FILES[3:]
    assert read_file_structure(topic, 99000001001, config) == FILES[3:]


def test_ignores_other_extensions(setup):
    topic, config, base = setup
    (base / FILES[0]).touch()
    (base / "00000000000.index").touch()
    assert read_file_structure(topic, 0, config) == FILES[:1]


def test_merge_creates_missing_files(setup):
    topic, config, base = setup
    (base / FILES[0]).touch()
    merge_file_structure(FILES, topic, 0, config)
    assert read_file_structure(topic, 0, config) == FILES
    assert all((base / name).stat().st_size == 0 for name in FILES)


def test_merge_keeps_existing_content(setup):
    topic, config, base = setup
    (base / FILES[0]).write_bytes(b"abc")
    merge_file_structure(FILES[:1], topic, 0, config)
    assert (base / FILES[0]).read_bytes() == b"abc"


def test_merge_fails_when_no_file_found(setup):
    topic, config, _ = setup
    with pytest.raises(FileNotFoundError):
        merge_file_structure([], topic, 0, config)