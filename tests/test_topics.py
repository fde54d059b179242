import pytest

from streamlog.models import DatalogConfig
from streamlog.topics import TopicHandler


@pytest.mark.parametrize("name", ["abc", "", "orders"])
def test_exists_for_any_topic(tmp_path, name):
    handler = TopicHandler(DatalogConfig(home_path=tmp_path))
    assert handler.exists(name) is True


@pytest.mark.parametrize("name", ["abc", "orders"])
def test_get_has_no_info(name):
    handler = TopicHandler()
    assert handler.get(name) is None


def test_keeps_config(tmp_path):
    config = DatalogConfig(home_path=tmp_path)
    assert TopicHandler(config).config is config