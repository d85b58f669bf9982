import pytest
from unittest.mock import MagicMock, patch


def _sadd(sets, key, members):
    bucket = sets.setdefault(key, set())
    before = len(bucket)
    bucket.update(str(member) for member in members)
    return len(bucket) - before


def _delete(strings, sets, keys):
    removed = 0
    for key in keys:
        removed += int(strings.pop(key, None) is not None)
        removed += int(sets.pop(key, None) is not None)
    return removed


@pytest.fixture(autouse=True)
def mock_conn():
    """Mock Redis connection backed by plain dicts, with an always-available lock"""
    strings = {}
    sets = {}

    with patch('call_center.redis.conn') as mock:
        mock_lock = MagicMock()
        mock_lock.acquire.return_value = True
        mock_lock.owned.return_value = True
        mock.lock.return_value = mock_lock

        mock.get.side_effect = strings.get
        mock.set.side_effect = lambda key, value: strings.update({key: value}) or True
        mock.delete.side_effect = lambda *keys: _delete(strings, sets, keys)
        mock.sadd.side_effect = lambda key, *members: _sadd(sets, key, members)
        mock.sismember.side_effect = lambda key, member: str(member) in sets.get(key, set())
        mock.smembers.side_effect = lambda key: set(sets.get(key, set()))
        mock.scard.side_effect = lambda key: len(sets.get(key, set()))
        yield mock
