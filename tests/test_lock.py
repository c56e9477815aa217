import time
from datetime import timedelta
from unittest.mock import patch

import pytest
import redis

from codeidx.lock import LockError, RedisDistributedLock, new_redis_client


class FakeLockRedis:
    def __init__(self):
        self.data = {}

    def _alive(self, key):
        entry = self.data.get(key)
        if entry and entry[1] is not None and entry[1] <= time.monotonic():
            del self.data[key]
            return None
        return entry

    def set(self, name, value, nx=False, px=None):
        if nx and self._alive(name):
            return None
        deadline = time.monotonic() + px / 1000 if px else None
        self.data[name] = (value, deadline)
        return True

    def eval(self, script, numkeys, *args):
        key, token = args[0], args[1]
        entry = self._alive(key)
        if entry and entry[0] == token:
            del self.data[key]
            return 1
        return 0


class BrokenRedis:
    def set(self, *args, **kwargs):
        raise redis.exceptions.ConnectionError("down")

    def eval(self, *args, **kwargs):
        raise redis.exceptions.ConnectionError("down")


@pytest.fixture
def fake():
    return FakeLockRedis()


def test_try_lock_is_exclusive(fake):
    lock = RedisDistributedLock(fake)
    assert lock.try_lock("job", timedelta(seconds=5)) is True
    assert lock.try_lock("job", timedelta(seconds=5)) is False
    assert RedisDistributedLock(fake).try_lock("job", 5) is False


def test_unlock_releases(fake):
    lock = RedisDistributedLock(fake)
    assert lock.try_lock("job", 5)
    lock.unlock("job")
    assert "job" not in fake.data
    assert RedisDistributedLock(fake).try_lock("job", 5) is True


def test_unlock_without_holding_raises(fake):
    with pytest.raises(LockError, match="not own the lock"):
        RedisDistributedLock(fake).unlock("job")


def test_unlock_by_other_instance_keeps_lock(fake):
    owner = RedisDistributedLock(fake)
    other = RedisDistributedLock(fake)
    assert owner.try_lock("job", 5)
    with pytest.raises(LockError):
        other.unlock("job")
    assert other.is_locked("job") is True


def test_is_locked_probe_leaves_key_free(fake):
    lock = RedisDistributedLock(fake)
    assert lock.is_locked("job") is False
    assert "job" not in fake.data
    assert lock.try_lock("job", 5) is True
    assert lock.is_locked("job") is True


def test_expired_lock_can_be_taken(fake):
    assert RedisDistributedLock(fake).try_lock("job", timedelta(milliseconds=1))
    time.sleep(0.01)
    assert RedisDistributedLock(fake).try_lock("job", 5) is True


def test_lock_acquires_free_key(fake):
    lock = RedisDistributedLock(fake)
    lock.lock("job", 5)
    assert lock.is_locked("job") is True


def test_lock_times_out_when_held(fake):
    assert RedisDistributedLock(fake).try_lock("job", 30)
    with pytest.raises(LockError, match="acquire lock failed"):
        RedisDistributedLock(fake).lock("job", 5, timeout=0.2)


def test_redis_errors_become_lock_errors():
    lock = RedisDistributedLock(BrokenRedis())
    with pytest.raises(LockError, match="acquire lock failed"):
        lock.try_lock("job", 5)
    with pytest.raises(LockError, match="check lock failed"):
        lock.is_locked("job")


def test_new_redis_client_parses_address():
    with patch("redis.Redis") as factory:
        client = new_redis_client("localhost:6380", db=2, pool_size=4, read_timeout=1.0, write_timeout=3.0)
    kwargs = factory.call_args.kwargs
    assert client is factory.return_value
    assert kwargs["host"] == "localhost"
    assert kwargs["port"] == 6380
    assert kwargs["db"] == 2
    assert kwargs["max_connections"] == 4
    assert kwargs["socket_timeout"] == 3.0
    factory.return_value.ping.assert_called_once_with()


def test_new_redis_client_ping_failure_propagates():
    with patch("redis.Redis") as factory:
        factory.return_value.ping.side_effect = redis.exceptions.ConnectionError("refused")
        with pytest.raises(redis.exceptions.ConnectionError):
            new_redis_client("localhost:6379")