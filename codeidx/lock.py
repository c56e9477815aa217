"""Redis client creation and a distributed lock keyed by name."""

from __future__ import annotations

import random
import secrets
import threading
import time
from datetime import timedelta
from typing import Any

import redis

_RELEASE_SCRIPT = (
    'if redis.call("GET", KEYS[1]) == ARGV[1] then '
    'return redis.call("DEL", KEYS[1]) else return 0 end'
)
_LOCK_TRIES = 32
_MIN_RETRY_DELAY = 0.05
_MAX_RETRY_DELAY = 0.25


class LockError(Exception):
    """Raised when a lock cannot be acquired, checked or released."""


def _seconds(value: timedelta | float | int | None) -> float | None:
    if value is None:
        return None
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def new_redis_client(
    addr: str,
    password: str | None = None,
    db: int = 0,
    pool_size: int | None = None,
    connect_timeout: timedelta | float | None = None,
    read_timeout: timedelta | float | None = None,
    write_timeout: timedelta | float | None = None,
) -> redis.Redis:
    """Create a client for host:port and check it with a ping.

    The socket timeout is the larger of the read and write timeouts.
    """
    host, sep, port = addr.rpartition(":")
    if not sep:
        host, port = addr, "6379"
    host = host.strip("[]") or "localhost"
    timeouts = [t for t in (_seconds(read_timeout), _seconds(write_timeout)) if t]
    kwargs: dict[str, Any] = {
        "host": host,
        "port": int(port),
        "db": db,
        "password": password or None,
        "socket_connect_timeout": _seconds(connect_timeout) or None,
        "socket_timeout": max(timeouts) if timeouts else None,
    }
    if pool_size:
        kwargs["max_connections"] = pool_size
    client = redis.Redis(**kwargs)
    client.ping()
    return client


class RedisDistributedLock:
    """Named locks; only the instance that acquired a lock can release it."""

    def __init__(self, client: Any) -> None:
        self._client = client
        self._tokens: dict[str, str] = {}
        self._mutex = threading.Lock()

    def _acquire(self, key: str, expiration: timedelta | float | int) -> str | None:
        token = secrets.token_urlsafe(16)
        millis = max(1, int((_seconds(expiration) or 0) * 1000))
        if self._client.set(key, token, nx=True, px=millis):
            return token
        return None

    def _release(self, key: str, token: str) -> bool:
        return bool(self._client.eval(_RELEASE_SCRIPT, 1, key, token))

    def try_lock(self, key: str, expiration: timedelta | float | int) -> bool:
        """Acquire the lock without waiting; return whether it was acquired."""
        try:
            token = self._acquire(key, expiration)
        except redis.exceptions.RedisError as exc:
            raise LockError(f"acquire lock failed, key: {key}, err: {exc}") from exc
        if token is None:
            return False
        with self._mutex:
            self._tokens[key] = token
        return True

    def lock(
        self,
        key: str,
        expiration: timedelta | float | int,
        timeout: timedelta | float | int | None = None,
    ) -> None:
        """Acquire the lock, retrying with random delays until tries or timeout run out."""
        limit = _seconds(timeout)
        deadline = None if limit is None else time.monotonic() + limit
        for attempt in range(_LOCK_TRIES):
            if attempt:
                delay = random.uniform(_MIN_RETRY_DELAY, _MAX_RETRY_DELAY)
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    delay = min(delay, remaining)
                time.sleep(delay)
            if self.try_lock(key, expiration):
                return
        raise LockError(f"acquire lock failed, key: {key}, err: lock already taken")

    def is_locked(self, key: str) -> bool:
        """Probe the lock by briefly taking it; True if someone holds it."""
        try:
            token = self._acquire(key, timedelta(milliseconds=1))
        except redis.exceptions.RedisError as exc:
            raise LockError(f"check lock failed, key: {key}, err: {exc}") from exc
        if token is None:
            return True
        try:
            self._release(key, token)
        except redis.exceptions.RedisError:
            pass
        return False

    def unlock(self, key: str) -> None:
        """Release a lock this instance holds."""
        with self._mutex:
            token = self._tokens.pop(key, None)
        if token is None:
            raise LockError(f"current node not own the lock or lock has been unlocked, key: {key}")
        try:
            released = self._release(key, token)
        except redis.exceptions.RedisError as exc:
            raise LockError(
                f"release lock failed or current node not own the lock, key: {key}, err: {exc}"
            ) from exc
        if not released:
            raise LockError(f"current node not own the lock or lock has been unlocked, key: {key}")