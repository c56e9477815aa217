"""Redis-backed cache with JSON values and expiring version sets."""

from __future__ import annotations

import json
import re
from datetime import datetime, timedelta, timezone
from typing import Any

_EXTRA_FRACTION = re.compile(r"(\.\d{6})\d+")
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class KeyNotFoundError(LookupError):
    """Raised when a key is not present in the cache."""

    def __init__(self, key: str) -> None:
        super().__init__(f"key not found: {key}")
        self.key = key

    def __str__(self) -> str:
        return f"key not found: {self.key}"


class VersionNotFoundError(LookupError):
    """Raised when no live versions exist for a key."""

    def __init__(self, key: str) -> None:
        super().__init__(f"no versions found for key: {key}")
        self.key = key

    def __str__(self) -> str:
        return f"no versions found for key: {self.key}"


def _duration(expiration: timedelta | float | int | None) -> timedelta:
    if expiration is None:
        return timedelta(0)
    if isinstance(expiration, timedelta):
        return expiration
    return timedelta(seconds=expiration)


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _parse_time(value: str) -> datetime:
    cleaned = _EXTRA_FRACTION.sub(r"\1", value.strip())
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    parsed = datetime.fromisoformat(cleaned)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_member(raw: Any) -> tuple[int, datetime]:
    """Decode a version member; raise ValueError if it is malformed."""
    text = _text(raw)
    try:
        obj = json.loads(text)
        if not isinstance(obj, dict):
            raise ValueError("member is not an object")
        version = int(obj.get("v", 0))
        expires = obj.get("e")
        expires_at = _parse_time(expires) if isinstance(expires, str) else _EPOCH
    except (ValueError, TypeError) as exc:
        raise ValueError(f"invalid version format: {text}") from exc
    return version, expires_at


class RedisStore:
    """Cache store keeping JSON values and per-key sets of expiring versions."""

    def __init__(self, client: Any) -> None:
        self._client = client

    def get(self, key: str) -> Any:
        """Return the decoded value stored under key."""
        data = self._client.get(key)
        if data is None:
            raise KeyNotFoundError(key)
        return json.loads(data)

    def set(self, key: str, value: Any, expiration: timedelta | float | int | None = None) -> None:
        """Store value as JSON; a non-positive expiration means no expiry."""
        data = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        millis = int(_duration(expiration).total_seconds() * 1000)
        if millis > 0:
            self._client.set(key, data, px=millis)
        else:
            self._client.set(key, data)

    def delete(self, key: str) -> None:
        pipe = self._client.pipeline()
        pipe.delete(key)
        pipe.execute()

    def add_version(self, key: str, version: int, expiration: timedelta | float | int | None) -> None:
        """Record version under key, expiring after the given duration."""
        expires_at = datetime.now(timezone.utc) + _duration(expiration)
        member = json.dumps({"v": int(version), "e": expires_at.isoformat()}, separators=(",", ":"))
        self._client.zadd(key, {member: float(version)})

    def get_versions(self, key: str) -> list[int]:
        """Return live versions for key, highest first."""
        members = self._client.zrevrange(key, 0, -1)
        if not members:
            raise VersionNotFoundError(key)
        now = datetime.now(timezone.utc)
        result = []
        for raw in members:
            version, expires_at = _parse_member(raw)
            if expires_at > now:
                result.append(version)
        if not result:
            raise VersionNotFoundError(key)
        return result

    def get_latest_version(self, key: str) -> int:
        return self.get_versions(key)[0]

    def clean_expired_versions(self, key: str) -> None:
        """Remove versions of key whose expiry has passed."""
        members = self._client.zrange(key, 0, -1)
        now = datetime.now(timezone.utc)
        pipe = self._client.pipeline()
        for raw in members:
            try:
                _, expires_at = _parse_member(raw)
            except ValueError:
                continue
            if expires_at < now:
                pipe.zrem(key, raw)
        pipe.execute()