"""Message queue built on Redis streams and consumer groups."""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import redis

from codeidx.types import Message

_log = logging.getLogger(__name__)

_BUSYGROUP = "BUSYGROUP"
_INTEGER = re.compile(r"[+-]?[0-9]+")


class ReadTimeoutError(TimeoutError):
    """Raised when no message arrived before the read timeout."""

    def __init__(self, message: str = "read timeout") -> None:
        super().__init__(message)


def _millis(value: timedelta | float | int | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, timedelta):
        return int(value.total_seconds() * 1000)
    return int(value * 1000)


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _field(fields: Any, name: str) -> Any:
    if not isinstance(fields, dict):
        return None
    if name in fields:
        return fields[name]
    return fields.get(name.encode())


def _from_nanos(nanos: int) -> datetime:
    seconds, rest = divmod(nanos, 1_000_000_000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc) + timedelta(microseconds=rest // 1000)


def _entries(result: Any) -> list:
    """Extract the message entries of the first stream in a read result."""
    if not result:
        return []
    if isinstance(result, dict):
        messages = next(iter(result.values()))
        if messages and isinstance(messages[0], list) and messages[0] and isinstance(messages[0][0], (list, tuple)):
            messages = messages[0]
        return list(messages or [])
    return list(result[0][1] or [])


class RedisMessageQueue:
    """Topics are streams; every instance reads through one consumer group."""

    def __init__(self, client: Any, consumer_group: str) -> None:
        if not consumer_group:
            raise ValueError("consumerGroup cannot be empty")
        self._client = client
        self._group = consumer_group

    def _consumer_name(self) -> str:
        return f"consumer-{self._client.client_id()}"

    def create_topic(self, topic: str) -> None:
        """Streams are created on first write, so nothing needs doing."""
        return None

    def delete_topic(self, topic: str) -> None:
        self._client.delete(topic)

    def produce(self, topic: str, message: bytes | str) -> None:
        """Append a message with its nanosecond timestamp to the stream."""
        values = {"body": message, "timestamp": time.time_ns()}
        try:
            self._client.xadd(topic, values)
        except redis.exceptions.RedisError as exc:
            raise RuntimeError(f"failed to XAdd message to stream {topic}: {exc}") from exc

    def _decode(self, topic: str, msg_id: Any, fields: Any) -> Message | None:
        body = _field(fields, "body")
        if isinstance(body, str):
            body = body.encode()
        elif isinstance(body, (bytes, bytearray)):
            body = bytes(body)
        else:
            return None
        ident = _text(msg_id)
        raw_ts = _field(fields, "timestamp")
        if raw_ts is None:
            _log.error("message %s without valid timestamp field from stream %s", ident, topic)
            timestamp = datetime.now(timezone.utc)
        else:
            text = _text(raw_ts)
            if _INTEGER.fullmatch(text):
                timestamp = _from_nanos(int(text))
            else:
                _log.error("failed to parse timestamp %r for message %s from stream %s", text, ident, topic)
                timestamp = datetime.now(timezone.utc)
        return Message(id=ident, body=body, topic=topic, timestamp=timestamp)

    def consume(self, topic: str, read_timeout: timedelta | float | int | None = 0) -> Message:
        """Read the next undelivered message for this group.

        A read_timeout of 0 blocks until a message arrives; None does not block.
        Raises ReadTimeoutError when no message is available.
        """
        try:
            self._client.xgroup_create(topic, self._group, id="0", mkstream=True)
        except redis.exceptions.ResponseError as exc:
            if not str(exc).startswith(_BUSYGROUP):
                raise RuntimeError(
                    f"failed to create consumer group {self._group} for stream {topic}: {exc}"
                ) from exc

        try:
            result = self._client.xreadgroup(
                self._group,
                self._consumer_name(),
                {topic: ">"},
                count=1,
                block=_millis(read_timeout),
            )
        except redis.exceptions.TimeoutError as exc:
            raise ReadTimeoutError() from exc
        except redis.exceptions.RedisError as exc:
            raise RuntimeError(
                f"failed to XReadGroup from stream {topic}, group {self._group}: {exc}"
            ) from exc

        entries = _entries(result)
        if not entries:
            raise ReadTimeoutError()
        msg_id, fields = entries[0]
        message = self._decode(topic, msg_id, fields)
        if message is None:
            _log.error("received message %s with invalid body format from stream %s", _text(msg_id), topic)
            raise ValueError(f"received message {_text(msg_id)} with invalid body format")
        return message

    def ack(self, topic: str, consumer_group: str, msg_id: str) -> None:
        try:
            self._client.xack(topic, consumer_group, msg_id)
        except redis.exceptions.RedisError as exc:
            raise RuntimeError(
                f"failed to XAck message {msg_id} in stream {topic}, group {consumer_group}: {exc}"
            ) from exc

    def nack(self, topic: str, consumer_group: str, msg_id: str) -> None:
        """Re-append the message so it is delivered again, then ack the original."""
        try:
            messages = self._client.xrange(topic, min=msg_id, max=msg_id, count=1)
        except redis.exceptions.RedisError as exc:
            raise RuntimeError(f"failed to get message {msg_id} from stream {topic}: {exc}") from exc
        if not messages:
            _log.error("message %s not found in stream %s", msg_id, topic)
            return
        _, fields = messages[0]
        try:
            self._client.xadd(topic, dict(fields))
        except redis.exceptions.RedisError as exc:
            raise RuntimeError(f"failed to readd message to stream {topic}: {exc}") from exc
        try:
            self._client.xack(topic, consumer_group, msg_id)
        except redis.exceptions.RedisError as exc:
            _log.error("failed to ack original message %s: %s", msg_id, exc)
        _log.info("nacked message %s in stream %s, group %s", msg_id, topic, consumer_group)

    def reclaim_pending_messages(
        self, stream: str, idle_time: timedelta | float | int, count: int
    ) -> list[Message]:
        """Take over pending messages idle for at least idle_time."""
        try:
            result = self._client.xautoclaim(
                stream,
                self._group,
                self._consumer_name(),
                min_idle_time=_millis(idle_time) or 0,
                start_id="0-0",
                count=count,
            )
        except redis.exceptions.RedisError as exc:
            raise RuntimeError(
                f"failed to XAutoClaim messages for stream {stream}, group {self._group}: {exc}"
            ) from exc

        claimed = result[1] if result and len(result) > 1 else []
        messages = []
        for msg_id, fields in claimed or []:
            message = self._decode(stream, msg_id, fields)
            if message is None:
                _log.error("reclaimed message %s with invalid body format from stream %s", _text(msg_id), stream)
                continue
            messages.append(message)
        return messages