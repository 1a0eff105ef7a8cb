"""Resumable turn streams.

Every chunk a turn produces is appended to a stream record; the client that
started the turn and any client that reconnects later read the same record
from the beginning and follow it until the turn completes.

Stores:
- MemoryStreamStore: in-process record with asyncio.Condition wakeups
- RedisStreamStore: cross-process record (list of JSON chunks + state hash),
  followed by polling; all Redis errors are logged and treated as "no stream"
- LayeredStreamStore: writes to both, reads the local record when it has
  the stream and falls back to Redis otherwise

Redis keys:
- chorus:chat_streams:{chat_id} - list of stream ids, newest first
- chorus:anonymous_chat_streams:{chat_id} - the same for anonymous turns; the
  two namespaces never see each other's streams
- chorus:stream:{stream_id}:events - list of JSON chunks
- chorus:stream:{stream_id}:state - hash with "done"

The record is advisory: persistence of the final message happens in the
turn task regardless of any reader.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from chorus.logging import get_logger

logger = get_logger(__name__)

DEFAULT_STREAM_TTL_S = 600
DEFAULT_EXPIRE_AFTER_S = 300
REDIS_POLL_INTERVAL_S = 0.1


def chat_streams_key(chat_id: str, anonymous: bool = False) -> str:
    if anonymous:
        return f"chorus:anonymous_chat_streams:{chat_id}"
    return f"chorus:chat_streams:{chat_id}"


def stream_events_key(stream_id: str) -> str:
    return f"chorus:stream:{stream_id}:events"


def stream_state_key(stream_id: str) -> str:
    return f"chorus:stream:{stream_id}:state"


class StreamStore(Protocol):
    async def register(
        self, chat_id: str, stream_id: str, anonymous: bool = False
    ) -> None: ...

    async def append(self, stream_id: str, chunk: dict[str, Any]) -> None: ...

    async def complete(self, stream_id: str) -> None: ...

    async def active_stream_id(self, chat_id: str, anonymous: bool = False) -> str | None: ...

    def has_stream(self, stream_id: str) -> bool: ...

    def follow(self, stream_id: str, start: int = 0) -> AsyncIterator[dict[str, Any]]: ...


# =============================================================================
# In-process store
# =============================================================================


@dataclass
class _Record:
    streams_key: str
    chunks: list[dict[str, Any]] = field(default_factory=list)
    done: bool = False
    condition: asyncio.Condition = field(default_factory=asyncio.Condition)


class MemoryStreamStore:
    """Stream records held in this process."""

    def __init__(
        self,
        ttl_s: int = DEFAULT_STREAM_TTL_S,
        expire_after_s: int = DEFAULT_EXPIRE_AFTER_S,
    ):
        self._ttl_s = ttl_s
        self._expire_after_s = expire_after_s
        self._records: dict[str, _Record] = {}
        self._chat_streams: dict[str, list[str]] = {}

    async def register(self, chat_id: str, stream_id: str, anonymous: bool = False) -> None:
        key = chat_streams_key(chat_id, anonymous)
        self._records[stream_id] = _Record(streams_key=key)
        self._chat_streams.setdefault(key, []).insert(0, stream_id)
        self._schedule_expiry(stream_id, self._ttl_s)

    async def append(self, stream_id: str, chunk: dict[str, Any]) -> None:
        record = self._records.get(stream_id)
        if record is None or record.done:
            return
        async with record.condition:
            record.chunks.append(chunk)
            record.condition.notify_all()

    async def complete(self, stream_id: str) -> None:
        record = self._records.get(stream_id)
        if record is None:
            return
        async with record.condition:
            record.done = True
            record.condition.notify_all()
        self._schedule_expiry(stream_id, self._expire_after_s)

    async def active_stream_id(self, chat_id: str, anonymous: bool = False) -> str | None:
        for stream_id in self._chat_streams.get(chat_streams_key(chat_id, anonymous), []):
            record = self._records.get(stream_id)
            if record is not None and not record.done:
                return stream_id
        return None

    def has_stream(self, stream_id: str) -> bool:
        return stream_id in self._records

    async def follow(self, stream_id: str, start: int = 0) -> AsyncIterator[dict[str, Any]]:
        record = self._records.get(stream_id)
        if record is None:
            return
        index = start
        while True:
            async with record.condition:
                await record.condition.wait_for(
                    lambda: record.done or len(record.chunks) > index
                )
                pending = record.chunks[index:]
                finished = record.done
            for chunk in pending:
                yield chunk
            index += len(pending)
            if finished and index >= len(record.chunks):
                return

    def _schedule_expiry(self, stream_id: str, delay_s: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.call_later(delay_s, self._expire, stream_id)

    def _expire(self, stream_id: str) -> None:
        record = self._records.get(stream_id)
        if record is None or not record.done:
            # Still running; the completion path reschedules
            return
        self._records.pop(stream_id, None)
        streams = self._chat_streams.get(record.streams_key, [])
        if stream_id in streams:
            streams.remove(stream_id)
        if not streams:
            self._chat_streams.pop(record.streams_key, None)


# =============================================================================
# Redis store
# =============================================================================


class RedisStreamStore:
    """Stream records in Redis, readable from any process."""

    def __init__(
        self,
        redis_client,
        ttl_s: int = DEFAULT_STREAM_TTL_S,
        expire_after_s: int = DEFAULT_EXPIRE_AFTER_S,
        poll_interval_s: float = REDIS_POLL_INTERVAL_S,
    ):
        self._redis = redis_client
        self._ttl_s = ttl_s
        self._expire_after_s = expire_after_s
        self._poll_interval_s = poll_interval_s

    async def register(self, chat_id: str, stream_id: str, anonymous: bool = False) -> None:
        key = chat_streams_key(chat_id, anonymous)
        try:
            pipe = self._redis.pipeline()
            pipe.lpush(key, stream_id)
            pipe.expire(key, self._ttl_s)
            pipe.hset(stream_state_key(stream_id), mapping={"done": "0", "chat_id": chat_id})
            pipe.expire(stream_state_key(stream_id), self._ttl_s)
            pipe.execute()
        except Exception as e:
            logger.warning("stream_register_failed", stream_id=stream_id, error=str(e))

    async def append(self, stream_id: str, chunk: dict[str, Any]) -> None:
        try:
            pipe = self._redis.pipeline()
            pipe.rpush(stream_events_key(stream_id), json.dumps(chunk))
            pipe.expire(stream_events_key(stream_id), self._ttl_s)
            pipe.execute()
        except Exception as e:
            logger.warning("stream_append_failed", stream_id=stream_id, error=str(e))

    async def complete(self, stream_id: str) -> None:
        try:
            pipe = self._redis.pipeline()
            pipe.hset(stream_state_key(stream_id), "done", "1")
            pipe.expire(stream_state_key(stream_id), self._expire_after_s)
            pipe.expire(stream_events_key(stream_id), self._expire_after_s)
            pipe.execute()
        except Exception as e:
            logger.warning("stream_complete_failed", stream_id=stream_id, error=str(e))

    async def active_stream_id(self, chat_id: str, anonymous: bool = False) -> str | None:
        try:
            for raw in self._redis.lrange(chat_streams_key(chat_id, anonymous), 0, -1):
                stream_id = raw.decode() if isinstance(raw, bytes) else raw
                if self._is_live(stream_id):
                    return stream_id
        except Exception as e:
            logger.warning("stream_lookup_failed", chat_id=chat_id, error=str(e))
        return None

    def has_stream(self, stream_id: str) -> bool:
        try:
            return bool(self._redis.exists(stream_state_key(stream_id)))
        except Exception:
            return False

    async def follow(self, stream_id: str, start: int = 0) -> AsyncIterator[dict[str, Any]]:
        index = start
        while True:
            try:
                done = self._state_done(stream_id)
                raw_chunks = self._redis.lrange(stream_events_key(stream_id), index, -1)
            except Exception as e:
                logger.warning("stream_follow_failed", stream_id=stream_id, error=str(e))
                return
            for raw in raw_chunks:
                yield json.loads(raw)
            index += len(raw_chunks)
            # done was read before the chunks, so nothing can follow them
            if done is None or done:
                return
            await asyncio.sleep(self._poll_interval_s)

    def _state_done(self, stream_id: str) -> bool | None:
        """True/False for a known stream, None if the record expired."""
        value = self._redis.hget(stream_state_key(stream_id), "done")
        if value is None:
            return None
        return value in (b"1", "1")

    def _is_live(self, stream_id: str) -> bool:
        return self._state_done(stream_id) is False


# =============================================================================
# Local + shared
# =============================================================================


class LayeredStreamStore:
    """Local record for this process, mirrored to a shared store."""

    def __init__(self, local: MemoryStreamStore, shared: RedisStreamStore):
        self._local = local
        self._shared = shared

    async def register(self, chat_id: str, stream_id: str, anonymous: bool = False) -> None:
        await self._local.register(chat_id, stream_id, anonymous)
        await self._shared.register(chat_id, stream_id, anonymous)

    async def append(self, stream_id: str, chunk: dict[str, Any]) -> None:
        await self._local.append(stream_id, chunk)
        await self._shared.append(stream_id, chunk)

    async def complete(self, stream_id: str) -> None:
        await self._local.complete(stream_id)
        await self._shared.complete(stream_id)

    async def active_stream_id(self, chat_id: str, anonymous: bool = False) -> str | None:
        stream_id = await self._local.active_stream_id(chat_id, anonymous)
        if stream_id is not None:
            return stream_id
        return await self._shared.active_stream_id(chat_id, anonymous)

    def has_stream(self, stream_id: str) -> bool:
        return self._local.has_stream(stream_id) or self._shared.has_stream(stream_id)

    def follow(self, stream_id: str, start: int = 0) -> AsyncIterator[dict[str, Any]]:
        if self._local.has_stream(stream_id):
            return self._local.follow(stream_id, start)
        return self._shared.follow(stream_id, start)


def create_stream_store(
    redis_client=None,
    ttl_s: int = DEFAULT_STREAM_TTL_S,
    expire_after_s: int = DEFAULT_EXPIRE_AFTER_S,
) -> StreamStore:
    local = MemoryStreamStore(ttl_s=ttl_s, expire_after_s=expire_after_s)
    if redis_client is None:
        return local
    return LayeredStreamStore(
        local,
        RedisStreamStore(redis_client, ttl_s=ttl_s, expire_after_s=expire_after_s),
    )


# =============================================================================
# Resume
# =============================================================================


def append_message_chunk(message: dict[str, Any]) -> dict[str, Any]:
    """Single transient event carrying a message that finished moments ago."""
    return {"type": "data-appendMessage", "data": message, "transient": True}


async def single_chunk(chunk: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
    yield chunk
